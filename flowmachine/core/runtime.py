from dataclasses import dataclass

import httpx

from flowmachine.core.batch import BatchManager
from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.engine import StepEngine
from flowmachine.core.handlers import BatchTaskRegistry, StepRegistry
from flowmachine.core.models import StepType
from flowmachine.core.recovery import JobRecovery
from flowmachine.core.scheduling import FlowScheduler
from flowmachine.db.database import SessionLocal
from flowmachine.steps.agent_ping import AgentPingStep


@dataclass
class Runtime:
    dispatcher: TaskDispatcher
    steps: StepRegistry
    batch_tasks: BatchTaskRegistry
    engine: StepEngine
    scheduler: FlowScheduler
    batches: BatchManager
    recovery: JobRecovery


def default_step_registry(http_client: httpx.Client | None = None) -> StepRegistry:
    steps = StepRegistry()
    steps.register(StepType.AGENT_PING, AgentPingStep(client=http_client))
    return steps


def build_runtime(
    session_factory=SessionLocal,
    steps: StepRegistry | None = None,
    batch_tasks: BatchTaskRegistry | None = None,
    dispatcher: TaskDispatcher | None = None,
    engine_options: dict | None = None,
    batch_options: dict | None = None,
) -> Runtime:
    """Wire the dispatcher, engine and managers around one session factory."""
    dispatcher = dispatcher or TaskDispatcher(session_factory=session_factory)
    steps = steps if steps is not None else default_step_registry()
    batch_tasks = batch_tasks if batch_tasks is not None else BatchTaskRegistry()
    engine = StepEngine(dispatcher, steps, **(engine_options or {}))
    return Runtime(
        dispatcher=dispatcher,
        steps=steps,
        batch_tasks=batch_tasks,
        engine=engine,
        scheduler=FlowScheduler(dispatcher, engine),
        batches=BatchManager(dispatcher, batch_tasks, **(batch_options or {})),
        recovery=JobRecovery(engine),
    )
