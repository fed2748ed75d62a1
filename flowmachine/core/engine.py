"""Step execution state machine.

One ``execute_step`` task runs exactly one step of one job. When the step
succeeds and more steps remain, the next step is scheduled as a new task and
the current task returns; steps are never chained synchronously.
"""

import json
import logging
import secrets
import time
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from flowmachine import config
from flowmachine.core import prompt_queue
from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.engine_data import (
    EngineData,
    ErrorDetail,
    GateState,
    PromptBackup,
)
from flowmachine.core.exceptions import (
    AuthenticationError,
    ConflictError,
    FlowMachineError,
    InvalidTransitionError,
    SchedulingError,
)
from flowmachine.core.handlers import (
    InvalidResultError,
    StepRegistry,
    StepResult,
    StepStatus,
    check_result,
)
from flowmachine.core.models import (
    QUEUEABLE_STEP_TYPES,
    ErrorCategory,
    JobStatus,
    StepType,
    TaskType,
    is_terminal,
    to_iso,
    utcnow,
    utcnow_iso,
)
from flowmachine.db import repository
from flowmachine.db.tables import Flow, Job

logger = logging.getLogger(__name__)

_RESULT_STATUS = {
    StepStatus.SKIP: JobStatus.AGENT_SKIPPED,
    StepStatus.NO_ITEMS: JobStatus.COMPLETED_NO_ITEMS,
    StepStatus.FAILED: JobStatus.FAILED,
}


def resolve_step_config(flow: Flow, step: dict[str, Any]) -> dict[str, Any]:
    """Pipeline step config with the flow's per-step overrides applied."""
    overrides = json.loads(flow.step_config or "{}").get(step["id"], {})
    return {**step.get("config", {}), **overrides}


def error_detail(category: ErrorCategory, message: str, step_id: str | None = None):
    return ErrorDetail(
        category=category.value,
        message=message,
        step_id=step_id,
        occurred_at=utcnow_iso(),
    )


class StepEngine:
    def __init__(
        self,
        dispatcher: TaskDispatcher,
        steps: StepRegistry,
        next_step_delay: float = config.NEXT_STEP_DELAY,
        schedule_attempts: int = config.SCHEDULE_RETRY_ATTEMPTS,
        schedule_backoff: float = config.SCHEDULE_RETRY_BACKOFF,
        gate_ttl: int = config.WEBHOOK_GATE_TTL,
    ):
        self.dispatcher = dispatcher
        self.steps = steps
        self.next_step_delay = next_step_delay
        self.schedule_attempts = max(1, schedule_attempts)
        self.schedule_backoff = schedule_backoff
        self.gate_ttl = gate_ttl
        dispatcher.register_handler(TaskType.EXECUTE_STEP, self.execute_step)
        dispatcher.register_handler(TaskType.EXPIRE_GATE, self.expire_gate)

    # ── Activation ──────────────────────────────────────────────────────────

    def run_flow(
        self, db: Session, flow_id: int, trigger: dict[str, Any] | None = None
    ) -> Job:
        flow = repository.require_flow(db, flow_id)
        pipeline = repository.require_pipeline(db, flow.pipeline_id)
        engine_data = EngineData(
            flow_id=flow.id, pipeline_id=pipeline.id, trigger=trigger
        )
        job = repository.create_job(
            db,
            flow_id=flow.id,
            pipeline_id=pipeline.id,
            engine_data=engine_data,
        )
        logger.info("Job %s created for flow %s", job.id, flow.id)

        if not repository.pipeline_steps(pipeline):
            self._fail(db, job.id, ErrorCategory.HANDLER, "Pipeline has no steps")
        else:
            self._schedule_step(db, job.id, 0)
        return repository.require_job(db, job.id)

    def retry_from_step(self, db: Session, job: Job, step_index: int) -> Job:
        """Start a new job that picks up ``job`` at ``step_index``."""
        previous = repository.job_engine_data(job)
        engine_data = previous.model_copy(
            update={"error": None, "gate": None, "retry_of": job.id, "retried_as": None}
        )
        new_job = repository.create_job(
            db,
            flow_id=job.flow_id,
            pipeline_id=job.pipeline_id,
            engine_data=engine_data,
            current_step_index=step_index,
        )

        def link(_job, old_data):
            old_data.retried_as = new_job.id

        repository.update_job(db, job.id, link)
        logger.info("Job %s retried as job %s at step %d", job.id, new_job.id, step_index)
        self._schedule_step(db, new_job.id, step_index)
        return repository.require_job(db, new_job.id)

    # ── Task handlers ───────────────────────────────────────────────────────

    def execute_step(self, db: Session, payload: dict[str, Any]):
        job_id = payload["job_id"]
        step_index = payload["step_index"]

        job = repository.get_job(db, job_id)
        if job is None:
            logger.warning("Job %s vanished before step %d ran", job_id, step_index)
            return
        if is_terminal(job.status) or job.current_step_index != step_index:
            logger.info(
                "Ignoring duplicate delivery of step %d for job %s (%s, at step %d)",
                step_index,
                job_id,
                job.status,
                job.current_step_index,
            )
            return
        engine_data = repository.job_engine_data(job)
        if engine_data.gate and engine_data.gate.step_index == step_index:
            logger.info("Job %s is already waiting at gate step %d", job_id, step_index)
            return

        try:
            flow = repository.require_flow(db, job.flow_id)
            steps = repository.pipeline_steps(
                repository.require_pipeline(db, job.pipeline_id)
            )
            step = steps[step_index]
            step_type = StepType(step["type"])
        except (FlowMachineError, IndexError, KeyError, ValueError) as e:
            self._fail(db, job_id, ErrorCategory.HANDLER, f"Cannot resolve step: {e}")
            return

        try:
            if job.status == JobStatus.PENDING.value:
                repository.transition_job(db, job_id, JobStatus.PROCESSING)
            self._run_step(db, job_id, step_index, step, step_type, flow, len(steps))
        except InvalidTransitionError as e:
            logger.info("Job %s changed while step %d ran: %s", job_id, step_index, e)

    def _run_step(
        self,
        db: Session,
        job_id: int,
        step_index: int,
        step: dict[str, Any],
        step_type: StepType,
        flow: Flow,
        step_count: int,
    ):
        step_id = step["id"]
        step_config = resolve_step_config(flow, step)
        step_config["step_id"] = step_id
        logger.info("Job %s executing step %d (%s/%s)", job_id, step_index, step_id, step_type.value)

        if step_type == StepType.WEBHOOK_GATE:
            self._open_gate(db, job_id, step_id, step_index, step_config)
            return

        if step_type in QUEUEABLE_STEP_TYPES:
            prompt = self._resolve_instruction(db, job_id, flow.id, step_id, step_config)
            if prompt is None:
                self._fail(
                    db,
                    job_id,
                    ErrorCategory.NO_INSTRUCTION,
                    f"No instruction for step '{step_id}': prompt is empty and the queue has nothing to pop",
                    step_id,
                )
                return
            step_config["prompt"] = prompt

        handler = self.steps.get(step_type)
        if handler is None:
            self._fail(
                db,
                job_id,
                ErrorCategory.HANDLER,
                f"No handler registered for step type '{step_type.value}'",
                step_id,
            )
            return

        job = repository.require_job(db, job_id)
        try:
            result = check_result(
                handler.execute(job, step_config, repository.job_engine_data(job))
            )
        except InvalidResultError as e:
            db.rollback()
            logger.error("Job %s step %s returned an invalid result: %s", job_id, step_id, e)
            self._fail(db, job_id, ErrorCategory.HANDLER, f"invalid handler result: {e}", step_id)
            return
        except Exception as e:
            db.rollback()
            logger.exception("Job %s step %s handler raised", job_id, step_id)
            self._fail(db, job_id, ErrorCategory.HANDLER, str(e) or type(e).__name__, step_id)
            return

        self._complete_step(db, job_id, step_index, step_id, result, step_count)

    def _complete_step(
        self,
        db: Session,
        job_id: int,
        step_index: int,
        step_id: str,
        result: StepResult,
        step_count: int,
    ):
        status = StepStatus(result.status)

        def merge(_job, engine_data: EngineData):
            engine_data.gate = None
            engine_data.merge_step_output(step_id, result.engine_data_patch)

        if status in _RESULT_STATUS:
            final = _RESULT_STATUS[status]
            error = None
            if status == StepStatus.FAILED:
                error = error_detail(
                    ErrorCategory.HANDLER, result.message or "Step reported failure", step_id
                )
            repository.transition_job(db, job_id, final, error=error, mutate=merge)
            log = logger.error if status == StepStatus.FAILED else logger.info
            log("Job %s stopped at step %s: %s", job_id, step_id, final.value)
            return

        if step_index >= step_count - 1:
            repository.transition_job(db, job_id, JobStatus.COMPLETED, mutate=merge)
            logger.info("Job %s completed", job_id)
            return

        def advance(job: Job, engine_data: EngineData):
            if is_terminal(job.status):
                raise InvalidTransitionError(f"Job '{job.id}' is already {job.status}")
            if job.current_step_index != step_index:
                raise ConflictError(f"Job '{job.id}' already advanced past step {step_index}")
            merge(job, engine_data)
            job.current_step_index = step_index + 1

        try:
            repository.update_job(db, job_id, advance)
        except ConflictError as e:
            logger.info("%s", e)
            return
        self._schedule_step(db, job_id, step_index + 1)

    def _schedule_step(self, db: Session, job_id: int, step_index: int) -> str | None:
        payload = {"job_id": job_id, "step_index": step_index}
        last_error = None
        for attempt in range(1, self.schedule_attempts + 1):
            try:
                return self.dispatcher.schedule(
                    db, TaskType.EXECUTE_STEP, payload, delay=self.next_step_delay
                )
            except SchedulingError as e:
                last_error = e
                logger.warning(
                    "Scheduling step %d of job %s failed (attempt %d/%d): %s",
                    step_index,
                    job_id,
                    attempt,
                    self.schedule_attempts,
                    e,
                )
                if attempt < self.schedule_attempts:
                    time.sleep(self.schedule_backoff * 2 ** (attempt - 1))
        self._fail(
            db,
            job_id,
            ErrorCategory.INFRASTRUCTURE,
            f"Could not schedule step {step_index}: {last_error}",
        )
        return None

    def _resolve_instruction(
        self,
        db: Session,
        job_id: int,
        flow_id: int,
        step_id: str,
        step_config: dict[str, Any],
    ) -> str | None:
        prompt = step_config.get("prompt") or ""
        if prompt.strip():
            return prompt

        backup = repository.job_engine_data(repository.require_job(db, job_id)).queued_prompt_backup
        if backup and backup.step_id == step_id:
            return backup.prompt

        if not step_config.get("queue_enabled"):
            return None
        entry = prompt_queue.pop(db, flow_id, step_id)
        if entry is None:
            return None

        def keep_backup(_job, engine_data: EngineData):
            engine_data.queued_prompt_backup = PromptBackup(
                step_id=step_id, prompt=entry["prompt"], added_at=entry["added_at"]
            )

        repository.update_job(db, job_id, keep_backup)
        logger.info("Job %s popped queued prompt for step %s", job_id, step_id)
        return entry["prompt"]

    def _fail(
        self,
        db: Session,
        job_id: int,
        category: ErrorCategory,
        message: str,
        step_id: str | None = None,
    ):
        try:
            repository.transition_job(
                db, job_id, JobStatus.FAILED, error=error_detail(category, message, step_id)
            )
        except InvalidTransitionError as e:
            logger.info("Not failing job %s: %s", job_id, e)
            return
        logger.error("Job %s failed (%s): %s", job_id, category.value, message)

    # ── Webhook gate ────────────────────────────────────────────────────────

    def _open_gate(
        self,
        db: Session,
        job_id: int,
        step_id: str,
        step_index: int,
        step_config: dict[str, Any],
    ):
        ttl = int(step_config.get("token_ttl") or self.gate_ttl)
        expires = utcnow() + timedelta(seconds=ttl)
        token = secrets.token_hex(32)
        revoked = repository.revoke_gate_tokens(db, job_id, utcnow_iso())
        if revoked:
            logger.info("Job %s revoked %d gate token(s) from an earlier delivery", job_id, revoked)
        repository.create_gate_token(db, token, job_id, step_id, to_iso(expires))
        expiry_task_id = self.dispatcher.schedule(
            db, TaskType.EXPIRE_GATE, {"job_id": job_id, "token": token}, run_at=expires
        )

        def park(_job, engine_data: EngineData):
            engine_data.gate = GateState(
                step_id=step_id,
                step_index=step_index,
                expires_at=to_iso(expires),
                expiry_task_id=expiry_task_id,
            )

        repository.update_job(db, job_id, park)
        logger.info("Job %s waiting at webhook gate %s until %s", job_id, step_id, to_iso(expires))

    def gate_token(self, db: Session, job_id: int) -> str | None:
        gate = repository.gate_token_for_job(db, job_id)
        return gate.token if gate else None

    def resume_gate(self, db: Session, token: str, payload: dict[str, Any]) -> Job:
        now = utcnow_iso()
        gate = repository.get_gate_token(db, token) if token else None
        if gate is None:
            raise AuthenticationError("Unknown gate token")
        if gate.used_at:
            raise AuthenticationError("Gate token has already been used")
        if gate.expires_at <= now:
            raise AuthenticationError("Gate token has expired")

        job = repository.require_job(db, gate.job_id)
        engine_data = repository.job_engine_data(job)
        if is_terminal(job.status) or not engine_data.gate or engine_data.gate.step_id != gate.step_id:
            raise ConflictError(f"Job '{job.id}' is not waiting at gate '{gate.step_id}'")
        if not repository.consume_gate_token(db, token, now):
            raise AuthenticationError("Gate token has already been used")

        if engine_data.gate.expiry_task_id:
            self.dispatcher.cancel(db, engine_data.gate.expiry_task_id)

        steps = repository.pipeline_steps(repository.require_pipeline(db, job.pipeline_id))
        result = StepResult.completed(payload=payload, received_at=now)
        logger.info("Job %s resumed at gate %s", job.id, gate.step_id)
        self._complete_step(
            db, job.id, engine_data.gate.step_index, gate.step_id, result, len(steps)
        )
        return repository.require_job(db, job.id)

    def expire_gate(self, db: Session, payload: dict[str, Any]):
        token = payload["token"]
        gate = repository.get_gate_token(db, token)
        if gate is None or gate.used_at:
            return
        if not repository.consume_gate_token(db, token, utcnow_iso()):
            return
        self._fail(
            db,
            gate.job_id,
            ErrorCategory.GATE_EXPIRED,
            f"Webhook gate '{gate.step_id}' expired without being resumed",
            gate.step_id,
        )
