import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.handlers import BatchTaskRegistry, StepRegistry, StepResult
from flowmachine.core.models import StepType
from flowmachine.core.runtime import build_runtime
from flowmachine.db import repository
from flowmachine.db.database import get_db, init_db, make_engine
from flowmachine.main import create_app
from flowmachine.steps.agent_ping import AgentPingStep


class ScriptedStep:
    """Step handler whose outcome per step id is set by the test."""

    def __init__(self):
        self.calls = []
        self.results = {}

    def execute(self, job, step_config, engine_data):
        step_id = step_config["step_id"]
        self.calls.append({"job_id": job.id, "step_id": step_id, "config": dict(step_config)})
        outcome = self.results.get(step_id, StepResult.completed(ran=True))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def step_ids(self):
        return [call["step_id"] for call in self.calls]


@pytest.fixture()
def session_factory(tmp_path):
    """A session factory bound to a fresh temporary database per test."""
    db_path = tmp_path / "test.db"
    engine = make_engine(f"sqlite:///{db_path}")
    init_db(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def scripted():
    return ScriptedStep()


@pytest.fixture()
def agent_requests():
    return []


@pytest.fixture()
def agent_client(agent_requests):
    def handle(request: httpx.Request) -> httpx.Response:
        agent_requests.append(request)
        return httpx.Response(200, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handle))
    yield client
    client.close()


@pytest.fixture()
def steps(scripted, agent_client):
    registry = StepRegistry()
    for step_type in (StepType.FETCH, StepType.AI, StepType.PUBLISH, StepType.UPDATE):
        registry.register(step_type, scripted)
    registry.register(StepType.AGENT_PING, AgentPingStep(client=agent_client))
    return registry


@pytest.fixture()
def batch_calls():
    return []


@pytest.fixture()
def batch_tasks(batch_calls):
    registry = BatchTaskRegistry()

    def tag_items(job, items, context):
        batch_calls.append((job.id, list(items)))
        return StepResult.completed(count=len(items))

    registry.register("tag_items", tag_items)
    return registry


@pytest.fixture()
def runtime(session_factory, steps, batch_tasks):
    """Fully wired runtime with every delay set to zero."""
    return build_runtime(
        session_factory,
        steps=steps,
        batch_tasks=batch_tasks,
        dispatcher=TaskDispatcher(session_factory=session_factory, retry_delay=0),
        engine_options={"schedule_backoff": 0},
        batch_options={"chunk_delay": 0},
    )


@pytest.fixture()
def make_flow(db):
    """Create a pipeline from ``steps`` and a flow over it."""

    def factory(steps, step_config=None, name="test"):
        pipeline = repository.create_pipeline(db, f"{name} pipeline", steps)
        return repository.create_flow(db, pipeline.id, f"{name} flow", step_config)

    return factory


@pytest.fixture()
def client(session_factory, runtime):
    """Provide a TestClient wired to the test database and runtime."""
    app = create_app(runtime=runtime, start_dispatcher=False)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
