from datetime import timedelta

import pytest

from flowmachine.core import prompt_queue
from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.engine_data import PromptBackup
from flowmachine.core.exceptions import (
    AuthenticationError,
    InvalidTransitionError,
    SchedulingError,
)
from flowmachine.core.handlers import StepRegistry, StepResult, StepStatus
from flowmachine.core.models import JobStatus, TaskState, TaskType, utcnow
from flowmachine.core.runtime import build_runtime
from flowmachine.db import repository

FOUR_STEPS = [
    {"id": "fetch", "type": "fetch", "config": {}},
    {"id": "think", "type": "ai", "config": {"prompt": "summarize"}},
    {"id": "post", "type": "publish", "config": {}},
    {"id": "mark", "type": "update", "config": {}},
]


def _job(db, job_id):
    return repository.require_job(db, job_id)


def _data(db, job_id):
    return repository.job_engine_data(_job(db, job_id))


def test_flow_runs_every_step_in_order(db, runtime, scripted, make_flow):
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    assert job.status == JobStatus.PENDING.value

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.current_step_index == 3
    assert job.started_at is not None
    assert job.completed_at is not None
    assert scripted.step_ids() == ["fetch", "think", "post", "mark"]
    assert set(_data(db, job.id).step_outputs) == {"fetch", "think", "post", "mark"}


def test_each_task_runs_exactly_one_step(db, runtime, scripted, make_flow):
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    assert runtime.dispatcher.run_due() == 1

    job = _job(db, job.id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.current_step_index == 1
    assert scripted.step_ids() == ["fetch"]
    pending = repository.list_tasks(
        db, task_type=TaskType.EXECUTE_STEP.value, status=TaskState.PENDING.value
    )
    assert len(pending) == 1


def test_skip_stops_the_job(db, runtime, scripted, make_flow):
    scripted.results["think"] = StepResult.skip("nothing to do")
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.AGENT_SKIPPED.value
    assert scripted.step_ids() == ["fetch", "think"]
    outputs = _data(db, job.id).step_outputs
    assert "post" not in outputs
    assert "mark" not in outputs


def test_no_items_completes_early(db, runtime, scripted, make_flow):
    scripted.results["fetch"] = StepResult.no_items(fetched=0)
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.COMPLETED_NO_ITEMS.value
    assert _data(db, job.id).step_outputs["fetch"] == {"fetched": 0}
    assert scripted.step_ids() == ["fetch"]


def test_failed_result_records_error(db, runtime, scripted, make_flow):
    scripted.results["post"] = StepResult.failed("publisher rejected the post")
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    error = _data(db, job.id).error
    assert error.category == "handler"
    assert error.step_id == "post"
    assert error.message == "publisher rejected the post"


def test_handler_exception_fails_job(db, runtime, scripted, make_flow):
    scripted.results["think"] = RuntimeError("model unavailable")
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    error = _data(db, job.id).error
    assert error.category == "handler"
    assert error.message == "model unavailable"
    assert scripted.step_ids() == ["fetch", "think"]


@pytest.mark.parametrize(
    "outcome",
    [None, StepResult("maybe"), StepResult(StepStatus.COMPLETED, ["not", "a", "dict"])],
    ids=["none", "unknown-status", "list-patch"],
)
def test_invalid_handler_result_fails_job(db, runtime, scripted, make_flow, outcome):
    scripted.results["fetch"] = outcome
    flow = make_flow(FOUR_STEPS[:3])
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    error = _data(db, job.id).error
    assert error.category == "handler"
    assert error.step_id == "fetch"
    assert error.message.startswith("invalid handler result")
    assert scripted.step_ids() == ["fetch"]
    tasks = repository.list_tasks(db, task_type=TaskType.EXECUTE_STEP.value)
    assert [t.status for t in tasks] == [TaskState.COMPLETE.value]


def test_missing_handler_fails_job(db, session_factory, make_flow):
    runtime = build_runtime(
        session_factory,
        steps=StepRegistry(),
        dispatcher=TaskDispatcher(session_factory=session_factory, retry_delay=0),
    )
    flow = make_flow([{"id": "fetch", "type": "fetch", "config": {}}])
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    assert "fetch" in _data(db, job.id).error.message


def test_empty_pipeline_fails_immediately(db, runtime, make_flow):
    flow = make_flow([])
    job = runtime.engine.run_flow(db, flow.id)

    assert job.status == JobStatus.FAILED.value
    assert repository.list_tasks(db, task_type=TaskType.EXECUTE_STEP.value) == []


def test_duplicate_delivery_does_not_rerun_step(db, runtime, scripted, make_flow):
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_due()

    runtime.dispatcher.schedule(
        db, TaskType.EXECUTE_STEP, {"job_id": job.id, "step_index": 0}
    )
    runtime.dispatcher.run_until_idle()

    assert scripted.step_ids().count("fetch") == 1
    assert _job(db, job.id).status == JobStatus.COMPLETED.value


def test_delivery_after_completion_is_ignored(db, runtime, scripted, make_flow):
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_until_idle()
    calls = len(scripted.calls)

    runtime.dispatcher.schedule(
        db, TaskType.EXECUTE_STEP, {"job_id": job.id, "step_index": 3}
    )
    runtime.dispatcher.run_until_idle()

    assert len(scripted.calls) == calls
    assert _job(db, job.id).status == JobStatus.COMPLETED.value


def test_flow_override_merges_into_step_config(db, runtime, scripted, make_flow):
    flow = make_flow(FOUR_STEPS, step_config={"think": {"prompt": "translate", "model": "small"}})
    runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    think = next(call for call in scripted.calls if call["step_id"] == "think")
    assert think["config"]["prompt"] == "translate"
    assert think["config"]["model"] == "small"


def test_terminal_status_is_final(db, runtime, make_flow):
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_until_idle()

    with pytest.raises(InvalidTransitionError):
        repository.transition_job(db, job.id, JobStatus.PROCESSING)
    assert _job(db, job.id).status == JobStatus.COMPLETED.value


# ── Queued instructions ─────────────────────────────────────────────────────

QUEUED_STEPS = [
    {"id": "fetch", "type": "fetch", "config": {}},
    {"id": "think", "type": "ai", "config": {"prompt": "", "queue_enabled": True}},
]


def test_queueable_step_pops_queue_head(db, runtime, scripted, make_flow):
    flow = make_flow(QUEUED_STEPS)
    prompt_queue.add(db, flow.id, "think", "first")
    prompt_queue.add(db, flow.id, "think", "second")
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    assert _job(db, job.id).status == JobStatus.COMPLETED.value
    think = next(call for call in scripted.calls if call["step_id"] == "think")
    assert think["config"]["prompt"] == "first"
    assert [e["prompt"] for e in prompt_queue.list_entries(db, flow.id, "think")] == ["second"]
    backup = _data(db, job.id).queued_prompt_backup
    assert backup.step_id == "think"
    assert backup.prompt == "first"


def test_redelivery_reuses_backup_instead_of_popping(db, runtime, scripted, make_flow):
    flow = make_flow(QUEUED_STEPS)
    prompt_queue.add(db, flow.id, "think", "untouched")
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_due()

    def keep_backup(_job, engine_data):
        engine_data.queued_prompt_backup = PromptBackup(
            step_id="think", prompt="popped earlier", added_at="2026-01-01T00:00:00.000000+00:00"
        )

    repository.update_job(db, job.id, keep_backup)
    runtime.dispatcher.run_until_idle()

    think = next(call for call in scripted.calls if call["step_id"] == "think")
    assert think["config"]["prompt"] == "popped earlier"
    assert [e["prompt"] for e in prompt_queue.list_entries(db, flow.id, "think")] == ["untouched"]


def test_missing_instruction_fails_job(db, runtime, scripted, make_flow):
    flow = make_flow(QUEUED_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    error = _data(db, job.id).error
    assert error.category == "no_instruction"
    assert error.step_id == "think"
    assert scripted.step_ids() == ["fetch"]


# ── Scheduling failures ─────────────────────────────────────────────────────


def test_next_step_scheduling_failure_fails_job(db, runtime, make_flow, monkeypatch):
    original = runtime.dispatcher.schedule
    attempts = []

    def flaky_schedule(db, task_type, payload, **kwargs):
        if task_type == TaskType.EXECUTE_STEP and payload["step_index"] == 1:
            attempts.append(payload)
            raise SchedulingError("task table unavailable")
        return original(db, task_type, payload, **kwargs)

    monkeypatch.setattr(runtime.dispatcher, "schedule", flaky_schedule)
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    assert _data(db, job.id).error.category == "infrastructure"
    assert len(attempts) == runtime.engine.schedule_attempts


def test_scheduling_recovers_within_retry_budget(db, runtime, make_flow, monkeypatch):
    original = runtime.dispatcher.schedule
    failures = []

    def flaky_schedule(db, task_type, payload, **kwargs):
        if task_type == TaskType.EXECUTE_STEP and payload["step_index"] == 1 and not failures:
            failures.append(payload)
            raise SchedulingError("transient")
        return original(db, task_type, payload, **kwargs)

    monkeypatch.setattr(runtime.dispatcher, "schedule", flaky_schedule)
    flow = make_flow(FOUR_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    assert _job(db, job.id).status == JobStatus.COMPLETED.value
    assert len(failures) == 1


# ── Webhook gates ───────────────────────────────────────────────────────────

GATED_STEPS = [
    {"id": "fetch", "type": "fetch", "config": {}},
    {"id": "approval", "type": "webhook_gate", "config": {"token_ttl": 60}},
    {"id": "mark", "type": "update", "config": {}},
]


def test_gate_suspends_until_resumed(db, runtime, scripted, make_flow):
    flow = make_flow(GATED_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.current_step_index == 1
    assert _data(db, job.id).gate.step_id == "approval"

    token = runtime.engine.gate_token(db, job.id)
    assert len(token) == 64
    runtime.engine.resume_gate(db, token, {"approved": True})
    runtime.dispatcher.run_until_idle()

    job = _job(db, job.id)
    assert job.status == JobStatus.COMPLETED.value
    data = _data(db, job.id)
    assert data.gate is None
    assert data.step_outputs["approval"]["payload"] == {"approved": True}
    assert scripted.step_ids() == ["fetch", "mark"]

    expiry = repository.list_tasks(db, task_type=TaskType.EXPIRE_GATE.value)
    assert [t.status for t in expiry] == [TaskState.CANCELLED.value]


def test_gate_token_is_single_use(db, runtime, make_flow):
    flow = make_flow(GATED_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_until_idle()
    token = runtime.engine.gate_token(db, job.id)

    runtime.engine.resume_gate(db, token, {})
    with pytest.raises(AuthenticationError):
        runtime.engine.resume_gate(db, token, {})


def test_redelivered_gate_step_revokes_earlier_token(db, runtime, make_flow, monkeypatch):
    original = runtime.dispatcher.schedule
    lost_tokens = []

    def flaky_schedule(db, task_type, payload, **kwargs):
        if task_type == TaskType.EXPIRE_GATE and not lost_tokens:
            lost_tokens.append(payload["token"])
            raise SchedulingError("task table unavailable")
        return original(db, task_type, payload, **kwargs)

    monkeypatch.setattr(runtime.dispatcher, "schedule", flaky_schedule)
    flow = make_flow(GATED_STEPS)
    job = runtime.engine.run_flow(db, flow.id)

    runtime.dispatcher.run_until_idle()

    assert _data(db, job.id).gate.step_id == "approval"
    token = runtime.engine.gate_token(db, job.id)
    assert token != lost_tokens[0]
    with pytest.raises(AuthenticationError):
        runtime.engine.resume_gate(db, lost_tokens[0], {})
    runtime.engine.resume_gate(db, token, {})
    runtime.dispatcher.run_until_idle()
    assert _job(db, job.id).status == JobStatus.COMPLETED.value


def test_unknown_gate_token_is_rejected(db, runtime):
    with pytest.raises(AuthenticationError):
        runtime.engine.resume_gate(db, "not-a-token", {})


def test_gate_expiry_fails_waiting_job(db, runtime, scripted, make_flow):
    flow = make_flow(GATED_STEPS)
    job = runtime.engine.run_flow(db, flow.id)
    runtime.dispatcher.run_until_idle()
    token = runtime.engine.gate_token(db, job.id)

    runtime.dispatcher.run_due(now=utcnow() + timedelta(seconds=120))

    job = _job(db, job.id)
    assert job.status == JobStatus.FAILED.value
    assert _data(db, job.id).error.category == "gate_expired"
    with pytest.raises(AuthenticationError):
        runtime.engine.resume_gate(db, token, {})
    assert scripted.step_ids() == ["fetch"]
