import json
from datetime import datetime, timedelta, timezone

import pytest

from flowmachine.core.exceptions import AuthenticationError, ValidationError
from flowmachine.core.models import JobStatus, TaskState, TaskType, to_iso, utcnow
from flowmachine.core.scheduling import INTERVALS, MANUAL, stagger_offset
from flowmachine.db import repository

STEPS = [{"id": "fetch", "type": "fetch", "config": {}}]


def _schedule(db, flow_id):
    return json.loads(repository.require_flow(db, flow_id).schedule)


def test_stagger_is_deterministic_and_bounded():
    for interval in INTERVALS.values():
        for flow_id in range(1, 50):
            offset = stagger_offset(flow_id, interval)
            assert offset == stagger_offset(flow_id, interval)
            assert 0 <= offset < min(interval, 3600)


def test_stagger_spreads_flows():
    offsets = {stagger_offset(flow_id, INTERVALS["hourly"]) for flow_id in range(1, 21)}
    assert len(offsets) > 1


def test_recurring_schedule_queues_first_run(db, runtime, make_flow):
    flow = make_flow(STEPS)

    flow = runtime.scheduler.set_schedule(db, flow.id, "hourly")

    schedule = _schedule(db, flow.id)
    assert schedule["interval"] == "hourly"
    task = repository.get_task(db, flow.scheduled_task_id)
    assert task.task_type == TaskType.RUN_FLOW.value
    assert task.status == TaskState.PENDING.value
    assert task.run_at == schedule["next_run_at"]


def test_rescheduling_cancels_previous_task(db, runtime, make_flow):
    flow = make_flow(STEPS)
    first_task = runtime.scheduler.set_schedule(db, flow.id, "daily").scheduled_task_id

    flow = runtime.scheduler.set_schedule(db, flow.id, MANUAL)

    assert flow.scheduled_task_id is None
    assert _schedule(db, flow.id) == {"interval": "manual"}
    assert repository.get_task(db, first_task).status == TaskState.CANCELLED.value


def test_invalid_schedules_are_rejected(db, runtime, make_flow):
    flow = make_flow(STEPS)

    with pytest.raises(ValidationError):
        runtime.scheduler.set_schedule(db, flow.id, "fortnightly")
    with pytest.raises(ValidationError):
        runtime.scheduler.set_schedule(db, flow.id, "one_time")


def test_scheduled_run_starts_job_and_requeues(db, runtime, make_flow):
    flow = make_flow(STEPS)
    runtime.scheduler.set_schedule(db, flow.id, "every_5_minutes")

    runtime.dispatcher.run_due(now=utcnow() + timedelta(seconds=301))
    runtime.dispatcher.run_until_idle()

    jobs = repository.list_jobs(db, flow_id=flow.id)
    assert [j.status for j in jobs] == [JobStatus.COMPLETED.value]
    flow = repository.require_flow(db, flow.id)
    next_task = repository.get_task(db, flow.scheduled_task_id)
    assert next_task.status == TaskState.PENDING.value
    assert next_task.run_at > to_iso(utcnow())


def test_one_time_schedule_reverts_to_manual(db, runtime, make_flow):
    flow = make_flow(STEPS)
    when = datetime.now(timezone.utc) + timedelta(minutes=10)
    runtime.scheduler.set_schedule(db, flow.id, "one_time", when)
    assert _schedule(db, flow.id)["interval"] == "one_time"

    runtime.dispatcher.run_due(now=when + timedelta(seconds=1))

    assert _schedule(db, flow.id) == {"interval": "manual"}
    assert len(repository.list_jobs(db, flow_id=flow.id)) == 1


def test_webhook_trigger(db, runtime, make_flow):
    flow = make_flow(STEPS)
    token = runtime.scheduler.enable_webhook(db, flow.id)
    assert len(token) == 64

    job = runtime.scheduler.trigger_webhook(
        db, flow.id, token, {"event": "push"}, remote_ip="10.0.0.1"
    )

    trigger = repository.job_engine_data(job).trigger
    assert trigger["payload"] == {"event": "push"}
    assert trigger["remote_ip"] == "10.0.0.1"
    assert trigger["received_at"]


def test_webhook_rejects_wrong_token(db, runtime, make_flow):
    flow = make_flow(STEPS)
    runtime.scheduler.enable_webhook(db, flow.id)

    with pytest.raises(AuthenticationError):
        runtime.scheduler.trigger_webhook(db, flow.id, "0" * 64, {})
    with pytest.raises(AuthenticationError):
        runtime.scheduler.trigger_webhook(db, flow.id, None, {})
    assert repository.list_jobs(db, flow_id=flow.id) == []


def test_regenerated_token_replaces_old_one(db, runtime, make_flow):
    flow = make_flow(STEPS)
    old = runtime.scheduler.enable_webhook(db, flow.id)
    new = runtime.scheduler.enable_webhook(db, flow.id)

    assert old != new
    with pytest.raises(AuthenticationError):
        runtime.scheduler.trigger_webhook(db, flow.id, old, {})
    runtime.scheduler.trigger_webhook(db, flow.id, new, {})


def test_disabled_webhook_rejects_trigger(db, runtime, make_flow):
    flow = make_flow(STEPS)
    token = runtime.scheduler.enable_webhook(db, flow.id)
    runtime.scheduler.disable_webhook(db, flow.id)

    with pytest.raises(AuthenticationError):
        runtime.scheduler.trigger_webhook(db, flow.id, token, {})