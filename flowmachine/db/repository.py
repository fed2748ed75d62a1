import json
import logging
import uuid
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from flowmachine.core.engine_data import EngineData, ErrorDetail
from flowmachine.core.exceptions import (
    ConflictError,
    EntityNotFoundError,
    InvalidTransitionError,
)
from flowmachine.core.models import (
    JobSource,
    JobStatus,
    TaskState,
    is_terminal,
    utcnow_iso,
)
from flowmachine.db.tables import (
    Flow,
    GateToken,
    Job,
    Pipeline,
    PromptQueue,
    ScheduledTask,
)

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 10


# ── Pipelines ───────────────────────────────────────────────────────────────


def create_pipeline(db: Session, name: str, steps: list[dict]) -> Pipeline:
    pipeline = Pipeline(name=name, steps=json.dumps(steps), created_at=utcnow_iso())
    db.add(pipeline)
    db.commit()
    db.refresh(pipeline)
    return pipeline


def get_pipeline(db: Session, pipeline_id: int) -> Pipeline | None:
    return db.get(Pipeline, pipeline_id, populate_existing=True)


def require_pipeline(db: Session, pipeline_id: int) -> Pipeline:
    pipeline = get_pipeline(db, pipeline_id)
    if not pipeline:
        raise EntityNotFoundError("Pipeline", pipeline_id)
    return pipeline


def list_pipelines(db: Session) -> list[Pipeline]:
    return db.query(Pipeline).order_by(Pipeline.id).all()


def delete_pipeline(db: Session, pipeline_id: int):
    pipeline = require_pipeline(db, pipeline_id)
    in_use = db.query(Flow).filter(Flow.pipeline_id == pipeline_id).count()
    if in_use:
        raise ConflictError(
            f"Pipeline '{pipeline_id}' is referenced by {in_use} flow(s)"
        )
    db.delete(pipeline)
    db.commit()


def pipeline_steps(pipeline: Pipeline) -> list[dict]:
    return json.loads(pipeline.steps)


# ── Flows ───────────────────────────────────────────────────────────────────


def create_flow(
    db: Session, pipeline_id: int, name: str, step_config: dict | None = None
) -> Flow:
    require_pipeline(db, pipeline_id)
    flow = Flow(
        pipeline_id=pipeline_id,
        name=name,
        step_config=json.dumps(step_config or {}),
        schedule=json.dumps({"interval": "manual"}),
        webhook_enabled=False,
        created_at=utcnow_iso(),
    )
    db.add(flow)
    db.commit()
    db.refresh(flow)
    return flow


def get_flow(db: Session, flow_id: int) -> Flow | None:
    return db.get(Flow, flow_id, populate_existing=True)


def require_flow(db: Session, flow_id: int) -> Flow:
    flow = get_flow(db, flow_id)
    if not flow:
        raise EntityNotFoundError("Flow", flow_id)
    return flow


def list_flows(db: Session) -> list[Flow]:
    return db.query(Flow).order_by(Flow.id).all()


def update_flow(db: Session, flow_id: int, **changes) -> Flow:
    flow = require_flow(db, flow_id)
    for key, value in changes.items():
        if key in ("step_config", "schedule"):
            value = json.dumps(value)
        setattr(flow, key, value)
    db.commit()
    db.refresh(flow)
    return flow


# ── Jobs ────────────────────────────────────────────────────────────────────


def create_job(
    db: Session,
    *,
    flow_id: int | None,
    pipeline_id: int | None,
    engine_data: EngineData,
    source: str = JobSource.PIPELINE,
    status: str = JobStatus.PENDING,
    parent_job_id: int | None = None,
    current_step_index: int = 0,
    commit: bool = True,
) -> Job:
    now = utcnow_iso()
    job = Job(
        flow_id=flow_id,
        pipeline_id=pipeline_id,
        parent_job_id=parent_job_id,
        source=str(getattr(source, "value", source)),
        status=str(getattr(status, "value", status)),
        current_step_index=current_step_index,
        engine_data=engine_data.dumps(),
        created_at=now,
        started_at=now if status == JobStatus.PROCESSING else None,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def get_job(db: Session, job_id: int) -> Job | None:
    return db.get(Job, job_id, populate_existing=True)


def require_job(db: Session, job_id: int) -> Job:
    job = get_job(db, job_id)
    if not job:
        raise EntityNotFoundError("Job", job_id)
    return job


def job_engine_data(job: Job) -> EngineData:
    return EngineData.loads(job.engine_data)


def list_jobs(
    db: Session,
    status: str | None = None,
    flow_id: int | None = None,
    source: str | None = None,
    limit: int = 20,
) -> list[Job]:
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status)
    if flow_id is not None:
        query = query.filter(Job.flow_id == flow_id)
    if source:
        query = query.filter(Job.source == source)
    return query.order_by(Job.id.desc()).limit(limit).all()


def list_child_jobs(db: Session, parent_job_id: int) -> list[Job]:
    return db.query(Job).filter(Job.parent_job_id == parent_job_id).all()


def count_jobs_by_status(db: Session, parent_job_id: int | None = None) -> dict[str, int]:
    query = select(Job.status, func.count(Job.id)).group_by(Job.status)
    if parent_job_id is not None:
        query = query.where(Job.parent_job_id == parent_job_id)
    return {status: count for status, count in db.execute(query).all()}


def find_stuck_jobs(
    db: Session, started_before: str, flow_id: int | None = None
) -> list[Job]:
    # Batch parents stay processing while chunks are paced; the batch manager closes them.
    query = db.query(Job).filter(
        Job.status == JobStatus.PROCESSING.value,
        Job.source != JobSource.BATCH.value,
        Job.started_at.is_not(None),
        Job.started_at < started_before,
    )
    if flow_id is not None:
        query = query.filter(Job.flow_id == flow_id)
    return query.order_by(Job.id).all()


def update_job(
    db: Session,
    job_id: int,
    mutate: Callable[[Job, EngineData], None],
) -> Job:
    """Atomic read-modify-write of one job row.

    ``mutate`` receives a freshly loaded job and its engine data and edits
    them in place. The write is guarded by the row version; on a concurrent
    write the row is reloaded and ``mutate`` runs again.
    """
    for attempt in range(CAS_ATTEMPTS):
        job = require_job(db, job_id)
        engine_data = job_engine_data(job)
        try:
            mutate(job, engine_data)
        except Exception:
            db.rollback()
            raise
        job.engine_data = engine_data.dumps()
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.debug("Job %s changed concurrently, retrying (%d)", job_id, attempt + 1)
            continue
        db.refresh(job)
        return job
    raise ConflictError(f"Job '{job_id}' is being modified concurrently")


def transition_job(
    db: Session,
    job_id: int,
    status: str,
    *,
    error: ErrorDetail | None = None,
    override: bool = False,
    mutate: Callable[[Job, EngineData], None] | None = None,
) -> Job:
    """Move a job to ``status``.

    Terminal statuses are final unless ``override`` is set, which is reserved
    for operator commands.
    """
    status = str(getattr(status, "value", status))

    def apply(job: Job, engine_data: EngineData):
        if is_terminal(job.status) and not override:
            raise InvalidTransitionError(
                f"Job '{job.id}' is already {job.status}, cannot move to {status}"
            )
        if override and is_terminal(job.status):
            logger.warning(
                "Operator override: job %s %s -> %s", job.id, job.status, status
            )
        now = utcnow_iso()
        job.status = status
        if status == JobStatus.PROCESSING.value and not job.started_at:
            job.started_at = now
        if is_terminal(status):
            job.completed_at = now
        if error is not None:
            engine_data.error = error
        if mutate:
            mutate(job, engine_data)

    return update_job(db, job_id, apply)


# ── Scheduled tasks ─────────────────────────────────────────────────────────


def create_task(
    db: Session, task_type: str, payload: dict, run_at: str, max_attempts: int
) -> ScheduledTask:
    task = ScheduledTask(
        id=str(uuid.uuid4()),
        task_type=task_type,
        payload=json.dumps(payload),
        run_at=run_at,
        status=TaskState.PENDING.value,
        attempts=0,
        max_attempts=max_attempts,
        created_at=utcnow_iso(),
    )
    db.add(task)
    db.commit()
    return task


def get_task(db: Session, task_id: str) -> ScheduledTask | None:
    return db.get(ScheduledTask, task_id, populate_existing=True)


def due_task_ids(db: Session, now: str, limit: int) -> list[str]:
    rows = (
        db.query(ScheduledTask.id)
        .filter(
            ScheduledTask.status == TaskState.PENDING.value,
            ScheduledTask.run_at <= now,
        )
        .order_by(ScheduledTask.run_at)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def claim_task(db: Session, task_id: str, now: str) -> bool:
    """Conditionally flip a pending task to running; False if someone else won."""
    result = db.execute(
        update(ScheduledTask)
        .where(
            ScheduledTask.id == task_id,
            ScheduledTask.status == TaskState.PENDING.value,
        )
        .values(
            status=TaskState.RUNNING.value,
            claimed_at=now,
            attempts=ScheduledTask.attempts + 1,
        )
    )
    db.commit()
    return result.rowcount == 1


def update_task_status(
    db: Session,
    task_id: str,
    status: str,
    run_at: str | None = None,
    last_error: str | None = None,
):
    task = get_task(db, task_id)
    if task:
        task.status = status
        if run_at is not None:
            task.run_at = run_at
        if last_error is not None:
            task.last_error = last_error
        db.commit()


def cancel_task(db: Session, task_id: str) -> bool:
    result = db.execute(
        update(ScheduledTask)
        .where(
            ScheduledTask.id == task_id,
            ScheduledTask.status == TaskState.PENDING.value,
        )
        .values(status=TaskState.CANCELLED.value)
    )
    db.commit()
    return result.rowcount == 1


def release_abandoned_tasks(db: Session, claimed_before: str) -> int:
    result = db.execute(
        update(ScheduledTask)
        .where(
            ScheduledTask.status == TaskState.RUNNING.value,
            ScheduledTask.claimed_at < claimed_before,
        )
        .values(status=TaskState.PENDING.value, claimed_at=None)
    )
    db.commit()
    return result.rowcount


def list_tasks(db: Session, task_type: str | None = None, status: str | None = None):
    query = db.query(ScheduledTask)
    if task_type:
        query = query.filter(ScheduledTask.task_type == task_type)
    if status:
        query = query.filter(ScheduledTask.status == status)
    return query.order_by(ScheduledTask.run_at).all()


# ── Webhook gate tokens ─────────────────────────────────────────────────────


def create_gate_token(
    db: Session, token: str, job_id: int, step_id: str, expires_at: str
) -> GateToken:
    gate = GateToken(token=token, job_id=job_id, step_id=step_id, expires_at=expires_at)
    db.add(gate)
    db.commit()
    return gate


def get_gate_token(db: Session, token: str) -> GateToken | None:
    return db.get(GateToken, token, populate_existing=True)


def gate_token_for_job(db: Session, job_id: int) -> GateToken | None:
    return (
        db.query(GateToken)
        .filter(GateToken.job_id == job_id, GateToken.used_at.is_(None))
        .first()
    )


def revoke_gate_tokens(db: Session, job_id: int, now: str) -> int:
    """Mark every unused token for ``job_id`` as used."""
    result = db.execute(
        update(GateToken)
        .where(GateToken.job_id == job_id, GateToken.used_at.is_(None))
        .values(used_at=now)
    )
    db.commit()
    return result.rowcount


def consume_gate_token(db: Session, token: str, now: str) -> bool:
    """Single-use: only the first caller gets True."""
    result = db.execute(
        update(GateToken)
        .where(GateToken.token == token, GateToken.used_at.is_(None))
        .values(used_at=now)
    )
    db.commit()
    return result.rowcount == 1


# ── Prompt queues ───────────────────────────────────────────────────────────


def get_prompt_queue(db: Session, flow_id: int, step_id: str) -> PromptQueue | None:
    queue = (
        db.query(PromptQueue)
        .filter(PromptQueue.flow_id == flow_id, PromptQueue.step_id == step_id)
        .first()
    )
    if queue is not None:
        db.refresh(queue)
    return queue


def get_or_create_prompt_queue(db: Session, flow_id: int, step_id: str) -> PromptQueue:
    queue = get_prompt_queue(db, flow_id, step_id)
    if queue is None:
        queue = PromptQueue(flow_id=flow_id, step_id=step_id, entries="[]")
        db.add(queue)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return get_prompt_queue(db, flow_id, step_id)
        db.refresh(queue)
    return queue
