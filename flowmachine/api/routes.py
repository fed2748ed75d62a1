from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from flowmachine import config
from flowmachine.api.auth import bearer_token, verify_api_key
from flowmachine.api.schemas import (
    FailJobBody,
    FlowCreate,
    FlowResponse,
    GateResumeBody,
    GateTokenResponse,
    JobResponse,
    PipelineCreate,
    PipelineResponse,
    PromptBody,
    QueueEntry,
    QueueMove,
    RecoverStuckBody,
    RetryJobBody,
    RetryResponse,
    ScheduleUpdate,
    WebhookResponse,
)
from flowmachine.core import prompt_queue
from flowmachine.core.exceptions import EntityNotFoundError, ValidationError
from flowmachine.core.pipelines import validate_pipeline, validate_step_overrides
from flowmachine.core.runtime import Runtime
from flowmachine.db import repository
from flowmachine.db.database import get_db

router = APIRouter()
management = APIRouter(dependencies=[Depends(verify_api_key)])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ── Pipelines ───────────────────────────────────────────────────────────────


@management.post("/pipelines", response_model=PipelineResponse)
def create_pipeline(pipeline: PipelineCreate, db: Session = Depends(get_db)):
    definition = pipeline.model_dump()
    errors = validate_pipeline(definition)
    if errors:
        raise ValidationError("; ".join(errors))
    created = repository.create_pipeline(db, definition["name"], definition["steps"])
    return PipelineResponse.from_row(created)


@management.get("/pipelines", response_model=list[PipelineResponse])
def list_pipelines(db: Session = Depends(get_db)):
    return [PipelineResponse.from_row(p) for p in repository.list_pipelines(db)]


@management.get("/pipelines/{pipeline_id}", response_model=PipelineResponse)
def get_pipeline(pipeline_id: int, db: Session = Depends(get_db)):
    return PipelineResponse.from_row(repository.require_pipeline(db, pipeline_id))


@management.delete("/pipelines/{pipeline_id}")
def delete_pipeline(pipeline_id: int, db: Session = Depends(get_db)):
    repository.delete_pipeline(db, pipeline_id)
    return {"status": "deleted", "pipeline_id": pipeline_id}


# ── Flows ───────────────────────────────────────────────────────────────────


@management.post("/flows", response_model=FlowResponse)
def create_flow(flow: FlowCreate, db: Session = Depends(get_db)):
    pipeline = repository.require_pipeline(db, flow.pipeline_id)
    errors = validate_step_overrides(repository.pipeline_steps(pipeline), flow.step_config)
    if errors:
        raise ValidationError("; ".join(errors))
    created = repository.create_flow(db, flow.pipeline_id, flow.name, flow.step_config)
    return FlowResponse.from_row(created)


@management.get("/flows", response_model=list[FlowResponse])
def list_flows(db: Session = Depends(get_db)):
    return [FlowResponse.from_row(f) for f in repository.list_flows(db)]


@management.get("/flows/{flow_id}", response_model=FlowResponse)
def get_flow(flow_id: int, db: Session = Depends(get_db)):
    return FlowResponse.from_row(repository.require_flow(db, flow_id))


@management.put("/flows/{flow_id}/schedule", response_model=FlowResponse)
def set_schedule(
    flow_id: int,
    body: ScheduleUpdate,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    flow = runtime.scheduler.set_schedule(db, flow_id, body.interval, body.timestamp)
    return FlowResponse.from_row(flow)


@management.post("/flows/{flow_id}/run", response_model=JobResponse)
def run_flow(
    flow_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    return JobResponse.from_row(runtime.engine.run_flow(db, flow_id))


@management.post("/flows/{flow_id}/webhook", response_model=WebhookResponse)
def enable_webhook(
    flow_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    token = runtime.scheduler.enable_webhook(db, flow_id)
    return WebhookResponse(flow_id=flow_id, token=token)


@management.delete("/flows/{flow_id}/webhook", response_model=FlowResponse)
def disable_webhook(
    flow_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    return FlowResponse.from_row(runtime.scheduler.disable_webhook(db, flow_id))


# ── Prompt queues ───────────────────────────────────────────────────────────


@management.get("/flows/{flow_id}/steps/{step_id}/queue", response_model=list[QueueEntry])
def list_queue(flow_id: int, step_id: str, db: Session = Depends(get_db)):
    return prompt_queue.list_entries(db, flow_id, step_id)


@management.post("/flows/{flow_id}/steps/{step_id}/queue", response_model=QueueEntry)
def add_to_queue(
    flow_id: int, step_id: str, body: PromptBody, db: Session = Depends(get_db)
):
    return prompt_queue.add(db, flow_id, step_id, body.prompt)


@management.delete("/flows/{flow_id}/steps/{step_id}/queue")
def clear_queue(flow_id: int, step_id: str, db: Session = Depends(get_db)):
    return {"cleared": prompt_queue.clear(db, flow_id, step_id)}


@management.put(
    "/flows/{flow_id}/steps/{step_id}/queue/{index}", response_model=QueueEntry
)
def update_queue_entry(
    flow_id: int,
    step_id: str,
    index: int,
    body: PromptBody,
    db: Session = Depends(get_db),
):
    return prompt_queue.update(db, flow_id, step_id, index, body.prompt)


@management.delete(
    "/flows/{flow_id}/steps/{step_id}/queue/{index}", response_model=QueueEntry
)
def remove_queue_entry(
    flow_id: int, step_id: str, index: int, db: Session = Depends(get_db)
):
    return prompt_queue.remove(db, flow_id, step_id, index)


@management.post(
    "/flows/{flow_id}/steps/{step_id}/queue/move", response_model=list[QueueEntry]
)
def move_queue_entry(
    flow_id: int, step_id: str, body: QueueMove, db: Session = Depends(get_db)
):
    return prompt_queue.move(db, flow_id, step_id, body.from_index, body.to_index)


# ── Jobs ────────────────────────────────────────────────────────────────────


@management.get("/jobs", response_model=list[JobResponse])
def list_jobs(
    status: str | None = None,
    flow_id: int | None = None,
    source: str | None = None,
    limit: int = 20,
    db: Session = Depends(get_db),
):
    jobs = repository.list_jobs(db, status=status, flow_id=flow_id, source=source, limit=limit)
    return [JobResponse.from_row(j) for j in jobs]


@management.get("/jobs/summary")
def jobs_summary(db: Session = Depends(get_db), runtime: Runtime = Depends(get_runtime)):
    return runtime.recovery.jobs_summary(db)


@management.post("/jobs/recover-stuck")
def recover_stuck(
    body: RecoverStuckBody,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    timeout = body.timeout_hours if body.timeout_hours is not None else config.STUCK_JOB_TIMEOUT_HOURS
    results = runtime.recovery.recover_stuck(
        db, timeout_hours=timeout, flow_id=body.flow_id, dry_run=body.dry_run
    )
    return {"dry_run": body.dry_run, "jobs": results}


@management.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: int, db: Session = Depends(get_db)):
    return JobResponse.from_row(repository.require_job(db, job_id))


@management.get("/jobs/{job_id}/gate", response_model=GateTokenResponse)
def get_gate_token(
    job_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    repository.require_job(db, job_id)
    token = runtime.engine.gate_token(db, job_id)
    if token is None:
        raise EntityNotFoundError("Gate token for job", job_id)
    return GateTokenResponse(job_id=job_id, token=token)


@management.post("/jobs/{job_id}/fail", response_model=JobResponse)
def fail_job(
    job_id: int,
    body: FailJobBody | None = None,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    reason = body.reason if body else "manual"
    return JobResponse.from_row(runtime.recovery.fail_job(db, job_id, reason))


@management.post("/jobs/{job_id}/retry", response_model=RetryResponse)
def retry_job(
    job_id: int,
    body: RetryJobBody | None = None,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.recovery.retry_job(db, job_id, force=body.force if body else False)


# ── Batches ─────────────────────────────────────────────────────────────────


@management.get("/batches")
def list_batches(
    limit: int = 20,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.batches.list_batches(db, limit)


@management.get("/batches/{batch_job_id}")
def get_batch(
    batch_job_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    status = runtime.batches.get_batch_status(db, batch_job_id)
    if status is None:
        raise EntityNotFoundError("Batch", batch_job_id)
    return status


@management.post("/batches/{batch_job_id}/cancel")
def cancel_batch(
    batch_job_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    if not runtime.batches.cancel_batch(db, batch_job_id):
        raise EntityNotFoundError("Batch", batch_job_id)
    return runtime.batches.get_batch_status(db, batch_job_id)


# ── Token-authenticated endpoints (bearer) ──────────────────────────────────


@router.post("/trigger/{flow_id}", response_model=JobResponse)
def trigger_flow(
    flow_id: int,
    request: Request,
    payload: dict[str, Any] | None = Body(default=None),
    token: str | None = Depends(bearer_token),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    remote_ip = request.client.host if request.client else None
    job = runtime.scheduler.trigger_webhook(db, flow_id, token, payload or {}, remote_ip)
    return JobResponse.from_row(job)


@router.post("/gates/resume", response_model=JobResponse)
def resume_gate(
    body: GateResumeBody | None = None,
    token: str | None = Depends(bearer_token),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    job = runtime.engine.resume_gate(db, token, body.payload if body else {})
    return JobResponse.from_row(job)


router.include_router(management)
