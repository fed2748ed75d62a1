import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# --- Request models ---

class StepDefinition(BaseModel):
    id: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)


class PipelineCreate(BaseModel):
    name: str
    steps: list[StepDefinition] = Field(default_factory=list)


class FlowCreate(BaseModel):
    pipeline_id: int
    name: str
    step_config: dict[str, dict[str, Any]] = Field(default_factory=dict)


class ScheduleUpdate(BaseModel):
    interval: str
    timestamp: datetime | None = None


class PromptBody(BaseModel):
    prompt: str


class QueueMove(BaseModel):
    from_index: int
    to_index: int


class FailJobBody(BaseModel):
    reason: str = "manual"


class RetryJobBody(BaseModel):
    force: bool = False


class RecoverStuckBody(BaseModel):
    timeout_hours: float | None = None
    flow_id: int | None = None
    dry_run: bool = False


class GateResumeBody(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


# --- Response models ---

class PipelineResponse(BaseModel):
    id: int
    name: str
    steps: list[dict[str, Any]]
    created_at: str

    @classmethod
    def from_row(cls, pipeline) -> "PipelineResponse":
        return cls(
            id=pipeline.id,
            name=pipeline.name,
            steps=json.loads(pipeline.steps),
            created_at=pipeline.created_at,
        )


class FlowResponse(BaseModel):
    id: int
    pipeline_id: int
    name: str
    step_config: dict[str, Any]
    schedule: dict[str, Any]
    webhook_enabled: bool
    created_at: str

    @classmethod
    def from_row(cls, flow) -> "FlowResponse":
        return cls(
            id=flow.id,
            pipeline_id=flow.pipeline_id,
            name=flow.name,
            step_config=json.loads(flow.step_config),
            schedule=json.loads(flow.schedule),
            webhook_enabled=flow.webhook_enabled,
            created_at=flow.created_at,
        )


class WebhookResponse(BaseModel):
    flow_id: int
    token: str


class JobResponse(BaseModel):
    id: int
    flow_id: int | None = None
    pipeline_id: int | None = None
    parent_job_id: int | None = None
    source: str
    status: str
    current_step_index: int
    engine_data: dict[str, Any]
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_row(cls, job) -> "JobResponse":
        return cls(
            id=job.id,
            flow_id=job.flow_id,
            pipeline_id=job.pipeline_id,
            parent_job_id=job.parent_job_id,
            source=job.source,
            status=job.status,
            current_step_index=job.current_step_index,
            engine_data=json.loads(job.engine_data),
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class QueueEntry(BaseModel):
    prompt: str
    added_at: str


class GateTokenResponse(BaseModel):
    job_id: int
    token: str


class RetryResponse(BaseModel):
    job_id: int
    new_job_id: int
    prompt_requeued: bool
