"""Typed job state carried from step to step.

Step handlers only ever write into their own ``step_outputs[step_id]``
namespace; everything the engine itself tracks lives in a named field.
Unknown keys go to ``extra``.
"""

import json
from typing import Any

from pydantic import BaseModel, Field

ENGINE_DATA_SCHEMA_VERSION = 1


class ErrorDetail(BaseModel):
    category: str
    message: str
    step_id: str | None = None
    occurred_at: str


class PromptBackup(BaseModel):
    step_id: str
    prompt: str
    added_at: str


class GateState(BaseModel):
    step_id: str
    step_index: int
    expires_at: str
    expiry_task_id: str | None = None


class BatchState(BaseModel):
    task_type: str
    total: int
    tasks_scheduled: int = 0
    chunk_size: int
    offset: int = 0
    items: list[Any] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: str
    completed_at: str | None = None
    cancelled: bool = False


class BatchItemState(BaseModel):
    task_type: str
    items: list[Any]
    context: dict[str, Any] = Field(default_factory=dict)
    chunk_index: int


class EngineData(BaseModel):
    schema_version: int = ENGINE_DATA_SCHEMA_VERSION
    flow_id: int | None = None
    pipeline_id: int | None = None
    step_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    error: ErrorDetail | None = None
    trigger: dict[str, Any] | None = None
    queued_prompt_backup: PromptBackup | None = None
    gate: GateState | None = None
    batch: BatchState | None = None
    batch_item: BatchItemState | None = None
    retry_of: int | None = None
    retried_as: int | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def merge_step_output(self, step_id: str, patch: dict[str, Any] | None):
        if not patch:
            return
        self.step_outputs.setdefault(step_id, {}).update(patch)

    def step_output(self, step_id: str) -> dict[str, Any]:
        return dict(self.step_outputs.get(step_id, {}))

    @classmethod
    def loads(cls, raw: str | None) -> "EngineData":
        if not raw:
            return cls()
        data = json.loads(raw)
        known = set(cls.model_fields)
        extra = {k: v for k, v in data.items() if k not in known}
        data = {k: v for k, v in data.items() if k in known}
        engine_data = cls.model_validate(data)
        engine_data.extra.update(extra)
        return engine_data

    def dumps(self) -> str:
        return self.model_dump_json()
