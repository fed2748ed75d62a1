"""Step and batch handler interfaces.

Handlers are registered on explicit registries that are handed to the engine
and the batch manager; there is no global lookup.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from flowmachine.core.engine_data import EngineData
from flowmachine.core.models import StepType
from flowmachine.db.tables import Job


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIP = "skip"
    NO_ITEMS = "no_items"


@dataclass
class StepResult:
    status: StepStatus
    engine_data_patch: dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    @classmethod
    def completed(cls, **patch) -> "StepResult":
        return cls(StepStatus.COMPLETED, patch)

    @classmethod
    def failed(cls, message: str, **patch) -> "StepResult":
        return cls(StepStatus.FAILED, patch, message)

    @classmethod
    def skip(cls, message: str | None = None, **patch) -> "StepResult":
        return cls(StepStatus.SKIP, patch, message)

    @classmethod
    def no_items(cls, **patch) -> "StepResult":
        return cls(StepStatus.NO_ITEMS, patch)


class InvalidResultError(ValueError):
    pass


def check_result(result: Any) -> StepResult:
    """Return ``result`` with its status coerced, or raise InvalidResultError."""
    if not isinstance(result, StepResult):
        raise InvalidResultError(f"expected StepResult, got {type(result).__name__}")
    try:
        status = StepStatus(result.status)
    except ValueError:
        raise InvalidResultError(f"unknown status {result.status!r}") from None
    if not isinstance(result.engine_data_patch, dict):
        raise InvalidResultError(
            f"engine_data_patch must be a dict, got {type(result.engine_data_patch).__name__}"
        )
    result.status = status
    return result


class StepHandler(Protocol):
    def execute(
        self, job: Job, step_config: dict[str, Any], engine_data: EngineData
    ) -> StepResult: ...


BatchItemHandler = Callable[[Job, list[Any], dict[str, Any]], StepResult]


class StepRegistry:
    def __init__(self):
        self._handlers: dict[StepType, StepHandler] = {}

    def register(self, step_type: StepType, handler: StepHandler):
        step_type = StepType(step_type)
        if step_type == StepType.WEBHOOK_GATE:
            raise ValueError("webhook_gate steps are handled by the engine")
        self._handlers[step_type] = handler

    def get(self, step_type: StepType) -> StepHandler | None:
        return self._handlers.get(StepType(step_type))

    def __contains__(self, step_type) -> bool:
        return StepType(step_type) in self._handlers


class BatchTaskRegistry:
    def __init__(self):
        self._handlers: dict[str, BatchItemHandler] = {}

    def register(self, task_type: str, handler: BatchItemHandler):
        self._handlers[task_type] = handler

    def get(self, task_type: str) -> BatchItemHandler | None:
        return self._handlers.get(task_type)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._handlers

    def task_types(self) -> list[str]:
        return sorted(self._handlers)
