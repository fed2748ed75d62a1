from datetime import datetime, timedelta, timezone
from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    AGENT_SKIPPED = "agent_skipped"
    COMPLETED_NO_ITEMS = "completed_no_items"


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.AGENT_SKIPPED,
        JobStatus.COMPLETED_NO_ITEMS,
    }
)


def is_terminal(status: str) -> bool:
    return getattr(status, "value", status) in {s.value for s in TERMINAL_STATUSES}


class JobSource(str, Enum):
    PIPELINE = "pipeline"
    BATCH = "batch"
    BATCH_ITEM = "batch_item"


class StepType(str, Enum):
    FETCH = "fetch"
    AI = "ai"
    PUBLISH = "publish"
    UPDATE = "update"
    AGENT_PING = "agent_ping"
    WEBHOOK_GATE = "webhook_gate"


QUEUEABLE_STEP_TYPES = frozenset({StepType.AI, StepType.AGENT_PING})


class TaskType(str, Enum):
    RUN_FLOW = "run_flow"
    EXECUTE_STEP = "execute_step"
    EXPIRE_GATE = "expire_gate"
    PROCESS_BATCH = "process_batch"
    RUN_BATCH_ITEM = "run_batch_item"


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorCategory(str, Enum):
    HANDLER = "handler"
    INFRASTRUCTURE = "infrastructure"
    STUCK = "stuck"
    OPERATOR = "operator"
    GATE_EXPIRED = "gate_expired"
    CANCELLED = "cancelled"
    NO_INSTRUCTION = "no_instruction"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC timestamp, so stored values sort lexically."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utcnow_iso(offset_seconds: float = 0) -> str:
    return to_iso(utcnow() + timedelta(seconds=offset_seconds))


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)
