"""Domain exceptions.

Each exception carries a ``category`` so the API and the CLI can report the
failure class alongside the message without exposing a stack trace.
"""


class FlowMachineError(Exception):
    """Base exception for all engine errors."""

    category = "error"

    @property
    def message(self) -> str:
        return str(self) or self.__class__.__name__


class EntityNotFoundError(FlowMachineError):
    category = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(FlowMachineError):
    category = "invalid"


class ConflictError(FlowMachineError):
    category = "conflict"


class InvalidTransitionError(FlowMachineError):
    """Raised when a job status change would break monotonicity."""

    category = "invalid_transition"


class QueueIndexError(FlowMachineError):
    category = "out_of_range"

    def __init__(self, index: int, size: int):
        super().__init__(f"Queue index {index} out of range (queue has {size} items)")
        self.index = index
        self.size = size


class AuthenticationError(FlowMachineError):
    category = "unauthorized"


class SchedulingError(FlowMachineError):
    """The dispatcher could not persist a scheduled task."""

    category = "infrastructure"
