"""Map domain exceptions onto HTTP responses.

Every error body has the same shape: ``{"error": <category>, "message": <text>}``.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from flowmachine.core.exceptions import (
    AuthenticationError,
    ConflictError,
    EntityNotFoundError,
    FlowMachineError,
    InvalidTransitionError,
    QueueIndexError,
    SchedulingError,
    ValidationError,
)

STATUS_CODES = {
    EntityNotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    QueueIndexError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    SchedulingError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_body(exc: FlowMachineError) -> dict:
    return {"error": exc.category, "message": exc.message}


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FlowMachineError)
    async def handle_domain_error(_: Request, exc: FlowMachineError) -> JSONResponse:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        for exc_type in type(exc).__mro__:
            if exc_type in STATUS_CODES:
                status_code = STATUS_CODES[exc_type]
                break
        headers = None
        if isinstance(exc, AuthenticationError):
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(status_code=status_code, content=error_body(exc), headers=headers)
