"""ATA CRM — API error envelope and lifecycle error mapping."""
from fastapi import status

from crm.lifecycle.errors import (
    ConcurrentModificationError,
    LifecycleError,
    OrderNotFoundError,
    PreconditionError,
    TerminalStateError,
    UnknownStageError,
)

LIFECYCLE_STATUS_CODES: dict[type[LifecycleError], int] = {
    PreconditionError: status.HTTP_400_BAD_REQUEST,
    TerminalStateError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    UnknownStageError: 422,
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
}


def status_code_for(exc: LifecycleError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in LIFECYCLE_STATUS_CODES:
            return LIFECYCLE_STATUS_CODES[error_type]
    return status.HTTP_400_BAD_REQUEST


def error_response(code: str, message: str, field_errors: list[dict] | None = None, meta: dict | None = None) -> dict:
    return {
        "data": None,
        "error": {
            "code": code,
            "message": message,
            "field_errors": field_errors or []
        },
        "meta": meta
    }
