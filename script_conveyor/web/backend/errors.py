"""Mapping from conveyor errors to HTTP responses."""

from fastapi import HTTPException, status

from ...errors import (
    AgentError,
    AlreadyRunningError,
    BudgetLimitReachedError,
    ConveyorError,
    DailyLimitReachedError,
    DuplicateJobError,
    InvalidJobStatusError,
    JobNotFoundError,
    MaxRevisionsReachedError,
    NoItemsError,
    NotRunningError,
    RevisionNotStuckError,
    SettingsValidationError,
    SourceItemNotFoundError,
)

STATUS_CODES: dict[type[ConveyorError], int] = {
    SettingsValidationError: status.HTTP_400_BAD_REQUEST,
    NoItemsError: status.HTTP_400_BAD_REQUEST,
    MaxRevisionsReachedError: status.HTTP_400_BAD_REQUEST,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    SourceItemNotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyRunningError: status.HTTP_409_CONFLICT,
    NotRunningError: status.HTTP_409_CONFLICT,
    DuplicateJobError: status.HTTP_409_CONFLICT,
    InvalidJobStatusError: status.HTTP_409_CONFLICT,
    RevisionNotStuckError: status.HTTP_409_CONFLICT,
    DailyLimitReachedError: status.HTTP_429_TOO_MANY_REQUESTS,
    BudgetLimitReachedError: status.HTTP_429_TOO_MANY_REQUESTS,
    AgentError: status.HTTP_502_BAD_GATEWAY,
}


def to_http_exception(error: ConveyorError) -> HTTPException:
    """Convert a conveyor error into an HTTPException with a coded detail."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type in type(error).__mro__:
        if error_type in STATUS_CODES:
            status_code = STATUS_CODES[error_type]
            break
    return HTTPException(
        status_code=status_code,
        detail={"error": error.message, "code": error.code},
    )
