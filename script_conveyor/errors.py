"""Exception hierarchy for the generation conveyor.

Every error carries a stable ``code`` so the HTTP layer can map it to a
response without string matching.
"""


class ConveyorError(Exception):
    """Base class for all conveyor errors."""

    code = "CONVEYOR_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self)


class SettingsValidationError(ConveyorError):
    """Generation settings are malformed."""

    code = "VALIDATION_ERROR"


class NoItemsError(ConveyorError):
    """No source items were supplied for generation."""

    code = "NO_ITEMS"


class AlreadyRunningError(ConveyorError):
    """A batch is already running for this subject."""

    code = "ALREADY_RUNNING"


class NotRunningError(ConveyorError):
    """No batch is running for this subject."""

    code = "NOT_RUNNING"


class DuplicateJobError(ConveyorError):
    """A job already exists for this source item."""

    code = "DUPLICATE_JOB"

    def __init__(self, subject_id: str, source_item_id: str, job_id: str):
        super().__init__(
            f"Job {job_id} already exists for source item {source_item_id} "
            f"(subject {subject_id})"
        )
        self.subject_id = subject_id
        self.source_item_id = source_item_id
        self.job_id = job_id


class InvalidJobStatusError(ConveyorError):
    """The job's status does not allow this operation."""

    code = "INVALID_STATUS"

    def __init__(self, status: str, operation: str = "this operation"):
        super().__init__(f"Job status '{status}' does not allow {operation}")
        self.status = status


class RevisionNotStuckError(ConveyorError):
    """Only stuck revisions or jobs at the revision limit can be reset."""

    code = "NOT_STUCK"


class MaxRevisionsReachedError(ConveyorError):
    """The job has used up all of its revisions."""

    code = "MAX_REVISIONS_REACHED"

    def __init__(self, max_revisions: int):
        super().__init__(f"Maximum revision limit reached ({max_revisions})")
        self.max_revisions = max_revisions


class DailyLimitReachedError(ConveyorError):
    """The subject's daily item quota is used up."""

    code = "DAILY_LIMIT_REACHED"

    def __init__(self, limit: int, processed: int):
        super().__init__(f"Daily limit reached ({processed}/{limit} items)")
        self.limit = limit
        self.processed = processed


class BudgetLimitReachedError(ConveyorError):
    """The subject's monthly budget is used up."""

    code = "BUDGET_LIMIT_REACHED"

    def __init__(self, budget_limit: float, current_cost: float):
        super().__init__(
            f"Monthly budget reached (${current_cost:.2f} of ${budget_limit:.2f})"
        )
        self.budget_limit = budget_limit
        self.current_cost = current_cost


class JobNotFoundError(ConveyorError):
    """Job does not exist."""

    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class SourceItemNotFoundError(ConveyorError):
    """Source item does not exist."""

    code = "SOURCE_NOT_FOUND"

    def __init__(self, source_item_id: str):
        super().__init__(f"Source item not found: {source_item_id}")
        self.source_item_id = source_item_id


class AgentError(ConveyorError):
    """An agent failed or returned malformed output."""

    code = "AGENT_ERROR"
