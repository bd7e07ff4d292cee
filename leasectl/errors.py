class LeaseCtlError(Exception):
    """Base class for errors raised by the job lifecycle engine."""


class ValidationError(LeaseCtlError, ValueError):
    """Bad input. Never retried."""


class StoreUnavailable(LeaseCtlError, RuntimeError):
    """The job store failed or could not be reached. Safe to retry the whole call."""


class NotFound(LeaseCtlError, LookupError):
    pass


class JobConflict(LeaseCtlError):
    """Wrong owner, wrong state, or a terminal record with different content."""

    def __init__(self, job_id: int, message: str = ""):
        self.job_id = job_id
        super().__init__(
            message or f"Job {job_id} is not owned by this agent, is not running, "
                       f"or has a conflicting terminal state."
        )
