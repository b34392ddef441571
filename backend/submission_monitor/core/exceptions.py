class MonitoringError(Exception):
    """Base exception for the submission monitoring engine."""

    status_code: int = 500
    code: str = "monitoring_error"


class NotFoundError(MonitoringError):
    """Raised when a query references an unknown submission, project or task."""

    status_code = 404
    code = "not_found"


class ValidationError(MonitoringError):
    """Raised for malformed parameters (bad enum values, out-of-range pagination)."""

    status_code = 422
    code = "validation_error"


class ConflictError(MonitoringError):
    """Raised when a write conflicts with the current state of the store."""

    status_code = 409
    code = "conflict"


class RateLimitedError(MonitoringError):
    """Raised when a client exceeds the public status quota."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded, retry after {retry_after} seconds")


class DependencyError(MonitoringError):
    """Raised when a probe or retried operation against a collaborator fails.

    Recorded in health records and retry tasks; never surfaced to callers of
    the monitoring API.
    """

    status_code = 503
    code = "dependency_error"

    def __init__(self, component: str, message: str):
        self.component = component
        super().__init__(f"{component}: {message}")
