"""Exception types raised inside the core.

Caller-fixable failures are converted to result objects at the service
boundary; only ConfigurationError is meant to escape to the operator.
"""


class ShiftbookError(Exception):
    """Base class for all core errors."""


class ConfigurationError(ShiftbookError):
    """Deployment is misconfigured (e.g. no QR signing secret in production)."""


class NotFoundError(ShiftbookError):
    """A worker, job or application record does not exist."""


class AlreadyCancelledError(ShiftbookError):
    """The application was already cancelled; no second penalty is applied."""

    def __init__(self, application_id: str) -> None:
        super().__init__(f"application {application_id} is already cancelled")
        self.application_id = application_id


class InvalidStatusError(ShiftbookError):
    """The application is in a status that does not allow the operation."""

    def __init__(self, application_id: str, status: str) -> None:
        super().__init__(f"application {application_id} is {status}")
        self.application_id = application_id
        self.status = status
