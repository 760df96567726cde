"""Exception hierarchy for the Classy sync engine."""


class ClassySyncError(Exception):
    pass


class ConfigurationError(ClassySyncError):
    pass


class EncryptionError(ClassySyncError):
    pass


class AuthenticationError(ClassySyncError):
    """Credentials were rejected and could not be refreshed.

    Fatal for the whole organization run.
    """


class ApiRequestError(ClassySyncError):
    """A request failed permanently (non-retryable status or retries exhausted)."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class OrganizationError(ClassySyncError):
    pass


class OrganizationNotFoundError(OrganizationError):
    pass


class SyncCancelled(ClassySyncError):
    """Raised between pages when a run has been asked to stop."""
