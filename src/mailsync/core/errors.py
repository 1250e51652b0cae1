"""Custom exception types for the mail sync engine.

Error messages should say what failed, for which account or user, and
what the operator can do about it. Per-account and per-user work never
lets these escape a run: they are caught at the unit boundary and turned
into a recorded outcome in the run report.
"""


class MailSyncError(Exception):
    """Base exception for all mail sync engine errors."""

    pass


class ConfigValidationError(MailSyncError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailSyncError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(MailSyncError):
    """Raised when SQLite operations fail."""

    pass


class ProviderError(MailSyncError):
    """Raised when a provider adapter cannot complete a fetch.

    Attributes:
        provider: ProviderKind value of the failing adapter (if known)
        account_id: Account the fetch was made for (if known)
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        account_id: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.account_id = account_id


class TransientProviderError(ProviderError):
    """Network, rate-limit or server-side failure.

    Retried on the next scheduled sync run, never in-loop.
    """

    pass


class ProviderTimeoutError(TransientProviderError):
    """Raised when a provider call exceeds the configured fetch timeout."""

    pass


class AuthError(ProviderError):
    """Raised when the account's token is expired or revoked.

    The account is flagged as requiring re-authentication and is skipped by
    scheduled runs until a manual sync succeeds.
    """

    pass


class ProviderNotConfiguredError(MailSyncError):
    """Raised when no adapter is registered for an account's provider kind."""

    pass


class AIProcessingError(MailSyncError):
    """Raised when the AI layer fails for a single message.

    Attributes:
        message_key: Identifier of the message that failed
    """

    def __init__(self, message: str, message_key: str | None = None):
        super().__init__(message)
        self.message_key = message_key


class DataIntegrityAnomaly(MailSyncError):
    """Raised when stored data contradicts an invariant.

    Examples: a negative created/updated pattern delta after a learning
    pass, or a duplicate group whose rows cannot be ordered by first-seen
    time. Fatal to the single account or user, never to the whole run.
    """

    pass


class RateLimitExceeded(MailSyncError):
    """Raised when the token bucket would require an excessive wait (>20 seconds)."""

    pass


class SyncInProgressError(MailSyncError):
    """Raised when an account is already held by another sync run."""

    def __init__(self, message: str, account_id: str):
        super().__init__(message)
        self.account_id = account_id
