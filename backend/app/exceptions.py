"""Error taxonomy for the sync engine.

Handlers raise these; the worker pool classifies them:

- RetryableError: rescheduled with exponential backoff until attempts run out.
- PermanentJobError: dead-lettered immediately, never retried.
- ConnectionBusyError: the job is put back behind the running sync without
  consuming an attempt.
"""


class SyncEngineError(Exception):
    """Base class for engine errors. Carries a machine-readable code."""

    code = "SYNC_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# --- Retryable ---


class RetryableError(SyncEngineError):
    """Failure that is expected to clear up on its own."""

    code = "RETRYABLE_ERROR"


class TransientProviderError(RetryableError):
    """Network failure, provider outage, or a provider-side retry hint."""

    code = "PROVIDER_TRANSIENT"


class RateLimitedError(TransientProviderError):
    """The provider throttled us."""

    code = "RATE_LIMIT_EXCEEDED"


class CursorConflictError(RetryableError):
    """The stored cursor moved while this cycle was running."""

    code = "CURSOR_CONFLICT"


# --- Permanent ---


class PermanentJobError(SyncEngineError):
    """Failure that retrying cannot fix."""

    code = "PERMANENT_ERROR"


class CredentialsInvalidError(PermanentJobError):
    """Bank credentials were revoked or expired; the user must re-link."""

    code = "ITEM_LOGIN_REQUIRED"


class ConnectionNotFoundError(PermanentJobError):
    """No connection row exists for the given id."""

    code = "CONNECTION_NOT_FOUND"


class ConnectionNotSyncableError(PermanentJobError):
    """The connection is disconnected and cannot be synced."""

    code = "CONNECTION_NOT_SYNCABLE"


# --- Concurrency ---


class ConnectionBusyError(SyncEngineError):
    """Another sync for the same connection holds the lock."""

    code = "CONNECTION_BUSY"
