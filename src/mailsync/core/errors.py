"""Custom exception types for mailsync.

Error messages follow one rule throughout the package:
- What failed (operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, when there is any)

Cancellation is not part of the MailSyncError hierarchy: code that
catches MailSyncError to fall back to cache or surface an error callback
never sees a cancellation.
"""


class MailSyncError(Exception):
    """Base exception for all mailsync errors."""

    pass


class OperationCancelled(Exception):  # noqa: N818
    """Raised at a cancellation checkpoint when the active token is cancelled.

    Callers treat this as a silent "aborted" status, never as a user-facing
    error.

    Attributes:
        reason: Short label for what triggered the cancellation
    """

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason


class ConfigValidationError(MailSyncError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailSyncError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class RemoteAPIError(MailSyncError):
    """Raised when the mail API returns an error or cannot be reached.

    Attributes:
        status_code: HTTP status code from the API (None for transport failures)
        error_code: Error code from the API response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(MailSyncError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely, or when the server keeps
    answering 429 after all retries.
    """

    pass


class DatabaseError(MailSyncError):
    """Raised when SQLite operations fail."""

    pass


class WorkerUnavailableError(MailSyncError):
    """Raised when the background sync worker is not running or rejects an action.

    Every caller has a direct-network fallback, so this is informational.
    """

    pass


class WorkerTimeoutError(MailSyncError):
    """Raised when a background sync worker request does not answer in time.

    Attributes:
        action: The worker action that timed out
        timeout: Timeout that elapsed, in seconds
    """

    def __init__(self, action: str, timeout: float):
        super().__init__(f"Sync worker request '{action}' timed out after {timeout:.1f}s")
        self.action = action
        self.timeout = timeout


class InvalidMessageError(MailSyncError):
    """Raised when a message record has no usable server-side identifier."""

    pass


class MutationQueueError(MailSyncError):
    """Raised when the offline mutation queue cannot be read or written.

    Attributes:
        mutation_type: Type of the mutation being queued, if known
    """

    def __init__(self, message: str, mutation_type: str | None = None):
        super().__init__(message)
        self.mutation_type = mutation_type
