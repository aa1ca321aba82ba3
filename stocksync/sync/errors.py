"""Error taxonomy for the sync engine.

Every failure the engine can see is mapped onto one of these kinds. The kind
decides what happens next:

  transport      network / 5xx / store unavailable — retried with backoff
  rate_limited   explicit server throttle — wait for the hint, not an attempt
  auth           credentials rejected — aborts the run, never retried
  malformed      unusable payload — the page or item is skipped and logged
  write_conflict store constraint violation — retried once
  lock_contention another run holds a live lock — the new run is skipped
  cancelled      caller cancellation or deadline — the run is aborted
"""

from sqlalchemy.exc import OperationalError


class SyncError(Exception):
    """Base class. `kind` is persisted on SyncRun / BatchFailure rows."""

    kind = "unexpected"
    retryable = False
    fatal = False

    def __init__(self, message: str = "", *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message or self.__class__.__name__


class TransportError(SyncError):
    kind = "transport"
    retryable = True

    def __init__(self, message: str = "", *, status_code: int | None = None,
                 retryable: bool = True):
        super().__init__(message, status_code=status_code)
        self.retryable = retryable


class RateLimited(SyncError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str = "", *, retry_after: float | None = None,
                 status_code: int | None = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class AuthError(SyncError):
    kind = "auth"
    fatal = True


class MalformedResponse(SyncError):
    kind = "malformed"

    def __init__(self, message: str = "", *, raw: str | None = None,
                 status_code: int | None = None, content_type: str | None = None):
        super().__init__(message, status_code=status_code)
        self.raw = raw[:2000] if raw else raw
        self.content_type = content_type


class WriteConflict(SyncError):
    kind = "write_conflict"
    retryable = True


class LockContention(SyncError):
    """Another run holds a live lock. Raised while acquiring; the run is skipped."""

    kind = "lock_contention"

    def __init__(self, message: str = "", *, holder: str | None = None):
        super().__init__(message)
        self.holder = holder


class SyncCancelled(SyncError):
    kind = "cancelled"
    fatal = True


def classify(exc: BaseException) -> str:
    """Return the persisted error kind for any exception."""
    if isinstance(exc, SyncError):
        return exc.kind
    if isinstance(exc, (TimeoutError, OperationalError)):
        return TransportError.kind
    return SyncError.kind


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, SyncError):
        return exc.retryable
    return isinstance(exc, TimeoutError)
