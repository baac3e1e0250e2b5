"""
Synchronization error taxonomy.

Every failure the engine can observe is mapped onto one of these classes so
the dispatcher can decide between retrying, dead-lettering, re-resolving or
failing fast.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all synchronization errors"""

    reason: str = "SyncError"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if reason:
            self.reason = reason


class TransientError(SyncError):
    """Retryable failure: network, timeout, 429 or 5xx"""

    reason = "Transient"


class RateLimited(TransientError):
    """Remote rejected the call with HTTP 429"""

    reason = "RateLimited"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message or "Rate limited by remote")
        self.retry_after = retry_after


class RemoteUnavailable(TransientError):
    """Timeout, connection failure or 5xx response"""

    reason = "RemoteUnavailable"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or "Remote unavailable")
        self.status_code = status_code


class PermanentError(SyncError):
    """Non-retryable failure: validation, auth, 4xx other than 429"""

    reason = "Permanent"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or "Permanent failure")
        self.status_code = status_code


class ValidationFailed(PermanentError):
    """Local document is invalid and must not reach the remote"""

    reason = "ValidationFailed"


class VersionConflict(SyncError):
    """The remote version moved past the expected one"""

    reason = "Conflict"

    def __init__(
        self,
        message: str = "",
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None
    ):
        super().__init__(
            message or f"Version conflict (expected {expected_version}, found {actual_version})"
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class StaleReservation(SyncError):
    """Commit attempted with an expired or superseded reservation"""

    reason = "StaleReservation"


class ReservationConflict(SyncError):
    """Another live reservation already holds the path"""

    reason = "ReservationConflict"


class CircuitOpen(SyncError):
    """Endpoint category is failing fast while its breaker is open"""

    reason = "CircuitOpen"
