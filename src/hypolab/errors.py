"""Error taxonomy for the session engine.

- Transient failures are retried by the resilience layer and surface as
  RetryExhaustedError once the policy gives up.
- Timeouts surface as OperationTimeoutError, a distinct kind.
- Storage corruption surfaces as SessionCorruptedError and is handed to the
  recovery scanner rather than the caller.
- Validation failures surface as EngineValidationError and are never retried.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .notices import RecoveryNotice

logger = logging.getLogger(__name__)


class HypolabError(Exception):
    """Base class for all engine errors."""


class RetryExhaustedError(HypolabError):
    """Raised when every attempt allowed by a retry policy has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        detail = str(last_error) or type(last_error).__name__
        super().__init__(f"Retry attempts exhausted after {attempts} attempt(s): {detail}")
        self.attempts = attempts
        self.last_error = last_error


class OperationTimeoutError(HypolabError, TimeoutError):
    """Raised when an operation does not settle before its deadline."""

    def __init__(self, message: str, timeout_ms: float) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms


class StorageError(HypolabError):
    """Raised when the key/value backend cannot serve a request."""


class SessionCorruptedError(StorageError):
    """Raised when a stored session record fails parsing or schema checks."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Session record {key!r} is unreadable: {reason}")
        self.key = key
        self.reason = reason


class EngineValidationError(HypolabError, ValueError):
    """Raised when a request violates a session invariant.

    `code` is machine-readable (e.g. INVALID_RANGE, PRIMARY_HYPOTHESIS) so
    HTTP callers can translate it into a 400 response body.
    """

    def __init__(self, message: str, *, code: str, field: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": str(self), "code": self.code}
        if self.field:
            body["field"] = self.field
        return body


class SessionNotFoundError(HypolabError):
    """Raised when a read-only operation names a session that was never stored."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} does not exist")
        self.session_id = session_id


class SessionUnavailableError(HypolabError):
    """Raised when a session cannot be loaded or recovered.

    Carries the RecoveryNotice that should be shown instead of a traceback.
    """

    def __init__(self, session_id: str, notice: "RecoveryNotice") -> None:
        super().__init__(f"Session {session_id!r} is unavailable: {notice.message}")
        self.session_id = session_id
        self.notice = notice


_RECENT_SIGNATURES: dict[str, datetime] = {}


def _error_signature(*, operation: str, exc: BaseException) -> str:
    material = f"{operation}|{type(exc).__name__}|{str(exc)}".encode("utf-8", errors="replace")
    return hashlib.sha256(material).hexdigest()


def report_failure(
    *,
    operation: str,
    exc: BaseException,
    context: dict[str, Any] | None = None,
    dedupe_window_seconds: int = 60,
) -> str | None:
    """Log a structured failure summary.

    Repeated identical failures inside the dedupe window are suppressed.
    Returns the failure signature when logged, else None.
    """

    signature = _error_signature(operation=operation, exc=exc)
    now = datetime.now(UTC)

    if dedupe_window_seconds > 0:
        cutoff = now - timedelta(seconds=dedupe_window_seconds)
        last_seen = _RECENT_SIGNATURES.get(signature)
        if last_seen is not None and last_seen >= cutoff:
            return None
        _RECENT_SIGNATURES[signature] = now

    logger.error(
        "%s failed: %s: %s",
        operation,
        type(exc).__name__,
        exc,
        extra={
            "signature": signature[:16],
            "operation": operation,
            "error_type": type(exc).__name__,
            "context": context or {},
        },
    )
    return signature
