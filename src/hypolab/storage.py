"""Session persistence over an injected key/value store.

Every backend call goes through the resilience layer: each attempt is raced
against the configured deadline and transient failures are retried with
backoff. Structural failures (bad JSON, schema violations) are never retried;
they hand over to the recovery scanner instead.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, TypeVar

from pydantic import ValidationError

from .errors import (
    EngineValidationError,
    HypolabError,
    OperationTimeoutError,
    RetryExhaustedError,
    SessionCorruptedError,
    report_failure,
)
from .kv import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .models import QueueStatus, Session, SessionSummary, utcnow
from .notices import RETRY, RecoveryNotice, create_recovery_notice
from .recovery import LoadOutcome, RecoveryScanner
from .resilience import RetryOptions, TimeoutOptions, with_retry, with_timeout

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PREFIX = "hypolab-session-"
PREVIEW_LENGTH = 100


def session_key(session_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}{session_id}"


def is_transient(exc: Exception) -> bool:
    """Failures worth another attempt: I/O, connection drops, timeouts, locked DBs."""
    if isinstance(exc, SessionCorruptedError):
        return False
    return isinstance(exc, (OSError, ConnectionError, TimeoutError, sqlite3.OperationalError))


def _summarize_validation(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "record"
    return f"{location}: {first.get('msg', 'invalid')}"


def parse_session(raw: str, key: str) -> Session:
    """Parse and schema-check one stored record.

    Raises:
        SessionCorruptedError when the JSON or the schema check fails.
    """
    try:
        return Session.model_validate_json(raw)
    except ValidationError as exc:
        raise SessionCorruptedError(key, _summarize_validation(exc)) from exc


def _preview(text: str, limit: int = PREVIEW_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def summarize(session: Session) -> SessionSummary:
    card = session.primary_card
    return SessionSummary(
        id=session.id,
        phase=session.phase,
        hypothesis=_preview(card.statement) if card else "",
        confidence=card.confidence if card else None,
        evidence_count=sum(len(c.evidence) for c in session.hypothesis_cards.values()),
        pending_tests=sum(1 for item in session.test_queue if item.status is QueueStatus.PENDING),
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def unavailable_notice(session_id: str, exc: Exception) -> RecoveryNotice:
    return create_recovery_notice(
        title="Storage unavailable",
        message=f"Session {session_id} could not be reached. Your data has not been changed.",
        severity="warning",
        actions=[RETRY],
        detail=str(exc),
    )


class SessionStore:
    """Reads and writes session records under a key prefix.

    Writes are idempotent and only ever touch the session's own key.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        retry: RetryOptions | None = None,
        timeout: TimeoutOptions | None = None,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.kv = kv
        self.prefix = prefix
        self.retry = retry or RetryOptions(should_retry=is_transient)
        self.timeout = timeout or TimeoutOptions(timeout_ms=5000)
        self._clock = clock
        self.scanner = RecoveryScanner(kv, prefix=prefix, parse=parse_session, run=self._io)

    def key_for(self, session_id: str) -> str:
        return session_key(session_id, self.prefix)

    async def _io(self, call: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(lambda: with_timeout(call, self.timeout), self.retry)

    async def read(self, session_id: str) -> Session | None:
        key = self.key_for(session_id)
        raw = await self._io(lambda: self.kv.get(key))
        if raw is None:
            return None
        session = parse_session(raw, key)
        if session.id != session_id:
            raise SessionCorruptedError(key, f"record carries id {session.id!r}")
        return session

    async def load(self, session_id: str) -> LoadOutcome:
        try:
            session = await self.read(session_id)
        except SessionCorruptedError as exc:
            logger.warning("Session %s is unreadable (%s); scanning for an intact copy", session_id, exc.reason)
            try:
                return await self.scanner.scan(session_id)
            except (RetryExhaustedError, OperationTimeoutError) as scan_exc:
                return self._unavailable(session_id, scan_exc)
        except (RetryExhaustedError, OperationTimeoutError) as exc:
            return self._unavailable(session_id, exc)

        if session is None:
            return LoadOutcome()
        return LoadOutcome(data=session)

    def _unavailable(self, session_id: str, exc: HypolabError) -> LoadOutcome:
        report_failure(operation="session_load", exc=exc, context={"session_id": session_id})
        return LoadOutcome(notice=unavailable_notice(session_id, exc))

    async def save(self, session: Session) -> Session:
        session.touch(self._clock())
        payload = session.to_json()
        try:
            written = Session.model_validate_json(payload)
        except ValidationError as exc:
            raise EngineValidationError(
                f"Session {session.id} violates its invariants: {_summarize_validation(exc)}",
                code="INVALID_SESSION",
            ) from exc

        key = self.key_for(session.id)
        await self._io(lambda: self.kv.set(key, payload))
        logger.debug("Saved session %s (%d bytes)", session.id, len(payload))
        return written

    async def list_summaries(self) -> list[SessionSummary]:
        keys = await self._io(self.kv.keys)
        summaries: list[SessionSummary] = []
        for key in sorted(k for k in keys if k.startswith(self.prefix)):
            try:
                raw = await self._io(lambda key=key: self.kv.get(key))
            except (RetryExhaustedError, OperationTimeoutError) as exc:
                logger.warning("Skipping %s in session index: %s", key, exc)
                continue
            if raw is None:
                continue
            try:
                session = parse_session(raw, key)
            except SessionCorruptedError as exc:
                logger.warning("Skipping unreadable record %s: %s", key, exc.reason)
                continue
            summaries.append(summarize(session))

        summaries.sort(key=lambda summary: summary.updated_at, reverse=True)
        return summaries


def store_from_config(config: "Config") -> SessionStore:
    """Build a store for the configured backend."""
    storage = config.storage
    if storage.backend == "memory":
        kv: KeyValueStore = MemoryKeyValueStore()
    elif storage.backend == "sqlite":
        kv = SqliteKeyValueStore(storage.resolved_path())
    else:
        raise ValueError(f"Unknown storage backend: {storage.backend!r}")

    return SessionStore(
        kv,
        retry=RetryOptions(
            max_attempts=config.retry.max_attempts,
            base_delay_ms=config.retry.base_delay_ms,
            max_delay_ms=config.retry.max_delay_ms,
            jitter_ratio=config.retry.jitter_ratio,
            should_retry=is_transient,
        ),
        timeout=TimeoutOptions(timeout_ms=config.timeout.timeout_ms),
        prefix=storage.key_prefix,
    )
