"""Recovery for unreadable session records.

When a session record fails parsing or schema checks, the scanner walks every
record in the session namespace looking for an intact copy with the same
session id. The scan is a brute-force consistency repair: it reads only, and
leaves every record it finds (valid or not) exactly as it was so the damage
can still be inspected or fixed by hand.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import HypolabError, SessionCorruptedError, report_failure
from .kv import KeyValueStore
from .models import Session
from .notices import CONTACT_SUPPORT, START_NEW_SESSION, RecoveryNotice, create_recovery_notice

logger = logging.getLogger(__name__)

T = TypeVar("T")

GuardedCall = Callable[[Callable[[], Awaitable[T]]], Awaitable[T]]
SessionParser = Callable[[str, str], Session]


@dataclass(frozen=True)
class LoadOutcome:
    """Result of loading a session.

    - data set, recovered False: plain successful load
    - data set, recovered True: the scanner found an intact copy
    - data None, notice set: unrecoverable; show the notice
    - data None, notice None: no record exists for this id
    """

    data: Session | None = None
    recovered: bool = False
    notice: RecoveryNotice | None = None
    scanned_keys: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.data is not None


async def _direct(call: Callable[[], Awaitable[T]]) -> T:
    return await call()


class RecoveryScanner:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        prefix: str,
        parse: SessionParser,
        run: GuardedCall | None = None,
    ) -> None:
        self._kv = kv
        self._prefix = prefix
        self._parse = parse
        self._run = run or _direct

    async def scan(self, session_id: str) -> LoadOutcome:
        """Look for an intact record carrying `session_id`.

        The session's own key is tried first, then the rest of the namespace
        in key order.
        """
        own_key = f"{self._prefix}{session_id}"
        keys = await self._run(self._kv.keys)
        namespace = sorted(key for key in keys if key.startswith(self._prefix))
        ordered = ([own_key] if own_key in namespace else []) + [k for k in namespace if k != own_key]

        intact: list[str] = []
        unreadable: list[str] = []
        scanned: list[str] = []

        for key in ordered:
            scanned.append(key)
            try:
                raw = await self._run(lambda key=key: self._kv.get(key))
            except HypolabError as exc:
                logger.warning("Recovery scan could not read %s: %s", key, exc)
                unreadable.append(key)
                continue
            if raw is None:
                continue

            try:
                candidate = self._parse(raw, key)
            except SessionCorruptedError as exc:
                logger.debug("Recovery scan skipping %s: %s", key, exc.reason)
                unreadable.append(key)
                continue

            if candidate.id == session_id:
                logger.info("Recovered session %s from %s", session_id, key)
                return LoadOutcome(data=candidate, recovered=True, scanned_keys=tuple(scanned))
            intact.append(candidate.id)

        report_failure(
            operation="session_recovery",
            exc=SessionCorruptedError(own_key, "no intact copy found"),
            context={"session_id": session_id, "scanned": len(scanned), "unreadable": len(unreadable)},
        )
        return LoadOutcome(
            recovered=False,
            notice=unrecoverable_notice(session_id, intact_sessions=intact, unreadable_keys=unreadable),
            scanned_keys=tuple(scanned),
        )


def unrecoverable_notice(
    session_id: str,
    *,
    intact_sessions: list[str],
    unreadable_keys: list[str],
) -> RecoveryNotice:
    safe_state = None
    if intact_sessions:
        count = len(intact_sessions)
        noun = "session is" if count == 1 else "sessions are"
        safe_state = f"{count} other {noun} intact and unaffected. Nothing was deleted."

    detail = None
    if unreadable_keys:
        detail = "Unreadable records: " + ", ".join(unreadable_keys)

    return create_recovery_notice(
        title="Session could not be recovered",
        message=(
            f"The saved data for session {session_id} is damaged and no intact copy was found. "
            "You can start a new session or contact support with the details below."
        ),
        severity="error",
        actions=[START_NEW_SESSION, CONTACT_SUPPORT],
        detail=detail,
        safe_state_message=safe_state,
    )
