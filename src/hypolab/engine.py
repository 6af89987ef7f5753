"""Session engine: the facade callers use.

Each mutating operation loads the session (creating it on first use),
applies a ledger or queue function to it, and saves it back. Reads never
create anything. There is no per-session locking: two overlapping writers
for the same session resolve as last write wins.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from . import ledger, testqueue
from .confidence import (
    AsymmetricConfidencePolicy,
    ConfidencePolicy,
    WhatIfAnalysis,
    analyze_what_if,
    policy_from_config,
)
from .errors import EngineValidationError, SessionNotFoundError, SessionUnavailableError
from .ledger import RecordedEvidence, TestOutcome, TestResult
from .logging_config import log_engine_operation
from .models import (
    DeathType,
    DiscriminativePower,
    EvidenceEntry,
    HypothesisCard,
    QueuedTest,
    Session,
    SessionPhase,
    SessionSummary,
    TestDesign,
    new_session,
    utcnow,
)
from .recovery import LoadOutcome
from .storage import SessionStore, store_from_config

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionEngine:
    def __init__(
        self,
        store: SessionStore,
        *,
        policy: ConfidencePolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        initial_confidence: float = 50.0,
    ) -> None:
        self.store = store
        self.policy = policy or AsymmetricConfidencePolicy()
        self.clock = clock
        self.initial_confidence = initial_confidence

    async def load(self, session_id: str) -> LoadOutcome:
        outcome = await self.store.load(session_id)
        if outcome.recovered:
            logger.warning("Session %s was served from a recovered copy", session_id)
        return outcome

    async def get_session(self, session_id: str) -> Session:
        """Load an existing session without creating one.

        Raises:
            SessionNotFoundError: nothing is stored under this id.
            SessionUnavailableError: the record exists but cannot be served.
        """
        outcome = await self.load(session_id)
        if outcome.data is not None:
            return outcome.data
        if outcome.notice is not None:
            raise SessionUnavailableError(session_id, outcome.notice)
        raise SessionNotFoundError(session_id)

    async def open_session(self, session_id: str, *, research_question: str | None = None) -> Session:
        """Load a session, creating and saving a fresh one for an unknown id."""
        if not session_id or not session_id.strip():
            raise EngineValidationError("A session id is required", code="MISSING_REQUIRED", field="session_id")

        outcome = await self.load(session_id)
        if outcome.data is not None:
            return outcome.data
        if outcome.notice is not None:
            raise SessionUnavailableError(session_id, outcome.notice)

        session = new_session(session_id, research_question=research_question, now=self.clock())
        logger.info("Created session %s", session_id)
        return await self.store.save(session)

    async def _mutate(self, operation: str, session_id: str, apply: Callable[[Session], T]) -> T:
        start = time.perf_counter()
        try:
            session = await self.open_session(session_id)
            result = apply(session)
            await self.store.save(session)
        except Exception as exc:
            log_engine_operation(
                operation,
                session_id,
                duration_ms=(time.perf_counter() - start) * 1000,
                error=f"{type(exc).__name__}: {exc}",
            )
            raise
        log_engine_operation(operation, session_id, duration_ms=(time.perf_counter() - start) * 1000)
        return result

    async def add_hypothesis(
        self,
        session_id: str,
        statement: str,
        *,
        primary: bool = False,
        **fields: Any,
    ) -> HypothesisCard:
        fields.setdefault("confidence", self.initial_confidence)
        return await self._mutate(
            "add_hypothesis",
            session_id,
            lambda session: ledger.add_hypothesis(session, statement, primary=primary, now=self.clock(), **fields),
        )

    async def set_primary(self, session_id: str, version_id: str) -> None:
        await self._mutate("set_primary", session_id, lambda session: ledger.set_primary(session, version_id))

    async def add_alternative(self, session_id: str, version_id: str) -> None:
        await self._mutate("add_alternative", session_id, lambda session: ledger.add_alternative(session, version_id))

    async def record_evidence(self, session_id: str, version_id: str, result: TestResult) -> RecordedEvidence:
        return await self._mutate(
            "record_evidence",
            session_id,
            lambda session: ledger.record_evidence(
                session, version_id, result, policy=self.policy, now=self.clock()
            ),
        )

    async def retire_hypothesis(
        self,
        session_id: str,
        version_id: str,
        *,
        death_type: DeathType = DeathType.SUPERSEDED,
        reason: str = "",
        successor_id: str | None = None,
    ) -> HypothesisCard:
        return await self._mutate(
            "retire_hypothesis",
            session_id,
            lambda session: ledger.retire_hypothesis(
                session,
                version_id,
                death_type=death_type,
                reason=reason,
                successor_id=successor_id,
                now=self.clock(),
            ),
        )

    async def evidence_for(
        self,
        session_id: str,
        version_id: str,
        newest_first: bool = False,
    ) -> tuple[EvidenceEntry, ...]:
        session = await self.get_session(session_id)
        return ledger.evidence_for(session, version_id, newest_first=newest_first)

    async def enqueue_test(
        self,
        session_id: str,
        hypothesis_id: str,
        test: TestDesign,
        *,
        prediction_if_true: str = "",
        prediction_if_false: str = "",
    ) -> QueuedTest:
        return await self._mutate(
            "enqueue_test",
            session_id,
            lambda session: testqueue.enqueue_test(
                session,
                hypothesis_id,
                test,
                prediction_if_true=prediction_if_true,
                prediction_if_false=prediction_if_false,
                now=self.clock(),
            ),
        )

    async def next_test(self, session_id: str) -> QueuedTest | None:
        session = await self.get_session(session_id)
        return testqueue.peek_next(session)

    async def lock_predictions(self, session_id: str, item_id: str) -> QueuedTest:
        return await self._mutate(
            "lock_predictions",
            session_id,
            lambda session: testqueue.lock_predictions(session, item_id, now=self.clock()),
        )

    async def update_predictions(
        self,
        session_id: str,
        item_id: str,
        *,
        prediction_if_true: str | None = None,
        prediction_if_false: str | None = None,
    ) -> QueuedTest:
        return await self._mutate(
            "update_predictions",
            session_id,
            lambda session: testqueue.update_predictions(
                session,
                item_id,
                prediction_if_true=prediction_if_true,
                prediction_if_false=prediction_if_false,
            ),
        )

    async def execute_next_test(self, session_id: str, outcome: TestOutcome) -> RecordedEvidence:
        """Consume the oldest pending test and record its outcome as evidence."""

        def run(session: Session) -> RecordedEvidence:
            item = testqueue.dequeue_test(session, now=self.clock())
            result = TestResult(
                test=item.test,
                prediction_if_true=item.prediction_if_true,
                prediction_if_false=item.prediction_if_false,
                **outcome.model_dump(include=set(TestOutcome.model_fields)),
            )
            recorded = ledger.record_evidence(
                session, item.hypothesis_id, result, policy=self.policy, now=self.clock()
            )
            testqueue.attach_evidence(session, item.id, recorded.entry.id)
            return recorded

        return await self._mutate("execute_next_test", session_id, run)

    async def advance_phase(self, session_id: str, phase: SessionPhase | str) -> SessionPhase:
        return await self._mutate("advance_phase", session_id, lambda session: ledger.advance_phase(session, phase))

    async def what_if(self, session_id: str, version_id: str, power: DiscriminativePower) -> WhatIfAnalysis:
        session = await self.get_session(session_id)
        card = ledger.require_card(session, version_id)
        return analyze_what_if(card.confidence, power, self.policy)

    async def list_sessions(self) -> list[SessionSummary]:
        return await self.store.list_summaries()


def engine_from_config(config: "Config | None" = None) -> SessionEngine:
    if config is None:
        from .config import get_config

        config = get_config()
    return SessionEngine(
        store_from_config(config),
        policy=policy_from_config(config.confidence),
        initial_confidence=config.confidence.initial_confidence,
    )
