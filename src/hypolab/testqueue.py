"""FIFO queue of designed tests awaiting execution.

Items keep their enqueue order no matter how strong the test is; power only
feeds `priority_from_power`, which callers may use for display. Consumed
items stay in the queue as history, linked to the evidence they produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .errors import EngineValidationError
from .models import DiscriminativePower, QueuedTest, QueueStatus, Session, TestDesign, utcnow

logger = logging.getLogger(__name__)

PRIORITY_BY_POWER: dict[DiscriminativePower, str] = {
    DiscriminativePower.DECISIVE: "urgent",
    DiscriminativePower.HIGH: "high",
    DiscriminativePower.MODERATE: "medium",
    DiscriminativePower.MODERATE_LOW: "low",
    DiscriminativePower.LOW: "someday",
}


def queue_item_id(session_id: str, test_id: str) -> str:
    return f"TQ-{session_id}-{test_id}"


def priority_from_power(power: DiscriminativePower | int) -> str:
    return PRIORITY_BY_POWER[DiscriminativePower(power)]


def _find(session: Session, item_id: str) -> tuple[int, QueuedTest]:
    for index, item in enumerate(session.test_queue):
        if item.id == item_id:
            return index, item
    raise EngineValidationError(f"No queued test {item_id!r}", code="UNKNOWN_TEST", field="item_id")


def enqueue_test(
    session: Session,
    hypothesis_id: str,
    test: TestDesign,
    *,
    prediction_if_true: str = "",
    prediction_if_false: str = "",
    now: datetime | None = None,
) -> QueuedTest:
    """Append a test to the back of the queue.

    Enqueuing a test id that is already queued returns the existing item.
    """
    card = session.hypothesis_cards.get(hypothesis_id)
    if card is None:
        raise EngineValidationError(
            f"Unknown hypothesis {hypothesis_id!r}", code="UNKNOWN_HYPOTHESIS", field="hypothesis_id"
        )
    if card.retired:
        raise EngineValidationError(
            f"Hypothesis {hypothesis_id} is retired", code="HYPOTHESIS_RETIRED", field="hypothesis_id"
        )

    item_id = queue_item_id(session.id, test.id)
    for existing in session.test_queue:
        if existing.id == item_id:
            logger.debug("Test %s already queued for session %s", test.id, session.id)
            return existing

    item = QueuedTest(
        id=item_id,
        hypothesis_id=hypothesis_id,
        test=test,
        prediction_if_true=prediction_if_true,
        prediction_if_false=prediction_if_false,
        enqueued_at=now or utcnow(),
    )
    session.test_queue.append(item)
    return item


def pending_tests(session: Session) -> list[QueuedTest]:
    return [item for item in session.test_queue if item.status is QueueStatus.PENDING]


def consumed_tests(session: Session) -> list[QueuedTest]:
    return [item for item in session.test_queue if item.status is QueueStatus.CONSUMED]


def peek_next(session: Session) -> QueuedTest | None:
    for item in session.test_queue:
        if item.status is QueueStatus.PENDING:
            return item
    return None


def dequeue_test(session: Session, now: datetime | None = None) -> QueuedTest:
    """Mark the oldest pending test consumed and return it."""
    head = peek_next(session)
    if head is None:
        raise EngineValidationError(f"No pending tests in session {session.id}", code="QUEUE_EMPTY")
    index, _ = _find(session, head.id)
    consumed = head.model_copy(update={"status": QueueStatus.CONSUMED, "consumed_at": now or utcnow()})
    session.test_queue[index] = consumed
    return consumed


def attach_evidence(session: Session, item_id: str, evidence_id: str) -> QueuedTest:
    index, item = _find(session, item_id)
    linked = item.model_copy(update={"evidence_id": evidence_id})
    session.test_queue[index] = linked
    return linked


def lock_predictions(session: Session, item_id: str, now: datetime | None = None) -> QueuedTest:
    """Freeze an item's predictions before the test runs.

    Locking twice is a no-op, and so is locking while either prediction is
    still blank: the item stays editable until both are written down.
    """
    index, item = _find(session, item_id)
    if item.predictions_locked:
        return item
    if not item.prediction_if_true.strip() or not item.prediction_if_false.strip():
        logger.debug("Not locking %s: predictions incomplete", item_id)
        return item
    locked = item.model_copy(update={"predictions_locked_at": now or utcnow()})
    session.test_queue[index] = locked
    return locked


def update_predictions(
    session: Session,
    item_id: str,
    *,
    prediction_if_true: str | None = None,
    prediction_if_false: str | None = None,
) -> QueuedTest:
    index, item = _find(session, item_id)
    if item.predictions_locked:
        raise EngineValidationError(
            f"Predictions for {item_id} are locked",
            code="PREDICTIONS_LOCKED",
            field="item_id",
        )
    changes: dict[str, str] = {}
    if prediction_if_true is not None:
        changes["prediction_if_true"] = prediction_if_true
    if prediction_if_false is not None:
        changes["prediction_if_false"] = prediction_if_false
    updated = item.model_copy(update=changes)
    session.test_queue[index] = updated
    return updated


@dataclass(frozen=True)
class QueueStats:
    total: int
    pending: int
    consumed: int
    locked: int


def queue_stats(session: Session) -> QueueStats:
    queue = session.test_queue
    return QueueStats(
        total=len(queue),
        pending=sum(1 for item in queue if item.status is QueueStatus.PENDING),
        consumed=sum(1 for item in queue if item.status is QueueStatus.CONSUMED),
        locked=sum(1 for item in queue if item.predictions_locked),
    )
