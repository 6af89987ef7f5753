"""Hypothesis versions and their evidence.

Everything here is a plain function over a loaded `Session`. Nothing touches
storage; the engine loads, calls into the ledger, then saves the result.

Evidence entries are append-only: recording a result creates a new frozen
entry and updates the card's current confidence, and nothing ever rewrites an
earlier entry. Retiring a hypothesis moves it to the archive but keeps its
evidence so the history can still be audited.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import Field

from .confidence import AsymmetricConfidencePolicy, ConfidencePolicy, ConfidenceUpdate, check_confidence
from .errors import EngineValidationError
from .models import (
    CamelModel,
    DeathType,
    DiscriminativePower,
    EvidenceEntry,
    EvidenceResult,
    HypothesisCard,
    Retirement,
    Session,
    SessionPhase,
    TestDesign,
    is_valid_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

SMALL_CHANGE_THRESHOLD = 1.0


class TestOutcome(CamelModel):
    """What was observed when a test ran."""

    __test__ = False

    result: EvidenceResult
    observation: str = ""
    source: str | None = None
    confidence_before: float | None = None
    interpretation: str | None = None
    recorded_by: str | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)


class TestResult(TestOutcome):
    """A test outcome together with the design and predictions it was run against."""

    __test__ = False

    test: TestDesign
    prediction_if_true: str = ""
    prediction_if_false: str = ""


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    code: str

    def as_error(self) -> EngineValidationError:
        return EngineValidationError(self.message, code=self.code, field=self.field)


@dataclass
class ValidationReport:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RecordedEvidence:
    entry: EvidenceEntry
    update: ConfidenceUpdate
    warnings: tuple[ValidationIssue, ...] = ()


def validate_test_result(result: TestResult) -> ValidationReport:
    """Check a test result before it becomes evidence.

    Errors block recording; warnings are passed back to the caller.
    """
    report = ValidationReport()

    if not result.observation.strip():
        report.errors.append(ValidationIssue("observation", "An observation is required", "MISSING_REQUIRED"))
    if not result.prediction_if_true.strip():
        report.errors.append(
            ValidationIssue("prediction_if_true", "A prediction if true is required", "MISSING_REQUIRED")
        )
    if not result.prediction_if_false.strip():
        report.errors.append(
            ValidationIssue("prediction_if_false", "A prediction if false is required", "MISSING_REQUIRED")
        )

    if result.confidence_before is not None:
        try:
            check_confidence(result.confidence_before, "confidence_before")
        except EngineValidationError as exc:
            report.errors.append(ValidationIssue("confidence_before", str(exc), exc.code))

    if result.test.discriminative_power <= DiscriminativePower.MODERATE_LOW:
        report.warnings.append(
            ValidationIssue(
                "test.discriminative_power",
                "Low discriminative power: this test may not separate the hypotheses well",
                "LOW_DISCRIMINATIVE_POWER",
            )
        )
    if not (result.source or "").strip():
        report.warnings.append(
            ValidationIssue("source", "No source given; evidence will be hard to trace", "NO_SOURCE")
        )

    return report


def require_card(session: Session, version_id: str) -> HypothesisCard:
    card = session.hypothesis_cards.get(version_id)
    if card is None:
        raise EngineValidationError(
            f"Unknown hypothesis {version_id!r} in session {session.id}",
            code="UNKNOWN_HYPOTHESIS",
            field="version_id",
        )
    return card


def _require_active(session: Session, version_id: str) -> HypothesisCard:
    card = require_card(session, version_id)
    if card.retired:
        raise EngineValidationError(
            f"Hypothesis {version_id} is retired",
            code="HYPOTHESIS_RETIRED",
            field="version_id",
        )
    return card


def next_version_id(session: Session) -> str:
    n = len(session.hypothesis_cards) + 1
    while f"H{n}" in session.hypothesis_cards:
        n += 1
    return f"H{n}"


def add_hypothesis(
    session: Session,
    statement: str,
    *,
    version_id: str | None = None,
    mechanism: str | None = None,
    domains: Iterable[str] = (),
    predictions_if_true: Iterable[str] = (),
    predictions_if_false: Iterable[str] = (),
    confidence: float = 50.0,
    primary: bool = False,
    now: datetime | None = None,
) -> HypothesisCard:
    """Create a hypothesis version.

    The first hypothesis of a session becomes primary; later ones join the
    alternatives unless `primary` is set.
    """
    if not statement or not statement.strip():
        raise EngineValidationError("A hypothesis statement is required", code="MISSING_REQUIRED", field="statement")
    confidence = check_confidence(confidence)

    version_id = version_id or next_version_id(session)
    if version_id in session.hypothesis_cards:
        raise EngineValidationError(
            f"Hypothesis {version_id} already exists",
            code="DUPLICATE_HYPOTHESIS",
            field="version_id",
        )

    now = now or utcnow()
    card = HypothesisCard(
        id=version_id,
        version=len(session.hypothesis_cards) + 1,
        statement=statement.strip(),
        mechanism=mechanism,
        domains=list(domains),
        predictions_if_true=list(predictions_if_true),
        predictions_if_false=list(predictions_if_false),
        confidence=confidence,
        created_at=now,
        updated_at=now,
    )
    session.hypothesis_cards[version_id] = card

    if primary or not session.primary_hypothesis_id:
        set_primary(session, version_id)
    else:
        session.alternative_hypothesis_ids.append(version_id)
    return card


def set_primary(session: Session, version_id: str) -> None:
    """Promote a version to primary; the previous primary becomes an alternative."""
    _require_active(session, version_id)
    previous = session.primary_hypothesis_id
    if previous == version_id:
        return
    if version_id in session.alternative_hypothesis_ids:
        session.alternative_hypothesis_ids.remove(version_id)
    if previous and previous not in session.alternative_hypothesis_ids:
        session.alternative_hypothesis_ids.append(previous)
    session.primary_hypothesis_id = version_id


def add_alternative(session: Session, version_id: str) -> None:
    _require_active(session, version_id)
    if version_id == session.primary_hypothesis_id:
        raise EngineValidationError(
            f"Hypothesis {version_id} is the primary hypothesis",
            code="PRIMARY_HYPOTHESIS",
            field="version_id",
        )
    if version_id not in session.alternative_hypothesis_ids:
        session.alternative_hypothesis_ids.append(version_id)


def _next_evidence_id(session: Session) -> str:
    seq = sum(len(card.evidence) for card in session.hypothesis_cards.values()) + 1
    return f"EV-{session.id}-{seq:03d}"


def record_evidence(
    session: Session,
    version_id: str,
    result: TestResult,
    *,
    policy: ConfidencePolicy | None = None,
    now: datetime | None = None,
) -> RecordedEvidence:
    """Append an evidence entry to a hypothesis version and move its confidence.

    Raises:
        EngineValidationError: unknown or retired version, missing fields, or a
            confidence outside [0, 100].
    """
    card = _require_active(session, version_id)
    report = validate_test_result(result)
    if not report.valid:
        raise report.errors[0].as_error()

    policy = policy or AsymmetricConfidencePolicy()
    before = result.confidence_before if result.confidence_before is not None else card.confidence
    update = policy.update(before, result.test.discriminative_power, result.result)
    after = check_confidence(update.new_confidence, "confidence_after")

    warnings = list(report.warnings)
    if result.result is not EvidenceResult.INCONCLUSIVE and abs(update.delta) < SMALL_CHANGE_THRESHOLD:
        warnings.append(
            ValidationIssue(
                "confidence_after",
                f"Confidence moved by only {update.delta:+.2f}%",
                "SMALL_CONFIDENCE_CHANGE",
            )
        )

    now = now or utcnow()
    entry = EvidenceEntry(
        id=_next_evidence_id(session),
        session_id=session.id,
        hypothesis_version=version_id,
        test=result.test,
        prediction_if_true=result.prediction_if_true,
        prediction_if_false=result.prediction_if_false,
        result=result.result,
        observation=result.observation,
        source=result.source,
        confidence_before=before,
        confidence_after=after,
        interpretation=result.interpretation or update.explanation,
        recorded_at=now,
        recorded_by=result.recorded_by,
        notes=result.notes,
        tags=tuple(result.tags),
    )
    card.evidence.append(entry)
    card.confidence = after
    card.updated_at = now

    logger.info(
        "Recorded %s for %s/%s: %.1f -> %.1f",
        entry.id,
        session.id,
        version_id,
        before,
        after,
    )
    return RecordedEvidence(entry=entry, update=update, warnings=tuple(warnings))


def retire_hypothesis(
    session: Session,
    version_id: str,
    *,
    death_type: DeathType = DeathType.SUPERSEDED,
    reason: str = "",
    successor_id: str | None = None,
    now: datetime | None = None,
) -> HypothesisCard:
    """Move a version to the archive. Its evidence stays attached."""
    card = require_card(session, version_id)
    if version_id == session.primary_hypothesis_id:
        raise EngineValidationError(
            f"Cannot retire {version_id}: it is the primary hypothesis",
            code="PRIMARY_HYPOTHESIS",
            field="version_id",
        )
    if card.retired:
        raise EngineValidationError(
            f"Hypothesis {version_id} is already retired",
            code="ALREADY_RETIRED",
            field="version_id",
        )
    if successor_id is not None:
        require_card(session, successor_id)

    now = now or utcnow()
    if version_id in session.alternative_hypothesis_ids:
        session.alternative_hypothesis_ids.remove(version_id)
    session.archived_hypothesis_ids.append(version_id)
    card.retirement = Retirement(
        death_type=death_type,
        reason=reason,
        successor_id=successor_id,
        retired_at=now,
    )
    card.updated_at = now
    return card


def evidence_for(session: Session, version_id: str, newest_first: bool = False) -> tuple[EvidenceEntry, ...]:
    card = require_card(session, version_id)
    entries = tuple(card.evidence)
    return entries[::-1] if newest_first else entries


def advance_phase(session: Session, phase: SessionPhase | str) -> SessionPhase:
    try:
        phase = SessionPhase(phase)
    except ValueError:
        raise EngineValidationError(f"Unknown phase {phase!r}", code="INVALID_TYPE", field="phase") from None
    if not is_valid_transition(session.phase, phase):
        raise EngineValidationError(
            f"Cannot move from {session.phase.value} to {phase.value}",
            code="INVALID_TRANSITION",
            field="phase",
        )
    session.phase = phase
    return phase
