from __future__ import annotations

import pytest
from pydantic import ValidationError

from hypolab import ledger
from hypolab.errors import EngineValidationError
from hypolab.models import DeathType, DiscriminativePower, EvidenceResult, SessionPhase, new_session


@pytest.fixture
def session():
    s = new_session("S1")
    ledger.add_hypothesis(s, "Caffeine improves recall via adenosine blockade")
    ledger.add_hypothesis(s, "Recall gains come from expectancy alone")
    return s


def _codes(excinfo: pytest.ExceptionInfo[EngineValidationError]) -> str:
    return excinfo.value.code


def test_first_hypothesis_becomes_primary(session) -> None:
    assert session.primary_hypothesis_id == "H1"
    assert session.alternative_hypothesis_ids == ["H2"]
    assert session.hypothesis_cards["H2"].version == 2
    assert session.hypothesis_cards["H1"].confidence == 50


def test_add_hypothesis_validates_input(session) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.add_hypothesis(session, "   ")
    assert _codes(excinfo) == "MISSING_REQUIRED"

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.add_hypothesis(session, "duplicate", version_id="H1")
    assert _codes(excinfo) == "DUPLICATE_HYPOTHESIS"

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.add_hypothesis(session, "too sure", confidence=120)
    assert _codes(excinfo) == "INVALID_RANGE"


def test_set_primary_swaps_roles(session) -> None:
    ledger.set_primary(session, "H2")

    assert session.primary_hypothesis_id == "H2"
    assert session.alternative_hypothesis_ids == ["H1"]


def test_record_evidence_appends_entry_and_moves_confidence(session, make_result) -> None:
    recorded = ledger.record_evidence(session, "H1", make_result(EvidenceResult.SUPPORTS))

    entry = recorded.entry
    assert entry.id == "EV-S1-001"
    assert entry.session_id == "S1"
    assert entry.hypothesis_version == "H1"
    assert entry.confidence_before == 50
    assert entry.confidence_after == pytest.approx(57.5)
    assert entry.interpretation == recorded.update.explanation
    assert session.hypothesis_cards["H1"].confidence == pytest.approx(57.5)
    assert session.hypothesis_cards["H1"].evidence == [entry]


def test_evidence_entries_are_immutable(session, make_result) -> None:
    entry = ledger.record_evidence(session, "H1", make_result()).entry
    with pytest.raises(ValidationError):
        entry.observation = "rewritten"  # type: ignore[misc]


def test_later_evidence_never_rewrites_earlier_entries(session, make_result) -> None:
    first = ledger.record_evidence(session, "H1", make_result(EvidenceResult.SUPPORTS)).entry
    snapshot = first.model_dump()
    second = ledger.record_evidence(session, "H1", make_result(EvidenceResult.CHALLENGES, test_id="T2")).entry

    assert session.hypothesis_cards["H1"].evidence[0].model_dump() == snapshot
    assert second.id == "EV-S1-002"
    assert second.confidence_before == pytest.approx(first.confidence_after)


def test_evidence_ids_count_across_versions(session, make_result) -> None:
    ledger.record_evidence(session, "H1", make_result())
    entry = ledger.record_evidence(session, "H2", make_result(test_id="T2")).entry
    assert entry.id == "EV-S1-002"


def test_explicit_confidence_before_is_used(session, make_result) -> None:
    entry = ledger.record_evidence(
        session, "H1", make_result(EvidenceResult.CHALLENGES, confidence_before=80)
    ).entry
    assert entry.confidence_before == 80
    assert entry.confidence_after == pytest.approx(56.0)


@pytest.mark.parametrize("bad", [-5, 100.5, float("nan")])
def test_out_of_range_confidence_before_is_rejected(session, make_result, bad: float) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.record_evidence(session, "H1", make_result(confidence_before=bad))

    assert _codes(excinfo) in {"INVALID_RANGE", "INVALID_TYPE"}
    assert session.hypothesis_cards["H1"].evidence == []


def test_unknown_version_is_rejected(session, make_result) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.record_evidence(session, "H7", make_result())
    assert _codes(excinfo) == "UNKNOWN_HYPOTHESIS"


def test_missing_observation_is_rejected(session, make_result) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.record_evidence(session, "H1", make_result(observation=""))
    assert _codes(excinfo) == "MISSING_REQUIRED"
    assert excinfo.value.field == "observation"


def test_validation_warnings(make_result) -> None:
    report = ledger.validate_test_result(make_result(power=DiscriminativePower.LOW, source=None))

    assert report.valid
    assert {w.code for w in report.warnings} == {"LOW_DISCRIMINATIVE_POWER", "NO_SOURCE"}


def test_small_change_is_flagged(session, make_result) -> None:
    recorded = ledger.record_evidence(
        session,
        "H1",
        make_result(EvidenceResult.SUPPORTS, power=DiscriminativePower.LOW, confidence_before=99),
    )
    assert "SMALL_CONFIDENCE_CHANGE" in {w.code for w in recorded.warnings}


def test_retiring_primary_is_refused(session) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.retire_hypothesis(session, "H1")
    assert _codes(excinfo) == "PRIMARY_HYPOTHESIS"
    assert session.archived_hypothesis_ids == []


def test_retire_archives_and_keeps_evidence(session, make_result) -> None:
    entry = ledger.record_evidence(session, "H2", make_result(EvidenceResult.CHALLENGES)).entry

    card = ledger.retire_hypothesis(
        session,
        "H2",
        death_type=DeathType.DIRECT_FALSIFICATION,
        reason="Placebo group showed no gain",
        successor_id="H1",
    )

    assert session.alternative_hypothesis_ids == []
    assert session.archived_hypothesis_ids == ["H2"]
    assert card.retired
    assert card.retirement.death_type is DeathType.DIRECT_FALSIFICATION
    assert card.retirement.successor_id == "H1"
    assert ledger.evidence_for(session, "H2") == (entry,)


def test_retired_versions_reject_new_work(session, make_result) -> None:
    ledger.retire_hypothesis(session, "H2")

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.retire_hypothesis(session, "H2")
    assert _codes(excinfo) == "ALREADY_RETIRED"

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.record_evidence(session, "H2", make_result())
    assert _codes(excinfo) == "HYPOTHESIS_RETIRED"

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.set_primary(session, "H2")
    assert _codes(excinfo) == "HYPOTHESIS_RETIRED"


def test_retire_with_unknown_successor(session) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.retire_hypothesis(session, "H2", successor_id="H9")
    assert _codes(excinfo) == "UNKNOWN_HYPOTHESIS"
    assert not session.hypothesis_cards["H2"].retired


def test_evidence_for_orders(session, make_result) -> None:
    first = ledger.record_evidence(session, "H1", make_result()).entry
    second = ledger.record_evidence(session, "H1", make_result(test_id="T2")).entry

    assert ledger.evidence_for(session, "H1") == (first, second)
    assert ledger.evidence_for(session, "H1", newest_first=True) == (second, first)
    assert ledger.evidence_for(session, "H2") == ()


def test_add_alternative_refuses_primary(session) -> None:
    with pytest.raises(EngineValidationError) as excinfo:
        ledger.add_alternative(session, "H1")
    assert _codes(excinfo) == "PRIMARY_HYPOTHESIS"


def test_phase_transitions(session) -> None:
    assert ledger.advance_phase(session, SessionPhase.SHARPENING) is SessionPhase.SHARPENING
    assert ledger.advance_phase(session, "agent_dispatch") is SessionPhase.AGENT_DISPATCH
    assert session.phase.simplified == "testing"

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.advance_phase(session, SessionPhase.INTAKE)
    assert _codes(excinfo) == "INVALID_TRANSITION"

    with pytest.raises(EngineValidationError) as excinfo:
        ledger.advance_phase(session, "warp_speed")
    assert _codes(excinfo) == "INVALID_TYPE"
