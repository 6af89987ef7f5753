from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

CURRENT_SCHEMA_VERSION = 1

Confidence = Annotated[float, Field(ge=0, le=100, allow_inf_nan=False)]
"""A confidence percentage in [0, 100]."""


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


Timestamp = Annotated[datetime, AfterValidator(_as_utc)]
"""A datetime normalised to UTC; naive values are read as UTC."""


class CamelModel(BaseModel):
    """Base for stored records: snake_case in Python, camelCase in JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiscriminativePower(IntEnum):
    """How strongly a test separates competing hypotheses (1-5)."""

    LOW = 1
    MODERATE_LOW = 2
    MODERATE = 3
    HIGH = 4
    DECISIVE = 5

    @property
    def label(self) -> str:
        return self.name.replace("_", "-").title()


class TestType(str, Enum):
    __test__ = False

    NATURAL_EXPERIMENT = "natural_experiment"
    CONTROLLED_STUDY = "controlled_study"
    CROSS_CONTEXT = "cross_context"
    MECHANISM_BLOCK = "mechanism_block"
    DOSE_RESPONSE = "dose_response"
    LITERATURE = "literature"
    OBSERVATION = "observation"
    TEMPORAL_ANALYSIS = "temporal_analysis"


class EvidenceResult(str, Enum):
    SUPPORTS = "supports"
    CHALLENGES = "challenges"
    INCONCLUSIVE = "inconclusive"


class SessionPhase(str, Enum):
    """Workflow phases, intake through complete."""

    INTAKE = "intake"
    SHARPENING = "sharpening"
    LEVEL_SPLIT = "level_split"
    EXCLUSION_TEST = "exclusion_test"
    OBJECT_TRANSPOSE = "object_transpose"
    SCALE_CHECK = "scale_check"
    AGENT_DISPATCH = "agent_dispatch"
    SYNTHESIS = "synthesis"
    EVIDENCE_GATHERING = "evidence_gathering"
    REVISION = "revision"
    COMPLETE = "complete"

    @property
    def simplified(self) -> str:
        """Four-phase view: intake, refinement, testing, synthesis."""
        return _SIMPLIFIED_PHASES[self]


_SIMPLIFIED_PHASES: dict[SessionPhase, str] = {
    SessionPhase.INTAKE: "intake",
    SessionPhase.SHARPENING: "refinement",
    SessionPhase.LEVEL_SPLIT: "refinement",
    SessionPhase.EXCLUSION_TEST: "refinement",
    SessionPhase.OBJECT_TRANSPOSE: "refinement",
    SessionPhase.SCALE_CHECK: "refinement",
    SessionPhase.AGENT_DISPATCH: "testing",
    SessionPhase.EVIDENCE_GATHERING: "testing",
    SessionPhase.REVISION: "testing",
    SessionPhase.SYNTHESIS: "synthesis",
    SessionPhase.COMPLETE: "synthesis",
}

PHASE_TRANSITIONS: dict[SessionPhase, frozenset[SessionPhase]] = {
    SessionPhase.INTAKE: frozenset({SessionPhase.SHARPENING}),
    SessionPhase.SHARPENING: frozenset(
        {SessionPhase.LEVEL_SPLIT, SessionPhase.EXCLUSION_TEST, SessionPhase.AGENT_DISPATCH}
    ),
    SessionPhase.LEVEL_SPLIT: frozenset(
        {
            SessionPhase.EXCLUSION_TEST,
            SessionPhase.OBJECT_TRANSPOSE,
            SessionPhase.SCALE_CHECK,
            SessionPhase.AGENT_DISPATCH,
        }
    ),
    SessionPhase.EXCLUSION_TEST: frozenset(
        {SessionPhase.OBJECT_TRANSPOSE, SessionPhase.SCALE_CHECK, SessionPhase.AGENT_DISPATCH}
    ),
    SessionPhase.OBJECT_TRANSPOSE: frozenset({SessionPhase.SCALE_CHECK, SessionPhase.AGENT_DISPATCH}),
    SessionPhase.SCALE_CHECK: frozenset({SessionPhase.AGENT_DISPATCH}),
    SessionPhase.AGENT_DISPATCH: frozenset({SessionPhase.SYNTHESIS, SessionPhase.EVIDENCE_GATHERING}),
    SessionPhase.SYNTHESIS: frozenset(
        {SessionPhase.EVIDENCE_GATHERING, SessionPhase.REVISION, SessionPhase.COMPLETE}
    ),
    SessionPhase.EVIDENCE_GATHERING: frozenset({SessionPhase.REVISION, SessionPhase.SYNTHESIS}),
    SessionPhase.REVISION: frozenset(
        {SessionPhase.AGENT_DISPATCH, SessionPhase.SYNTHESIS, SessionPhase.COMPLETE}
    ),
    SessionPhase.COMPLETE: frozenset(),
}


def is_valid_transition(current: SessionPhase, target: SessionPhase) -> bool:
    return target in PHASE_TRANSITIONS.get(current, frozenset())


class DeathType(str, Enum):
    """How a hypothesis version left the running."""

    DIRECT_FALSIFICATION = "direct_falsification"
    MECHANISM_FAILURE = "mechanism_failure"
    EFFECT_SIZE_COLLAPSE = "effect_size_collapse"
    SUPERSEDED = "superseded"
    UNMEASURABLE = "unmeasurable"
    SCOPE_REDUCTION = "scope_reduction"


class TestDesign(CamelModel):
    """A planned discriminating experiment."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    type: TestType
    discriminative_power: DiscriminativePower


class EvidenceEntry(CamelModel):
    """One recorded observation against one hypothesis version. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    hypothesis_version: str
    test: TestDesign
    prediction_if_true: str
    prediction_if_false: str
    result: EvidenceResult
    observation: str
    source: str | None = None
    confidence_before: Confidence
    confidence_after: Confidence
    interpretation: str
    recorded_at: Timestamp = Field(default_factory=utcnow)
    recorded_by: str | None = None
    notes: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def confidence_delta(self) -> float:
        return self.confidence_after - self.confidence_before


class Retirement(CamelModel):
    model_config = ConfigDict(frozen=True)

    death_type: DeathType = DeathType.SUPERSEDED
    reason: str = ""
    successor_id: str | None = None
    retired_at: Timestamp = Field(default_factory=utcnow)


class HypothesisCard(CamelModel):
    """One hypothesis version and its evidence history."""

    id: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    statement: str = Field(..., min_length=1)
    mechanism: str | None = None
    domains: list[str] = Field(default_factory=list)
    predictions_if_true: list[str] = Field(default_factory=list)
    predictions_if_false: list[str] = Field(default_factory=list)
    confidence: Confidence = 50.0
    evidence: list[EvidenceEntry] = Field(default_factory=list)
    retirement: Retirement | None = None
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)

    @property
    def retired(self) -> bool:
        return self.retirement is not None


class QueueStatus(str, Enum):
    PENDING = "pending"
    CONSUMED = "consumed"


class QueuedTest(CamelModel):
    """A designed test waiting for (or already past) execution."""

    model_config = ConfigDict(frozen=True)

    id: str
    hypothesis_id: str
    test: TestDesign
    prediction_if_true: str = ""
    prediction_if_false: str = ""
    status: QueueStatus = QueueStatus.PENDING
    enqueued_at: Timestamp = Field(default_factory=utcnow)
    predictions_locked_at: Timestamp | None = None
    consumed_at: Timestamp | None = None
    evidence_id: str | None = None

    @property
    def predictions_locked(self) -> bool:
        return self.predictions_locked_at is not None


class Session(CamelModel):
    """Root aggregate for one research workflow."""

    id: str = Field(..., min_length=1)
    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, alias="_version")
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)
    phase: SessionPhase = SessionPhase.INTAKE
    primary_hypothesis_id: str = ""
    alternative_hypothesis_ids: list[str] = Field(default_factory=list)
    archived_hypothesis_ids: list[str] = Field(default_factory=list)
    hypothesis_cards: dict[str, HypothesisCard] = Field(default_factory=dict)
    test_queue: list[QueuedTest] = Field(default_factory=list)
    research_question: str | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Session":
        if not 1 <= self.schema_version <= CURRENT_SCHEMA_VERSION:
            raise ValueError(
                f"unsupported schema version {self.schema_version} "
                f"(reader understands 1..{CURRENT_SCHEMA_VERSION})"
            )
        if self.primary_hypothesis_id and self.primary_hypothesis_id not in self.hypothesis_cards:
            raise ValueError(f"primary hypothesis {self.primary_hypothesis_id!r} has no card")
        for hypothesis_id in (*self.alternative_hypothesis_ids, *self.archived_hypothesis_ids):
            if hypothesis_id not in self.hypothesis_cards:
                raise ValueError(f"hypothesis {hypothesis_id!r} has no card")
        return self

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @property
    def primary_card(self) -> HypothesisCard | None:
        return self.hypothesis_cards.get(self.primary_hypothesis_id)


class SessionSummary(CamelModel):
    id: str
    phase: SessionPhase
    hypothesis: str
    confidence: float | None
    evidence_count: int
    pending_tests: int
    created_at: Timestamp
    updated_at: Timestamp


def new_session(session_id: str, *, research_question: str | None = None, now: datetime | None = None) -> Session:
    now = now or utcnow()
    return Session(id=session_id, created_at=now, updated_at=now, research_question=research_question)


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: Timestamp = Field(default_factory=utcnow)
