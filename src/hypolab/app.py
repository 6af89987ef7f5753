from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import Field

from .engine import SessionEngine, engine_from_config
from .errors import EngineValidationError, SessionNotFoundError, SessionUnavailableError, report_failure
from .ledger import RecordedEvidence, TestOutcome, TestResult
from .logging_config import setup_logging
from .models import (
    CamelModel,
    DeathType,
    EvidenceEntry,
    HealthResponse,
    HypothesisCard,
    QueuedTest,
    Session,
    SessionPhase,
    SessionSummary,
    TestDesign,
)

logger = logging.getLogger(__name__)

_engine: SessionEngine | None = None


def get_engine() -> SessionEngine:
    """Get or create the engine singleton."""
    global _engine
    if _engine is None:
        _engine = engine_from_config()
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Lifespan context for startup/shutdown."""
    setup_logging()
    get_engine()
    yield


app = FastAPI(
    title="hypolab",
    version="0.1.0",
    description="Local session engine for hypothesis testing: hypotheses, evidence and a test queue.",
    lifespan=lifespan,
)


class HypothesisCreate(CamelModel):
    statement: str
    version_id: str | None = None
    mechanism: str | None = None
    domains: list[str] = Field(default_factory=list)
    predictions_if_true: list[str] = Field(default_factory=list)
    predictions_if_false: list[str] = Field(default_factory=list)
    confidence: float | None = None
    primary: bool = False


class EvidenceCreate(TestResult):
    version_id: str


class RetireRequest(CamelModel):
    death_type: DeathType = DeathType.SUPERSEDED
    reason: str = ""
    successor_id: str | None = None


class EnqueueRequest(CamelModel):
    hypothesis_id: str
    test: TestDesign
    prediction_if_true: str = ""
    prediction_if_false: str = ""


class PredictionsUpdate(CamelModel):
    prediction_if_true: str | None = None
    prediction_if_false: str | None = None


class PhaseRequest(CamelModel):
    phase: str


class EvidenceResponse(CamelModel):
    entry: EvidenceEntry
    explanation: str
    significant: bool
    warnings: list[dict[str, str]] = Field(default_factory=list)

    @classmethod
    def from_recorded(cls, recorded: RecordedEvidence) -> "EvidenceResponse":
        return cls(
            entry=recorded.entry,
            explanation=recorded.update.explanation,
            significant=recorded.update.significant,
            warnings=[{"field": w.field, "message": w.message, "code": w.code} for w in recorded.warnings],
        )


@app.exception_handler(EngineValidationError)
async def validation_error_handler(request: Request, exc: EngineValidationError) -> JSONResponse:  # noqa: ARG001
    return JSONResponse(status_code=400, content=exc.to_dict())


@app.exception_handler(SessionNotFoundError)
async def not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:  # noqa: ARG001
    return JSONResponse(status_code=404, content={"error": str(exc), "code": "SESSION_NOT_FOUND"})


@app.exception_handler(SessionUnavailableError)
async def unavailable_handler(request: Request, exc: SessionUnavailableError) -> JSONResponse:  # noqa: ARG001
    return JSONResponse(
        status_code=503,
        content={"error": str(exc), "code": "SESSION_UNAVAILABLE", "notice": exc.notice.to_dict()},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception in request %s %s", request.method, request.url.path)
    report_failure(
        operation="http_request",
        exc=exc,
        context={"method": request.method, "path": request.url.path},
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal error. See the hypolab log for details.", "code": "INTERNAL"},
    )


@app.get("/")
def root() -> dict[str, str]:
    return {
        "name": "hypolab",
        "health": "/health",
        "sessions": "/sessions",
    }


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse()


@app.get("/sessions", response_model=list[SessionSummary])
async def list_sessions() -> list[SessionSummary]:
    return await get_engine().list_sessions()


@app.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str) -> Session:
    return await get_engine().get_session(session_id)


@app.post("/sessions/{session_id}", response_model=Session)
async def open_session(session_id: str) -> Session:
    return await get_engine().open_session(session_id)


@app.post("/sessions/{session_id}/hypotheses", response_model=HypothesisCard, status_code=201)
async def add_hypothesis(session_id: str, body: HypothesisCreate) -> HypothesisCard:
    fields: dict[str, Any] = body.model_dump(exclude={"statement", "primary", "confidence"}, exclude_none=True)
    if body.confidence is not None:
        fields["confidence"] = body.confidence
    return await get_engine().add_hypothesis(session_id, body.statement, primary=body.primary, **fields)


@app.get("/sessions/{session_id}/hypotheses/{version_id}/evidence", response_model=list[EvidenceEntry])
async def list_evidence(session_id: str, version_id: str, newest_first: bool = False) -> list[EvidenceEntry]:
    return list(await get_engine().evidence_for(session_id, version_id, newest_first=newest_first))


@app.post("/sessions/{session_id}/evidence", response_model=EvidenceResponse, status_code=201)
async def record_evidence(session_id: str, body: EvidenceCreate) -> EvidenceResponse:
    result = TestResult.model_validate(body.model_dump(exclude={"version_id"}))
    recorded = await get_engine().record_evidence(session_id, body.version_id, result)
    return EvidenceResponse.from_recorded(recorded)


@app.post("/sessions/{session_id}/hypotheses/{version_id}/retire", response_model=HypothesisCard)
async def retire_hypothesis(session_id: str, version_id: str, body: RetireRequest) -> HypothesisCard:
    return await get_engine().retire_hypothesis(
        session_id,
        version_id,
        death_type=body.death_type,
        reason=body.reason,
        successor_id=body.successor_id,
    )


@app.post("/sessions/{session_id}/tests", response_model=QueuedTest, status_code=201)
async def enqueue_test(session_id: str, body: EnqueueRequest) -> QueuedTest:
    return await get_engine().enqueue_test(
        session_id,
        body.hypothesis_id,
        body.test,
        prediction_if_true=body.prediction_if_true,
        prediction_if_false=body.prediction_if_false,
    )


@app.post("/sessions/{session_id}/tests/next", response_model=EvidenceResponse, status_code=201)
async def execute_next_test(session_id: str, body: TestOutcome) -> EvidenceResponse:
    recorded = await get_engine().execute_next_test(session_id, body)
    return EvidenceResponse.from_recorded(recorded)


@app.patch("/sessions/{session_id}/tests/{item_id}/predictions", response_model=QueuedTest)
async def update_predictions(session_id: str, item_id: str, body: PredictionsUpdate) -> QueuedTest:
    return await get_engine().update_predictions(
        session_id,
        item_id,
        prediction_if_true=body.prediction_if_true,
        prediction_if_false=body.prediction_if_false,
    )


@app.post("/sessions/{session_id}/tests/{item_id}/lock", response_model=QueuedTest)
async def lock_predictions(session_id: str, item_id: str) -> QueuedTest:
    return await get_engine().lock_predictions(session_id, item_id)


@app.post("/sessions/{session_id}/phase")
async def advance_phase(session_id: str, body: PhaseRequest) -> dict[str, str]:
    phase: SessionPhase = await get_engine().advance_phase(session_id, body.phase)
    return {"phase": phase.value, "simplified": phase.simplified}
