from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from hypolab.app import app
from hypolab.engine import SessionEngine


@pytest.fixture
def client(engine: SessionEngine) -> Iterator[TestClient]:
    """Swap the engine singleton in `hypolab.app` for an in-memory one."""
    import hypolab.app as app_mod

    previous = app_mod._engine
    app_mod._engine = engine
    try:
        yield TestClient(app)
    finally:
        app_mod._engine = previous


TEST_DESIGN = {
    "id": "T1",
    "description": "Block adenosine receptors",
    "type": "mechanism_block",
    "discriminativePower": 5,
}


def _evidence_body(**overrides: object) -> dict:
    body = {
        "versionId": "H1",
        "test": TEST_DESIGN,
        "predictionIfTrue": "Effect vanishes",
        "predictionIfFalse": "Effect persists",
        "result": "supports",
        "observation": "Effect vanished",
        "source": "trial 1",
    }
    body.update(overrides)
    return body


def test_health_ok(client: TestClient) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert "timestamp" in body


def test_hypothesis_and_evidence_flow(client: TestClient) -> None:
    res = client.post("/sessions/S1/hypotheses", json={"statement": "Adenosine blockade"})
    assert res.status_code == 201
    assert res.json()["id"] == "H1"

    res = client.post("/sessions/S1/evidence", json=_evidence_body())
    assert res.status_code == 201
    body = res.json()
    assert body["entry"]["id"] == "EV-S1-001"
    assert body["entry"]["confidenceAfter"] == pytest.approx(57.5)
    assert body["significant"] is True

    res = client.get("/sessions/S1")
    assert res.status_code == 200
    session = res.json()
    assert session["_version"] == 1
    assert session["primaryHypothesisId"] == "H1"
    assert session["hypothesisCards"]["H1"]["confidence"] == pytest.approx(57.5)

    res = client.get("/sessions/S1/hypotheses/H1/evidence", params={"newest_first": True})
    assert [e["id"] for e in res.json()] == ["EV-S1-001"]

    res = client.get("/sessions")
    assert [s["id"] for s in res.json()] == ["S1"]
    assert res.json()[0]["evidenceCount"] == 1


def test_validation_errors_map_to_400(client: TestClient) -> None:
    client.post("/sessions/S1/hypotheses", json={"statement": "Only"})

    res = client.post("/sessions/S1/evidence", json=_evidence_body(confidenceBefore=150))
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_RANGE"

    res = client.post("/sessions/S1/hypotheses/H1/retire", json={"reason": "done"})
    assert res.status_code == 400
    assert res.json()["code"] == "PRIMARY_HYPOTHESIS"


def test_retire_alternative(client: TestClient) -> None:
    client.post("/sessions/S1/hypotheses", json={"statement": "Primary"})
    client.post("/sessions/S1/hypotheses", json={"statement": "Rival"})

    res = client.post(
        "/sessions/S1/hypotheses/H2/retire",
        json={"deathType": "direct_falsification", "reason": "Refuted", "successorId": "H1"},
    )
    assert res.status_code == 200
    assert res.json()["retirement"]["deathType"] == "direct_falsification"

    session = client.get("/sessions/S1").json()
    assert session["archivedHypothesisIds"] == ["H2"]


def test_test_queue_endpoints(client: TestClient) -> None:
    client.post("/sessions/S1/hypotheses", json={"statement": "Primary"})

    res = client.post(
        "/sessions/S1/tests",
        json={
            "hypothesisId": "H1",
            "test": TEST_DESIGN,
            "predictionIfTrue": "Effect vanishes",
            "predictionIfFalse": "Effect persists",
        },
    )
    assert res.status_code == 201
    assert res.json()["id"] == "TQ-S1-T1"

    res = client.post("/sessions/S1/tests/next", json={"result": "challenges", "observation": "No change"})
    assert res.status_code == 201
    assert res.json()["entry"]["confidenceAfter"] == pytest.approx(35.0)
    assert {w["code"] for w in res.json()["warnings"]} == {"NO_SOURCE"}

    res = client.post("/sessions/S1/tests/next", json={"result": "supports", "observation": "x"})
    assert res.status_code == 400
    assert res.json()["code"] == "QUEUE_EMPTY"


def test_predictions_can_be_filled_in_before_locking(client: TestClient) -> None:
    client.post("/sessions/S1/hypotheses", json={"statement": "Primary"})
    client.post("/sessions/S1/tests", json={"hypothesisId": "H1", "test": TEST_DESIGN})

    res = client.post("/sessions/S1/tests/TQ-S1-T1/lock")
    assert res.status_code == 200
    assert res.json()["predictionsLockedAt"] is None

    res = client.patch(
        "/sessions/S1/tests/TQ-S1-T1/predictions",
        json={"predictionIfTrue": "Effect vanishes", "predictionIfFalse": "Effect persists"},
    )
    assert res.status_code == 200

    res = client.post("/sessions/S1/tests/TQ-S1-T1/lock")
    assert res.json()["predictionsLockedAt"] is not None

    res = client.patch("/sessions/S1/tests/TQ-S1-T1/predictions", json={"predictionIfTrue": "changed"})
    assert res.status_code == 400
    assert res.json()["code"] == "PREDICTIONS_LOCKED"

    res = client.post("/sessions/S1/tests/next", json={"result": "supports", "observation": "Gone", "source": "t1"})
    assert res.status_code == 201


def test_phase_endpoint(client: TestClient) -> None:
    res = client.post("/sessions/S1/phase", json={"phase": "sharpening"})
    assert res.json() == {"phase": "sharpening", "simplified": "refinement"}

    res = client.post("/sessions/S1/phase", json={"phase": "complete"})
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_TRANSITION"


def test_unknown_session_is_404(client: TestClient) -> None:
    res = client.get("/sessions/ghost")
    assert res.status_code == 404


def test_corrupted_session_is_503_with_notice(client: TestClient, kv) -> None:
    kv._data["hypolab-session-S1"] = "{corrupt"

    res = client.get("/sessions/S1")

    assert res.status_code == 503
    notice = res.json()["notice"]
    assert notice["severity"] == "error"
    assert [a["label"] for a in notice["actions"]] == ["Start a new session", "Contact support"]


def test_unexpected_errors_are_500(engine: SessionEngine, kv, monkeypatch: pytest.MonkeyPatch) -> None:
    import hypolab.app as app_mod

    kv.script_get("hypolab-session-S1", RuntimeError("bug"))
    monkeypatch.setattr(app_mod, "_engine", engine)

    res = TestClient(app, raise_server_exceptions=False).get("/sessions/S1")

    assert res.status_code == 500
    assert res.json()["code"] == "INTERNAL"
