from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from hypolab import cli
from hypolab.engine import SessionEngine
from hypolab.paths import XDGPaths

runner = CliRunner()


@pytest.fixture
def cli_engine(engine: SessionEngine, monkeypatch: pytest.MonkeyPatch) -> SessionEngine:
    monkeypatch.setattr(cli, "_build_engine", lambda: engine)
    return engine


@pytest.fixture
def tmp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> XDGPaths:
    xdg = XDGPaths(data_home=tmp_path / "data", config_home=tmp_path / "config", cache_home=tmp_path / "cache")
    monkeypatch.setattr(cli, "paths", xdg)
    return xdg


def test_version() -> None:
    result = runner.invoke(cli.app, ["--version"])
    assert result.exit_code == 0
    assert "hypolab version" in result.output


def test_verbose_switches_logging_to_debug(cli_engine: SessionEngine, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: calls.append(kwargs))

    result = runner.invoke(cli.app, ["--verbose", "sessions", "list"])

    assert result.exit_code == 0
    assert calls == [{"level": "DEBUG"}]


def test_sessions_list_json(cli_engine: SessionEngine) -> None:
    asyncio.run(cli_engine.add_hypothesis("S1", "Adenosine blockade"))

    result = runner.invoke(cli.app, ["sessions", "list", "--json"])

    assert result.exit_code == 0
    rows = json.loads(result.output)
    assert rows[0]["id"] == "S1"
    assert rows[0]["hypothesis"] == "Adenosine blockade"


def test_sessions_list_empty(cli_engine: SessionEngine) -> None:
    result = runner.invoke(cli.app, ["sessions", "list"])
    assert result.exit_code == 0
    assert "No sessions stored" in result.output


def test_sessions_show_missing(cli_engine: SessionEngine) -> None:
    result = runner.invoke(cli.app, ["sessions", "show", "ghost"])
    assert result.exit_code == 1


def test_sessions_show_json(cli_engine: SessionEngine) -> None:
    asyncio.run(cli_engine.add_hypothesis("S1", "Adenosine blockade"))

    result = runner.invoke(cli.app, ["sessions", "show", "S1", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.output)["primaryHypothesisId"] == "H1"


def test_sessions_recover_reports_notice(cli_engine: SessionEngine, kv) -> None:
    kv._data["hypolab-session-S1"] = "{corrupt"

    result = runner.invoke(cli.app, ["sessions", "recover", "S1"])

    assert result.exit_code == 2
    assert "could not be recovered" in result.output
    assert kv.snapshot() == {"hypolab-session-S1": "{corrupt"}


def test_sessions_recover_intact(cli_engine: SessionEngine) -> None:
    asyncio.run(cli_engine.add_hypothesis("S1", "Fine"))

    result = runner.invoke(cli.app, ["sessions", "recover", "S1"])

    assert result.exit_code == 0
    assert "intact" in result.output


def test_sessions_evidence_json(cli_engine: SessionEngine, make_result) -> None:
    async def seed() -> None:
        await cli_engine.add_hypothesis("S1", "Primary")
        await cli_engine.record_evidence("S1", "H1", make_result())
        await cli_engine.record_evidence("S1", "H1", make_result(test_id="T2"))

    asyncio.run(seed())

    result = runner.invoke(cli.app, ["sessions", "evidence", "S1", "H1", "--newest-first", "--json"])

    assert result.exit_code == 0
    assert [e["id"] for e in json.loads(result.output)] == ["EV-S1-002", "EV-S1-001"]


def test_sessions_evidence_unknown_version(cli_engine: SessionEngine) -> None:
    asyncio.run(cli_engine.add_hypothesis("S1", "Primary"))

    result = runner.invoke(cli.app, ["sessions", "evidence", "S1", "H9"])

    assert result.exit_code == 1


def test_config_path_and_init(tmp_paths: XDGPaths) -> None:
    result = runner.invoke(cli.app, ["config", "path"])
    assert result.exit_code == 0
    assert "config.toml" in result.output.replace("\n", "")

    result = runner.invoke(cli.app, ["config", "init"])
    assert result.exit_code == 0
    assert tmp_paths.config_file.exists()

    result = runner.invoke(cli.app, ["config", "init"])
    assert result.exit_code == 1

    result = runner.invoke(cli.app, ["config", "init", "--force"])
    assert result.exit_code == 0


def test_config_show_json() -> None:
    result = runner.invoke(cli.app, ["config", "show", "--json"])

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert set(data) >= {"general", "storage", "retry", "timeout", "confidence", "server"}
