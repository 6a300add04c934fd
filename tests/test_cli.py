"""Tests for the noteledger CLI."""

import json
import os
from pathlib import Path

import pytest
from typer.testing import CliRunner

from noteledger.cli import app

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Repository working directory with a clean environment."""
    for name in list(os.environ):
        if name.startswith("NOTELEDGER_"):
            monkeypatch.delenv(name)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    (tmp_path / ".git").mkdir()
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def data_dir(workspace):
    path = workspace / "data"
    result = runner.invoke(app, ["init", "--data-dir", str(path), "--no-write-config"])
    assert result.exit_code == 0, result.output
    return str(path)


def _ingest(data_dir, session="s1", at="10", text="turn left here", confidence="0.9"):
    return runner.invoke(
        app,
        [
            "ingest-transcript", session,
            "--at", at,
            "--text", text,
            "--confidence", confidence,
            "--engine", "fake",
            "--data-dir", data_dir,
        ],
    )


def test_init_is_idempotent(workspace):
    path = workspace / "data"

    first = runner.invoke(app, ["init", "--data-dir", str(path), "--no-write-config"])
    second = runner.invoke(app, ["init", "--data-dir", str(path), "--no-write-config"])

    assert first.exit_code == 0
    assert (path / "ledger.sqlite").exists()
    assert (path / "exports").is_dir()
    assert second.exit_code == 0
    assert "Ledger already exists" in second.output
    assert not (workspace / ".noteledger").exists()


def test_init_writes_repo_config(workspace):
    result = runner.invoke(app, ["init", "--data-dir", str(workspace / "data")])

    assert result.exit_code == 0
    config_file = workspace / ".noteledger" / "config.toml"
    assert config_file.exists()
    assert "[reconcile]" in config_file.read_text(encoding="utf-8")


def test_commands_require_init(workspace):
    result = _ingest(str(workspace / "missing"))

    assert result.exit_code == 1
    assert "noteledger init" in result.output


def test_ingest_creates_note(data_dir):
    result = _ingest(data_dir)

    assert result.exit_code == 0, result.output
    assert "Appended evidence_transcript #0 to s1" in result.output
    assert "created" in result.output


def test_invalid_engine_is_rejected(data_dir):
    result = runner.invoke(
        app,
        ["ingest-transcript", "s1", "--at", "1", "--text", "x", "--engine", "gpt", "--data-dir", data_dir],
    )

    assert result.exit_code == 1
    assert "Invalid engine" in result.output


def test_out_of_range_confidence_fails_cleanly(data_dir):
    result = _ingest(data_dir, confidence="1.5")

    assert result.exit_code == 1
    assert "Error during ingest" in result.output


def test_replay_json(data_dir):
    _ingest(data_dir)
    _ingest(data_dir, at="100", text="music is too loud")

    result = runner.invoke(app, ["replay", "s1", "--json", "--data-dir", data_dir])

    assert result.exit_code == 0, result.output
    snapshot = json.loads(result.output)
    assert [n["text"] for n in snapshot["notes"]] == ["Turn left here", "Music is too loud"]
    assert snapshot["up_to_sequence"] == 3


def test_export_writes_bundle(data_dir):
    _ingest(data_dir)

    result = runner.invoke(app, ["export", "s1", "--data-dir", data_dir])

    assert result.exit_code == 0, result.output
    bundles = list((Path(data_dir) / "exports").glob("s1_*.json"))
    assert len(bundles) == 1
    assert json.loads(bundles[0].read_text(encoding="utf-8"))["session_id"] == "s1"


def test_verify(data_dir):
    empty = runner.invoke(app, ["verify", "--data-dir", data_dir])
    _ingest(data_dir)
    result = runner.invoke(app, ["verify", "--data-dir", data_dir])

    assert empty.exit_code == 0
    assert "No sessions in ledger" in empty.output
    assert result.exit_code == 0, result.output
    assert "ok" in result.output


def test_dismiss_unknown_note(data_dir):
    _ingest(data_dir)

    result = runner.invoke(app, ["dismiss", "s1", "n_missing", "--data-dir", data_dir])

    assert result.exit_code == 1


def test_diffuse(data_dir):
    _ingest(data_dir)

    result = runner.invoke(app, ["diffuse", "s1", "--engine", "fake", "--data-dir", data_dir])

    assert result.exit_code == 0, result.output
    assert "committed" in result.output


def test_tail(data_dir):
    _ingest(data_dir)

    result = runner.invoke(app, ["tail", "s1", "--full", "--data-dir", data_dir])

    assert result.exit_code == 0, result.output
    assert "evidence_transcript" in result.output
    assert "note_created" in result.output


def test_unresolved_escalation_is_printed(data_dir):
    result = _ingest(data_dir, text="something about the thing", confidence="0.3")

    assert result.exit_code == 0, result.output
    assert "Needs review" in result.output


def test_flush_deferred_with_nothing_due(data_dir):
    _ingest(data_dir)

    result = runner.invoke(app, ["flush-deferred", "--engine", "fake", "--data-dir", data_dir])

    assert result.exit_code == 0, result.output
    assert "No deferred revisions are due" in result.output
