"""Tests for CLI commands."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner
from aiworker.cli import app
from aiworker.db import Database
from aiworker.models import (
    Clarification,
    ClarificationStatus,
    Feedback,
    FeedbackStatus,
    Question,
    generate_id,
    today_partition,
)

runner = CliRunner()


def _db_call(project, fn):
    """Run *fn(db)* against the project's state database."""
    async def _go():
        db = Database(str(project / ".aiworker" / "state.db"), project_root=str(project))
        await db.init()
        try:
            return await fn(db)
        finally:
            await db.close()
    return asyncio.run(_go())


def _store(project, item):
    async def _save(db):
        await db.save_work_item(item)
    _db_call(project, _save)
    return item


def _load(project, item_id):
    async def _get(db):
        return await db.load_work_item(item_id)
    return _db_call(project, _get)


def test_init_creates_structure(tmp_path, monkeypatch):
    """aiworker init creates .aiworker/ + config.yaml + .gitignore."""
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert (tmp_path / ".aiworker" / "config.yaml").exists()
    assert (tmp_path / ".aiworker" / "local.config.yaml").exists()
    gitignore = (tmp_path / ".gitignore").read_text()
    assert ".aiworker/local.config.yaml" in gitignore
    assert ".aiworker/state.db" in gitignore


def test_init_idempotent(tmp_path, monkeypatch):
    """aiworker init repeated does not overwrite existing config."""
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    (tmp_path / ".aiworker" / "config.yaml").write_text("scheduler:\n  max_concurrent: 9\n")
    runner.invoke(app, ["init"])
    assert "max_concurrent: 9" in (tmp_path / ".aiworker" / "config.yaml").read_text()


def test_submit_and_list(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["submit", "Add CSV export", "--scope", "fullstack"])
    assert result.exit_code == 0
    assert "Created clarification" in result.output

    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "Add CSV export" in result.output
    assert "clarification" in result.output


def test_submit_feedback_type(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["submit", "Fix typo", "--type", "feedback"])
    assert result.exit_code == 0
    item_id = result.output.split()[-1]
    assert isinstance(_load(tmp_project, item_id), Feedback)


def test_submit_rejects_unknown_scope(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["submit", "x", "--scope", "mobile"])
    assert result.exit_code == 1


def test_list_empty_day(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["list", "--date", "2020-01-01"])
    assert result.exit_code == 0
    assert "No work items for 2020-01-01" in result.output


def test_show_item(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Clarification(
        id=generate_id(), raw_input="Add login", status=ClarificationStatus.AWAITING,
        questions=[Question(id="q1", question="Which provider?", options=["GitHub"])],
    ))
    result = runner.invoke(app, ["show", item.id])
    assert result.exit_code == 0
    assert "awaiting" in result.output
    assert "[q1] Which provider?" in result.output


def test_show_missing(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["show", "20260314-000000-zzzzz"])
    assert result.exit_code == 1


def test_confirm_creates_feedback(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Clarification(
        id=generate_id(), raw_input="Add login", status=ClarificationStatus.AWAITING,
        questions=[Question(id="q1", question="Which provider?")],
    ))
    result = runner.invoke(app, ["confirm", item.id, "--answer", "q1=GitHub"])
    assert result.exit_code == 0
    assert "confirmed" in result.output

    stored = _load(tmp_project, item.id)
    assert stored.status == ClarificationStatus.CONFIRMED
    assert stored.questions[0].answer == "GitHub"


def test_confirm_bad_answer_format(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["confirm", "x", "--answer", "no-equals"])
    assert result.exit_code != 0


def test_confirm_pending_rejected(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Clarification(id=generate_id(), raw_input="x"))
    result = runner.invoke(app, ["confirm", item.id])
    assert result.exit_code == 1


def test_logs(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["submit", "Add CSV export"])
    item_id = result.output.split()[-1]
    result = runner.invoke(app, ["logs", item_id])
    assert result.exit_code == 0
    assert "Submitted" in result.output


def test_retry_failed(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Feedback(id=generate_id(), raw_input="x", status=FeedbackStatus.FAILED))
    result = runner.invoke(app, ["retry", item.id])
    assert result.exit_code == 0
    assert _load(tmp_project, item.id).status == FeedbackStatus.PENDING


def test_retry_not_failed(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Feedback(id=generate_id(), raw_input="x"))
    result = runner.invoke(app, ["retry", item.id])
    assert result.exit_code == 1
    assert "not failed" in result.output


def test_force_status(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Clarification(id=generate_id(), raw_input="x"))
    result = runner.invoke(app, ["force-status", item.id, "expired"])
    assert result.exit_code == 0
    assert _load(tmp_project, item.id).status == ClarificationStatus.EXPIRED


def test_force_status_unknown(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    item = _store(tmp_project, Clarification(id=generate_id(), raw_input="x"))
    result = runner.invoke(app, ["force-status", item.id, "executing"])
    assert result.exit_code == 1


def test_status_empty_project(tmp_project, monkeypatch):
    """Empty project status doesn't crash."""
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert today_partition() in result.output


def test_tools_lists_config(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["tools"])
    assert result.exit_code == 0
    assert "claude" in result.output
    assert "codex" in result.output


def test_test_tool(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    with patch("aiworker.adapter.ToolAdapter.probe", AsyncMock(side_effect=[True, False])):
        result = runner.invoke(app, ["test-tool"])
    assert result.exit_code == 1
    assert "✅ claude" in result.output
    assert "❌ codex" in result.output


def test_poll_runs_one_cycle(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    with patch("aiworker.scheduler.Scheduler.run_once", AsyncMock()) as run_once:
        result = runner.invoke(app, ["poll"])
    assert result.exit_code == 0
    run_once.assert_awaited_once()


def test_config_shows_merged(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "max_concurrent: 2" in result.output
