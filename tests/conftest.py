"""Shared fixtures for aiworker tests."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from aiworker.config import ToolConfig, ToolsConfig
from aiworker.models import ExecuteResult


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project: .aiworker/config.yaml + a backend constitution."""
    config_dir = tmp_path / ".aiworker"
    config_dir.mkdir()

    (tmp_path / "constitution.md").write_text("# Backend rules\nUse async I/O.\n")

    (config_dir / "config.yaml").write_text("""\
scheduler:
  poll_interval: 2
  max_concurrent: 2
tools:
  failure_cooldown_ms: 300000
  default_tool: claude
  timeout_ms: 60000
  entries:
    - name: claude
      command: claude
      args: ["-p", "{prompt}"]
      priority: 1
    - name: codex
      command: codex
      args: ["exec"]
      priority: 2
projects:
  backend:
    name: api
    path: .
    constitution_path: constitution.md
""")
    return tmp_path


@pytest.fixture
def two_tools():
    """Two enabled backends: claude preferred over codex."""
    return ToolsConfig(
        tools=[
            ToolConfig(name="claude", command="claude", args=["-p", "{prompt}"], priority=1),
            ToolConfig(name="codex", command="codex", args=["exec"], priority=2),
        ],
    )


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 14, 9, 30, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from aiworker.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db(two_tools):
    """In-memory database for fast unit tests."""
    from aiworker.db import Database
    db = Database(":memory:", tools_config=two_tools)
    await db.init()
    yield db
    await db.close()


class FakeAdapter:
    """Scripted stand-in for ToolAdapter.

    *outcomes* maps a substring of the prompt to either an output string or
    an exception instance; unmatched prompts succeed with "ok".
    """

    def __init__(self, outcomes=None, tool_name="claude"):
        self.outcomes = outcomes or {}
        self.tool_name = tool_name
        self.prompts: list[str] = []

    async def execute(self, prompt, preferred_tool=None, cwd=None, timeout_ms=None):
        self.prompts.append(prompt)
        for needle, outcome in self.outcomes.items():
            if needle in prompt:
                if isinstance(outcome, BaseException):
                    raise outcome
                return ExecuteResult(
                    exit_code=0, output=outcome, duration_ms=5, tool_name=self.tool_name
                )
        return ExecuteResult(exit_code=0, output="ok", duration_ms=5, tool_name=self.tool_name)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()
