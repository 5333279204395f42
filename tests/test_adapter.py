"""Tests for the tool adapter: ranking, failover, cooldown."""

import pytest
from aiworker.adapter import (
    PoolExhausted,
    ToolAdapter,
    is_quota_error,
    rank_tools,
    select_pool,
)
from aiworker.config import ToolConfig, ToolsConfig
from aiworker.models import ToolRecord, now_ms
from aiworker.providers import CommandRun


class ScriptedAgent:
    """CliAgent stand-in; *script* maps tool name → CommandRun or exception."""

    calls: list[str] = []

    def __init__(self, script):
        self.script = script

    def __call__(self, name, command, args):
        agent = self

        class _Agent:
            async def run(self, prompt, cwd=None, timeout_ms=None):
                agent.calls.append(name)
                outcome = agent.script[name]
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome

            async def version(self, timeout_ms=5000):
                outcome = agent.script[name]
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome

        return _Agent()


def _ok(output="done", ms=100):
    return CommandRun(exit_code=0, stdout=output, stderr="", duration_ms=ms)


def _fail(stderr, code=1):
    return CommandRun(exit_code=code, stdout="", stderr=stderr, duration_ms=10)


def _adapter(store, script):
    factory = ScriptedAgent(script)
    factory.calls = []
    return ToolAdapter(store, agent_factory=factory), factory


# --- Quota detection ---

@pytest.mark.parametrize("text", [
    "Quota exceeded", "rate limit reached", "Insufficient credits",
    "HTTP 429", "401 Unauthorized", "invalid api key", "Authentication failed",
])
def test_quota_patterns(text):
    assert is_quota_error(text)


def test_non_quota_error():
    assert not is_quota_error("SyntaxError: unexpected token")


# --- Ranking ---

def test_rank_by_priority(two_tools):
    assert [e.name for e in rank_tools(two_tools, [])] == ["claude", "codex"]


def test_rank_available_first(two_tools):
    records = [ToolRecord(name="claude", available=False)]
    ranked = rank_tools(two_tools, records)
    assert [e.name for e in ranked] == ["codex", "claude"]
    assert [e.available for e in ranked] == [True, False]


def test_rank_ties_by_response_time():
    config = ToolsConfig(tools=[
        ToolConfig(name="slow", command="slow", priority=1),
        ToolConfig(name="unknown", command="unknown", priority=1),
        ToolConfig(name="fast", command="fast", priority=1),
    ])
    records = [
        ToolRecord(name="slow", average_response_ms=900.0),
        ToolRecord(name="fast", average_response_ms=100.0),
    ]
    assert [e.name for e in rank_tools(config, records)] == ["fast", "slow", "unknown"]


def test_disabled_tools_excluded():
    config = ToolsConfig(tools=[
        ToolConfig(name="a", command="a", enabled=False),
        ToolConfig(name="b", command="b"),
    ])
    assert [e.name for e in rank_tools(config, [])] == ["b"]


def test_cooldown_excludes_recent_failure(two_tools):
    now = now_ms()
    records = [ToolRecord(name="claude", available=True, last_failure_at=now - 1_000)]
    assert [e.name for e in select_pool(two_tools, records, now)] == ["codex"]
    # the stored record is untouched
    assert records[0].available is True


def test_cooldown_expires(two_tools):
    now = now_ms()
    records = [ToolRecord(name="claude", available=True, last_failure_at=now - 301_000)]
    assert [e.name for e in select_pool(two_tools, records, now)] == ["claude", "codex"]


# --- Execute ---

@pytest.mark.asyncio
async def test_execute_uses_best_tool(memory_db):
    adapter, agents = _adapter(memory_db, {"claude": _ok("hello", 200), "codex": _ok()})
    result = await adapter.execute("prompt")
    assert result.output == "hello"
    assert result.tool_name == "claude"
    assert agents.calls == ["claude"]

    record = (await memory_db.load_tool_records())[0]
    assert record.available is True
    assert record.failure_count == 0
    assert record.average_response_ms == 200.0
    assert record.last_success_at is not None


@pytest.mark.asyncio
async def test_response_time_moving_average(memory_db):
    adapter, _ = _adapter(memory_db, {"claude": _ok(ms=200), "codex": _ok()})
    await adapter.execute("one")
    adapter.agent_factory.script["claude"] = _ok(ms=400)
    await adapter.execute("two")
    record = (await memory_db.load_tool_records())[0]
    assert record.average_response_ms == pytest.approx(0.3 * 400 + 0.7 * 200)


@pytest.mark.asyncio
async def test_quota_error_fails_over(memory_db):
    adapter, agents = _adapter(memory_db, {
        "claude": _fail("Error: rate limit exceeded"),
        "codex": _ok("from codex"),
    })
    result = await adapter.execute("prompt")
    assert result.tool_name == "codex"
    assert agents.calls == ["claude", "codex"]

    records = {r.name: r for r in await memory_db.load_tool_records()}
    assert records["claude"].available is False
    assert records["claude"].failure_count == 1
    assert records["codex"].available is True
    assert not await adapter.is_available("claude")


@pytest.mark.asyncio
async def test_hard_error_tries_one_tool(memory_db):
    adapter, agents = _adapter(memory_db, {
        "claude": _fail("SyntaxError in generated code"),
        "codex": _ok(),
    })
    with pytest.raises(PoolExhausted) as exc_info:
        await adapter.execute("prompt")
    assert agents.calls == ["claude"]
    assert "SyntaxError" in exc_info.value.last_error

    record = (await memory_db.load_tool_records())[0]
    assert record.available is True
    assert record.failure_count == 1
    assert record.last_failure_at is not None
    # inside the cooldown window now
    assert not await adapter.is_available("claude")


@pytest.mark.asyncio
async def test_spawn_error_is_hard(memory_db):
    adapter, agents = _adapter(memory_db, {
        "claude": FileNotFoundError("claude"),
        "codex": _ok(),
    })
    with pytest.raises(PoolExhausted, match="failed to start"):
        await adapter.execute("prompt")
    assert agents.calls == ["claude"]


@pytest.mark.asyncio
async def test_timeout_is_hard(memory_db):
    timed_out = CommandRun(
        exit_code=-1, stdout="", stderr="Command timeout after 50ms",
        duration_ms=50, timed_out=True,
    )
    adapter, agents = _adapter(memory_db, {"claude": timed_out, "codex": _ok()})
    with pytest.raises(PoolExhausted, match="timeout"):
        await adapter.execute("prompt", timeout_ms=50)
    assert agents.calls == ["claude"]


@pytest.mark.asyncio
async def test_all_quota_errors_exhaust_pool(memory_db):
    adapter, agents = _adapter(memory_db, {
        "claude": _fail("quota exceeded"),
        "codex": _fail("insufficient credits"),
    })
    with pytest.raises(PoolExhausted, match="All tools failed"):
        await adapter.execute("prompt")
    assert agents.calls == ["claude", "codex"]


@pytest.mark.asyncio
async def test_failure_without_output_message(memory_db):
    adapter, _ = _adapter(memory_db, {"claude": _fail("", code=3), "codex": _ok()})
    with pytest.raises(PoolExhausted, match="Command failed with code 3"):
        await adapter.execute("prompt")


@pytest.mark.asyncio
async def test_preferred_tool_only(memory_db):
    adapter, agents = _adapter(memory_db, {"claude": _ok(), "codex": _ok("codex says")})
    result = await adapter.execute("prompt", preferred_tool="codex")
    assert result.tool_name == "codex"
    assert agents.calls == ["codex"]


@pytest.mark.asyncio
async def test_preferred_tool_missing(memory_db):
    adapter, agents = _adapter(memory_db, {"claude": _ok(), "codex": _ok()})
    with pytest.raises(PoolExhausted, match="not in the tool pool"):
        await adapter.execute("prompt", preferred_tool="gemini")
    assert agents.calls == []


@pytest.mark.asyncio
async def test_empty_pool():
    from aiworker.db import Database
    db = Database(":memory:", tools_config=ToolsConfig(tools=[]))
    await db.init()
    try:
        adapter = ToolAdapter(db)
        with pytest.raises(PoolExhausted, match="No available AI tools"):
            await adapter.execute("prompt")
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_tool_without_command_skipped():
    from aiworker.db import Database
    config = ToolsConfig(tools=[
        ToolConfig(name="blank", command="", priority=1),
        ToolConfig(name="codex", command="codex", priority=2),
    ])
    db = Database(":memory:", tools_config=config)
    await db.init()
    try:
        adapter, agents = _adapter(db, {"codex": _ok()})
        result = await adapter.execute("prompt")
        assert result.tool_name == "codex"
        assert agents.calls == ["codex"]
    finally:
        await db.close()


# --- Helpers ---

@pytest.mark.asyncio
async def test_is_available_without_record(memory_db):
    adapter, _ = _adapter(memory_db, {})
    assert await adapter.is_available("claude")


@pytest.mark.asyncio
async def test_default_tool(memory_db):
    adapter, _ = _adapter(memory_db, {})
    assert await adapter.default_tool() == "claude"


@pytest.mark.asyncio
async def test_probe(memory_db):
    adapter, _ = _adapter(memory_db, {
        "claude": _ok("1.0.0"),
        "codex": FileNotFoundError("codex"),
    })
    assert await adapter.probe("claude")
    assert not await adapter.probe("codex")
    assert not await adapter.probe("gemini")
