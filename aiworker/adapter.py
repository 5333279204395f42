"""Tool adapter: a pool of CLI backends with quota-aware failover."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import ToolConfig, ToolsConfig
from .models import ExecuteResult, ToolRecord, now_ms
from .providers import CliAgent

logger = logging.getLogger(__name__)

QUOTA_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"quota", re.IGNORECASE),
    re.compile(r"limit", re.IGNORECASE),
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"insufficient", re.IGNORECASE),
    re.compile(r"credits", re.IGNORECASE),
    re.compile(r"401"),
    re.compile(r"403"),
    re.compile(r"429"),
    re.compile(r"API key", re.IGNORECASE),
    re.compile(r"authentication", re.IGNORECASE),
)

# Weight of the newest sample in the response-time moving average.
_RESPONSE_EMA_WEIGHT = 0.3


def is_quota_error(text: str) -> bool:
    return any(p.search(text) for p in QUOTA_PATTERNS)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BackendError(Exception):
    """A single backend invocation failed."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        self.message = message
        super().__init__(f"{tool_name}: {message}")


class QuotaExceeded(BackendError):
    """Quota, rate-limit or auth failure. The adapter fails over."""


class HardBackendError(BackendError):
    """Non-quota failure. Surfaced without trying other backends."""


class ProcessSpawnError(HardBackendError):
    """The backend executable could not be started."""


class BackendTimeout(HardBackendError):
    """The backend ran past its timeout and was terminated."""


class PoolExhausted(Exception):
    """No backend produced a successful result."""

    def __init__(self, message: str, last_error: str | None = None):
        self.last_error = last_error
        super().__init__(message)


# ---------------------------------------------------------------------------
# Pool selection
# ---------------------------------------------------------------------------

@dataclass
class PoolEntry:
    config: ToolConfig
    record: ToolRecord
    available: bool

    @property
    def name(self) -> str:
        return self.config.name


def in_cooldown(record: ToolRecord, cooldown_ms: int, now: int) -> bool:
    return record.last_failure_at is not None and now - record.last_failure_at < cooldown_ms


def rank_tools(
    config: ToolsConfig,
    records: list[ToolRecord],
    now: int | None = None,
) -> list[PoolEntry]:
    """Rank enabled tools: available first, then priority, then response time.

    A tool whose last failure falls inside the cooldown window ranks as
    unavailable for this call only; the stored record is not modified.
    """
    now = now if now is not None else now_ms()
    by_name = {r.name: r for r in records}
    entries: list[PoolEntry] = []
    for tool in config.tools:
        if not tool.enabled:
            continue
        record = by_name.get(tool.name) or ToolRecord(name=tool.name)
        available = record.available and not in_cooldown(
            record, config.failure_cooldown_ms, now
        )
        entries.append(PoolEntry(config=tool, record=record, available=available))

    entries.sort(
        key=lambda e: (
            not e.available,
            e.config.priority,
            e.record.average_response_ms
            if e.record.average_response_ms is not None
            else float("inf"),
        )
    )
    return entries


def select_pool(
    config: ToolsConfig,
    records: list[ToolRecord],
    now: int | None = None,
) -> list[PoolEntry]:
    """Ranked tools that are currently selectable (available, not cooling down)."""
    return [e for e in rank_tools(config, records, now) if e.available]


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class ToolAdapter:
    """Runs prompts on the best available backend, failing over on quota errors.

    Tool configuration and records are loaded from *store* on every call so
    config edits and cooldown expiry take effect without a restart.
    """

    def __init__(self, store, agent_factory: Callable[..., CliAgent] = CliAgent):
        self.store = store
        self.agent_factory = agent_factory
        self._records_lock = asyncio.Lock()

    async def select_pool(self, now: int | None = None) -> list[PoolEntry]:
        config = await self.store.load_tool_config()
        records = await self.store.load_tool_records()
        return select_pool(config, records, now)

    async def execute(
        self,
        prompt: str,
        preferred_tool: str | None = None,
        cwd: Path | str | None = None,
        timeout_ms: int | None = None,
    ) -> ExecuteResult:
        config = await self.store.load_tool_config()
        records = await self.store.load_tool_records()
        pool = rank_tools(config, records)
        if not pool:
            raise PoolExhausted("No available AI tools. Please check your configuration.")

        timeout = timeout_ms if timeout_ms is not None else config.timeout_ms
        last_error: str | None = None
        attempted = 0

        for entry in pool:
            if preferred_tool and entry.name != preferred_tool:
                continue
            if not entry.config.command:
                logger.warning("Tool %s has no command configured, skipping", entry.name)
                continue

            attempted += 1
            logger.info("[AI] Using %s...", entry.name)
            try:
                result = await self._invoke(entry.config, prompt, cwd, timeout)
            except QuotaExceeded as exc:
                last_error = exc.message
                await self.mark_failed(entry.name, quota=True)
                logger.warning("[AI] %s quota exceeded, trying next tool...", entry.name)
                continue
            except HardBackendError as exc:
                last_error = exc.message
                await self.mark_failed(entry.name, quota=False)
                logger.error("[AI] %s failed: %s", entry.name, exc.message)
                break

            await self.mark_success(entry.name, result.duration_ms)
            logger.info("[AI] %s completed in %dms", entry.name, result.duration_ms)
            return result

        if attempted == 0 and preferred_tool:
            raise PoolExhausted(f"Preferred tool {preferred_tool!r} is not in the tool pool")
        raise PoolExhausted(f"All tools failed. Last error: {last_error}", last_error)

    async def _invoke(
        self,
        tool: ToolConfig,
        prompt: str,
        cwd: Path | str | None,
        timeout_ms: int | None,
    ) -> ExecuteResult:
        agent = self.agent_factory(tool.name, tool.command, tool.args)
        try:
            run = await agent.run(prompt, cwd=cwd, timeout_ms=timeout_ms)
        except OSError as exc:
            raise ProcessSpawnError(tool.name, f"failed to start {tool.command}: {exc}") from exc

        if run.timed_out:
            raise BackendTimeout(tool.name, run.stderr or f"Command timeout after {timeout_ms}ms")

        if run.exit_code == 0:
            return ExecuteResult(
                exit_code=0,
                output=run.stdout,
                duration_ms=run.duration_ms,
                tool_name=tool.name,
            )

        error = run.stderr or run.stdout or f"Command failed with code {run.exit_code}"
        if is_quota_error(run.combined_output) or is_quota_error(error):
            raise QuotaExceeded(tool.name, error)
        raise HardBackendError(tool.name, error)

    # -----------------------------------------------------------------
    # Record bookkeeping
    # -----------------------------------------------------------------

    async def mark_success(self, name: str, response_ms: int) -> None:
        async with self._records_lock:
            records = await self.store.load_tool_records()
            record = _find_or_create(records, name)
            record.available = True
            record.failure_count = 0
            record.last_success_at = now_ms()
            if record.average_response_ms is None:
                record.average_response_ms = float(response_ms)
            else:
                record.average_response_ms = (
                    _RESPONSE_EMA_WEIGHT * response_ms
                    + (1 - _RESPONSE_EMA_WEIGHT) * record.average_response_ms
                )
            await self.store.save_tool_records([record])

    async def mark_failed(self, name: str, quota: bool) -> None:
        async with self._records_lock:
            records = await self.store.load_tool_records()
            record = _find_or_create(records, name)
            record.available = not quota
            record.failure_count += 1
            record.last_failure_at = now_ms()
            await self.store.save_tool_records([record])

    async def is_available(self, name: str, now: int | None = None) -> bool:
        records = await self.store.load_tool_records()
        record = next((r for r in records if r.name == name), None)
        if record is None:
            return True
        if not record.available:
            return False
        config = await self.store.load_tool_config()
        now = now if now is not None else now_ms()
        return not in_cooldown(record, config.failure_cooldown_ms, now)

    async def default_tool(self) -> str:
        config = await self.store.load_tool_config()
        return config.default_tool

    async def probe(self, name: str) -> bool:
        """Check that a configured tool starts and answers ``--version``."""
        config = await self.store.load_tool_config()
        tool = config.get(name)
        if tool is None or not tool.command:
            return False
        agent = self.agent_factory(tool.name, tool.command, tool.args)
        try:
            run = await agent.version()
        except OSError:
            return False
        return run.exit_code == 0 and not run.timed_out


def _find_or_create(records: list[ToolRecord], name: str) -> ToolRecord:
    record = next((r for r in records if r.name == name), None)
    return record if record is not None else ToolRecord(name=name)
