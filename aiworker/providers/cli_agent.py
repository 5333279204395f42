"""CliAgent: run an AI coding CLI once per prompt as a subprocess."""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path

PROMPT_PLACEHOLDER = "{prompt}"

# Seconds to wait for a terminated process before killing it.
_TERMINATE_GRACE = 2.0


@dataclass
class CommandRun:
    """Raw outcome of one CLI invocation."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CliAgent:
    """Spawns ``command`` with ``args``, the prompt passed as an argument.

    A ``{prompt}`` entry in *args* is replaced by the prompt text; without
    one the prompt is appended as the final argument. stdin is closed so
    CLIs that would otherwise wait for input see EOF.
    """

    def __init__(self, name: str, command: str, args: list[str] | None = None):
        self.name = name
        self.command = command
        self.args = list(args or [])

    def build_argv(self, prompt: str) -> list[str]:
        if PROMPT_PLACEHOLDER in self.args:
            rendered = [prompt if a == PROMPT_PLACEHOLDER else a for a in self.args]
        else:
            rendered = [*self.args, prompt]
        return [self.command, *rendered]

    async def run(
        self,
        prompt: str,
        cwd: Path | str | None = None,
        timeout_ms: int | None = None,
    ) -> CommandRun:
        """Run the CLI and capture its output.

        Raises OSError (including FileNotFoundError) when the process cannot
        be spawned. A timeout terminates the process and returns a run with
        ``timed_out`` set.
        """
        return await self._exec(self.build_argv(prompt), cwd, timeout_ms)

    async def version(self, timeout_ms: int = 5000) -> CommandRun:
        return await self._exec([self.command, "--version"], None, timeout_ms)

    async def _exec(
        self,
        argv: list[str],
        cwd: Path | str | None,
        timeout_ms: int | None,
    ) -> CommandRun:
        start = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=os.environ.copy(),
        )

        timeout = timeout_ms / 1000 if timeout_ms else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            return CommandRun(
                exit_code=-1,
                stdout="",
                stderr=f"Command timeout after {timeout_ms}ms",
                duration_ms=_elapsed_ms(start),
                timed_out=True,
            )

        return CommandRun(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
            duration_ms=_elapsed_ms(start),
        )


async def _terminate(proc) -> None:
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
