"""Execution backends invoked by the tool adapter."""

from __future__ import annotations

from .cli_agent import PROMPT_PLACEHOLDER, CliAgent, CommandRun

__all__ = ["PROMPT_PLACEHOLDER", "CliAgent", "CommandRun"]
