"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

CONFIG_DIR = ".aiworker"


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ToolConfig:
    name: str
    command: str = ""
    args: list[str] = field(default_factory=list)
    enabled: bool = True
    priority: int = 999


def _default_tools() -> list[ToolConfig]:
    return [
        ToolConfig(
            name="claude",
            command="claude",
            args=[
                "-p", "{prompt}",
                "--permission-mode", "bypassPermissions",
                "--no-session-persistence",
            ],
            priority=1,
        ),
    ]


@dataclass
class ToolsConfig:
    tools: list[ToolConfig] = field(default_factory=_default_tools)
    failure_cooldown_ms: int = 5 * 60 * 1000
    default_tool: str = "claude"
    timeout_ms: int = 300_000

    def get(self, name: str) -> ToolConfig | None:
        return next((t for t in self.tools if t.name == name), None)


@dataclass
class SchedulerConfig:
    poll_interval: float = 5.0
    max_concurrent: int = 3
    clarification_timeout_hours: float = 24.0


@dataclass
class ProjectConfig:
    name: str = ""
    path: str = ""
    constitution_path: str = ""


@dataclass
class ProjectsConfig:
    backend: ProjectConfig = field(default_factory=ProjectConfig)
    frontend: ProjectConfig = field(default_factory=ProjectConfig)


@dataclass
class StorageConfig:
    db_path: str = f"{CONFIG_DIR}/state.db"


@dataclass
class Config:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    projects: ProjectsConfig = field(default_factory=ProjectsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    project_root: str = ""

    def db_path(self) -> str:
        path = Path(self.storage.db_path)
        if not path.is_absolute() and self.project_root:
            path = Path(self.project_root) / path
        return str(path)


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _build_tool(entry: dict) -> ToolConfig:
    if "name" not in entry:
        raise ValueError(f"Tool entry is missing a name: {entry!r}")
    return ToolConfig(
        name=str(entry["name"]),
        command=str(entry.get("command", "")),
        args=[str(a) for a in entry.get("args", [])],
        enabled=bool(entry.get("enabled", True)),
        priority=int(entry.get("priority", 999)),
    )


def _build_tools(data: dict) -> ToolsConfig:
    defaults = ToolsConfig()
    entries = data.get("entries")
    return ToolsConfig(
        tools=(
            [_build_tool(e) for e in entries if isinstance(e, dict)]
            if isinstance(entries, list)
            else defaults.tools
        ),
        failure_cooldown_ms=int(data.get("failure_cooldown_ms", defaults.failure_cooldown_ms)),
        default_tool=data.get("default_tool", defaults.default_tool),
        timeout_ms=int(data.get("timeout_ms", defaults.timeout_ms)),
    )


def _build_project(data: dict) -> ProjectConfig:
    return ProjectConfig(
        name=data.get("name", ""),
        path=data.get("path", ""),
        constitution_path=data.get("constitution_path", ""),
    )


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    if "scheduler" in data and isinstance(data["scheduler"], dict):
        s = data["scheduler"]
        cfg.scheduler = SchedulerConfig(
            poll_interval=float(s.get("poll_interval", cfg.scheduler.poll_interval)),
            max_concurrent=int(s.get("max_concurrent", cfg.scheduler.max_concurrent)),
            clarification_timeout_hours=float(
                s.get("clarification_timeout_hours", cfg.scheduler.clarification_timeout_hours)
            ),
        )

    if "tools" in data and isinstance(data["tools"], dict):
        cfg.tools = _build_tools(data["tools"])

    if "projects" in data and isinstance(data["projects"], dict):
        p = data["projects"]
        cfg.projects = ProjectsConfig(
            backend=_build_project(p.get("backend") or {}),
            frontend=_build_project(p.get("frontend") or {}),
        )

    if "storage" in data and isinstance(data["storage"], dict):
        cfg.storage = StorageConfig(
            db_path=data["storage"].get("db_path", cfg.storage.db_path),
        )

    return cfg


def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    parsed = yaml.safe_load(path.read_text())
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ValueError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}"
            )
        return {}
    return parsed


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (scheduler knobs, default tool)
      2. .aiworker/local.config.yaml
      3. .aiworker/config.yaml
    """
    project_root = Path(project_root)
    config_dir = project_root / CONFIG_DIR

    base_data = _read_yaml(config_dir / "config.yaml", strict=True)
    local_data = _read_yaml(config_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    env_interval = os.environ.get("AIWORKER_POLL_INTERVAL")
    if env_interval:
        cfg.scheduler.poll_interval = float(env_interval)

    env_concurrent = os.environ.get("AIWORKER_MAX_CONCURRENT")
    if env_concurrent:
        cfg.scheduler.max_concurrent = int(env_concurrent)

    env_tool = os.environ.get("AIWORKER_DEFAULT_TOOL")
    if env_tool:
        cfg.tools.default_tool = env_tool

    return cfg


def load_tools_config(project_root: str | Path) -> ToolsConfig:
    return load_config(project_root).tools
