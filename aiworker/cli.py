"""aiworker CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer

app = typer.Typer(
    name="aiworker",
    help="aiworker — AI work orchestration engine",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .aiworker/config.yaml — team-shared configuration
scheduler:
  poll_interval: 5
  max_concurrent: 3
  clarification_timeout_hours: 24

tools:
  failure_cooldown_ms: 300000
  default_tool: claude
  timeout_ms: 300000
  entries:
    - name: claude
      command: claude
      args: ["-p", "{prompt}", "--permission-mode", "bypassPermissions", "--no-session-persistence"]
      priority: 1
    - name: codex
      command: codex
      args: ["exec", "{prompt}"]
      priority: 2
      enabled: false

projects:
  backend:
    name: backend
    path: .
    constitution_path: ""
  frontend:
    name: frontend
    path: .
    constitution_path: ""
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .aiworker/local.config.yaml — personal overrides (DO NOT commit)
# tools:
#   default_tool: codex
"""

GITIGNORE_ENTRIES = [
    ".aiworker/local.config.yaml",
    ".aiworker/state.db",
    ".aiworker/state.db-wal",
    ".aiworker/state.db-shm",
]

STATUS_ICONS = {
    "pending": "⏳", "processing": "🔄", "analyzing": "🔄", "executing": "🔄",
    "in_progress": "🔄", "awaiting": "❓", "confirmed": "✅", "completed": "✅",
    "cancelled": "⏭️", "expired": "⌛", "failed": "❌",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


async def _get_db(project_root: Path):
    from .config import load_config
    from .db import Database
    config = load_config(project_root)
    db_path = Path(config.db_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path), project_root=str(project_root))
    await db.init()
    return db


def _build_engine(config, db):
    """Wire adapter, handlers and scheduler around one database."""
    from .adapter import ToolAdapter
    from .handlers import ClarificationHandler, FeedbackHandler
    from .scheduler import Scheduler

    adapter = ToolAdapter(db)
    clarifications = ClarificationHandler(
        db, adapter, timeout_hours=config.scheduler.clarification_timeout_hours
    )
    feedbacks = FeedbackHandler(db, adapter, config=config)
    scheduler = Scheduler.from_config(config.scheduler, db, clarifications, feedbacks)
    return adapter, clarifications, feedbacks, scheduler


def _parse_answers(answers: list[str]) -> dict[str, str]:
    parsed = {}
    for entry in answers:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected QUESTION_ID=ANSWER, got {entry!r}")
        parsed[key.strip()] = value.strip()
    return parsed


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize aiworker in the current project."""
    root = _get_project_root()

    config_dir = root / ".aiworker"
    config_dir.mkdir(exist_ok=True)

    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = config_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# aiworker\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  aiworker initialized. Run `aiworker submit \"...\"` to add work.")


@app.command()
def submit(
    message: str = typer.Argument(..., help="The request, in plain words"),
    scope: str = typer.Option("backend", "--scope", help="backend, frontend or fullstack"),
    kind: str = typer.Option(
        "clarification", "--type", help="clarification (analyse first) or feedback"
    ),
):
    """Submit a new work item."""
    root = _get_project_root()

    from .models import Clarification, Feedback, ProjectScope, generate_id

    try:
        project_scope = ProjectScope(scope)
    except ValueError:
        typer.echo(f"  Unknown scope '{scope}'.", err=True)
        raise typer.Exit(1)
    if kind not in ("clarification", "feedback"):
        typer.echo(f"  Unknown type '{kind}'.", err=True)
        raise typer.Exit(1)

    async def _submit():
        db = await _get_db(root)
        try:
            item_cls = Clarification if kind == "clarification" else Feedback
            item = item_cls(id=generate_id(), raw_input=message, project_scope=project_scope)
            await db.save_work_item(item)
            await db.append_log(item.id, f"Submitted ({kind}, {scope})")
            typer.echo(f"  Created {kind} {item.id}")
        finally:
            await db.close()

    _run_async(_submit())


@app.command("list")
def list_items(
    date: str = typer.Option(None, "--date", help="Partition date, YYYY-MM-DD (default today)"),
):
    """List work items for a day."""
    root = _get_project_root()

    async def _list():
        from .models import today_partition
        partition = date or today_partition()
        db = await _get_db(root)
        try:
            items = await db.list_by_partition(partition)
            if not items:
                typer.echo(f"  No work items for {partition}.")
                return
            typer.echo(f"\n  Work items — {partition}")
            typer.echo("  " + "─" * 60)
            for item in items:
                icon = STATUS_ICONS.get(item.status.value, "  ")
                typer.echo(
                    f"  {icon} {item.id:<24} {item.kind:<14} {item.status.value:<11} "
                    f"{item.raw_input[:40]}"
                )
        finally:
            await db.close()

    _run_async(_list())


@app.command()
def show(item_id: str = typer.Argument(..., help="Work item ID")):
    """Show details for a work item."""
    root = _get_project_root()

    async def _show():
        db = await _get_db(root)
        try:
            item = await db.load_work_item(item_id)
            if not item:
                typer.echo(f"  Work item '{item_id}' not found.")
                raise typer.Exit(1)

            typer.echo(f"\n  {item.id} ({item.kind})")
            typer.echo(f"  Status: {item.status.value}")
            typer.echo(f"  Scope: {item.project_scope.value}")
            typer.echo(f"  Input: {item.raw_input}")
            if getattr(item, "origin_clarification_id", None):
                typer.echo(f"  From: {item.origin_clarification_id}")

            if item.summary:
                typer.echo(f"\n  Summary: {item.summary.summary or '—'}")
                for goal in item.summary.goals:
                    typer.echo(f"    goal: {goal}")
                for criterion in item.summary.acceptance_criteria:
                    typer.echo(f"    accept: {criterion}")

            for q in getattr(item, "questions", None) or []:
                typer.echo(f"\n  [{q.id}] {q.question}")
                for option in q.options:
                    typer.echo(f"    - {option}")
                if q.answer:
                    typer.echo(f"    answer: {q.answer}")

            tasks = await db.load_task_snapshot(item.id)
            if tasks:
                typer.echo("\n  Tasks:")
                for t in tasks:
                    deps = f" ← {', '.join(t.depends_on)}" if t.depends_on else ""
                    typer.echo(f"    {t.id}: {t.title} [{t.project}, {t.status.value}]{deps}")

            documents = await db.get_documents(item.id)
            if documents:
                typer.echo(f"\n  Documents: {', '.join(d['name'] for d in documents)}")
        finally:
            await db.close()

    _run_async(_show())


@app.command()
def confirm(
    item_id: str = typer.Argument(..., help="Clarification ID"),
    answer: list[str] = typer.Option([], "--answer", "-a", help="QUESTION_ID=ANSWER"),
):
    """Answer a clarification and turn it into a feedback."""
    root = _get_project_root()
    answers = _parse_answers(answer)

    async def _confirm():
        from .config import load_config
        from .state_machine import InvalidTransition

        config = load_config(root)
        db = await _get_db(root)
        try:
            _, clarifications, _, _ = _build_engine(config, db)
            try:
                await clarifications.confirm(item_id, answers)
                feedback = await clarifications.create_feedback(item_id)
            except (LookupError, InvalidTransition, ValueError) as e:
                typer.echo(f"  {e}", err=True)
                raise typer.Exit(1)
            typer.echo(f"  ✅ {item_id} confirmed → feedback {feedback.id}")
        finally:
            await db.close()

    _run_async(_confirm())


@app.command()
def logs(item_id: str = typer.Argument(..., help="Work item ID")):
    """Show execution logs."""
    root = _get_project_root()

    async def _logs():
        db = await _get_db(root)
        try:
            entries = await db.get_logs(item_id)
            if not entries:
                typer.echo(f"  No logs for '{item_id}'.")
                return
            typer.echo(f"\n  Logs — {item_id}")
            typer.echo("  " + "─" * 50)
            for entry in entries:
                typer.echo(f"  [{entry['created_at']}] {entry['level']:<5} {entry['message']}")
        finally:
            await db.close()

    _run_async(_logs())


@app.command()
def run():
    """Run the scheduler until interrupted."""
    root = _get_project_root()

    async def _run():
        import anyio
        from .config import load_config

        config = load_config(root)
        db = await _get_db(root)
        _, _, _, scheduler = _build_engine(config, db)
        try:
            typer.echo("  aiworker — scheduler running (Ctrl-C to stop)")
            await scheduler.start()
            await anyio.sleep_forever()
        finally:
            await scheduler.stop()
            await db.close()

    try:
        _run_async(_run())
    except KeyboardInterrupt:
        pass
    typer.echo("  aiworker — scheduler stopped.")


@app.command()
def poll():
    """Run one scheduler cycle and exit."""
    root = _get_project_root()

    async def _poll():
        from .config import load_config

        config = load_config(root)
        db = await _get_db(root)
        try:
            _, _, _, scheduler = _build_engine(config, db)
            await scheduler.run_once()
            typer.echo("  Poll complete.")
        finally:
            await db.close()

    _run_async(_poll())


@app.command()
def status():
    """Show today's work items by status, and tool health."""
    root = _get_project_root()

    async def _status():
        from .models import today_partition
        partition = today_partition()
        db = await _get_db(root)
        try:
            items = await db.list_by_partition(partition)
            counts: dict[str, int] = {}
            for item in items:
                key = f"{item.kind}/{item.status.value}"
                counts[key] = counts.get(key, 0) + 1

            typer.echo(f"\n  aiworker — Status ({partition})")
            typer.echo("  " + "─" * 40)
            if not counts:
                typer.echo("  No work items today.")
            for key in sorted(counts):
                typer.echo(f"  {key:<28} {counts[key]}")

            records = await db.load_tool_records()
            if records:
                typer.echo("\n  Tools:")
                for r in records:
                    state = "available" if r.available else "unavailable"
                    typer.echo(f"  {r.name:<12} {state:<12} failures={r.failure_count}")
        finally:
            await db.close()

    _run_async(_status())


@app.command()
def tools():
    """List configured tools in selection order."""
    root = _get_project_root()

    async def _tools():
        from .adapter import rank_tools
        db = await _get_db(root)
        try:
            config = await db.load_tool_config()
            ranked = rank_tools(config, await db.load_tool_records())
            typer.echo(f"\n  Tools (default: {config.default_tool})")
            typer.echo(f"  {'Name':<12} {'Priority':<9} {'State':<12} {'Avg ms':<8} {'Failures'}")
            for entry in ranked:
                avg = entry.record.average_response_ms
                typer.echo(
                    f"  {entry.name:<12} {entry.config.priority:<9} "
                    f"{'ready' if entry.available else 'cooling':<12} "
                    f"{f'{avg:.0f}' if avg is not None else '—':<8} {entry.record.failure_count}"
                )
            disabled = [t.name for t in config.tools if not t.enabled]
            if disabled:
                typer.echo(f"  Disabled: {', '.join(disabled)}")
        finally:
            await db.close()

    _run_async(_tools())


@app.command("test-tool")
def test_tool(name: str = typer.Argument(None, help="Tool name (default: every enabled tool)")):
    """Check that configured tools start."""
    root = _get_project_root()

    async def _test():
        from .adapter import ToolAdapter
        db = await _get_db(root)
        try:
            adapter = ToolAdapter(db)
            config = await db.load_tool_config()
            names = [name] if name else [t.name for t in config.tools if t.enabled]
            failed = False
            for tool_name in names:
                ok = await adapter.probe(tool_name)
                failed = failed or not ok
                typer.echo(f"  {'✅' if ok else '❌'} {tool_name}")
            if failed:
                raise typer.Exit(1)
        finally:
            await db.close()

    _run_async(_test())


@app.command()
def retry(item_id: str = typer.Argument(..., help="Work item ID to retry")):
    """Return a failed work item to pending."""
    root = _get_project_root()

    async def _retry():
        from .state_machine import machine_for
        db = await _get_db(root)
        try:
            item = await db.load_work_item(item_id)
            if not item:
                typer.echo(f"  Work item '{item_id}' not found.")
                raise typer.Exit(1)
            machine = machine_for(item.kind, item.status)
            if machine.status.value != "failed" or not machine.retry().success:
                typer.echo(f"  Work item '{item_id}' is {item.status.value}, not failed.")
                raise typer.Exit(1)
            await db.update_status(item_id, machine.status)
            await db.append_log(item_id, "Retry requested")
            typer.echo(f"  🔄 {item_id} set to pending for retry.")
        finally:
            await db.close()

    _run_async(_retry())


@app.command("force-status")
def force_status(
    item_id: str = typer.Argument(..., help="Work item ID"),
    new_status: str = typer.Argument(..., help="Status to set"),
):
    """Set a work item's status without transition checks."""
    root = _get_project_root()

    async def _force():
        from .state_machine import machine_for
        db = await _get_db(root)
        try:
            item = await db.load_work_item(item_id)
            if not item:
                typer.echo(f"  Work item '{item_id}' not found.")
                raise typer.Exit(1)
            machine = machine_for(item.kind, item.status)
            try:
                machine.force_transition(new_status)
            except ValueError:
                typer.echo(f"  '{new_status}' is not a {item.kind} status.", err=True)
                raise typer.Exit(1)
            await db.update_status(item_id, machine.status)
            await db.append_log(
                item_id, f"Status forced {item.status.value} -> {new_status}", "warn"
            )
            typer.echo(f"  {item_id}: {item.status.value} → {new_status}")
        finally:
            await db.close()

    _run_async(_force())


@app.command("config")
def config_show():
    """Show merged configuration."""
    root = _get_project_root()

    from .config import load_config
    import yaml

    config = load_config(root)

    from dataclasses import asdict
    data = asdict(config)

    typer.echo("\n  aiworker — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
