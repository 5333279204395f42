"""Feedback handler: spec, plan, tasks, then execution."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..config import Config
from ..executor import TaskExecutor
from ..models import KIND_FEEDBACK, Feedback, Plan, ProjectScope, Task, TaskStatus
from ..prompts import (
    build_plan_prompt,
    build_tasks_prompt,
    extract_json_block,
    fallback_plan,
    generate_spec_content,
    tasks_markdown,
)
from ..state_machine import FeedbackStateMachine, TaskStateMachine

logger = logging.getLogger(__name__)

PLAN_TIMEOUT_MS = 180_000
TASKS_TIMEOUT_MS = 120_000


def load_constitution(config: Config | None, scope: ProjectScope) -> str:
    """Architecture constraints for the projects a request touches."""
    if config is None:
        return ""
    projects = {
        ProjectScope.BACKEND: [config.projects.backend],
        ProjectScope.FRONTEND: [config.projects.frontend],
        ProjectScope.FULLSTACK: [config.projects.backend, config.projects.frontend],
    }[scope]

    parts = []
    for project in projects:
        if not project.constitution_path:
            continue
        path = Path(project.constitution_path)
        if not path.is_absolute() and config.project_root:
            path = Path(config.project_root) / path
        if path.exists():
            parts.append(path.read_text(encoding="utf-8"))
    return "\n\n".join(parts)


def _string_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def default_task_project(scope: ProjectScope) -> str:
    return "backend" if scope == ProjectScope.FULLSTACK else scope.value


def parse_tasks_response(response: str, scope: ProjectScope) -> list[Task]:
    """Build tasks from the backend's JSON. Raises ValueError on bad output."""
    block = extract_json_block(response)
    if block is None:
        raise ValueError("No JSON found in response")
    parsed = json.loads(block)
    raw_tasks = parsed.get("tasks") if isinstance(parsed, dict) else parsed
    if not isinstance(raw_tasks, list):
        raise ValueError("Response has no task list")

    project = default_task_project(scope)
    tasks = []
    for i, raw in enumerate(raw_tasks, 1):
        if not isinstance(raw, dict):
            continue
        tasks.append(
            Task(
                id=str(raw.get("id") or f"task-{i}"),
                title=raw.get("title") or "Untitled task",
                description=raw.get("description") or "",
                files=_string_list(raw.get("files")),
                project=raw.get("project") or project,
                depends_on=_string_list(raw.get("dependsOn")),
            )
        )
    return tasks


def fallback_tasks(feedback: Feedback) -> list[Task]:
    """A three-step chain used when no backend produced a task list."""
    prefix = feedback.id[:8]
    project = default_task_project(feedback.project_scope)
    return [
        Task(
            id="task-1",
            title="Analyse the request and create the feature module",
            description=(
                f'Analyse "{feedback.raw_input[:30]}..." and create the matching '
                "feature module"
            ),
            files=[f"src/features/{prefix}/index"],
            project=project,
        ),
        Task(
            id="task-2",
            title="Implement the core logic",
            description="Implement the core logic, including input validation",
            files=[f"src/features/{prefix}/index"],
            project=project,
            depends_on=["task-1"],
        ),
        Task(
            id="task-3",
            title="Wire it into the application",
            description="Hook the feature into the main entry point",
            files=["src/index"],
            project=project,
            depends_on=["task-2"],
        ),
    ]


def _reset_unfinished(tasks: list[Task]) -> int:
    """Return interrupted or failed tasks to ``pending`` so a rerun picks them up."""
    reset = 0
    for task in tasks:
        machine = TaskStateMachine(task.status)
        if machine.status == TaskStatus.IN_PROGRESS:
            machine.fail()
        if machine.status == TaskStatus.FAILED:
            machine.retry()
            task.status = machine.status
            task.result = None
            task.started_at = task.completed_at = None
            reset += 1
    return reset


class FeedbackHandler:
    """Runs the spec-driven pipeline for one feedback item."""

    def __init__(self, store, adapter, executor: TaskExecutor | None = None,
                 config: Config | None = None):
        self.store = store
        self.adapter = adapter
        self.config = config
        cwd = config.project_root if config and config.project_root else None
        self.executor = executor or TaskExecutor(store, adapter, cwd=cwd)

    async def _load(self, feedback_id: str) -> Feedback:
        item = await self.store.load_work_item(feedback_id)
        if item is None or item.kind != KIND_FEEDBACK:
            raise LookupError(f"Feedback not found: {feedback_id}")
        return item

    async def execute(self, feedback_id: str) -> bool:
        feedback = await self._load(feedback_id)
        machine = FeedbackStateMachine(feedback.status)
        if machine.can_analyze():
            machine.start_analyzing()
            await self.store.update_status(feedback_id, machine.status)

        if feedback.plan and feedback.plan.tasks:
            # Resuming an interrupted run: keep the stored plan and task results.
            tasks = await self.store.load_task_snapshot(feedback_id) or feedback.plan.tasks
            reset = _reset_unfinished(tasks)
            await self.store.save_task_snapshot(feedback_id, tasks)
            await self.store.append_log(
                feedback_id, f"Resuming with {len(tasks)} task(s), {reset} reset to pending"
            )
        else:
            await self.store.append_log(feedback_id, "Generating spec")
            spec = await self._generate_spec(feedback)

            await self.store.append_log(feedback_id, "Generating plan")
            plan = await self._generate_plan(feedback, spec)

            await self.store.append_log(feedback_id, "Breaking plan into tasks")
            tasks = await self._generate_tasks(feedback, spec, plan)
            if not tasks:
                machine.fail()
                await self.store.update_status(feedback_id, machine.status)
                await self.store.append_log(feedback_id, "No tasks generated", "error")
                return False

            feedback.plan = Plan(spec=spec, plan=plan, tasks=tasks)
            feedback.status = machine.status
            await self.store.save_work_item(feedback)
            await self.store.save_task_snapshot(feedback_id, tasks)
            await self.store.save_document(feedback_id, "tasks.md", tasks_markdown(tasks))
            await self.store.append_log(feedback_id, f"Plan ready with {len(tasks)} task(s)")

        machine.start_executing()
        await self.store.update_status(feedback_id, machine.status)

        await self.store.append_log(feedback_id, "Executing tasks")
        success = await self.executor.execute(feedback_id, tasks)

        if success:
            machine.complete()
            await self.store.append_log(feedback_id, "All tasks completed")
        else:
            machine.fail()
            await self.store.append_log(feedback_id, "Task execution failed", "error")

        await self.store.update_status(feedback_id, machine.status)
        return success

    async def _generate_spec(self, feedback: Feedback) -> str:
        content = generate_spec_content(
            feedback.id, feedback.raw_input, feedback.project_scope, feedback.summary
        )
        await self.store.save_document(feedback.id, "spec.md", content)
        return content

    async def _generate_plan(self, feedback: Feedback, spec: str) -> str:
        constitution = load_constitution(self.config, feedback.project_scope)
        prompt = build_plan_prompt(spec, constitution, feedback.project_scope)
        await self.store.save_document(feedback.id, "plan.prompt", prompt)

        try:
            result = await self.adapter.execute(prompt, timeout_ms=PLAN_TIMEOUT_MS)
        except Exception as exc:
            await self.store.append_log(feedback.id, f"Plan generation failed: {exc}", "error")
            plan = fallback_plan(feedback.raw_input)
            await self.store.append_log(feedback.id, "Using fallback plan")
        else:
            await self.store.save_document(feedback.id, "plan.response", result.output)
            plan = result.output

        await self.store.save_document(feedback.id, "plan.md", plan)
        return plan

    async def _generate_tasks(self, feedback: Feedback, spec: str, plan: str) -> list[Task]:
        prompt = build_tasks_prompt(spec, plan)
        await self.store.save_document(feedback.id, "tasks.prompt", prompt)

        try:
            result = await self.adapter.execute(prompt, timeout_ms=TASKS_TIMEOUT_MS)
            await self.store.save_document(feedback.id, "tasks.response", result.output)
            tasks = parse_tasks_response(result.output, feedback.project_scope)
            if tasks:
                return tasks
            await self.store.append_log(feedback.id, "Task response held no tasks", "warn")
        except Exception as exc:
            await self.store.append_log(feedback.id, f"Task generation failed: {exc}", "error")

        await self.store.append_log(feedback.id, "Using fallback tasks")
        return fallback_tasks(feedback)
