"""Task executor: group-parallel, group-serial, dependency-ordered execution."""

from __future__ import annotations

import asyncio
import logging
import time

from .models import Task, TaskResult, TaskStatus, utc_now
from .prompts import build_task_prompt
from .state_machine import TaskStateMachine

logger = logging.getLogger(__name__)

FRONTEND = "frontend"
BACKEND = "backend"


class DependencyUnsatisfied(Exception):
    """A task depends on something that has not completed in its bucket."""

    def __init__(self, task_id: str, missing: list[str]):
        self.task_id = task_id
        self.missing = missing
        super().__init__(f"Task {task_id} has unsatisfied dependencies: {', '.join(missing)}")


def group_tasks_by_project(tasks: list[Task]) -> dict[str, list[Task]]:
    """Split tasks into the frontend bucket and the backend bucket (everything else)."""
    groups: dict[str, list[Task]] = {BACKEND: [], FRONTEND: []}
    for task in tasks:
        key = FRONTEND if task.project == FRONTEND else BACKEND
        groups[key].append(task)
    return groups


def sort_tasks_by_dependency(tasks: list[Task]) -> list[Task]:
    """Order tasks so each follows the tasks it depends on.

    Each pass scans the remaining tasks in their original order and places
    every task whose dependencies are already placed. Tasks still unplaced
    after ``2 * len(tasks)`` passes (cycles, unknown ids) are appended in
    their original order.
    """
    ordered: list[Task] = []
    placed: set[str] = set()
    remaining = list(tasks)
    passes = 0
    max_passes = len(tasks) * 2

    while remaining and passes < max_passes:
        passes += 1
        still_waiting: list[Task] = []
        for task in remaining:
            if all(dep in placed for dep in task.depends_on):
                ordered.append(task)
                placed.add(task.id)
            else:
                still_waiting.append(task)
        if len(still_waiting) == len(remaining):
            break
        remaining = still_waiting

    ordered.extend(remaining)
    return ordered


class TaskExecutor:
    """Runs a batch of tasks through the tool adapter.

    The frontend and backend buckets run concurrently; inside a bucket the
    tasks run one at a time in dependency order and the first failure
    aborts the rest of that bucket.
    """

    def __init__(self, store, adapter, cwd=None):
        self.store = store
        self.adapter = adapter
        self.cwd = cwd

    async def execute(self, batch_id: str, tasks: list[Task]) -> bool:
        groups = group_tasks_by_project(tasks)
        backend, frontend = groups[BACKEND], groups[FRONTEND]

        await self._log(
            batch_id,
            f"Starting execution: {len(backend)} backend task(s), "
            f"{len(frontend)} frontend task(s)",
        )

        outcomes = await asyncio.gather(
            self._run_bucket(batch_id, BACKEND, backend),
            self._run_bucket(batch_id, FRONTEND, frontend),
            return_exceptions=True,
        )
        for project, outcome in zip((BACKEND, FRONTEND), outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "[%s] %s bucket crashed", batch_id, project, exc_info=outcome
                )
        backend_ok, frontend_ok = (outcome is True for outcome in outcomes)

        success = backend_ok and frontend_ok
        await self._log(
            batch_id,
            f"Execution {'completed' if success else 'failed'} "
            f"(backend: {'ok' if backend_ok else 'failed'}, "
            f"frontend: {'ok' if frontend_ok else 'failed'})",
            "info" if success else "error",
        )
        return success

    async def _run_bucket(self, batch_id: str, project: str, tasks: list[Task]) -> bool:
        if not tasks:
            return True

        ordered = sort_tasks_by_dependency(tasks)
        by_id = {t.id: t for t in tasks}
        logger.debug("[%s] %s order: %s", batch_id, project, [t.id for t in ordered])

        for task in ordered:
            machine = TaskStateMachine(task.status)
            if not machine.can_start():
                await self._log(
                    batch_id, f"[{project}] Skipping {task.id}: status is {task.status.value}"
                )
                continue

            missing = [
                dep for dep in task.depends_on
                if dep not in by_id or by_id[dep].status != TaskStatus.COMPLETED
            ]
            if missing:
                await self._log(batch_id, f"[{project}] {DependencyUnsatisfied(task.id, missing)}", "warn")
                continue

            if not await self._run_task(batch_id, project, task, machine):
                await self._log(
                    batch_id, f"[{project}] Aborting remaining tasks after {task.id} failed", "error"
                )
                return False

        return True

    async def _run_task(
        self, batch_id: str, project: str, task: Task, machine: TaskStateMachine
    ) -> bool:
        machine.start()
        task.status = machine.status
        task.started_at = utc_now()
        await self.store.save_task_result(batch_id, task)
        await self._log(batch_id, f"[{project}] Running {task.id}: {task.title}")

        started = time.monotonic()
        try:
            result = await self.adapter.execute(build_task_prompt(task), cwd=self.cwd)
        except Exception as exc:
            machine.transition(TaskStatus.FAILED)
            task.status = machine.status
            task.completed_at = utc_now()
            task.result = TaskResult(
                exit_code=1,
                error=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            await self.store.save_task_result(batch_id, task)
            await self._log(batch_id, f"[{project}] {task.id} failed: {exc}", "error")
            return False

        machine.complete()
        task.status = machine.status
        task.completed_at = utc_now()
        task.result = TaskResult(
            exit_code=result.exit_code,
            output=result.output,
            duration_ms=result.duration_ms,
            tool_name=result.tool_name,
        )
        await self.store.save_task_result(batch_id, task)
        await self._log(
            batch_id,
            f"[{project}] {task.id} completed in {result.duration_ms}ms via {result.tool_name}",
        )
        return True

    async def _log(self, batch_id: str, message: str, level: str = "info") -> None:
        log = {"warn": logger.warning, "error": logger.error}.get(level, logger.info)
        log("[%s] %s", batch_id, message)
        await self.store.append_log(batch_id, message, level)
