"""Prompt and planning-document templates."""

from __future__ import annotations

import json
import re

from .models import Clarification, ProjectScope, Summary, Task

PROJECT_SCOPE_LABELS = {
    "backend": "Backend project",
    "frontend": "Frontend project",
    "fullstack": "Full stack (backend and frontend)",
}

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)\s*```")
_BRACES = re.compile(r"\{[\s\S]*\}")


def _scope_value(scope) -> str:
    return scope.value if isinstance(scope, ProjectScope) else str(scope)


def extract_json_block(response: str) -> str | None:
    """Pull a JSON document out of an AI response.

    Tries a ```json fence, then any fence holding an object/array, then the
    whole response, then the outermost ``{...}``.
    """
    match = _JSON_FENCE.search(response)
    if match and match.group(1).strip():
        return match.group(1).strip()

    match = _ANY_FENCE.search(response)
    if match:
        content = match.group(1).strip()
        if content.startswith(("{", "[")):
            return content

    trimmed = response.strip()
    if trimmed.startswith(("{", "[")):
        return trimmed

    match = _BRACES.search(response)
    if match:
        return match.group(0)
    return None


def build_analysis_prompt(clarification: Clarification) -> str:
    scope = PROJECT_SCOPE_LABELS.get(_scope_value(clarification.project_scope), "")
    example = {
        "needsClarification": True,
        "summary": "One-sentence summary of the request",
        "goals": ["goal 1", "goal 2"],
        "acceptanceCriteria": ["criterion 1", "criterion 2"],
        "ambiguity": ["open point 1"],
        "questions": [
            {
                "id": "q1",
                "question": "Question text?",
                "options": ["Option A", "Option B"],
                "required": True,
            }
        ],
    }
    return "\n".join([
        "You are a requirements analyst. Decide whether the request below is",
        "clear enough to go straight into development.",
        "",
        "## Request",
        clarification.raw_input,
        "",
        "## Project scope",
        scope,
        "",
        "## Your task",
        "1. Extract the functional goals.",
        "2. Define acceptance criteria.",
        "3. Decide whether the request is ambiguous.",
        "4. If it is, write clarifying questions.",
        "",
        "## Output format",
        "Reply with JSON only, in exactly this shape:",
        "",
        "```json",
        json.dumps(example, indent=2),
        "```",
        "",
        "- needsClarification: true when the user must supply more information",
        "- goals and acceptanceCriteria: two or three entries each",
        "- questions: one to three entries when needsClarification is true",
    ])


def generate_spec_content(
    item_id: str,
    description: str,
    project_scope,
    summary: Summary | None = None,
) -> str:
    title = (summary.summary if summary and summary.summary else description).strip()
    scope = PROJECT_SCOPE_LABELS.get(_scope_value(project_scope), _scope_value(project_scope))
    lines = [
        f"# Feature spec: {title}",
        "",
        f"> Project: {scope}",
        f"> Request id: {item_id}",
        "",
        "## Original request",
        "```",
        description,
        "```",
        "",
    ]

    if summary and summary.goals:
        lines.append("## Goals")
        lines.extend(f"- {goal}" for goal in summary.goals)
        lines.append("")

    if summary and summary.acceptance_criteria:
        lines.append("## Acceptance criteria")
        lines.extend(
            f"- [ ] AC-{i:02d}: {criterion}"
            for i, criterion in enumerate(summary.acceptance_criteria, 1)
        )
        lines.append("")

    lines.extend([
        "## Coding principles",
        "- Return early",
        "- Prefer composition over inheritance",
        "- Prefer pure functions",
        "- Follow the constitution's architecture constraints",
        "",
    ])

    if summary and summary.ambiguity:
        lines.append("## Open points")
        lines.extend(f"{i}. {point}" for i, point in enumerate(summary.ambiguity, 1))
        lines.append("")

    return "\n".join(lines)


def build_plan_prompt(spec: str, constitution: str, project_scope) -> str:
    lines = ["You are an implementation planner for spec-driven development.", ""]

    if _scope_value(project_scope) == "fullstack":
        lines.extend([
            "## Important",
            "This request touches **both** the backend and the frontend project;",
            "plan both.",
            "",
        ])

    lines.extend([
        "## Spec",
        spec,
        "",
        "## Architecture constraints (constitution)",
        constitution,
        "",
        "## Output",
        "Write a complete technical plan with these sections:",
        "",
        "### 1. Approach",
        "### 2. Files and modules touched",
        "### 3. Implementation steps (each independently verifiable, under 30 minutes)",
        "### 4. Risks and mitigations",
        "### 5. Test strategy",
    ])
    return "\n".join(lines)


def fallback_plan(description: str) -> str:
    return "\n".join([
        "## Approach",
        f'Implement "{description[:30]}...".',
        "",
        "## Files and modules touched",
        "- New: feature module under `src/features/`",
        "- Changed: main entry point",
        "",
        "## Implementation steps",
        "1. Create the feature module",
        "2. Implement the core logic",
        "3. Wire it into the application",
        "4. Add error handling",
        "",
        "## Risks and mitigations",
        "- Backwards compatibility: existing behaviour must not change",
        "",
        "## Test strategy",
        "- Unit tests for the core logic",
    ])


def build_tasks_prompt(spec: str, plan: str) -> str:
    example = {
        "tasks": [
            {
                "id": "task-1",
                "title": "Short task title",
                "description": "What exactly to do",
                "files": ["path/to/file"],
                "dependsOn": [],
                "project": "backend",
            }
        ]
    }
    return "\n".join([
        "Break the spec and plan below into executable tasks.",
        "",
        "## Spec",
        spec,
        "",
        "## Plan",
        plan,
        "",
        "## Output",
        "Reply with exactly one JSON object:",
        "",
        "```json",
        json.dumps(example, indent=2),
        "```",
        "",
        "## Constraints",
        "- `id`: task-N, numbered from 1",
        "- `dependsOn`: ids of tasks that must finish first; [] for none",
        "- `project`: required, backend or frontend",
        "- a task depends only on tasks of the same project",
        "- each task should take under 30 minutes",
        "- backend and frontend tasks run in parallel",
    ])


def build_task_prompt(task: Task) -> str:
    lines = [f"Task: {task.title}", "", task.description, ""]

    if task.files:
        lines.append("Files:")
        lines.extend(f"  - {f}" for f in task.files)
        lines.append("")

    if task.depends_on:
        lines.append(f"Depends on: {', '.join(task.depends_on)}")
        lines.append("")

    lines.append("Please carry out this task.")
    return "\n".join(lines)


def tasks_markdown(tasks: list[Task]) -> str:
    lines = ["# Tasks", "", f"{len(tasks)} task(s)", ""]
    for task in tasks:
        lines.extend([
            f"## {task.id}: {task.title}",
            "",
            f"**Project**: {task.project}",
            "",
            f"**Description**: {task.description}",
            "",
        ])
        if task.files:
            lines.append("**Files**:")
            lines.extend(f"  - {f}" for f in task.files)
            lines.append("")
        if task.depends_on:
            lines.append(f"**Depends on**: {', '.join(task.depends_on)}")
            lines.append("")
        lines.append(f"**Status**: {task.status.value}")
        lines.append("")
    return "\n".join(lines)
