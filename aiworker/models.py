"""Core data models for aiworker."""

from __future__ import annotations

import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ClarificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING = "awaiting"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


class FeedbackStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProjectScope(str, Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"
    FULLSTACK = "fullstack"


KIND_CLARIFICATION = "clarification"
KIND_FEEDBACK = "feedback"

_STATUS_BY_KIND = {
    KIND_CLARIFICATION: ClarificationStatus,
    KIND_FEEDBACK: FeedbackStatus,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def today_partition() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def generate_id(now: datetime | None = None) -> str:
    """Return a sortable work item id: ``YYYYMMDD-HHMMSS-xxxxx``."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{suffix}"


def partition_of(item_id: str) -> str:
    """Extract the ``YYYY-MM-DD`` partition embedded in a work item id."""
    date_part = item_id.split("-", 1)[0]
    if len(date_part) != 8 or not date_part.isdigit():
        raise ValueError(f"Work item id has no date prefix: {item_id!r}")
    return f"{date_part[:4]}-{date_part[4:6]}-{date_part[6:8]}"


def status_for(kind: str, value: str):
    """Coerce a raw status string into the enum of the given work item kind."""
    return _STATUS_BY_KIND[kind](value)


# ---------------------------------------------------------------------------
# Clarification pieces
# ---------------------------------------------------------------------------

@dataclass
class Summary:
    """Synopsis of a request: goals, acceptance criteria, open ambiguities."""

    summary: str = ""
    goals: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    ambiguity: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "goals": list(self.goals),
            "acceptance_criteria": list(self.acceptance_criteria),
            "ambiguity": list(self.ambiguity),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> Summary | None:
        if data is None:
            return None
        return cls(
            summary=data.get("summary") or "",
            goals=list(data.get("goals") or []),
            acceptance_criteria=list(data.get("acceptance_criteria") or []),
            ambiguity=list(data.get("ambiguity") or []),
        )


@dataclass
class Question:
    id: str
    question: str
    options: list[str] = field(default_factory=list)
    required: bool = True
    answer: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "question": self.question,
            "options": list(self.options),
            "required": self.required,
            "answer": self.answer,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Question:
        return cls(
            id=str(data.get("id", "")),
            question=data.get("question", ""),
            options=list(data.get("options") or []),
            required=bool(data.get("required", True)),
            answer=data.get("answer"),
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass
class TaskResult:
    exit_code: int
    output: str = ""
    error: str | None = None
    duration_ms: int = 0
    tool_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "tool_name": self.tool_name,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> TaskResult | None:
        if data is None:
            return None
        return cls(
            exit_code=int(data.get("exit_code", 0)),
            output=data.get("output") or "",
            error=data.get("error"),
            duration_ms=int(data.get("duration_ms", 0)),
            tool_name=data.get("tool_name"),
        )


@dataclass
class Task:
    """A single executable task within a feedback's plan."""

    id: str
    title: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    project: str = "backend"  # "backend" | "frontend"
    depends_on: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: TaskResult | None = None
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "files": list(self.files),
            "project": self.project,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Task:
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            description=data.get("description") or "",
            files=list(data.get("files") or []),
            project=data.get("project") or "backend",
            depends_on=list(data.get("depends_on") or []),
            status=TaskStatus(data.get("status", "pending")),
            result=TaskResult.from_dict(data.get("result")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class Plan:
    """Planning documents and the task list derived from them."""

    spec: str = ""
    plan: str = ""
    tasks: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "spec": self.spec,
            "plan": self.plan,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> Plan | None:
        if data is None:
            return None
        return cls(
            spec=data.get("spec") or "",
            plan=data.get("plan") or "",
            tasks=[Task.from_dict(t) for t in data.get("tasks") or []],
        )


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------

@dataclass
class WorkItem:
    """Fields shared by clarifications and feedbacks."""

    id: str
    raw_input: str
    project_scope: ProjectScope = ProjectScope.BACKEND
    created_at: str = ""
    updated_at: str = ""

    kind = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "raw_input": self.raw_input,
            "project_scope": self.project_scope.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @property
    def partition(self) -> str:
        return partition_of(self.id)


@dataclass
class Clarification(WorkItem):
    status: ClarificationStatus = ClarificationStatus.PENDING
    summary: Summary | None = None
    questions: list[Question] | None = None

    kind = KIND_CLARIFICATION

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["summary"] = self.summary.to_dict() if self.summary else None
        data["questions"] = (
            [q.to_dict() for q in self.questions] if self.questions is not None else None
        )
        return data


@dataclass
class Feedback(WorkItem):
    status: FeedbackStatus = FeedbackStatus.PENDING
    summary: Summary | None = None
    plan: Plan | None = None
    origin_clarification_id: str | None = None

    kind = KIND_FEEDBACK

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["summary"] = self.summary.to_dict() if self.summary else None
        data["plan"] = self.plan.to_dict() if self.plan else None
        data["origin_clarification_id"] = self.origin_clarification_id
        return data


def work_item_from_dict(data: dict) -> Clarification | Feedback:
    """Rebuild a Clarification or Feedback from its stored document."""
    common = dict(
        id=data["id"],
        raw_input=data.get("raw_input", ""),
        project_scope=ProjectScope(data.get("project_scope", "backend")),
        created_at=data.get("created_at", ""),
        updated_at=data.get("updated_at", ""),
    )
    kind = data.get("kind")
    if kind == KIND_CLARIFICATION:
        questions = data.get("questions")
        return Clarification(
            **common,
            status=ClarificationStatus(data.get("status", "pending")),
            summary=Summary.from_dict(data.get("summary")),
            questions=(
                [Question.from_dict(q) for q in questions] if questions is not None else None
            ),
        )
    if kind == KIND_FEEDBACK:
        return Feedback(
            **common,
            status=FeedbackStatus(data.get("status", "pending")),
            summary=Summary.from_dict(data.get("summary")),
            plan=Plan.from_dict(data.get("plan")),
            origin_clarification_id=data.get("origin_clarification_id"),
        )
    raise ValueError(f"Unknown work item kind: {kind!r}")


# ---------------------------------------------------------------------------
# Tool bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class ToolRecord:
    """Persisted health of one execution backend."""

    name: str
    available: bool = True
    last_success_at: int | None = None   # epoch ms
    last_failure_at: int | None = None   # epoch ms
    average_response_ms: float | None = None
    failure_count: int = 0


@dataclass
class ExecuteResult:
    """Outcome of one backend invocation."""

    exit_code: int
    output: str
    duration_ms: int
    tool_name: str
    error: str | None = None
