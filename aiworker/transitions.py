"""Status transition tables for each work domain."""

from __future__ import annotations

CLARIFICATION = "clarification"
FEEDBACK = "feedback"
TASK = "task"

CLARIFICATION_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"awaiting", "confirmed", "failed"}),
    "awaiting": frozenset({"confirmed", "cancelled", "expired"}),
    "confirmed": frozenset(),
    "cancelled": frozenset(),
    "expired": frozenset(),
    "failed": frozenset({"pending"}),
}

FEEDBACK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"analyzing", "failed"}),
    "analyzing": frozenset({"executing", "failed"}),
    "executing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset({"pending"}),
}

TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress"}),
    "in_progress": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset({"pending"}),
}

TABLES: dict[str, dict[str, frozenset[str]]] = {
    CLARIFICATION: CLARIFICATION_TRANSITIONS,
    FEEDBACK: FEEDBACK_TRANSITIONS,
    TASK: TASK_TRANSITIONS,
}

FAILED_STATUSES = frozenset({"failed", "expired"})


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


def table_for(domain: str) -> dict[str, frozenset[str]]:
    try:
        return TABLES[domain]
    except KeyError:
        raise ValueError(f"Unknown status domain: {domain!r}") from None


def allowed_targets(domain: str, status) -> frozenset[str]:
    """Successor set for *status*; unknown statuses have none."""
    return table_for(domain).get(_value(status), frozenset())


def can_transition(domain: str, current, target) -> bool:
    return _value(target) in allowed_targets(domain, current)


def is_terminal_status(domain: str, status) -> bool:
    table = table_for(domain)
    value = _value(status)
    return value in table and not table[value]


def is_failed_status(status) -> bool:
    return _value(status) in FAILED_STATUSES
