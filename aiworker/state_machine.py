"""Generic status state machine, parameterized by domain transition table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .models import ClarificationStatus, FeedbackStatus, TaskStatus, utc_now
from .transitions import (
    CLARIFICATION,
    FEEDBACK,
    TASK,
    can_transition,
    is_failed_status,
    is_terminal_status,
    table_for,
)

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Raised when a status change is not in the domain's transition table."""

    def __init__(self, domain: str, current: str, target: str):
        self.domain = domain
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid {domain} state transition from {current} to {target}"
        )


@dataclass
class TransitionResult:
    success: bool
    new_status: Enum | str | None = None
    error: InvalidTransition | None = None


@dataclass(frozen=True)
class HistoryEntry:
    status: Enum | str
    timestamp: str


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class StateMachine:
    """Holds a current status, validates changes, records history.

    The history is seeded with the initial status. Re-applying the current
    status is a silent no-op; ``force_transition`` bypasses the table.
    """

    def __init__(self, domain: str, initial_status):
        table_for(domain)
        self.domain = domain
        self._status_type = type(initial_status) if isinstance(initial_status, Enum) else str
        self._current = initial_status
        self._history: list[HistoryEntry] = []
        self._record(initial_status)

    @property
    def status(self):
        return self._current

    @property
    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    def transition(self, target) -> TransitionResult:
        try:
            target = self._coerce(target)
        except ValueError:
            error = InvalidTransition(self.domain, _value(self._current), _value(target))
            logger.debug("%s", error)
            return TransitionResult(success=False, error=error)
        if _value(target) == _value(self._current):
            return TransitionResult(success=True, new_status=target)

        if not can_transition(self.domain, self._current, target):
            error = InvalidTransition(self.domain, _value(self._current), _value(target))
            logger.debug("%s", error)
            return TransitionResult(success=False, error=error)

        self._current = target
        self._record(target)
        return TransitionResult(success=True, new_status=target)

    def transition_or_raise(self, target):
        result = self.transition(target)
        if not result.success:
            raise result.error
        return result.new_status

    def force_transition(self, target) -> TransitionResult:
        """Commit *target* without consulting the table.

        Raises ValueError when *target* is not a status of this domain.
        """
        target = self._coerce(target)
        logger.info(
            "%s: forced %s -> %s", self.domain, _value(self._current), _value(target)
        )
        self._current = target
        self._record(target)
        return TransitionResult(success=True, new_status=target)

    def is_terminal(self) -> bool:
        return is_terminal_status(self.domain, self._current)

    def is_failed(self) -> bool:
        return is_failed_status(self._current)

    def fail(self) -> TransitionResult:
        return self.transition("failed")

    def retry(self) -> TransitionResult:
        return self.transition("pending")

    def _coerce(self, status):
        if self._status_type is str:
            return _value(status)
        return self._status_type(_value(status))

    def _record(self, status) -> None:
        self._history.append(HistoryEntry(status=status, timestamp=utc_now()))


class TaskStateMachine(StateMachine):
    def __init__(self, initial_status=TaskStatus.PENDING):
        super().__init__(TASK, TaskStatus(_value(initial_status)))

    def can_start(self) -> bool:
        return self.status == TaskStatus.PENDING

    def start(self) -> TransitionResult:
        return self.transition(TaskStatus.IN_PROGRESS)

    def complete(self) -> TransitionResult:
        return self.transition(TaskStatus.COMPLETED)

    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class FeedbackStateMachine(StateMachine):
    def __init__(self, initial_status=FeedbackStatus.PENDING):
        super().__init__(FEEDBACK, FeedbackStatus(_value(initial_status)))

    def can_analyze(self) -> bool:
        return self.status == FeedbackStatus.PENDING

    def start_analyzing(self) -> TransitionResult:
        return self.transition(FeedbackStatus.ANALYZING)

    def start_executing(self) -> TransitionResult:
        return self.transition(FeedbackStatus.EXECUTING)

    def complete(self) -> TransitionResult:
        return self.transition(FeedbackStatus.COMPLETED)


class ClarificationStateMachine(StateMachine):
    def __init__(self, initial_status=ClarificationStatus.PENDING):
        super().__init__(CLARIFICATION, ClarificationStatus(_value(initial_status)))

    def can_process(self) -> bool:
        return self.status == ClarificationStatus.PENDING

    def start_processing(self) -> TransitionResult:
        return self.transition(ClarificationStatus.PROCESSING)

    def await_user(self) -> TransitionResult:
        return self.transition(ClarificationStatus.AWAITING)

    def confirm(self) -> TransitionResult:
        return self.transition(ClarificationStatus.CONFIRMED)

    def cancel(self) -> TransitionResult:
        return self.transition(ClarificationStatus.CANCELLED)

    def expire(self) -> TransitionResult:
        return self.transition(ClarificationStatus.EXPIRED)


def machine_for(domain: str, status) -> StateMachine:
    """Build the domain-specific machine seeded with *status*."""
    if domain == TASK:
        return TaskStateMachine(status)
    if domain == FEEDBACK:
        return FeedbackStateMachine(status)
    if domain == CLARIFICATION:
        return ClarificationStateMachine(status)
    raise ValueError(f"Unknown status domain: {domain!r}")
