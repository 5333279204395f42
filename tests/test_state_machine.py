"""Tests for transition tables and the status state machine."""

import pytest
from aiworker.models import ClarificationStatus, FeedbackStatus, TaskStatus
from aiworker.state_machine import (
    ClarificationStateMachine,
    FeedbackStateMachine,
    InvalidTransition,
    StateMachine,
    TaskStateMachine,
    machine_for,
)
from aiworker.transitions import (
    CLARIFICATION,
    FEEDBACK,
    TABLES,
    TASK,
    allowed_targets,
    can_transition,
    is_failed_status,
    is_terminal_status,
)


# --- Tables ---

@pytest.mark.parametrize("domain", [CLARIFICATION, FEEDBACK, TASK])
def test_failed_to_pending_everywhere(domain):
    assert can_transition(domain, "failed", "pending")


@pytest.mark.parametrize("domain", [CLARIFICATION, FEEDBACK, TASK])
def test_terminal_iff_no_successors(domain):
    for status, targets in TABLES[domain].items():
        assert is_terminal_status(domain, status) == (not targets)


def test_clarification_edges():
    assert allowed_targets(CLARIFICATION, "pending") == {"processing", "cancelled"}
    assert allowed_targets(CLARIFICATION, "processing") == {"awaiting", "confirmed", "failed"}
    assert allowed_targets(CLARIFICATION, "awaiting") == {"confirmed", "cancelled", "expired"}
    assert not can_transition(CLARIFICATION, "pending", "expired")


def test_unknown_status_has_no_successors():
    assert allowed_targets(TASK, "paused") == frozenset()
    assert not is_terminal_status(TASK, "paused")


def test_unknown_domain():
    with pytest.raises(ValueError):
        allowed_targets("video", "pending")


def test_failed_statuses():
    assert is_failed_status("failed")
    assert is_failed_status(ClarificationStatus.EXPIRED)
    assert not is_failed_status("cancelled")


# --- StateMachine ---

def test_history_seeded_with_initial():
    sm = TaskStateMachine()
    assert [h.status for h in sm.history] == [TaskStatus.PENDING]


def test_self_transition_is_noop():
    sm = FeedbackStateMachine(FeedbackStatus.ANALYZING)
    result = sm.transition(FeedbackStatus.ANALYZING)
    assert result.success
    assert len(sm.history) == 1


def test_legal_transition_appends_history():
    sm = TaskStateMachine()
    assert sm.start().success
    assert sm.complete().success
    assert [h.status for h in sm.history] == [
        TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED,
    ]
    assert sm.is_completed()
    assert sm.is_terminal()


def test_illegal_transition_leaves_state():
    sm = TaskStateMachine()
    result = sm.transition(TaskStatus.COMPLETED)
    assert not result.success
    assert isinstance(result.error, InvalidTransition)
    assert result.error.current == "pending"
    assert result.error.target == "completed"
    assert sm.status == TaskStatus.PENDING
    assert len(sm.history) == 1


def test_transition_or_raise():
    sm = ClarificationStateMachine()
    with pytest.raises(InvalidTransition):
        sm.transition_or_raise(ClarificationStatus.CONFIRMED)


def test_accepts_plain_strings():
    sm = FeedbackStateMachine("pending")
    assert sm.transition("analyzing").success
    assert sm.status is FeedbackStatus.ANALYZING


def test_unknown_target_status_fails():
    sm = TaskStateMachine()
    result = sm.transition("bogus")
    assert not result.success
    assert isinstance(result.error, InvalidTransition)
    assert result.error.target == "bogus"
    assert sm.status is TaskStatus.PENDING
    assert len(sm.history) == 1


def test_force_unknown_status_raises():
    with pytest.raises(ValueError):
        TaskStateMachine().force_transition("bogus")


def test_force_transition_bypasses_table():
    sm = ClarificationStateMachine(ClarificationStatus.PENDING)
    sm.force_transition(ClarificationStatus.EXPIRED)
    assert sm.status == ClarificationStatus.EXPIRED
    assert sm.is_failed()
    assert sm.is_terminal()


def test_force_transition_same_status_records_history():
    sm = TaskStateMachine()
    sm.force_transition(TaskStatus.PENDING)
    assert len(sm.history) == 2


def test_fail_and_retry():
    sm = FeedbackStateMachine(FeedbackStatus.EXECUTING)
    assert sm.fail().success
    assert sm.is_failed()
    assert sm.retry().success
    assert sm.status == FeedbackStatus.PENDING


def test_clarification_lifecycle():
    sm = ClarificationStateMachine()
    assert sm.can_process()
    sm.start_processing()
    sm.await_user()
    assert sm.expire().success
    assert sm.is_failed()


def test_machine_for():
    assert isinstance(machine_for("task", "pending"), TaskStateMachine)
    assert isinstance(machine_for("feedback", "analyzing"), FeedbackStateMachine)
    assert isinstance(machine_for("clarification", "awaiting"), ClarificationStateMachine)
    with pytest.raises(ValueError):
        machine_for("video", "pending")


def test_generic_machine_with_strings():
    sm = StateMachine(TASK, "pending")
    assert sm.transition("in_progress").success
    assert sm.status == "in_progress"
