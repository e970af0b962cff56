# This project was developed with assistance from AI tools.
"""Tests for the workflow state transition table."""

import pytest

from loan_workflow.enums import WorkflowState


def test_closed_is_only_terminal_state():
    assert WorkflowState.terminal_states() == frozenset({WorkflowState.CLOSED})
    assert WorkflowState.valid_transitions()[WorkflowState.CLOSED] == frozenset()


def test_every_state_has_transition_entry():
    assert set(WorkflowState.valid_transitions()) == set(WorkflowState)


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (WorkflowState.START, WorkflowState.SALES, True),
        (WorkflowState.START, WorkflowState.VERIFY, False),
        (WorkflowState.VERIFY, WorkflowState.CLOSED, True),
        (WorkflowState.VERIFY, WorkflowState.MANUAL_REVIEW, False),
        (WorkflowState.UNDERWRITE, WorkflowState.MANUAL_REVIEW, True),
        (WorkflowState.SANCTION, WorkflowState.MANUAL_REVIEW, True),
        (WorkflowState.MANUAL_REVIEW, WorkflowState.SANCTION, True),
        (WorkflowState.MANUAL_REVIEW, WorkflowState.UNDERWRITE, False),
        (WorkflowState.CLOSED, WorkflowState.START, False),
    ],
)
def test_can_transition_to(current, target, allowed):
    assert current.can_transition_to(target) is allowed
