# This project was developed with assistance from AI tools.
"""Workflow statistics over session snapshots.

Pure aggregation -- takes snapshots, never touches the store or a lock.
"""

from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime

from ..enums import WorkflowState
from ..schemas.session import SessionSnapshot
from ..schemas.workflow import WorkflowStats


def compute_workflow_stats(
    sessions: Iterable[SessionSnapshot],
    *,
    now: datetime | None = None,
) -> WorkflowStats:
    """Count sessions by state, manual reviews, failures and closures.

    ``failure_count`` sums every per-stage counter across all sessions.
    """
    by_state: Counter[str] = Counter()
    total = 0
    manual_review_count = 0
    failure_count = 0

    for session in sessions:
        total += 1
        by_state[session.state.value] += 1
        if session.manual_review_queued:
            manual_review_count += 1
        failure_count += sum(session.failure_count.values())

    return WorkflowStats(
        total_sessions=total,
        by_state=dict(by_state),
        manual_review_count=manual_review_count,
        failure_count=failure_count,
        closed_count=by_state.get(WorkflowState.CLOSED.value, 0),
        computed_at=now or datetime.now(UTC),
    )
