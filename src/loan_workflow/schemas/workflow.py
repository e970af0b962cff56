# This project was developed with assistance from AI tools.
"""Orchestrator result and monitoring schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..core.exceptions import WorkflowErrorCode
from ..enums import WorkflowState
from . import StageInfo
from .session import AuditEntry, SessionSnapshot
from .stage import SanctionResult, VerificationResult
from .underwriting import UnderwritingDecision


class StartResult(BaseModel):
    """Result of starting (or resuming) a session."""

    success: bool
    session_id: str
    state: WorkflowState | None = None
    message: str | None = None
    error: str | None = None
    error_code: WorkflowErrorCode | None = None
    session: SessionSnapshot | None = None


class ProgressResult(BaseModel):
    """Result of one progression attempt.

    On success ``previous_state``/``new_state`` describe the transition.
    On failure ``state`` is the session state after the call (unchanged for
    rejected requests, CLOSED or MANUAL_REVIEW for terminal rejections and
    escalations) and ``error_code`` classifies the outcome.
    """

    success: bool
    session_id: str
    previous_state: WorkflowState | None = None
    new_state: WorkflowState | None = None
    state: WorkflowState | None = None
    message: str | None = None
    error: str | None = None
    error_code: WorkflowErrorCode | None = None
    reason: str | None = Field(default=None, description="Reason queued for manual review")
    details: Any = None
    session: SessionSnapshot | None = None

    @property
    def escalated(self) -> bool:
        return self.error_code == WorkflowErrorCode.ESCALATION


class SessionStatus(BaseModel):
    """Read-only status view of one session."""

    session_id: str
    state: WorkflowState
    stage_info: StageInfo
    locked: bool
    user_data: dict[str, Any] = Field(default_factory=dict)
    verification_result: VerificationResult | None = None
    underwriting_result: UnderwritingDecision | None = None
    sanction_result: SanctionResult | None = None
    manual_review_queued: bool = False
    manual_review_reason: str | None = None
    audit_log: list[AuditEntry] = Field(default_factory=list)
    timestamp: datetime


class WorkflowStats(BaseModel):
    """Aggregate counters across every known session."""

    total_sessions: int
    by_state: dict[str, int] = Field(default_factory=dict)
    manual_review_count: int
    failure_count: int
    closed_count: int
    computed_at: datetime
