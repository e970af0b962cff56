# This project was developed with assistance from AI tools.
"""Session snapshot and audit trail schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..enums import WorkflowState
from .stage import SanctionResult, VerificationResult
from .underwriting import UnderwritingDecision


class AuditEntry(BaseModel):
    """Single append-only audit record on a session."""

    timestamp: datetime
    event_type: str
    details: dict[str, Any] = Field(default_factory=dict)
    state: WorkflowState = Field(description="Session state at the time the entry was written")


class FailureLogItem(BaseModel):
    stage: str
    failure_count: int


class SessionSnapshot(BaseModel):
    """Point-in-time copy of a session, safe to hand to callers."""

    session_id: str
    state: WorkflowState
    created_at: datetime
    updated_at: datetime
    locked: bool
    lock_acquired_at: datetime | None = None
    user_data: dict[str, Any] = Field(default_factory=dict)
    verification_result: VerificationResult | None = None
    underwriting_result: UnderwritingDecision | None = None
    sanction_result: SanctionResult | None = None
    manual_review_queued: bool = False
    manual_review_reason: str | None = None
    failure_count: dict[str, int] = Field(default_factory=dict)
    failure_log: list[FailureLogItem] = Field(default_factory=list)
    audit_log: list[AuditEntry] = Field(default_factory=list)
