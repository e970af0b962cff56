# This project was developed with assistance from AI tools.
"""Workflow orchestrator -- the loan session state machine.

Each progression request takes the session lock, dispatches to the handler
for the current state, applies the resulting transition and releases the
lock on every exit path. Business outcomes (terminal rejection, escalation
to manual review) and request errors (unknown session, lock conflict,
invalid state) come back as ``ProgressResult`` values; exceptions never
escape while the lock is held.

Retry / escalation policy per stage:

    VERIFY      no retry; anything but PASS closes the session
    UNDERWRITE  no retry; anything but APPROVED escalates to MANUAL_REVIEW
    SANCTION    two attempts, then escalates to MANUAL_REVIEW
"""

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from ..core.config import settings
from ..core.exceptions import (
    InvalidStateError,
    LockConflictError,
    StageFailure,
    WorkflowError,
    WorkflowErrorCode,
    WorkflowValidationError,
)
from ..enums import WorkflowState
from ..schemas import StageInfo
from ..schemas.session import SessionSnapshot
from ..schemas.stage import ManualReviewDecision, SanctionResult, VerificationResult
from ..schemas.underwriting import UnderwritingDecision
from ..schemas.workflow import ProgressResult, SessionStatus, StartResult, WorkflowStats
from .handlers import StageData, StageHandlers, invoke_stage
from .monitoring import compute_workflow_stats
from .session_store import SessionRecord, SessionStore

logger = logging.getLogger(__name__)

# Structural bound: a sanction that fails twice goes to a human.
SANCTION_MAX_ATTEMPTS = 2

STAGE_INFO: dict[WorkflowState, StageInfo] = {
    WorkflowState.START: StageInfo(
        label="Start",
        description="Application started.",
    ),
    WorkflowState.SALES: StageInfo(
        label="Sales",
        description="Sales inquiry captured; applicant profile is collected next.",
    ),
    WorkflowState.VERIFY: StageInfo(
        label="Verification",
        description="Identity and document verification.",
    ),
    WorkflowState.UNDERWRITE: StageInfo(
        label="Underwriting",
        description="Credit assessment against the underwriting rules.",
    ),
    WorkflowState.SANCTION: StageInfo(
        label="Sanction",
        description="Loan sanction and sanction letter generation.",
    ),
    WorkflowState.MANUAL_REVIEW: StageInfo(
        label="Manual Review",
        description="Waiting for a loan officer decision.",
    ),
    WorkflowState.CLOSED: StageInfo(
        label="Closed",
        description="Application closed. No further action possible.",
    ),
}


@dataclass
class _StageOutcome:
    """What a stage step decided; the transition itself is applied by the caller."""

    next_state: WorkflowState
    success: bool = True
    error: str | None = None
    error_code: WorkflowErrorCode | None = None
    reason: str | None = None
    details: Any = None


_StageStep = Callable[[SessionRecord, StageData, StageHandlers | None], Awaitable[_StageOutcome]]


def _is_valid_session_id(session_id: Any) -> bool:
    return isinstance(session_id, str) and bool(session_id.strip())


def _released(snapshot: SessionSnapshot) -> SessionSnapshot:
    """Snapshot as it will look once the in-flight call has released its lock."""
    return snapshot.model_copy(update={"locked": False, "lock_acquired_at": None})


class WorkflowOrchestrator:
    """Drives sessions through the loan workflow state machine.

    Construct one per process (or per test) around an explicit SessionStore.
    """

    def __init__(self, store: SessionStore, *, default_reviewer: str | None = None):
        self._store = store
        self._default_reviewer = default_reviewer or settings.DEFAULT_REVIEWER
        self._steps: dict[WorkflowState, _StageStep] = {
            WorkflowState.START: self._initiate_sales,
            WorkflowState.SALES: self._initiate_verification,
            WorkflowState.VERIFY: self._process_verification,
            WorkflowState.UNDERWRITE: self._process_underwriting,
            WorkflowState.SANCTION: self._process_sanction,
            WorkflowState.MANUAL_REVIEW: self._review_manually,
        }

    @property
    def store(self) -> SessionStore:
        return self._store

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_session(
        self, session_id: str, applicant_data: Mapping[str, Any] | None = None
    ) -> StartResult:
        """Create or resume a session and record the applicant's data.

        Fails with LOCK_CONFLICT, without mutating anything, when another
        operation holds the session.
        """
        if not _is_valid_session_id(session_id):
            return StartResult(
                success=False,
                session_id=str(session_id or ""),
                error="session_id is required",
                error_code=WorkflowErrorCode.VALIDATION,
            )
        applicant_data = applicant_data or {}
        if not isinstance(applicant_data, Mapping):
            return StartResult(
                success=False,
                session_id=session_id,
                error="applicant_data must be a mapping",
                error_code=WorkflowErrorCode.VALIDATION,
            )

        record = self._store.create(session_id)
        token = record.acquire_lock(self._store.lock_timeout_seconds)
        if token is None:
            logger.warning("Session %s is locked; start rejected", session_id)
            return StartResult(
                success=False,
                session_id=session_id,
                state=record.state,
                error=str(LockConflictError(session_id)),
                error_code=WorkflowErrorCode.LOCK_CONFLICT,
            )

        try:
            record.set_user_data(
                {**applicant_data, "started_at": datetime.now(UTC).isoformat()}
            )
            record.append_audit(
                "session_started",
                {"applicant": applicant_data.get("applicant_name") or "Unknown"},
            )
            snapshot = record.snapshot()
        finally:
            record.release_lock(token)

        logger.info("Session %s started in state %s", session_id, snapshot.state.value)
        return StartResult(
            success=True,
            session_id=session_id,
            state=snapshot.state,
            message="Application session started successfully",
            session=_released(snapshot),
        )

    async def progress_session(
        self,
        session_id: str,
        stage_data: StageData | None = None,
        handlers: StageHandlers | None = None,
    ) -> ProgressResult:
        """Advance a session by one stage.

        Args:
            session_id: Session to progress.
            stage_data: Input for the current stage (user profile, verification
                documents, loan terms, manual review decision, ...).
            handlers: Stage handlers for VERIFY / UNDERWRITE / SANCTION.

        Returns:
            ProgressResult. ``success`` is True only for a normal forward
            transition; escalations and terminal rejections also report the
            new state.
        """
        if not _is_valid_session_id(session_id):
            return ProgressResult(
                success=False,
                session_id=str(session_id or ""),
                error="session_id is required",
                error_code=WorkflowErrorCode.VALIDATION,
            )
        stage_data = stage_data if stage_data is not None else {}
        if not isinstance(stage_data, Mapping):
            return ProgressResult(
                success=False,
                session_id=session_id,
                error="stage_data must be a mapping",
                error_code=WorkflowErrorCode.VALIDATION,
            )

        record = self._store.get(session_id)
        if record is None:
            return ProgressResult(
                success=False,
                session_id=session_id,
                error="Session not found",
                error_code=WorkflowErrorCode.NOT_FOUND,
            )

        token = record.acquire_lock(self._store.lock_timeout_seconds)
        if token is None:
            logger.warning("Session %s is locked; progression rejected", session_id)
            return ProgressResult(
                success=False,
                session_id=session_id,
                state=record.state,
                error=str(LockConflictError(session_id)),
                error_code=WorkflowErrorCode.LOCK_CONFLICT,
            )

        previous_state = record.state
        try:
            step = self._steps.get(previous_state)
            if step is None:
                raise InvalidStateError(f"Cannot progress from state: {previous_state.value}")

            outcome = await step(record, stage_data, handlers)
            record.transition_to(outcome.next_state)
            snapshot = record.snapshot()
        except WorkflowError as exc:
            logger.warning(
                "Session %s: progression from %s failed (%s): %s",
                session_id,
                previous_state.value,
                exc.code.value,
                exc,
            )
            return ProgressResult(
                success=False,
                session_id=session_id,
                state=record.state,
                error=str(exc),
                error_code=exc.code,
                # No snapshot once another call has reclaimed the lock.
                session=_released(record.snapshot()) if record.holds_lock() else None,
            )
        except Exception:
            logger.exception("Unexpected error progressing session %s", session_id)
            return ProgressResult(
                success=False,
                session_id=session_id,
                state=record.state,
                error="Unexpected error while progressing session",
                error_code=WorkflowErrorCode.INTERNAL,
            )
        finally:
            record.release_lock(token)

        new_state = outcome.next_state
        snapshot = _released(snapshot)

        if not outcome.success:
            logger.warning(
                "Session %s: %s -> %s (%s) %s",
                session_id,
                previous_state.value,
                new_state.value,
                outcome.error_code.value if outcome.error_code else "failure",
                outcome.reason or outcome.error,
            )
            return ProgressResult(
                success=False,
                session_id=session_id,
                previous_state=previous_state,
                new_state=new_state,
                state=new_state,
                error=outcome.error,
                error_code=outcome.error_code,
                reason=outcome.reason,
                details=outcome.details,
                session=snapshot,
            )

        logger.info("Session %s: %s -> %s", session_id, previous_state.value, new_state.value)
        return ProgressResult(
            success=True,
            session_id=session_id,
            previous_state=previous_state,
            new_state=new_state,
            state=new_state,
            message=f"Progressed from {previous_state.value} to {new_state.value}",
            details=outcome.details,
            session=snapshot,
        )

    # ------------------------------------------------------------------
    # Stage steps (called with the session lock held)
    # ------------------------------------------------------------------

    async def _initiate_sales(
        self, record: SessionRecord, stage_data: StageData, handlers: StageHandlers | None
    ) -> _StageOutcome:
        record.append_audit("sales_initiated", stage_data)
        return _StageOutcome(WorkflowState.SALES)

    async def _initiate_verification(
        self, record: SessionRecord, stage_data: StageData, handlers: StageHandlers | None
    ) -> _StageOutcome:
        profile = stage_data.get("user_profile") or {}
        if not isinstance(profile, Mapping):
            raise WorkflowValidationError("user_profile must be a mapping")

        if profile:
            record.set_user_data(profile)
        record.append_audit("verify_initiated", {"pan": profile.get("pan")})
        return _StageOutcome(WorkflowState.VERIFY)

    async def _process_verification(
        self, record: SessionRecord, stage_data: StageData, handlers: StageHandlers | None
    ) -> _StageOutcome:
        try:
            result = await invoke_stage(
                handlers,
                "verify",
                WorkflowState.VERIFY.value,
                VerificationResult,
                record.session_id,
                stage_data,
            )
        except StageFailure as exc:
            self._record_stage_error(record, exc)
            raise

        record.set_verification_result(result)
        if result.passed:
            record.append_audit("verification_passed", {"confidence": result.confidence})
            return _StageOutcome(WorkflowState.UNDERWRITE)

        record.append_audit(
            "verification_failed",
            {"status": result.status.value, "reason": result.reason},
        )
        return _StageOutcome(
            WorkflowState.CLOSED,
            success=False,
            error="Verification failed",
            error_code=WorkflowErrorCode.TERMINAL_REJECTION,
            details=result,
        )

    async def _process_underwriting(
        self, record: SessionRecord, stage_data: StageData, handlers: StageHandlers | None
    ) -> _StageOutcome:
        try:
            result = await invoke_stage(
                handlers,
                "underwrite",
                WorkflowState.UNDERWRITE.value,
                UnderwritingDecision,
                record.session_id,
                stage_data,
            )
        except StageFailure as exc:
            self._record_stage_error(record, exc)
            raise

        record.set_underwriting_result(result)
        decision_code = result.decision.value if result.decision else result.status.value
        if result.approved:
            record.append_audit("underwriting_approved", {"decision": decision_code})
            return _StageOutcome(WorkflowState.SANCTION, details=result)

        record.record_failure(WorkflowState.UNDERWRITE.value)
        reason = f"Underwriting decision: {decision_code}"
        record.queue_for_manual_review(reason)
        record.append_audit(
            "underwriting_rejected",
            {
                "status": result.status.value,
                "decision": decision_code,
                "queued_for_manual_review": True,
            },
        )
        return _StageOutcome(
            WorkflowState.MANUAL_REVIEW,
            success=False,
            error="Underwriting did not approve the application, queued for manual review",
            error_code=WorkflowErrorCode.ESCALATION,
            reason=reason,
            details=result,
        )

    async def _process_sanction(
        self, record: SessionRecord, stage_data: StageData, handlers: StageHandlers | None
    ) -> _StageOutcome:
        last_result: SanctionResult | None = None

        for attempt in range(1, SANCTION_MAX_ATTEMPTS + 1):
            try:
                result = await invoke_stage(
                    handlers,
                    "sanction",
                    WorkflowState.SANCTION.value,
                    SanctionResult,
                    record.session_id,
                    stage_data,
                )
            except StageFailure as exc:
                result = SanctionResult.failed(str(exc))

            if result.success:
                record.set_sanction_result(result)
                record.append_audit(
                    "sanction_successful",
                    {"attempt": attempt, "download_url": result.download_url},
                )
                return _StageOutcome(WorkflowState.CLOSED, details=result)

            last_result = result
            record.record_failure(WorkflowState.SANCTION.value)
            record.append_audit("sanction_failed", {"attempt": attempt, "error": result.error})
            logger.warning(
                "Sanction attempt %d/%d failed for session %s: %s",
                attempt,
                SANCTION_MAX_ATTEMPTS,
                record.session_id,
                result.error,
            )

        record.set_sanction_result(last_result)
        reason = f"Sanction failed after {SANCTION_MAX_ATTEMPTS} attempts: {last_result.error}"
        record.queue_for_manual_review(reason)
        return _StageOutcome(
            WorkflowState.MANUAL_REVIEW,
            success=False,
            error="Sanction failed after retries, queued for manual review",
            error_code=WorkflowErrorCode.ESCALATION,
            reason=reason,
            details=last_result,
        )

    async def _review_manually(
        self, record: SessionRecord, stage_data: StageData, handlers: StageHandlers | None
    ) -> _StageOutcome:
        try:
            review = ManualReviewDecision.model_validate(dict(stage_data))
        except ValidationError as exc:
            raise WorkflowValidationError("Manual review requires a decision") from exc

        reviewer = review.reviewed_by or self._default_reviewer
        if review.approved:
            record.append_audit(
                "manual_review_approved",
                {"reviewed_by": reviewer, "notes": review.notes},
            )
            next_state = WorkflowState.SANCTION
        else:
            record.append_audit(
                "manual_review_rejected",
                {"reviewed_by": reviewer, "decision": review.decision, "reason": review.reason},
            )
            next_state = WorkflowState.CLOSED

        if record.manual_review_queued:
            record.resolve_manual_review(reviewer)
        return _StageOutcome(next_state, details=review)

    @staticmethod
    def _record_stage_error(record: SessionRecord, exc: StageFailure) -> None:
        record.record_failure(exc.stage)
        record.append_audit("stage_error", {"stage": exc.stage, "error": str(exc)})

    # ------------------------------------------------------------------
    # Monitoring reads (no locking, snapshot semantics)
    # ------------------------------------------------------------------

    def get_session_status(self, session_id: str) -> SessionStatus | None:
        """Status view of one session, or None if the id is unknown."""
        record = self._store.get(session_id)
        if record is None:
            return None

        snapshot = record.snapshot()
        return SessionStatus(
            session_id=snapshot.session_id,
            state=snapshot.state,
            stage_info=STAGE_INFO[snapshot.state],
            locked=snapshot.locked,
            user_data=snapshot.user_data,
            verification_result=snapshot.verification_result,
            underwriting_result=snapshot.underwriting_result,
            sanction_result=snapshot.sanction_result,
            manual_review_queued=snapshot.manual_review_queued,
            manual_review_reason=snapshot.manual_review_reason,
            audit_log=snapshot.audit_log,
            timestamp=datetime.now(UTC),
        )

    def get_all_sessions(self) -> list[SessionSnapshot]:
        return [record.snapshot() for record in self._store.list()]

    def get_sessions_by_state(self, state: WorkflowState | str) -> list[SessionSnapshot]:
        state = WorkflowState(state)
        return [s for s in self.get_all_sessions() if s.state == state]

    def get_manual_review_queue(self) -> list[SessionSnapshot]:
        """Sessions currently waiting for a human decision."""
        return [s for s in self.get_all_sessions() if s.manual_review_queued]

    def get_workflow_stats(self) -> WorkflowStats:
        return compute_workflow_stats(self.get_all_sessions())
