# This project was developed with assistance from AI tools.
"""Tests for the workflow orchestrator state machine.

Handlers are AsyncMock doubles from tests.factories unless a test needs the
real underwriting engine.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from loan_workflow.core.exceptions import WorkflowErrorCode
from loan_workflow.enums import UnderwritingDecisionCode, WorkflowState
from loan_workflow.schemas.stage import SanctionResult
from loan_workflow.services.handlers import CallbackHandlers, make_underwriting_callback
from loan_workflow.services.orchestrator import WorkflowOrchestrator
from loan_workflow.services.session_store import SessionStore
from tests.factories import make_applicant, make_handlers, make_rules

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return SessionStore(lock_timeout_seconds=30)


@pytest.fixture
def orchestrator(store):
    return WorkflowOrchestrator(store)


_STAGE_INPUT = {
    WorkflowState.START: {},
    WorkflowState.SALES: {"user_profile": make_applicant()},
    WorkflowState.VERIFY: {"documents": ["pan.pdf"]},
    WorkflowState.UNDERWRITE: make_applicant(),
    WorkflowState.SANCTION: {},
}


async def _drive_to(orchestrator, session_id, target, handlers=None):
    """Start a session and progress it along the happy path until ``target``."""
    orchestrator.start_session(session_id, {"applicant_name": "Asha Rao"})
    handlers = handlers or make_handlers()

    state = WorkflowState.START
    while state != target:
        result = await orchestrator.progress_session(session_id, _STAGE_INPUT[state], handlers)
        assert result.success, result.error
        state = result.new_state
    return handlers


def _events(orchestrator, session_id):
    return [entry.event_type for entry in orchestrator.get_session_status(session_id).audit_log]


# ---------------------------------------------------------------------------
# start_session
# ---------------------------------------------------------------------------


class TestStartSession:
    """Session creation and resume."""

    def test_start_creates_session(self, orchestrator):
        result = orchestrator.start_session("s-1", {"applicant_name": "Asha Rao", "phone": "999"})

        assert result.success is True
        assert result.state == WorkflowState.START
        assert result.session.user_data["applicant_name"] == "Asha Rao"
        assert "started_at" in result.session.user_data
        assert result.session.locked is False
        assert _events(orchestrator, "s-1") == ["user_data_updated", "session_started"]
        assert result.session.audit_log[-1].details == {"applicant": "Asha Rao"}

    def test_unnamed_applicant(self, orchestrator):
        result = orchestrator.start_session("s-1", {})
        assert result.session.audit_log[-1].details == {"applicant": "Unknown"}

    @pytest.mark.asyncio
    async def test_start_resumes_existing_session(self, orchestrator):
        """Starting again keeps state and merges applicant data."""
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY)

        result = orchestrator.start_session("s-1", {"phone": "999"})

        assert result.success
        assert result.state == WorkflowState.VERIFY
        assert result.session.user_data["phone"] == "999"
        assert result.session.user_data["pan"] == "ABCDE1234F"

    def test_blank_session_id(self, orchestrator, store):
        result = orchestrator.start_session("  ", {})

        assert result.success is False
        assert result.error_code == WorkflowErrorCode.VALIDATION
        assert len(store) == 0

    def test_start_rejected_while_locked(self, orchestrator, store):
        orchestrator.start_session("s-1", {})
        store.acquire_lock("s-1")
        before = len(store.get("s-1").audit_log)

        result = orchestrator.start_session("s-1", {"phone": "999"})

        assert result.success is False
        assert result.error_code == WorkflowErrorCode.LOCK_CONFLICT
        assert "locked" in result.error
        assert len(store.get("s-1").audit_log) == before


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestHappyPath:
    """START -> SALES -> VERIFY -> UNDERWRITE -> SANCTION -> CLOSED."""

    @pytest.mark.asyncio
    async def test_full_workflow_closes_with_sanction_letter(self, orchestrator):
        handlers = await _drive_to(orchestrator, "s-1", WorkflowState.SANCTION)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert result.success is True
        assert result.previous_state == WorkflowState.SANCTION
        assert result.new_state == WorkflowState.CLOSED
        assert result.session.sanction_result.download_url == "https://docs.example/letter.pdf"
        assert result.session.locked is False
        handlers.sanction.assert_awaited_once()

        events = _events(orchestrator, "s-1")
        assert events.count("state_transition") == 5
        assert "sanction_successful" in events

    @pytest.mark.asyncio
    async def test_sales_to_verify_stores_profile(self, orchestrator):
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY)

        status = orchestrator.get_session_status("s-1")

        assert status.user_data["monthly_salary"] == 80000
        verify_initiated = [e for e in status.audit_log if e.event_type == "verify_initiated"]
        assert verify_initiated[0].details == {"pan": "ABCDE1234F"}

    @pytest.mark.asyncio
    async def test_handlers_receive_session_and_stage_data(self, orchestrator):
        handlers = await _drive_to(orchestrator, "s-1", WorkflowState.UNDERWRITE)

        handlers.verify.assert_awaited_once_with("s-1", {"documents": ["pan.pdf"]})

    @pytest.mark.asyncio
    async def test_real_underwriting_engine(self, orchestrator):
        """Rules engine wired in as the underwriting handler."""
        handlers = make_handlers()
        handlers.underwrite = AsyncMock(side_effect=make_underwriting_callback(make_rules()))
        await _drive_to(orchestrator, "s-1", WorkflowState.UNDERWRITE, handlers)

        result = await orchestrator.progress_session(
            "s-1", make_applicant(credit_score=780, requested_amount=400000), handlers
        )

        assert result.new_state == WorkflowState.SANCTION
        decision = result.session.underwriting_result
        assert decision.decision == UnderwritingDecisionCode.WITHIN_PRE_APPROVED_LIMIT


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    """VERIFY is terminal on anything but PASS and never retried."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["FAIL", "UNSURE"])
    async def test_non_pass_closes_session(self, orchestrator, status):
        handlers = make_handlers(verification={"status": status, "reason": "PAN mismatch"})
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY, handlers)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert result.success is False
        assert result.error_code == WorkflowErrorCode.TERMINAL_REJECTION
        assert result.state == WorkflowState.CLOSED
        assert result.session.verification_result.reason == "PAN mismatch"
        assert "verification_failed" in _events(orchestrator, "s-1")

    @pytest.mark.asyncio
    async def test_raising_handler_keeps_state_and_releases_lock(self, orchestrator, store):
        handlers = make_handlers(verification=RuntimeError("KYC timeout"))
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY, handlers)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert result.success is False
        assert result.error_code == WorkflowErrorCode.STAGE_FAILURE
        assert result.state == WorkflowState.VERIFY
        assert result.session.failure_count == {"VERIFY": 1}
        assert store.get("s-1").locked is False
        assert "stage_error" in _events(orchestrator, "s-1")

        # A later attempt with a working handler goes through.
        retry = await orchestrator.progress_session("s-1", {}, make_handlers())
        assert retry.new_state == WorkflowState.UNDERWRITE

    @pytest.mark.asyncio
    async def test_missing_handler_is_validation_without_mutation(self, orchestrator, store):
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY)
        before = len(store.get("s-1").audit_log)

        result = await orchestrator.progress_session("s-1", {}, None)

        assert result.error_code == WorkflowErrorCode.VALIDATION
        assert result.state == WorkflowState.VERIFY
        assert len(store.get("s-1").audit_log) == before
        assert store.get("s-1").locked is False


# ---------------------------------------------------------------------------
# Underwriting
# ---------------------------------------------------------------------------


class TestUnderwriting:
    """Non-approval escalates to manual review."""

    @pytest.mark.asyncio
    async def test_emi_too_high_escalates(self, orchestrator):
        handlers = make_handlers()
        handlers.underwrite = AsyncMock(side_effect=make_underwriting_callback(make_rules()))
        await _drive_to(orchestrator, "s-1", WorkflowState.UNDERWRITE, handlers)

        result = await orchestrator.progress_session(
            "s-1",
            make_applicant(credit_score=720, requested_amount=500000, monthly_salary=20000),
            handlers,
        )

        assert result.success is False
        assert result.escalated
        assert result.new_state == WorkflowState.MANUAL_REVIEW
        assert result.reason == "Underwriting decision: EMI_TOO_HIGH"
        assert result.session.manual_review_queued is True
        assert result.session.failure_count == {"UNDERWRITE": 1}
        assert result.details.decision == UnderwritingDecisionCode.EMI_TOO_HIGH

    @pytest.mark.asyncio
    async def test_error_decision_escalates(self, orchestrator):
        handlers = make_handlers(underwriting={"status": "ERROR", "decision": "MISSING_FIELDS"})
        await _drive_to(orchestrator, "s-1", WorkflowState.UNDERWRITE, handlers)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert result.state == WorkflowState.MANUAL_REVIEW
        assert result.reason == "Underwriting decision: MISSING_FIELDS"


# ---------------------------------------------------------------------------
# Sanction retries
# ---------------------------------------------------------------------------


class TestSanction:
    """At most two sanction attempts per progression."""

    @pytest.mark.asyncio
    async def test_two_failures_escalate(self, orchestrator):
        handlers = make_handlers(
            sanction=[SanctionResult.failed("PDF render error"), SanctionResult.failed("S3 down")]
        )
        await _drive_to(orchestrator, "s-1", WorkflowState.SANCTION, handlers)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert handlers.sanction.await_count == 2
        assert result.escalated
        assert result.state == WorkflowState.MANUAL_REVIEW
        assert result.reason == "Sanction failed after 2 attempts: S3 down"
        assert result.session.failure_count == {"SANCTION": 2}
        assert result.session.manual_review_queued is True
        assert _events(orchestrator, "s-1").count("sanction_failed") == 2

    @pytest.mark.asyncio
    async def test_second_attempt_succeeds(self, orchestrator):
        handlers = make_handlers(
            sanction=[SanctionResult.failed("transient"), SanctionResult.ok("https://docs.example/2")]
        )
        await _drive_to(orchestrator, "s-1", WorkflowState.SANCTION, handlers)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert result.success is True
        assert result.new_state == WorkflowState.CLOSED
        assert result.session.failure_count == {"SANCTION": 1}
        successful = [
            e for e in result.session.audit_log if e.event_type == "sanction_successful"
        ]
        assert successful[0].details["attempt"] == 2

    @pytest.mark.asyncio
    async def test_raising_handler_counts_as_attempt(self, orchestrator):
        handlers = make_handlers(sanction=RuntimeError("letter service down"))
        await _drive_to(orchestrator, "s-1", WorkflowState.SANCTION, handlers)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert handlers.sanction.await_count == 2
        assert result.state == WorkflowState.MANUAL_REVIEW
        assert "letter service down" in result.reason


# ---------------------------------------------------------------------------
# Manual review
# ---------------------------------------------------------------------------


class TestManualReview:
    """Human decision out of MANUAL_REVIEW."""

    async def _escalate(self, orchestrator):
        handlers = make_handlers(underwriting={"status": "REJECTED", "decision": "AMOUNT_TOO_HIGH"})
        await _drive_to(orchestrator, "s-1", WorkflowState.UNDERWRITE, handlers)
        result = await orchestrator.progress_session("s-1", {}, handlers)
        assert result.state == WorkflowState.MANUAL_REVIEW

    @pytest.mark.asyncio
    async def test_approve_moves_to_sanction(self, orchestrator):
        await self._escalate(orchestrator)

        result = await orchestrator.progress_session(
            "s-1", {"decision": "approve", "reviewedBy": "officer-7", "notes": "verified income"}
        )

        assert result.success is True
        assert result.new_state == WorkflowState.SANCTION
        assert result.session.manual_review_queued is False
        assert orchestrator.get_manual_review_queue() == []
        approved = [e for e in result.session.audit_log if e.event_type == "manual_review_approved"]
        assert approved[0].details == {"reviewed_by": "officer-7", "notes": "verified income"}

        closed = await orchestrator.progress_session("s-1", {}, make_handlers())
        assert closed.new_state == WorkflowState.CLOSED

    @pytest.mark.asyncio
    async def test_reject_closes_with_default_reviewer(self, orchestrator):
        await self._escalate(orchestrator)

        result = await orchestrator.progress_session(
            "s-1", {"decision": "reject", "reason": "income not verifiable"}
        )

        assert result.new_state == WorkflowState.CLOSED
        rejected = [e for e in result.session.audit_log if e.event_type == "manual_review_rejected"]
        assert rejected[0].details["reviewed_by"] == "system"
        assert rejected[0].details["reason"] == "income not verifiable"

    @pytest.mark.asyncio
    async def test_unrecognised_decision_is_rejection(self, orchestrator):
        await self._escalate(orchestrator)

        result = await orchestrator.progress_session("s-1", {"decision": "maybe"})

        assert result.new_state == WorkflowState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("decision", ["APPROVE", "Approve", " approve"])
    async def test_approval_match_is_exact(self, orchestrator, decision):
        """Only the literal ``approve`` approves; other spellings reject."""
        await self._escalate(orchestrator)

        result = await orchestrator.progress_session("s-1", {"decision": decision})

        assert result.new_state == WorkflowState.CLOSED
        assert "manual_review_rejected" in _events(orchestrator, "s-1")

    @pytest.mark.asyncio
    async def test_missing_decision_is_validation(self, orchestrator):
        await self._escalate(orchestrator)

        result = await orchestrator.progress_session("s-1", {"notes": "no call yet"})

        assert result.error_code == WorkflowErrorCode.VALIDATION
        assert result.state == WorkflowState.MANUAL_REVIEW
        assert len(orchestrator.get_manual_review_queue()) == 1


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------


class TestRequestErrors:
    """Errors returned without mutating the session."""

    @pytest.mark.asyncio
    async def test_unknown_session(self, orchestrator):
        result = await orchestrator.progress_session("missing", {})

        assert result.success is False
        assert result.error_code == WorkflowErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_blank_session_id(self, orchestrator):
        result = await orchestrator.progress_session("", {})
        assert result.error_code == WorkflowErrorCode.VALIDATION

    @pytest.mark.asyncio
    async def test_non_mapping_stage_data(self, orchestrator):
        orchestrator.start_session("s-1", {})
        result = await orchestrator.progress_session("s-1", ["not", "a", "dict"])
        assert result.error_code == WorkflowErrorCode.VALIDATION

    @pytest.mark.asyncio
    async def test_closed_session_cannot_progress(self, orchestrator, store):
        handlers = await _drive_to(orchestrator, "s-1", WorkflowState.SANCTION)
        await orchestrator.progress_session("s-1", {}, handlers)
        before = len(store.get("s-1").audit_log)

        result = await orchestrator.progress_session("s-1", {}, handlers)

        assert result.success is False
        assert result.error_code == WorkflowErrorCode.INVALID_STATE
        assert result.error == "Cannot progress from state: CLOSED"
        assert len(store.get("s-1").audit_log) == before

    @pytest.mark.asyncio
    async def test_locked_session_rejected(self, orchestrator, store):
        orchestrator.start_session("s-1", {})
        store.acquire_lock("s-1")

        result = await orchestrator.progress_session("s-1", {})

        assert result.error_code == WorkflowErrorCode.LOCK_CONFLICT
        assert result.error == "Session is locked. Another operation in progress."
        assert result.state == WorkflowState.START
        assert store.get("s-1").state == WorkflowState.START

    @pytest.mark.asyncio
    async def test_stale_lock_is_reclaimed(self, orchestrator, store):
        orchestrator.start_session("s-1", {})
        store.get("s-1").acquire_lock(30, now=datetime.now(UTC) - timedelta(seconds=60))

        result = await orchestrator.progress_session("s-1", {})

        assert result.success is True
        assert "stale_lock_reclaimed" in _events(orchestrator, "s-1")

    @pytest.mark.asyncio
    async def test_concurrent_progress_conflicts(self, orchestrator):
        """A second call while a handler is in flight gets LOCK_CONFLICT."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_verify(session_id, stage_data):
            entered.set()
            await release.wait()
            return {"status": "PASS", "confidence": 0.9}

        handlers = CallbackHandlers(verification_callback=slow_verify)
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY, make_handlers())

        first = asyncio.create_task(orchestrator.progress_session("s-1", {}, handlers))
        await entered.wait()
        second = await orchestrator.progress_session("s-1", {}, handlers)
        release.set()
        first_result = await first

        assert second.error_code == WorkflowErrorCode.LOCK_CONFLICT
        assert first_result.new_state == WorkflowState.UNDERWRITE
        assert first_result.session.verification_result.confidence == 0.9

    @pytest.mark.asyncio
    async def test_call_whose_lock_was_reclaimed_commits_nothing(self):
        """A call outliving the lock timeout loses the session to the reclaiming call.

        The late call must not apply its result, transition, or release the
        new holder's lock.
        """
        store = SessionStore(lock_timeout_seconds=0.05)
        orchestrator = WorkflowOrchestrator(store)
        await _drive_to(orchestrator, "s-1", WorkflowState.VERIFY)

        late_entered, late_release = asyncio.Event(), asyncio.Event()
        current_entered, current_release = asyncio.Event(), asyncio.Event()

        async def late_verify(session_id, stage_data):
            late_entered.set()
            await late_release.wait()
            return {"status": "FAIL", "reason": "late result"}

        async def current_verify(session_id, stage_data):
            current_entered.set()
            await current_release.wait()
            return {"status": "PASS", "confidence": 0.9}

        late = asyncio.create_task(
            orchestrator.progress_session(
                "s-1", {}, CallbackHandlers(verification_callback=late_verify)
            )
        )
        await late_entered.wait()
        await asyncio.sleep(0.1)
        current = asyncio.create_task(
            orchestrator.progress_session(
                "s-1", {}, CallbackHandlers(verification_callback=current_verify)
            )
        )
        await current_entered.wait()

        late_release.set()
        late_result = await late
        record = store.get("s-1")

        assert late_result.success is False
        assert late_result.error_code == WorkflowErrorCode.LOCK_CONFLICT
        assert late_result.session is None
        assert record.state == WorkflowState.VERIFY
        assert record.verification_result is None
        assert record.locked is True

        current_release.set()
        current_result = await current

        assert current_result.success is True
        assert current_result.new_state == WorkflowState.UNDERWRITE
        assert record.locked is False
        events = _events(orchestrator, "s-1")
        assert "stale_lock_reclaimed" in events
        assert "verification_failed" not in events
        assert events.count("verification_completed") == 1

    @pytest.mark.asyncio
    async def test_blocking_sync_handlers_do_not_serialize_sessions(self, orchestrator):
        """Sync handlers run off the event loop, so independent sessions overlap."""

        def blocking_verify(session_id, stage_data):
            time.sleep(0.3)
            return {"status": "PASS", "confidence": 0.9}

        handlers = CallbackHandlers(verification_callback=blocking_verify)
        for session_id in ("a", "b"):
            await _drive_to(orchestrator, session_id, WorkflowState.VERIFY)

        started = time.monotonic()
        results = await asyncio.gather(
            orchestrator.progress_session("a", {}, handlers),
            orchestrator.progress_session("b", {}, handlers),
        )
        elapsed = time.monotonic() - started

        assert [r.new_state for r in results] == [WorkflowState.UNDERWRITE] * 2
        assert elapsed < 0.55

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal_and_releases_lock(self, orchestrator, store):
        orchestrator.start_session("s-1", {})

        with patch.dict(
            orchestrator._steps,
            {WorkflowState.START: AsyncMock(side_effect=KeyError("boom"))},
        ):
            result = await orchestrator.progress_session("s-1", {})

        assert result.error_code == WorkflowErrorCode.INTERNAL
        assert result.state == WorkflowState.START
        assert store.get("s-1").locked is False


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


class TestMonitoring:
    """Read-only views over the store."""

    def test_status_of_unknown_session(self, orchestrator):
        assert orchestrator.get_session_status("missing") is None

    def test_status_includes_stage_info(self, orchestrator):
        orchestrator.start_session("s-1", {"applicant_name": "Asha Rao"})

        status = orchestrator.get_session_status("s-1")

        assert status.state == WorkflowState.START
        assert status.stage_info.label == "Start"
        assert status.locked is False

    @pytest.mark.asyncio
    async def test_stats_and_filters(self, orchestrator):
        orchestrator.start_session("idle", {})
        await _drive_to(
            orchestrator,
            "closed",
            WorkflowState.VERIFY,
            make_handlers(verification={"status": "FAIL"}),
        )
        await orchestrator.progress_session(
            "closed", {}, make_handlers(verification={"status": "FAIL"})
        )
        escalate = make_handlers(sanction=RuntimeError("down"))
        await _drive_to(orchestrator, "review", WorkflowState.SANCTION, escalate)
        await orchestrator.progress_session("review", {}, escalate)

        stats = orchestrator.get_workflow_stats()

        assert stats.total_sessions == 3
        assert stats.by_state == {"START": 1, "CLOSED": 1, "MANUAL_REVIEW": 1}
        assert stats.manual_review_count == 1
        assert stats.closed_count == 1
        assert stats.failure_count == 2
        assert [s.session_id for s in orchestrator.get_sessions_by_state("CLOSED")] == ["closed"]
        assert [s.session_id for s in orchestrator.get_manual_review_queue()] == ["review"]
        assert len(orchestrator.get_all_sessions()) == 3
