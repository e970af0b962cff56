# This project was developed with assistance from AI tools.
"""In-memory session store with per-session exclusive locking.

Owns session records, their workflow state and a held-flag lock with an
acquisition timestamp for stale-lock recovery. Holds no business logic:
the orchestrator decides what to mutate, the store only guarantees that
mutation happens under the session lock and leaves an audit entry behind.

Every mutator appends exactly one audit event. Mutating a record whose
lock is not held raises ``SessionNotLockedError``. A lock is owned by the
task (or thread) that acquired it: ``acquire_lock`` returns an owner token
and registers it in the caller's context. When a stale lock is reclaimed,
the previous holder loses the right to mutate and its token-based release
becomes a no-op.
"""

import copy
import logging
import threading
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from ..core.config import settings
from ..core.exceptions import (
    InvalidTransitionError,
    LockConflictError,
    SessionNotFoundError,
    SessionNotLockedError,
    WorkflowValidationError,
)
from ..enums import WorkflowState
from ..schemas.session import AuditEntry, FailureLogItem, SessionSnapshot
from ..schemas.stage import SanctionResult, VerificationResult
from ..schemas.underwriting import UnderwritingDecision

logger = logging.getLogger(__name__)

# Owner tokens of the locks held by the current task or thread.
_held_lock_tokens: ContextVar[frozenset[str]] = ContextVar(
    "held_session_lock_tokens", default=frozenset()
)


class SessionRecord:
    """Mutable workflow state for one applicant."""

    def __init__(self, session_id: str, *, now: datetime | None = None):
        created = now or datetime.now(UTC)
        self.session_id = session_id
        self.state = WorkflowState.START
        self.created_at = created
        self.updated_at = created
        self.locked = False
        self.lock_acquired_at: datetime | None = None
        self._lock_token: str | None = None
        self.user_data: dict[str, Any] = {}
        self.verification_result: VerificationResult | None = None
        self.underwriting_result: UnderwritingDecision | None = None
        self.sanction_result: SanctionResult | None = None
        self.manual_review_queued = False
        self.manual_review_reason: str | None = None
        self.failure_count: dict[str, int] = {}
        self.audit_log: list[AuditEntry] = []
        # Guards the held-flag check-and-set only; never held across a stage handler.
        self._mutex = threading.Lock()

    def __repr__(self) -> str:
        return f"<SessionRecord {self.session_id} state={self.state.value} locked={self.locked}>"

    # -- Locking --

    def acquire_lock(self, timeout_seconds: float, *, now: datetime | None = None) -> str | None:
        """Take the exclusive lock, reclaiming it if the holder has gone stale.

        Returns the owner token for the new hold, or None when the lock is held
        and younger than ``timeout_seconds``. The token is also registered in
        the calling context, which is what entitles that context to mutate.
        """
        now = now or datetime.now(UTC)
        token = uuid.uuid4().hex
        with self._mutex:
            reclaimed_age = None
            if self.locked:
                lock_age = (now - self.lock_acquired_at).total_seconds()
                if lock_age < timeout_seconds:
                    return None
                reclaimed_age = lock_age

            self.locked = True
            self.lock_acquired_at = now
            self._lock_token = token
        _held_lock_tokens.set(_held_lock_tokens.get() | {token})

        if reclaimed_age is not None:
            logger.warning(
                "Reclaimed stale lock on session %s (held %.1fs, timeout %.1fs)",
                self.session_id,
                reclaimed_age,
                timeout_seconds,
            )
            self.append_audit(
                "stale_lock_reclaimed",
                {"lock_age_seconds": round(reclaimed_age, 3), "timeout_seconds": timeout_seconds},
            )
        return token

    def release_lock(self, token: str | None = None) -> bool:
        """Release the lock.

        With a token, only the matching hold is released; a holder whose lock
        was reclaimed gets False and leaves the new holder's lock alone.
        Without a token the lock is cleared unconditionally.
        """
        if token is not None:
            _held_lock_tokens.set(_held_lock_tokens.get() - {token})
        with self._mutex:
            if token is not None and token != self._lock_token:
                logger.warning(
                    "Session %s: release by a holder whose lock was reclaimed ignored",
                    self.session_id,
                )
                return False
            self.locked = False
            self.lock_acquired_at = None
            self._lock_token = None
        return True

    def holds_lock(self) -> bool:
        """True when the calling context owns the current lock."""
        return self.locked and self._lock_token in _held_lock_tokens.get()

    def _require_lock(self) -> None:
        if not self.holds_lock():
            raise SessionNotLockedError(self.session_id)

    # -- Audit --

    def _timestamp(self) -> datetime:
        """Current time, clamped so audit timestamps never go backwards."""
        now = datetime.now(UTC)
        if self.audit_log and now < self.audit_log[-1].timestamp:
            return self.audit_log[-1].timestamp
        return now

    def append_audit(self, event_type: str, details: Mapping[str, Any] | None = None) -> AuditEntry:
        """Append one audit record carrying the state at time of writing."""
        self._require_lock()
        entry = AuditEntry(
            timestamp=self._timestamp(),
            event_type=event_type,
            details=copy.deepcopy(dict(details or {})),
            state=self.state,
        )
        self.audit_log.append(entry)
        self.updated_at = entry.timestamp
        return entry

    # -- Field mutators --

    def set_state(self, new_state: WorkflowState | str) -> None:
        """Set the state without checking the transition table."""
        self._require_lock()
        try:
            new_state = WorkflowState(new_state)
        except ValueError as exc:
            raise InvalidTransitionError(f"Unknown workflow state: {new_state}") from exc

        previous = self.state
        self.state = new_state
        self.append_audit(
            "state_transition",
            {"from_state": previous.value, "to_state": new_state.value},
        )

    def transition_to(self, next_state: WorkflowState) -> None:
        """Move to ``next_state`` if the transition table allows it."""
        self._require_lock()
        if not self.state.can_transition_to(next_state):
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {WorkflowState(next_state).value}"
            )
        self.set_state(next_state)

    def set_user_data(self, data: Mapping[str, Any]) -> None:
        """Merge applicant attributes; existing keys are overwritten, never removed."""
        self._require_lock()
        self.user_data = {**self.user_data, **copy.deepcopy(dict(data))}
        self.append_audit("user_data_updated", {"keys": sorted(data.keys())})

    def set_verification_result(self, result: VerificationResult) -> None:
        self._require_lock()
        self.verification_result = result
        self.append_audit(
            "verification_completed",
            {"status": result.status.value, "confidence": result.confidence},
        )

    def set_underwriting_result(self, result: UnderwritingDecision) -> None:
        self._require_lock()
        self.underwriting_result = result
        self.append_audit(
            "underwriting_completed",
            {
                "status": result.status.value,
                "decision": result.decision.value if result.decision else None,
            },
        )

    def set_sanction_result(self, result: SanctionResult) -> None:
        self._require_lock()
        self.sanction_result = result
        self.append_audit(
            "sanction_completed",
            {"success": result.success, "download_url": result.download_url},
        )

    def record_failure(self, stage: str) -> int:
        """Increment the failure counter for ``stage`` and return the new count."""
        self._require_lock()
        count = self.failure_count.get(stage, 0) + 1
        self.failure_count[stage] = count
        self.append_audit("stage_failure", {"stage": stage, "attempt_count": count})
        return count

    def get_failure_count(self, stage: str) -> int:
        return self.failure_count.get(stage, 0)

    def queue_for_manual_review(self, reason: str) -> None:
        """Flag the session for human review. The state change is the caller's."""
        self._require_lock()
        self.manual_review_queued = True
        self.manual_review_reason = reason
        self.append_audit("manual_review_queued", {"reason": reason})

    def resolve_manual_review(self, reviewed_by: str) -> None:
        """Take the session out of the review queue, keeping the original reason."""
        self._require_lock()
        self.manual_review_queued = False
        self.append_audit(
            "manual_review_resolved",
            {"reviewed_by": reviewed_by, "reason": self.manual_review_reason},
        )

    # -- Views --

    @property
    def is_terminal(self) -> bool:
        return self.state in WorkflowState.terminal_states()

    def snapshot(self) -> SessionSnapshot:
        """Copy the record into an immutable-by-convention pydantic model."""
        return SessionSnapshot(
            session_id=self.session_id,
            state=self.state,
            created_at=self.created_at,
            updated_at=self.updated_at,
            locked=self.locked,
            lock_acquired_at=self.lock_acquired_at,
            user_data=copy.deepcopy(self.user_data),
            verification_result=self.verification_result,
            underwriting_result=self.underwriting_result,
            sanction_result=self.sanction_result,
            manual_review_queued=self.manual_review_queued,
            manual_review_reason=self.manual_review_reason,
            failure_count=dict(self.failure_count),
            failure_log=[
                FailureLogItem(stage=stage, failure_count=count)
                for stage, count in self.failure_count.items()
            ],
            audit_log=list(self.audit_log),
        )


class SessionStore:
    """Registry of session records, safe for concurrent use by independent keys."""

    def __init__(self, lock_timeout_seconds: float | None = None):
        self.lock_timeout_seconds = (
            lock_timeout_seconds if lock_timeout_seconds is not None else settings.LOCK_TIMEOUT_SECONDS
        )
        self._sessions: dict[str, SessionRecord] = {}
        self._mutex = threading.Lock()

    def __len__(self) -> int:
        with self._mutex:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._mutex:
            return session_id in self._sessions

    def create(self, session_id: str) -> SessionRecord:
        """Return the session for ``session_id``, creating it in START if new."""
        if not isinstance(session_id, str) or not session_id.strip():
            raise WorkflowValidationError("session_id is required")

        with self._mutex:
            record = self._sessions.get(session_id)
            if record is None:
                record = SessionRecord(session_id)
                self._sessions[session_id] = record
                logger.info("Created session %s", session_id)
            return record

    def get(self, session_id: str) -> SessionRecord | None:
        with self._mutex:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> SessionRecord:
        record = self.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def list(self) -> list[SessionRecord]:
        with self._mutex:
            return list(self._sessions.values())

    def acquire_lock(
        self,
        session_id: str,
        timeout: float | None = None,
        *,
        now: datetime | None = None,
    ) -> str | None:
        """Try to lock a session; owner token or None.

        Raises SessionNotFoundError for unknown ids.
        """
        record = self.require(session_id)
        return record.acquire_lock(
            timeout if timeout is not None else self.lock_timeout_seconds,
            now=now,
        )

    def release_lock(self, session_id: str, token: str | None = None) -> bool:
        return self.require(session_id).release_lock(token)

    @contextmanager
    def lock(self, session_id: str, timeout: float | None = None) -> Iterator[SessionRecord]:
        """Hold a session's lock for the duration of the block.

        Raises:
            SessionNotFoundError: unknown session id.
            LockConflictError: the session is locked by another operation.
        """
        record = self.require(session_id)
        token = record.acquire_lock(
            timeout if timeout is not None else self.lock_timeout_seconds
        )
        if token is None:
            raise LockConflictError(session_id)
        try:
            yield record
        finally:
            record.release_lock(token)
