# This project was developed with assistance from AI tools.
"""Error taxonomy for the workflow engine.

The orchestrator raises these internally and converts them to structured
results before the session lock is released; callers of the public
orchestrator API see ``WorkflowErrorCode`` values, not exceptions.
"""

import enum


class WorkflowErrorCode(str, enum.Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    LOCK_CONFLICT = "LOCK_CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    STAGE_FAILURE = "STAGE_FAILURE"
    ESCALATION = "ESCALATION"
    TERMINAL_REJECTION = "TERMINAL_REJECTION"
    INTERNAL = "INTERNAL"


class WorkflowError(Exception):
    """Base class for workflow engine errors."""

    code: WorkflowErrorCode = WorkflowErrorCode.INTERNAL


class WorkflowValidationError(WorkflowError, ValueError):
    """Raised when required input is missing or malformed."""

    code = WorkflowErrorCode.VALIDATION


class SessionNotFoundError(WorkflowError, LookupError):
    """Raised when a session id is unknown to the store."""

    code = WorkflowErrorCode.NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class LockConflictError(WorkflowError):
    """Raised when a session is locked by another in-flight operation."""

    code = WorkflowErrorCode.LOCK_CONFLICT

    def __init__(self, session_id: str):
        super().__init__("Session is locked. Another operation in progress.")
        self.session_id = session_id


class SessionNotLockedError(WorkflowError, RuntimeError):
    """Raised when a session is mutated without holding its lock.

    Also raised for a holder whose stale lock was reclaimed by another
    operation, hence the LOCK_CONFLICT code.
    """

    code = WorkflowErrorCode.LOCK_CONFLICT

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is not locked by the calling operation")
        self.session_id = session_id


class InvalidStateError(WorkflowError):
    """Raised when progression is requested from a terminal or unknown state."""

    code = WorkflowErrorCode.INVALID_STATE


class InvalidTransitionError(InvalidStateError, ValueError):
    """Raised when a session state transition is not allowed."""


class StageFailure(WorkflowError):
    """Raised when a stage handler fails or returns an unusable result."""

    code = WorkflowErrorCode.STAGE_FAILURE

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage
