# This project was developed with assistance from AI tools.
"""
Domain enums for the loan workflow lifecycle.

Shared by the session store, the orchestrator, the underwriting engine
and the pydantic schemas.
"""

import enum


class WorkflowState(str, enum.Enum):
    START = "START"
    SALES = "SALES"
    VERIFY = "VERIFY"
    UNDERWRITE = "UNDERWRITE"
    SANCTION = "SANCTION"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    CLOSED = "CLOSED"

    @classmethod
    def terminal_states(cls) -> frozenset["WorkflowState"]:
        """States from which a session can no longer progress."""
        return frozenset({cls.CLOSED})

    @classmethod
    def valid_transitions(cls) -> dict["WorkflowState", frozenset["WorkflowState"]]:
        """Allowed state transitions in the loan workflow."""
        return {
            cls.START: frozenset({cls.SALES}),
            cls.SALES: frozenset({cls.VERIFY}),
            cls.VERIFY: frozenset({cls.UNDERWRITE, cls.CLOSED}),
            cls.UNDERWRITE: frozenset({cls.SANCTION, cls.MANUAL_REVIEW}),
            cls.SANCTION: frozenset({cls.CLOSED, cls.MANUAL_REVIEW}),
            cls.MANUAL_REVIEW: frozenset({cls.SANCTION, cls.CLOSED}),
            cls.CLOSED: frozenset(),
        }

    def can_transition_to(self, next_state: "WorkflowState") -> bool:
        return next_state in WorkflowState.valid_transitions()[self]


class VerificationStatus(str, enum.Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNSURE = "UNSURE"


class UnderwritingStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


class UnderwritingDecisionCode(str, enum.Enum):
    WITHIN_PRE_APPROVED_LIMIT = "WITHIN_PRE_APPROVED_LIMIT"
    SALARY_CHECK_PASSED = "SALARY_CHECK_PASSED"
    CREDIT_SCORE_LOW = "CREDIT_SCORE_LOW"
    EMI_TOO_HIGH = "EMI_TOO_HIGH"
    AMOUNT_TOO_HIGH = "AMOUNT_TOO_HIGH"
    MISSING_FIELDS = "MISSING_FIELDS"


class RiskBucket(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ReviewDecision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
