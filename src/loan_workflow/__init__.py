# This project was developed with assistance from AI tools.
"""Loan application workflow engine.

Session store, state-machine orchestrator and rules-driven underwriting.
"""

from .core.exceptions import WorkflowErrorCode
from .enums import (
    RiskBucket,
    UnderwritingDecisionCode,
    UnderwritingStatus,
    VerificationStatus,
    WorkflowState,
)
from .services.handlers import CallbackHandlers, StageHandlers, make_underwriting_callback
from .services.orchestrator import WorkflowOrchestrator
from .services.rules import get_default_rules, load_rules
from .services.session_store import SessionStore
from .services.underwriting import calculate_emi, decide

__version__ = "0.1.0"

__all__ = [
    "CallbackHandlers",
    "RiskBucket",
    "SessionStore",
    "StageHandlers",
    "UnderwritingDecisionCode",
    "UnderwritingStatus",
    "VerificationStatus",
    "WorkflowErrorCode",
    "WorkflowOrchestrator",
    "WorkflowState",
    "calculate_emi",
    "decide",
    "get_default_rules",
    "load_rules",
    "make_underwriting_callback",
]
