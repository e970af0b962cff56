# This project was developed with assistance from AI tools.
"""Stage handler contracts.

The orchestrator does not verify documents, price loans or render sanction
letters itself; callers pass a ``StageHandlers`` implementation with one
operation per stage. Handlers may be sync (run in the default executor) or
async, and may return either the result model or a JSON-shaped dict, which
is validated into the model.

``CallbackHandlers`` adapts three plain callables to the protocol, and
``make_underwriting_callback`` wires the rules engine in as the
underwriting stage.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.exceptions import StageFailure, WorkflowValidationError
from ..schemas.stage import SanctionResult, VerificationResult
from ..schemas.underwriting import RulesConfig, UnderwritingDecision
from .rules import get_default_rules
from .underwriting import decide

logger = logging.getLogger(__name__)

StageData = Mapping[str, Any]
StageCallback = Callable[[str, StageData], Any]

ResultT = TypeVar("ResultT", bound=BaseModel)

# Stage data keys forwarded to the underwriting engine.
_UNDERWRITING_FIELDS = (
    "applicant_name",
    "pan",
    "credit_score",
    "requested_amount",
    "monthly_salary",
    "tenure_months",
)


class StageHandlers(Protocol):
    """Capability interface supplied by the caller for each progression."""

    def verify(
        self, session_id: str, stage_data: StageData
    ) -> VerificationResult | Mapping | Awaitable[VerificationResult | Mapping]: ...

    def underwrite(
        self, session_id: str, stage_data: StageData
    ) -> UnderwritingDecision | Mapping | Awaitable[UnderwritingDecision | Mapping]: ...

    def sanction(
        self, session_id: str, stage_data: StageData
    ) -> SanctionResult | Mapping | Awaitable[SanctionResult | Mapping]: ...


@dataclass
class CallbackHandlers:
    """Adapts loosely supplied callables to ``StageHandlers``.

    A stage whose callback is None cannot be progressed; the orchestrator
    reports that as a validation error without touching the session.
    """

    verification_callback: StageCallback | None = None
    underwriting_callback: StageCallback | None = None
    sanction_callback: StageCallback | None = None

    async def verify(self, session_id: str, stage_data: StageData) -> Any:
        return await _call(self.verification_callback, "verification", session_id, stage_data)

    async def underwrite(self, session_id: str, stage_data: StageData) -> Any:
        return await _call(self.underwriting_callback, "underwriting", session_id, stage_data)

    async def sanction(self, session_id: str, stage_data: StageData) -> Any:
        return await _call(self.sanction_callback, "sanction", session_id, stage_data)


async def _run_handler(
    func: Callable[..., Any], session_id: str, stage_data: StageData
) -> Any:
    """Await coroutine functions; run plain callables in the default executor.

    Plain callables may block on external I/O; they run off the event loop
    thread so other sessions keep progressing.
    """
    if inspect.iscoroutinefunction(func):
        result = await func(session_id, stage_data)
    else:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, partial(func, session_id, stage_data))
    if inspect.isawaitable(result):
        result = await result
    return result


async def _call(
    callback: StageCallback | None, name: str, session_id: str, stage_data: StageData
) -> Any:
    if callback is None:
        raise WorkflowValidationError(f"No {name} handler supplied")
    return await _run_handler(callback, session_id, stage_data)


def make_underwriting_callback(
    rules: RulesConfig | None = None,
) -> Callable[[str, StageData], UnderwritingDecision]:
    """Build an underwriting callback that runs the rules engine on stage data.

    ``tenure_months`` falls back to the rules' default tenure when the stage
    data does not carry one.
    """

    def _underwrite(session_id: str, stage_data: StageData) -> UnderwritingDecision:
        active_rules = rules or get_default_rules()
        applicant = {
            key: stage_data[key]
            for key in _UNDERWRITING_FIELDS
            if stage_data.get(key) is not None
        }
        decision = decide(applicant, active_rules)
        logger.info(
            "Underwriting for session %s: %s/%s",
            session_id,
            decision.status.value,
            decision.decision.value if decision.decision else None,
        )
        return decision

    return _underwrite


async def invoke_stage(
    handlers: StageHandlers | None,
    operation: str,
    stage: str,
    result_model: type[ResultT],
    session_id: str,
    stage_data: StageData,
) -> ResultT:
    """Call one handler operation and validate its result.

    Raises:
        WorkflowValidationError: no handler (or no such operation) supplied.
        StageFailure: the handler raised, or returned something that does not
            validate as ``result_model``.
    """
    method = getattr(handlers, operation, None) if handlers is not None else None
    if method is None:
        raise WorkflowValidationError(f"No {operation} handler supplied for stage {stage}")

    try:
        result = await _run_handler(method, session_id, stage_data)
    except WorkflowValidationError:
        raise
    except Exception as exc:
        logger.warning("%s handler raised for session %s", stage, session_id, exc_info=True)
        raise StageFailure(stage, f"{stage} handler error: {exc}") from exc

    if isinstance(result, result_model):
        return result
    if isinstance(result, Mapping):
        try:
            return result_model.model_validate(dict(result))
        except ValidationError as exc:
            raise StageFailure(
                stage, f"{stage} handler returned an invalid result: {exc.error_count()} error(s)"
            ) from exc
    raise StageFailure(
        stage, f"{stage} handler returned {type(result).__name__}, expected {result_model.__name__}"
    )
