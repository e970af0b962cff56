# This project was developed with assistance from AI tools.
"""Underwriting rules configuration loader.

Rule thresholds are data, not code: they are read from a JSON file whose
location comes from ``settings.RULES_FILE``. The package ships a default
rules file used when no path is configured.
"""

import json
import logging
from functools import lru_cache
from importlib import resources
from pathlib import Path

from pydantic import ValidationError

from ..core.config import settings
from ..core.exceptions import WorkflowValidationError
from ..schemas.underwriting import RulesConfig

logger = logging.getLogger(__name__)

_DEFAULT_RULES_RESOURCE = "default_rules.json"


def _read_default_rules() -> str:
    return (
        resources.files("loan_workflow.rules")
        .joinpath(_DEFAULT_RULES_RESOURCE)
        .read_text(encoding="utf-8")
    )


def load_rules(path: Path | str | None = None) -> RulesConfig:
    """Load and validate a rules file.

    Args:
        path: JSON rules file. Falls back to ``settings.RULES_FILE`` and then
            to the packaged default.

    Raises:
        WorkflowValidationError: the file is missing, not JSON, or does not
            match the rules schema.
    """
    source = path or settings.RULES_FILE
    try:
        if source is None:
            raw = _read_default_rules()
            source = f"<package>/{_DEFAULT_RULES_RESOURCE}"
        else:
            raw = Path(source).read_text(encoding="utf-8")
        rules = RulesConfig.model_validate(json.loads(raw))
    except FileNotFoundError as exc:
        raise WorkflowValidationError(f"Rules file not found: {source}") from exc
    except json.JSONDecodeError as exc:
        raise WorkflowValidationError(f"Rules file {source} is not valid JSON: {exc}") from exc
    except ValidationError as exc:
        raise WorkflowValidationError(f"Rules file {source} is invalid: {exc}") from exc

    logger.info("Loaded underwriting rules version %s from %s", rules.version, source)
    return rules


@lru_cache(maxsize=1)
def get_default_rules() -> RulesConfig:
    """Rules from the configured source, loaded once per process."""
    return load_rules()
