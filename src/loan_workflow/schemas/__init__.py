# This project was developed with assistance from AI tools.
"""Shared schema components."""

from pydantic import BaseModel


class StageInfo(BaseModel):
    """Human-readable info about a workflow state."""

    label: str
    description: str
