# This project was developed with assistance from AI tools.
"""Stage handler result contracts and manual review input."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..enums import ReviewDecision, VerificationStatus


class VerificationResult(BaseModel):
    """Outcome of the document / KYC verification handler."""

    model_config = ConfigDict(extra="allow")

    status: VerificationStatus
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == VerificationStatus.PASS


class SanctionResult(BaseModel):
    """Outcome of the sanction-letter handler.

    ``success`` discriminates the two variants: a successful result carries
    ``download_url``; a failed one carries ``error``.
    """

    model_config = ConfigDict(extra="allow")

    success: bool
    download_url: str | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _failure_has_error(self) -> "SanctionResult":
        if not self.success and not self.error:
            self.error = "Sanction handler reported failure"
        return self

    @classmethod
    def ok(cls, download_url: str | None = None, **extra: Any) -> "SanctionResult":
        return cls(success=True, download_url=download_url, **extra)

    @classmethod
    def failed(cls, error: str) -> "SanctionResult":
        return cls(success=False, error=error)


class ManualReviewDecision(BaseModel):
    """Human reviewer decision for a session in MANUAL_REVIEW.

    Any decision other than exactly ``approve`` is treated as a rejection;
    no case folding or whitespace trimming.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: str
    reviewed_by: str | None = Field(default=None, alias="reviewedBy")
    notes: str | None = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.decision == ReviewDecision.APPROVE.value
