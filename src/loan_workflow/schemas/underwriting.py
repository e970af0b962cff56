# This project was developed with assistance from AI tools.
"""Underwriting rules configuration and decision schemas."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..enums import RiskBucket, UnderwritingDecisionCode, UnderwritingStatus

# ---------------------------------------------------------------------------
# Rules configuration (mirrors the JSON rules file layout)
# ---------------------------------------------------------------------------


class RiskBucketRule(BaseModel):
    """Pre-approved limit and pricing for one risk bucket."""

    pre_approved_limit: float = Field(gt=0)
    annual_roi: float = Field(ge=0, description="Annual rate of interest, in percent.")
    description: str = ""


class RiskBuckets(BaseModel):
    low: RiskBucketRule
    medium: RiskBucketRule
    high: RiskBucketRule

    def for_bucket(self, bucket: RiskBucket) -> RiskBucketRule:
        return getattr(self, bucket.value.lower())


class CreditScoreThresholdRule(BaseModel):
    min_score: int = Field(ge=300, le=900)
    description: str = "Credit score must meet the minimum threshold"


class PreApprovedLimitRule(BaseModel):
    description: str = "Requested amount within the risk bucket's pre-approved limit"


class SalaryCheckRule(BaseModel):
    multiplier: float = Field(default=2.0, gt=1)
    emi_to_salary_ratio: float = Field(default=0.5, gt=0, le=1)
    description: str = "Amounts above the pre-approved limit require an EMI-to-salary check"


class UnderwritingRules(BaseModel):
    credit_score_threshold: CreditScoreThresholdRule
    pre_approved_limit: PreApprovedLimitRule = Field(default_factory=PreApprovedLimitRule)
    salary_check_threshold: SalaryCheckRule = Field(default_factory=SalaryCheckRule)


class EmiCalculationRule(BaseModel):
    formula: str = "EMI = P * r * (1 + r)^n / ((1 + r)^n - 1)"
    where: dict[str, str] = Field(default_factory=dict)
    default_tenure_months: int = Field(default=60, gt=0)


class RulesConfig(BaseModel):
    """Tunable underwriting thresholds loaded from the rules file."""

    version: str = "unversioned"
    risk_buckets: RiskBuckets
    underwriting_rules: UnderwritingRules
    emi_calculation: EmiCalculationRule = Field(default_factory=EmiCalculationRule)

    @property
    def min_score(self) -> int:
        return self.underwriting_rules.credit_score_threshold.min_score

    @property
    def salary_ratio_ceiling(self) -> float:
        return self.underwriting_rules.salary_check_threshold.emi_to_salary_ratio

    @property
    def salary_check_multiplier(self) -> float:
        return self.underwriting_rules.salary_check_threshold.multiplier

    @property
    def default_tenure_months(self) -> int:
        return self.emi_calculation.default_tenure_months


# ---------------------------------------------------------------------------
# Engine input / output
# ---------------------------------------------------------------------------


class ApplicantFinancials(BaseModel):
    """Inputs consumed by the underwriting engine."""

    model_config = ConfigDict(extra="ignore")

    credit_score: int | None = None
    requested_amount: float | None = None
    monthly_salary: float | None = None
    tenure_months: int | None = Field(default=None, gt=0)
    applicant_name: str | None = None
    pan: str | None = None


class RuleEvaluation(BaseModel):
    """One entry in the decision's rule-evaluation trail."""

    rule: str
    description: str
    check: str | None = None
    passed: bool | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class EmiCalculation(BaseModel):
    """Explanation of how the EMI figure was derived."""

    formula: str
    where: dict[str, str] = Field(default_factory=dict)
    applied_values: dict[str, Any] = Field(default_factory=dict)


class UnderwritingDecision(BaseModel):
    """Full, audit-ready output of one underwriting run."""

    model_config = ConfigDict(extra="allow")

    status: UnderwritingStatus
    decision: UnderwritingDecisionCode | None = None
    reason: str | None = None

    applicant_name: str | None = None
    pan: str | None = None
    credit_score: int | None = None
    requested_amount: float | None = None
    monthly_salary: float | None = None
    tenure_months: int | None = None

    risk_bucket: RiskBucket | None = None
    pre_approved_limit: float | None = None
    annual_roi: float | None = None
    approved_amount: float | None = None
    monthly_emi: float | None = None
    emi_to_salary_ratio: float | None = None
    requested_emi: float | None = None
    max_emi_allowed: float | None = None
    max_amount_with_salary_check: float | None = None
    emi_calculation: EmiCalculation | None = None

    rules_version: str | None = None
    audit_log: list[RuleEvaluation] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def approved(self) -> bool:
        return self.status == UnderwritingStatus.APPROVED
