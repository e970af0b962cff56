# This project was developed with assistance from AI tools.
"""Underwriting decision engine.

Pure function over applicant financials and a rules configuration -- no
I/O, no shared state. Rules are evaluated in a fixed ladder and every
step appends a RuleEvaluation to the decision's audit trail, so each
outcome carries the record of why it was reached:

    1. required fields present
    2. credit score >= minimum                    else REJECTED/CREDIT_SCORE_LOW
    3. risk bucket from score (750 / 700 bounds)
    4. amount <= pre-approved limit               -> APPROVED/WITHIN_PRE_APPROVED_LIMIT
    5. amount <= multiplier x limit and EMI fits  -> APPROVED/SALARY_CHECK_PASSED
                                                  else REJECTED/EMI_TOO_HIGH
    6. otherwise                                  REJECTED/AMOUNT_TOO_HIGH
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from ..enums import (
    RiskBucket,
    UnderwritingDecisionCode,
    UnderwritingStatus,
)
from ..schemas.underwriting import (
    ApplicantFinancials,
    EmiCalculation,
    RiskBucketRule,
    RuleEvaluation,
    RulesConfig,
    UnderwritingDecision,
)

logger = logging.getLogger(__name__)

# Bucket boundaries are structural; limits and pricing per bucket come from rules.
LOW_RISK_MIN_SCORE = 750
MEDIUM_RISK_MIN_SCORE = 700

REQUIRED_FIELDS = ("credit_score", "requested_amount", "monthly_salary")


def calculate_emi(principal: float, annual_roi: float, tenure_months: int) -> float:
    """Equated monthly instalment on a reducing balance, rounded to paise/cents."""
    if tenure_months <= 0:
        raise ValueError("tenure_months must be positive")

    monthly_rate = annual_roi / 12 / 100
    if monthly_rate == 0:
        return round(principal / tenure_months, 2)

    compound = (1 + monthly_rate) ** tenure_months
    return round(principal * monthly_rate * compound / (compound - 1), 2)


def classify_risk(credit_score: int) -> RiskBucket:
    """Map a credit score onto a risk bucket."""
    if credit_score >= LOW_RISK_MIN_SCORE:
        return RiskBucket.LOW
    if credit_score >= MEDIUM_RISK_MIN_SCORE:
        return RiskBucket.MEDIUM
    return RiskBucket.HIGH


def _emi_explanation(
    rules: RulesConfig, principal: float, annual_roi: float, tenure_months: int
) -> EmiCalculation:
    return EmiCalculation(
        formula=rules.emi_calculation.formula,
        where=rules.emi_calculation.where,
        applied_values={
            "principal": principal,
            "monthly_rate": f"{annual_roi / 12 / 100} ({annual_roi}% annual / 12)",
            "tenure_months": tenure_months,
        },
    )


def _missing_fields(applicant: ApplicantFinancials) -> list[str]:
    missing = []
    for name in REQUIRED_FIELDS:
        value = getattr(applicant, name)
        if value is None or value <= 0:
            missing.append(name)
    return missing


def decide(
    applicant: ApplicantFinancials | Mapping[str, Any],
    rules: RulesConfig,
) -> UnderwritingDecision:
    """Run the underwriting rule ladder for one applicant.

    Args:
        applicant: Financials (model or mapping). ``tenure_months`` defaults
            to ``rules.default_tenure_months``.
        rules: Thresholds and pricing to apply.

    Returns:
        UnderwritingDecision with status APPROVED, REJECTED or ERROR. Never raises
        for bad applicant input; malformed input yields an ERROR decision.
    """
    timestamp = datetime.now(UTC)
    audit: list[RuleEvaluation] = []

    # Step 1: validation
    try:
        if not isinstance(applicant, ApplicantFinancials):
            applicant = ApplicantFinancials.model_validate(dict(applicant))
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        message = f"Invalid applicant fields: {', '.join(fields) or 'unknown'}"
        logger.warning("Underwriting input rejected: %s", message)
        audit.append(
            RuleEvaluation(
                rule="required_fields",
                description="Required applicant fields must be present and well-formed",
                check=message,
                passed=False,
            )
        )
        return UnderwritingDecision(
            status=UnderwritingStatus.ERROR,
            decision=UnderwritingDecisionCode.MISSING_FIELDS,
            reason=message,
            audit_log=audit,
            rules_version=rules.version,
            timestamp=timestamp,
        )

    missing = _missing_fields(applicant)
    audit.append(
        RuleEvaluation(
            rule="required_fields",
            description="Required applicant fields must be present and well-formed",
            check=f"present: {', '.join(REQUIRED_FIELDS)}",
            passed=not missing,
        )
    )
    echo = {
        "applicant_name": applicant.applicant_name,
        "pan": applicant.pan,
        "credit_score": applicant.credit_score,
        "requested_amount": applicant.requested_amount,
        "monthly_salary": applicant.monthly_salary,
    }
    if missing:
        logger.warning("Underwriting input incomplete, missing: %s", ", ".join(missing))
        return UnderwritingDecision(
            status=UnderwritingStatus.ERROR,
            decision=UnderwritingDecisionCode.MISSING_FIELDS,
            reason=f"Missing required fields: {', '.join(missing)}",
            audit_log=audit,
            rules_version=rules.version,
            timestamp=timestamp,
            **echo,
        )

    credit_score = applicant.credit_score
    requested_amount = applicant.requested_amount
    monthly_salary = applicant.monthly_salary
    tenure_months = applicant.tenure_months or rules.default_tenure_months
    echo["tenure_months"] = tenure_months

    # Step 2: credit score threshold
    threshold = rules.underwriting_rules.credit_score_threshold
    score_ok = credit_score >= threshold.min_score
    audit.append(
        RuleEvaluation(
            rule="credit_score_threshold",
            description=threshold.description,
            check=f"credit_score ({credit_score}) >= {threshold.min_score}",
            passed=score_ok,
        )
    )
    if not score_ok:
        return UnderwritingDecision(
            status=UnderwritingStatus.REJECTED,
            decision=UnderwritingDecisionCode.CREDIT_SCORE_LOW,
            reason=(
                f"Credit score {credit_score} is below minimum threshold of "
                f"{threshold.min_score}"
            ),
            audit_log=audit,
            rules_version=rules.version,
            timestamp=timestamp,
            **echo,
        )

    # Step 3: risk classification
    bucket = classify_risk(credit_score)
    bucket_rule: RiskBucketRule = rules.risk_buckets.for_bucket(bucket)
    limit = bucket_rule.pre_approved_limit
    annual_roi = bucket_rule.annual_roi
    audit.append(
        RuleEvaluation(
            rule="risk_classification",
            description=f"Applicant mapped to {bucket.value} risk bucket",
            check=(
                f"credit_score ({credit_score}) >= {LOW_RISK_MIN_SCORE} -> LOW, "
                f">= {MEDIUM_RISK_MIN_SCORE} -> MEDIUM, else HIGH"
            ),
            passed=True,
            details={"pre_approved_limit": limit, "annual_roi": annual_roi},
        )
    )

    emi = calculate_emi(requested_amount, annual_roi, tenure_months)
    emi_ratio = round(emi / monthly_salary, 2)
    priced = {
        **echo,
        "risk_bucket": bucket,
        "pre_approved_limit": limit,
        "annual_roi": annual_roi,
        "emi_to_salary_ratio": emi_ratio,
    }

    # Step 4: within pre-approved limit
    within_limit = requested_amount <= limit
    audit.append(
        RuleEvaluation(
            rule="pre_approved_limit",
            description=rules.underwriting_rules.pre_approved_limit.description,
            check=f"requested_amount ({requested_amount}) <= pre_approved_limit ({limit})",
            passed=within_limit,
        )
    )
    if within_limit:
        return UnderwritingDecision(
            status=UnderwritingStatus.APPROVED,
            decision=UnderwritingDecisionCode.WITHIN_PRE_APPROVED_LIMIT,
            reason=f"Requested amount {requested_amount} is within pre-approved limit {limit}",
            approved_amount=requested_amount,
            monthly_emi=emi,
            emi_calculation=_emi_explanation(rules, requested_amount, annual_roi, tenure_months),
            audit_log=audit,
            rules_version=rules.version,
            timestamp=timestamp,
            **priced,
        )

    # Step 5: salary-extended check
    salary_rule = rules.underwriting_rules.salary_check_threshold
    salary_check_limit = limit * salary_rule.multiplier
    within_extended = requested_amount <= salary_check_limit
    audit.append(
        RuleEvaluation(
            rule="salary_check_threshold",
            description=salary_rule.description,
            check=(
                f"requested_amount ({requested_amount}) <= "
                f"{salary_rule.multiplier:g}x_pre_limit ({salary_check_limit})"
            ),
            passed=within_extended,
        )
    )
    if within_extended:
        max_emi_exact = monthly_salary * salary_rule.emi_to_salary_ratio
        max_emi = round(max_emi_exact, 2)
        emi_ok = emi <= max_emi_exact
        audit.append(
            RuleEvaluation(
                rule="emi_to_salary_check",
                description=(
                    f"EMI must be <= {salary_rule.emi_to_salary_ratio:.0%} of monthly salary"
                ),
                check=f"EMI ({emi}) <= max_emi ({max_emi})",
                passed=emi_ok,
                details={"emi": emi, "max_emi": max_emi, "emi_to_salary_ratio": emi_ratio},
            )
        )
        if emi_ok:
            return UnderwritingDecision(
                status=UnderwritingStatus.APPROVED,
                decision=UnderwritingDecisionCode.SALARY_CHECK_PASSED,
                reason=f"EMI {emi} is within {salary_rule.emi_to_salary_ratio:.0%} of salary",
                approved_amount=requested_amount,
                monthly_emi=emi,
                emi_calculation=_emi_explanation(
                    rules, requested_amount, annual_roi, tenure_months
                ),
                audit_log=audit,
                rules_version=rules.version,
                timestamp=timestamp,
                **priced,
            )

        return UnderwritingDecision(
            status=UnderwritingStatus.REJECTED,
            decision=UnderwritingDecisionCode.EMI_TOO_HIGH,
            reason=(
                f"EMI of {emi} exceeds {salary_rule.emi_to_salary_ratio:.0%} of salary "
                f"(max: {max_emi})"
            ),
            requested_emi=emi,
            max_emi_allowed=max_emi,
            audit_log=audit,
            rules_version=rules.version,
            timestamp=timestamp,
            **priced,
        )

    # Step 6: default rejection
    audit.append(
        RuleEvaluation(
            rule="default_rejection",
            description=f"Amount exceeds {salary_rule.multiplier:g}x pre-approved limit",
            check=f"requested_amount ({requested_amount}) > max_allowed ({salary_check_limit})",
            passed=False,
        )
    )
    return UnderwritingDecision(
        status=UnderwritingStatus.REJECTED,
        decision=UnderwritingDecisionCode.AMOUNT_TOO_HIGH,
        reason=(
            f"Requested amount {requested_amount} exceeds maximum allowed {salary_check_limit}"
        ),
        requested_emi=emi,
        max_amount_with_salary_check=salary_check_limit,
        audit_log=audit,
        rules_version=rules.version,
        timestamp=timestamp,
        **priced,
    )
