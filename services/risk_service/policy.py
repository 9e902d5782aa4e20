"""Versioned auto-approval policy."""
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

from shared.config import Settings


class RiskDecision(str, Enum):
    """Outcome of a risk evaluation, ordered from least to most severe."""
    APPROVE = "APPROVE"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    REJECT = "REJECT"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    RiskDecision.APPROVE: 0,
    RiskDecision.MANUAL_REVIEW: 1,
    RiskDecision.REJECT: 2,
}


class RiskWeights(BaseModel):
    """Score added by each failed heuristic."""

    model_config = ConfigDict(frozen=True)

    new_account: int = 15
    fingerprint_mismatch: int = 25
    high_risk_profile: int = 30
    prior_violations: int = 35
    high_value: int = 40
    long_duration: int = 20
    kyc_missing: int = 40
    unknown_subject: int = 10
    new_subject: int = 20
    velocity: int = 30


class RiskPolicy(BaseModel):
    """
    Thresholds and switches for one evaluation.

    A policy is immutable; changing settings yields a new policy with its own
    ``version``, which is stamped on every decision it produced.
    """

    model_config = ConfigDict(frozen=True)

    version: str = "default"
    enabled: bool = True
    max_auto_approve_value: Decimal = Decimal("50000")
    max_rental_days: int = 30
    verified_customers_only: bool = False
    blacklist_check: bool = True
    fallback_to_manual: bool = True
    reject_above_ceiling: bool = True
    approve_below: int = 50
    review_ceiling: int = 80
    new_account_days: int = 7
    high_risk_level: int = 50
    min_order_history: int = 3
    velocity_max_orders: int = 3
    velocity_window_minutes: int = 10
    unknown_subject_decision: RiskDecision = RiskDecision.MANUAL_REVIEW
    weights: RiskWeights = RiskWeights()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskPolicy":
        return cls(
            version=settings.risk_policy_version,
            enabled=settings.risk_enabled,
            max_auto_approve_value=settings.risk_max_auto_approve_value,
            max_rental_days=settings.risk_max_rental_days,
            verified_customers_only=settings.risk_verified_customers_only,
            blacklist_check=settings.risk_blacklist_check,
            fallback_to_manual=settings.risk_fallback_to_manual,
            reject_above_ceiling=settings.risk_reject_above_ceiling,
            approve_below=settings.risk_approve_below,
            review_ceiling=settings.risk_review_ceiling,
            unknown_subject_decision=RiskDecision(settings.risk_unknown_subject_decision),
            new_account_days=settings.risk_new_account_days,
            high_risk_level=settings.risk_high_risk_level,
            min_order_history=settings.risk_min_order_history,
            velocity_max_orders=settings.risk_velocity_max_orders,
            velocity_window_minutes=settings.risk_velocity_window_minutes,
            weights=RiskWeights(
                new_account=settings.risk_weight_new_account,
                fingerprint_mismatch=settings.risk_weight_fingerprint_mismatch,
                high_risk_profile=settings.risk_weight_high_risk_profile,
                prior_violations=settings.risk_weight_prior_violations,
                high_value=settings.risk_weight_high_value,
                long_duration=settings.risk_weight_long_duration,
                kyc_missing=settings.risk_weight_kyc_missing,
                unknown_subject=settings.risk_weight_unknown_subject,
                new_subject=settings.risk_weight_new_subject,
                velocity=settings.risk_weight_velocity,
            ),
        )
