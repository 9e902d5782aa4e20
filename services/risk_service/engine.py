"""
Risk & Auto-Approval Engine.

A deterministic heuristic scorer: the same input and policy always produce
the same score, factors and decision. Nothing here performs I/O.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from .models import SubjectProfile
from .policy import RiskDecision, RiskPolicy

MAX_SCORE = 100


@dataclass(frozen=True)
class RiskInput:
    """Everything the scorer looks at for one transaction."""

    total: Decimal
    subject_known: bool = True
    account_age_days: Optional[float] = None
    risk_level: int = 0
    has_prior_violations: bool = False
    kyc_verified: bool = False
    is_blacklisted: bool = False
    profile_fingerprint: Optional[str] = None
    transaction_fingerprint: Optional[str] = None
    rental_days: Optional[int] = None
    # Other transactions of the subject created before this one
    prior_order_count: Optional[int] = None
    # Transactions of the subject, this one included, inside the velocity window
    recent_order_count: Optional[int] = None


@dataclass(frozen=True)
class RiskEvaluation:
    """Result of one evaluation; folded into the transaction by the caller."""

    decision: RiskDecision
    score: int
    factors: Tuple[str, ...] = field(default_factory=tuple)
    policy_version: str = "default"


def build_risk_input(
    profile: Optional[SubjectProfile],
    total: Decimal,
    now: datetime,
    transaction_fingerprint: Optional[str] = None,
    rental_days: Optional[int] = None,
    prior_order_count: Optional[int] = None,
    recent_order_count: Optional[int] = None,
) -> RiskInput:
    """
    Assemble a RiskInput from the subject profile read-model.

    Order counts come from the transaction store and are passed in by the
    caller; ``None`` means the history is unknown and is not scored.
    """
    if profile is None:
        return RiskInput(
            total=total,
            subject_known=False,
            transaction_fingerprint=transaction_fingerprint,
            rental_days=rental_days,
            prior_order_count=prior_order_count,
            recent_order_count=recent_order_count,
        )

    age = (now - profile.account_created_at).total_seconds() / 86400
    return RiskInput(
        total=total,
        subject_known=True,
        account_age_days=age,
        risk_level=profile.risk_level or 0,
        has_prior_violations=bool(profile.has_prior_violations),
        kyc_verified=bool(profile.kyc_verified),
        is_blacklisted=bool(profile.is_blacklisted),
        profile_fingerprint=profile.device_fingerprint,
        transaction_fingerprint=transaction_fingerprint,
        rental_days=rental_days,
        prior_order_count=prior_order_count,
        recent_order_count=recent_order_count,
    )


def evaluate(risk_input: RiskInput, policy: RiskPolicy) -> RiskEvaluation:
    """Score a transaction and decide APPROVE / MANUAL_REVIEW / REJECT."""
    weights = policy.weights

    if policy.blacklist_check and risk_input.is_blacklisted:
        return RiskEvaluation(
            decision=RiskDecision.REJECT,
            score=MAX_SCORE,
            factors=("Subject is blacklisted",),
            policy_version=policy.version,
        )

    score = 0
    factors: List[str] = []

    def penalise(weight: int, reason: str):
        nonlocal score
        score += weight
        factors.append(reason)

    if not risk_input.subject_known:
        penalise(weights.unknown_subject, "Unknown subject profile")
    else:
        if (
            risk_input.account_age_days is not None
            and risk_input.account_age_days < policy.new_account_days
        ):
            penalise(weights.new_account, f"New account (<{policy.new_account_days} days)")
        if risk_input.risk_level > policy.high_risk_level:
            penalise(weights.high_risk_profile, "High risk user profile")
        if risk_input.has_prior_violations:
            penalise(weights.prior_violations, "Prior violations on record")
        if (
            risk_input.profile_fingerprint
            and risk_input.transaction_fingerprint
            and risk_input.profile_fingerprint != risk_input.transaction_fingerprint
        ):
            penalise(weights.fingerprint_mismatch, "Device fingerprint mismatch")
        if policy.verified_customers_only and not risk_input.kyc_verified:
            penalise(weights.kyc_missing, "Customer KYC not verified")

    if (
        risk_input.prior_order_count is not None
        and risk_input.prior_order_count + 1 < policy.min_order_history
    ):
        penalise(weights.new_subject, f"New subject (<{policy.min_order_history} orders)")
    if (
        risk_input.recent_order_count is not None
        and risk_input.recent_order_count > policy.velocity_max_orders
    ):
        penalise(
            weights.velocity,
            f"Velocity check failed (>{policy.velocity_max_orders} orders "
            f"in {policy.velocity_window_minutes}m)",
        )

    if risk_input.total > policy.max_auto_approve_value:
        penalise(
            weights.high_value,
            f"Total {risk_input.total} exceeds auto-approve limit {policy.max_auto_approve_value}",
        )
    if risk_input.rental_days is not None and risk_input.rental_days > policy.max_rental_days:
        penalise(
            weights.long_duration,
            f"Duration {risk_input.rental_days} days exceeds limit {policy.max_rental_days} days",
        )

    score = min(score, MAX_SCORE)
    decision = _decide(score, policy)

    if not risk_input.subject_known and policy.unknown_subject_decision.severity > decision.severity:
        decision = policy.unknown_subject_decision

    # Disabled policy: every non-blacklisted transaction goes to a human
    if not policy.enabled:
        factors.append("Auto-approval disabled")
        decision = RiskDecision.MANUAL_REVIEW

    return RiskEvaluation(
        decision=decision,
        score=score,
        factors=tuple(factors),
        policy_version=policy.version,
    )


def _decide(score: int, policy: RiskPolicy) -> RiskDecision:
    if score < policy.approve_below:
        return RiskDecision.APPROVE
    if score < policy.review_ceiling:
        return RiskDecision.MANUAL_REVIEW if policy.fallback_to_manual else RiskDecision.REJECT
    return RiskDecision.REJECT if policy.reject_above_ceiling else RiskDecision.MANUAL_REVIEW
