"""Risk policy: every threshold and weight the scoring engine uses."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class RiskPolicy:
    # Classification
    auto_approve_threshold: int = 30
    high_risk_threshold: int = 70
    delay_fulfillment_threshold: int = 40
    max_score: int = 100

    # Customer
    new_user_24h_weight: int = 20
    new_user_week_weight: int = 10
    email_not_verified_weight: int = 15
    first_order_weight: int = 10
    failed_payment_weight_each: int = 5
    cancellation_limit: int = 2
    multiple_cancellations_weight: int = 10
    user_not_found_weight: int = 50
    history_window: int = 10

    # Order value
    high_value_total: float = 1000.0
    high_value_weight: int = 20
    medium_value_total: float = 500.0
    medium_value_weight: int = 10
    unusual_average_multiple: float = 3.0
    unusual_average_weight: int = 15
    historical_max_multiple: float = 2.0
    historical_max_weight: int = 10

    # Frequency
    hourly_excessive: int = 10
    hourly_excessive_weight: int = 30
    hourly_high: int = 5
    hourly_high_weight: int = 15
    daily_excessive: int = 20
    daily_excessive_weight: int = 25
    daily_high: int = 10
    daily_high_weight: int = 10

    # Payment state
    payment_failed_weight: int = 40
    payment_pending_weight: int = 5
    payment_unknown_weight: int = 20

    # Product mix
    bulk_quantity: int = 50
    bulk_weight: int = 15
    large_quantity: int = 20
    large_quantity_weight: int = 5
    price_variation_limit: float = 0.5
    price_inconsistency_weight: int = 10

    # Pattern
    rapid_window_minutes: int = 10
    rapid_order_limit: int = 3
    rapid_orders_weight: int = 25
    duplicate_orders_weight: int = 20

    # Email
    malformed_email_weight: int = 10
    disposable_email_weight: int = 15
    disposable_email_domains: frozenset[str] = frozenset(
        {"mailinator.com", "guerrillamail.com", "10minutemail.com", "tempmail.com", "yopmail.com"}
    )

    # Penalty contributed when an evaluator cannot read its dependency
    check_error_penalties: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType(
            {
                "customer": 30,
                "value": 10,
                "frequency": 10,
                "payment": 10,
                "product": 10,
                "pattern": 10,
                "email": 10,
            }
        )
    )
    default_check_error_penalty: int = 10

    # Batch mode
    batch_chunk_size: int = 50
    audit_high_risk: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.check_error_penalties, MappingProxyType):
            object.__setattr__(self, "check_error_penalties", MappingProxyType(dict(self.check_error_penalties)))

    def check_error_penalty(self, evaluator: str) -> int:
        return self.check_error_penalties.get(evaluator, self.default_check_error_penalty)

    def classify(self, score: int) -> str:
        if score <= self.auto_approve_threshold:
            return "auto_approve"
        if score >= self.high_risk_threshold:
            return "manual_review"
        return "monitor"

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "RiskPolicy":
        """Build a policy from application settings; keyword overrides win."""
        values: dict[str, Any] = {
            "auto_approve_threshold": settings.risk_auto_approve_threshold,
            "high_risk_threshold": settings.risk_high_threshold,
            "batch_chunk_size": settings.risk_batch_chunk_size,
            "audit_high_risk": settings.risk_audit_enabled,
            "disposable_email_domains": frozenset(d.lower() for d in settings.risk_disposable_email_domains),
        }
        values.update(overrides)
        return cls(**values)
