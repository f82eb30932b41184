"""
Risk Scoring Engine: aggregate evaluator signals into one verdict.

Classification:
  - score <= auto_approve_threshold          → auto_approve
  - auto_approve_threshold < score < high    → monitor (enhanced monitoring)
  - score >= high_risk_threshold             → manual_review (logged, audited)

The engine never raises to its caller. A failing evaluator costs a fixed
penalty; a failure of the engine itself yields a conservative verdict.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import OrderRiskAudit, utcnow
from risk.evaluators import EVALUATORS, Evaluator, OrderSnapshot
from risk.history import OrderHistoryReader
from risk.policy import RiskPolicy

logger = structlog.get_logger()

VERIFICATION_ERROR = "VERIFICATION_ERROR"

# Flag → recommendation, applied after the score-band recommendations.
FLAG_RECOMMENDATIONS = (
    ("EMAIL_NOT_VERIFIED", "REQUIRE_EMAIL_VERIFICATION"),
    ("PAYMENT_FAILED", "RETRY_PAYMENT_REQUIRED"),
    ("NEW_USER_24H", "NEW_USER_VERIFICATION"),
    ("BULK_ORDER", "VERIFY_BUSINESS_ACCOUNT"),
)


@dataclass(frozen=True)
class RiskAssessment:
    order_id: uuid.UUID
    score: int
    flags: tuple[str, ...]
    classification: str
    is_valid: bool
    auto_approve: bool
    recommendations: tuple[str, ...] = ()
    assessed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "risk_score": self.score,
            "flags": list(self.flags),
            "classification": self.classification,
            "is_valid": self.is_valid,
            "auto_approve": self.auto_approve,
            "recommendations": list(self.recommendations),
            "assessed_at": self.assessed_at.isoformat(),
        }


def conservative_assessment(order_id: uuid.UUID, policy: RiskPolicy) -> RiskAssessment:
    """Verdict used when the engine itself fails: never approve silently."""
    return RiskAssessment(
        order_id=order_id,
        score=policy.max_score,
        flags=(VERIFICATION_ERROR,),
        classification="manual_review",
        is_valid=False,
        auto_approve=False,
        recommendations=("HOLD_FOR_MANUAL_REVIEW",),
    )


def build_recommendations(score: int, flags: Iterable[str], policy: RiskPolicy) -> tuple[str, ...]:
    flag_set = set(flags)
    recommendations: list[str] = []

    if score >= policy.high_risk_threshold:
        recommendations += ["HOLD_FOR_MANUAL_REVIEW", "CONTACT_CUSTOMER_VERIFICATION"]
    elif score > policy.auto_approve_threshold:
        recommendations.append("ENHANCED_MONITORING")
        if score >= policy.delay_fulfillment_threshold:
            recommendations.append("DELAY_FULFILLMENT_24H")

    for flag, recommendation in FLAG_RECOMMENDATIONS:
        if flag in flag_set:
            recommendations.append(recommendation)

    if score <= policy.auto_approve_threshold:
        recommendations.append("AUTO_APPROVE_SAFE")

    return tuple(recommendations)


def classify(order_id: uuid.UUID, raw_score: int, flags: Iterable[str], policy: RiskPolicy) -> RiskAssessment:
    """Clamp the summed score and derive validity, approval and recommendations."""
    flags = tuple(flags)
    score = max(0, min(int(raw_score), policy.max_score))
    return RiskAssessment(
        order_id=order_id,
        score=score,
        flags=flags,
        classification=policy.classify(score),
        is_valid=score < policy.high_risk_threshold,
        auto_approve=score <= policy.auto_approve_threshold,
        recommendations=build_recommendations(score, flags, policy),
    )


class RiskScoringEngine:
    """
    Score orders for fraud/abuse risk.

    Each assessment opens its own session from ``session_factory`` so
    batch mode can score orders concurrently without sharing a session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: RiskPolicy | None = None,
        evaluators: tuple[tuple[str, Evaluator], ...] = EVALUATORS,
    ):
        self.session_factory = session_factory
        self.policy = policy or RiskPolicy()
        self.evaluators = evaluators

    async def assess(self, snapshot: OrderSnapshot, now: datetime | None = None) -> RiskAssessment:
        log = logger.bind(order_id=str(snapshot.order_id), customer_id=str(snapshot.customer_id))
        try:
            now = now or utcnow()
            async with self.session_factory() as db:
                assessment = await self._score(db, snapshot, now, log)
                if assessment.score >= self.policy.high_risk_threshold:
                    await self._record_high_risk(db, snapshot, assessment, log)
            log.info(
                "risk.assessed",
                risk_score=assessment.score,
                classification=assessment.classification,
                flags=list(assessment.flags),
            )
            return assessment
        except Exception as exc:  # noqa: BLE001
            log.error("risk.assessment_failed", error=str(exc), exc_info=True)
            return conservative_assessment(snapshot.order_id, self.policy)

    async def _score(self, db: AsyncSession, snapshot: OrderSnapshot, now: datetime, log) -> RiskAssessment:
        history = OrderHistoryReader(db, exclude_order_id=snapshot.order_id)
        raw_score = 0
        flags: list[str] = []

        for name, evaluator in self.evaluators:
            try:
                signal = await evaluator(history, snapshot, self.policy, now)
            except Exception as exc:  # noqa: BLE001
                penalty = self.policy.check_error_penalty(name)
                log.warning("risk.evaluator_failed", evaluator=name, penalty=penalty, error=str(exc))
                raw_score += penalty
                flags.append(f"{name.upper()}_CHECK_ERROR")
                continue
            raw_score += max(0, int(signal.score))
            flags.extend(signal.flags)

        return classify(snapshot.order_id, raw_score, flags, self.policy)

    async def _record_high_risk(self, db: AsyncSession, snapshot: OrderSnapshot, assessment: RiskAssessment, log):
        log.warning(
            "risk.high_risk_order",
            risk_score=assessment.score,
            flags=list(assessment.flags),
            total=float(snapshot.total),
            recommendations=list(assessment.recommendations),
        )
        if not self.policy.audit_high_risk:
            return
        try:
            db.add(
                OrderRiskAudit(
                    order_id=snapshot.order_id,
                    customer_id=snapshot.customer_id,
                    risk_score=assessment.score,
                    classification=assessment.classification,
                    flags=list(assessment.flags),
                    recommendations=list(assessment.recommendations),
                    total=snapshot.total,
                )
            )
            await db.commit()
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            log.error("risk.audit_write_failed", error=str(exc))

    async def batch_assess(self, snapshots: Iterable[OrderSnapshot]) -> dict[uuid.UUID, RiskAssessment]:
        """Assess many orders, ``batch_chunk_size`` at a time."""
        snapshots = list(snapshots)
        results: dict[uuid.UUID, RiskAssessment] = {}
        chunk_size = max(1, self.policy.batch_chunk_size)

        for start in range(0, len(snapshots), chunk_size):
            chunk = snapshots[start : start + chunk_size]
            outcomes = await asyncio.gather(*(self.assess(s) for s in chunk), return_exceptions=True)
            for snapshot, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("risk.batch_item_failed", order_id=str(snapshot.order_id), error=str(outcome))
                    outcome = conservative_assessment(snapshot.order_id, self.policy)
                results[snapshot.order_id] = outcome

        logger.info("risk.batch_completed", orders=len(snapshots), chunks=-(-len(snapshots) // chunk_size))
        return results
