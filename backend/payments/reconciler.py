"""
Payment Reconciler

Two paths converge on one write primitive, ``apply_payment_status``:

  push  - a gateway notification (webhook) names a session/intent and a status
  pull  - the sweep walks locally ``pending`` orders and asks the gateway

Every write is a single conditional UPDATE guarded by the set of payment
states allowed to move to the target, so a webhook and a concurrent sweep
touching the same order cannot regress it. ``paid`` is terminal.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.enums import OrderStatus, PaymentStatus, payment_sources_for
from db.models import Order, utcnow
from integrations.base import PaymentGatewayError
from integrations.stripe_gateway import (
    CheckoutSession,
    PaymentNotification,
    StripeGateway,
    notification_payment_state,
    session_payment_state,
)
from orders.inventory import decrement_stock_for_order

logger = structlog.get_logger()

DEFAULT_STALE_WINDOW = timedelta(hours=24)


class PaymentOutcome(str, Enum):
    UPDATED = "updated"
    NO_CHANGE = "no_change"
    BLOCKED = "blocked"  # write would regress a settled status
    IGNORED = "ignored"  # event type we do not act on
    UNMATCHED = "unmatched"  # no local order for the notification
    UNSETTLED = "unsettled"  # gateway says the payment is still in flight


@dataclass(frozen=True)
class ReconcileResult:
    outcome: PaymentOutcome
    order_id: uuid.UUID | None = None
    payment_status: PaymentStatus | None = None

    @property
    def became_paid(self) -> bool:
        return self.outcome == PaymentOutcome.UPDATED and self.payment_status == PaymentStatus.PAID


@dataclass
class SweepResult:
    fixed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0
    examined: int = 0
    # Orders this run moved to paid; each still needs fulfillment
    fixed_order_ids: list[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["fixed_order_ids"] = [str(order_id) for order_id in self.fixed_order_ids]
        return data


@dataclass(frozen=True)
class PendingOrder:
    """The columns the pull path needs, detached from the ORM session."""

    order_id: uuid.UUID
    checkout_session_id: str | None
    created_at: datetime


_PENDING_COLUMNS = (Order.order_id, Order.checkout_session_id, Order.created_at)


# ── Write primitive ────────────────────────────────────────────────────────


async def apply_payment_status(
    db: AsyncSession,
    order_id: uuid.UUID,
    target: PaymentStatus,
    checkout_session_id: str | None = None,
) -> bool:
    """
    Conditionally move ``order_id`` to ``target``.

    Returns True only when this call changed the row. Reaching ``paid``
    also confirms a pending order and decrements stock, in the same commit.
    """
    sources = [s.value for s in payment_sources_for(target)]
    if not sources:
        return False

    values = {"payment_status": target.value, "updated_at": utcnow()}
    if target == PaymentStatus.PAID:
        values["order_status"] = case(
            (Order.order_status == OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value),
            else_=Order.order_status,
        )
    if checkout_session_id:
        values["checkout_session_id"] = func.coalesce(Order.checkout_session_id, checkout_session_id)

    stmt = (
        update(Order)
        .where(Order.order_id == order_id, Order.payment_status.in_(sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        changed = result.rowcount > 0
        if changed and target == PaymentStatus.PAID:
            await decrement_stock_for_order(db, order_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return changed


async def _current_payment_status(db: AsyncSession, order_id: uuid.UUID) -> PaymentStatus | None:
    result = await db.execute(select(Order.payment_status).where(Order.order_id == order_id))
    value = result.scalar_one_or_none()
    return PaymentStatus(value) if value is not None else None


async def _write(
    db: AsyncSession,
    order_id: uuid.UUID,
    target: PaymentStatus,
    checkout_session_id: str | None,
    source: str,
) -> ReconcileResult:
    log = logger.bind(order_id=str(order_id), target=target.value, source=source)
    if await apply_payment_status(db, order_id, target, checkout_session_id):
        log.info("payments.updated")
        return ReconcileResult(PaymentOutcome.UPDATED, order_id, target)

    current = await _current_payment_status(db, order_id)
    if current is None:
        log.warning("payments.order_not_found")
        return ReconcileResult(PaymentOutcome.UNMATCHED, order_id)
    if current == target:
        log.debug("payments.no_change")
        return ReconcileResult(PaymentOutcome.NO_CHANGE, order_id, current)
    log.warning("payments.regression_blocked", current=current.value)
    return ReconcileResult(PaymentOutcome.BLOCKED, order_id, current)


# ── Push path ──────────────────────────────────────────────────────────────


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None


async def resolve_order_id(
    db: AsyncSession,
    notification: PaymentNotification,
    gateway: StripeGateway | None = None,
) -> uuid.UUID | None:
    """
    Work out which order a notification is about.

    Metadata wins; then a stored checkout-session correlation; then the
    gateway itself, re-fetching the session the event points at.
    """
    if notification.order_id:
        return _parse_uuid(notification.order_id)

    if notification.object_id:
        result = await db.execute(
            select(Order.order_id).where(Order.checkout_session_id == notification.object_id).limit(1)
        )
        order_id = result.scalar_one_or_none()
        if order_id is not None:
            return order_id

    if gateway is None:
        return None

    session: CheckoutSession | None = None
    if (notification.object_id or "").startswith("cs_"):
        session = await gateway.retrieve_checkout_session(notification.object_id)
    elif notification.payment_intent:
        session = await gateway.find_session_by_payment_intent(notification.payment_intent)
    return _parse_uuid(session.order_id) if session else None


async def reconcile_payment(
    db: AsyncSession,
    notification: PaymentNotification,
    gateway: StripeGateway | None = None,
) -> ReconcileResult:
    """Apply a pushed gateway notification. Idempotent."""
    log = logger.bind(event_type=notification.event_type, object_id=notification.object_id)

    target = notification_payment_state(notification)
    if target is None:
        log.info("payments.event_ignored")
        return ReconcileResult(PaymentOutcome.IGNORED)

    order_id = await resolve_order_id(db, notification, gateway)
    if order_id is None:
        log.warning("payments.unmatched")
        return ReconcileResult(PaymentOutcome.UNMATCHED)

    if target == PaymentStatus.PENDING:
        log.info("payments.unsettled", order_id=str(order_id))
        return ReconcileResult(PaymentOutcome.UNSETTLED, order_id, PaymentStatus.PENDING)

    object_id = notification.object_id or ""
    session_id = object_id if object_id.startswith("cs_") else None
    return await _write(db, order_id, target, session_id, source="webhook")


# ── Pull path ──────────────────────────────────────────────────────────────


async def _lookup_session(gateway: StripeGateway, order: PendingOrder) -> CheckoutSession | None:
    session = None
    if order.checkout_session_id:
        session = await gateway.retrieve_checkout_session(order.checkout_session_id)
    if session is None:
        session = await gateway.find_checkout_session_for_order(str(order.order_id))
    return session


async def reconcile_order_payment(
    db: AsyncSession,
    order: PendingOrder,
    gateway: StripeGateway,
    stale_window: timedelta = DEFAULT_STALE_WINDOW,
    now: datetime | None = None,
) -> ReconcileResult:
    """
    Resolve one locally pending order against the gateway.

    No session and older than ``stale_window`` → failed. No session and
    recent → left pending. Otherwise the session's own state decides.
    """
    now = now or utcnow()
    session = await _lookup_session(gateway, order)

    if session is None:
        if order.created_at < now - stale_window:
            return await _write(db, order.order_id, PaymentStatus.FAILED, None, source="sweep")
        return ReconcileResult(PaymentOutcome.UNSETTLED, order.order_id, PaymentStatus.PENDING)

    state = session_payment_state(session)
    if state == PaymentStatus.PENDING:
        return ReconcileResult(PaymentOutcome.UNSETTLED, order.order_id, PaymentStatus.PENDING)
    return await _write(db, order.order_id, state, session.session_id, source="sweep")


async def sweep_pending_payments(
    db: AsyncSession,
    gateway: StripeGateway,
    stale_window: timedelta = DEFAULT_STALE_WINDOW,
    now: datetime | None = None,
) -> SweepResult:
    """
    Reconcile every order still ``pending`` locally.

    Safe to re-run: only writes that actually happened are counted, so a
    second pass over unchanged gateway data finds nothing to fix.
    """
    now = now or utcnow()
    result = await db.execute(
        select(*_PENDING_COLUMNS).where(Order.payment_status == PaymentStatus.PENDING.value).order_by(Order.created_at)
    )
    orders = [PendingOrder(*row) for row in result.all()]
    summary = SweepResult(examined=len(orders))
    logger.info("payments.sweep.started", pending=len(orders), stale_window_hours=stale_window.total_seconds() / 3600)

    for order in orders:
        try:
            outcome = await reconcile_order_payment(db, order, gateway, stale_window, now)
        except PaymentGatewayError as exc:
            summary.errors += 1
            summary.still_pending += 1
            logger.error("payments.sweep.order_failed", order_id=str(order.order_id), error=str(exc))
            continue

        if outcome.outcome == PaymentOutcome.UPDATED and outcome.payment_status == PaymentStatus.PAID:
            summary.fixed += 1
            summary.fixed_order_ids.append(order.order_id)
        elif outcome.outcome == PaymentOutcome.UPDATED and outcome.payment_status == PaymentStatus.FAILED:
            summary.failed += 1
        elif outcome.outcome == PaymentOutcome.UNSETTLED:
            summary.still_pending += 1

    logger.info("payments.sweep.completed", **summary.to_dict())
    return summary


async def verify_order_payment(
    db: AsyncSession,
    order_id: uuid.UUID,
    gateway: StripeGateway,
    stale_window: timedelta = DEFAULT_STALE_WINDOW,
) -> ReconcileResult | None:
    """Operator hook: re-check one order now. Returns None if the order does not exist."""
    result = await db.execute(select(*_PENDING_COLUMNS, Order.payment_status).where(Order.order_id == order_id))
    row = result.one_or_none()
    if row is None:
        return None
    if row.payment_status != PaymentStatus.PENDING.value:
        return ReconcileResult(PaymentOutcome.NO_CHANGE, order_id, PaymentStatus(row.payment_status))
    order = PendingOrder(row.order_id, row.checkout_session_id, row.created_at)
    return await reconcile_order_payment(db, order, gateway, stale_window)
