"""
Fulfillment Orchestrator

Rate shopping, label purchase and shipment-status reconciliation for
orders, on top of the shipping provider client.

Label purchase rules:
  - an order with a live label is never relabelled
  - a queued transaction gets exactly one recheck after a fixed delay
  - a failed attempt writes only ``shipping_error``; prior shipment facts stay
  - a successful purchase writes every shipment fact in one conditional UPDATE
"""

from __future__ import annotations

import asyncio
import math
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, NoReturn

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.enums import TERMINAL_ORDER_STATUSES, OrderStatus, PaymentStatus, ShippingStatus, shipping_sources_for
from db.models import Order, utcnow
from fulfillment.tracking import derive_tracking_url
from integrations.base import ShippingProviderError
from integrations.shippo import (
    HANDLED_EVENTS,
    TRANSACTION_EVENTS,
    LabelTransaction,
    Parcel,
    ShipmentNotification,
    ShippingAddress,
    ShippingRate,
    ShippoClient,
    shipping_state_for,
)

logger = structlog.get_logger()

PRODUCT_UNIT_WEIGHT_LB = 0.5
FLAVOR_UNIT_WEIGHT_LB = 0.25
MIN_PARCEL_WEIGHT_LB = 1.0

# Shipping states that carry no live label; a purchase may (re)start from these.
LABEL_RETRY_STATES = (ShippingStatus.NONE.value, ShippingStatus.FAILED.value)
# Closed orders never continue through fulfillment.
CLOSED_ORDER_STATES = tuple(s.value for s in TERMINAL_ORDER_STATUSES)
# A shipping_failed order may still be relabelled by an operator.
UNLABELLABLE_ORDER_STATES = (OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value)


class OrderNotFoundError(LookupError):
    pass


class IncompleteAddressError(ValueError):
    def __init__(self, missing: list[str]):
        super().__init__(f"Shipping address is missing: {', '.join(missing)}")
        self.missing = missing


class LabelAlreadyPurchasedError(Exception):
    """The order already carries a live label."""


class OrderClosedError(Exception):
    """The order is cancelled or delivered and takes no new label."""


class LabelPurchaseError(Exception):
    """Terminal failure of one label purchase attempt; already recorded on the order."""

    def __init__(self, order_id: uuid.UUID, message: str, transaction_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id
        self.transaction_id = transaction_id


@dataclass(frozen=True)
class LabelResult:
    order_id: uuid.UUID
    shipment_id: str
    transaction_id: str
    tracking_number: str
    tracking_url: str
    label_url: str | None
    carrier: str | None
    service_level: str | None
    cost: Decimal | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "shipment_id": self.shipment_id,
            "transaction_id": self.transaction_id,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "label_url": self.label_url,
            "carrier": self.carrier,
            "service_level": self.service_level,
            "cost": str(self.cost) if self.cost is not None else None,
        }


class ShipmentOutcome(str, Enum):
    UPDATED = "updated"
    NO_CHANGE = "no_change"
    BLOCKED = "blocked"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class ShipmentReconcileResult:
    outcome: ShipmentOutcome
    order_id: uuid.UUID | None = None
    shipping_status: ShippingStatus | None = None


def estimate_parcel(line_items: Iterable[Any]) -> Parcel:
    """
    Size one parcel from order lines.

    Products weigh 0.5 lb a unit; custom packs 0.25 lb per flavor per unit.
    Length grows 4 in for every three items.
    """
    weight = 0.0
    items = 0
    for item in line_items:
        flavors = len(item.flavor_ids or ())
        if item.product_id is None and flavors:
            items += item.quantity * flavors
            weight += item.quantity * flavors * FLAVOR_UNIT_WEIGHT_LB
        elif item.product_id is not None:
            items += item.quantity
            weight += item.quantity * PRODUCT_UNIT_WEIGHT_LB

    return Parcel(
        length=math.ceil(items / 3) * 4 + 2,
        width=8,
        height=6,
        weight=weight or MIN_PARCEL_WEIGHT_LB,
    )


def _order_status_after(target: ShippingStatus):
    """Order status expression that follows a shipping transition without leaving a terminal state."""
    open_statuses = [OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value, OrderStatus.SHIPPED.value]
    if target in (ShippingStatus.SHIPPED, ShippingStatus.IN_TRANSIT):
        follow = OrderStatus.SHIPPED
    elif target == ShippingStatus.DELIVERED:
        follow = OrderStatus.DELIVERED
    elif target == ShippingStatus.FAILED:
        follow = OrderStatus.SHIPPING_FAILED
    else:
        return None
    return case((Order.order_status.in_(open_statuses), follow.value), else_=Order.order_status)


class FulfillmentOrchestrator:
    def __init__(
        self,
        client: ShippoClient,
        requeue_delay_seconds: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.requeue_delay_seconds = requeue_delay_seconds
        self.sleep = sleep

    # ── Queries ────────────────────────────────────────────────────────

    async def validate_address(self, address: ShippingAddress) -> dict[str, Any]:
        """
        Validate with the provider; if the provider is unreachable, fall
        back to checking that the required fields are present.
        """
        missing = address.missing_fields()
        try:
            validated = await self.client.validate_address(address)
        except ShippingProviderError as exc:
            logger.warning("fulfillment.address_validation_fallback", error=str(exc))
            return {"is_valid": not missing, "missing_fields": missing, "address": address.to_dict(), "messages": []}

        results = validated.get("validation_results") or {}
        messages = [m.get("text", "") for m in results.get("messages") or [] if isinstance(m, dict)]
        return {
            "is_valid": not missing and results.get("is_valid") is not False,
            "missing_fields": missing,
            "address": ShippingAddress.from_mapping(validated).to_dict(),
            "messages": messages,
        }

    async def get_rates(self, address: ShippingAddress, parcels: list[Parcel]) -> list[ShippingRate]:
        missing = address.missing_fields()
        if missing:
            raise IncompleteAddressError(missing)
        shipment = await self.client.create_shipment(address, parcels)
        logger.info("fulfillment.rates_fetched", shipment_id=shipment.shipment_id, rates=len(shipment.rates))
        return sorted(shipment.rates, key=lambda r: r.amount)

    # ── Label purchase ─────────────────────────────────────────────────

    async def _record_failure(self, db: AsyncSession, order_id: uuid.UUID, message: str) -> None:
        await db.execute(
            update(Order)
            .where(Order.order_id == order_id)
            .values(shipping_error=message[:2000], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _fail(
        self, db: AsyncSession, order_id: uuid.UUID, message: str, transaction_id: str | None = None
    ) -> NoReturn:
        logger.error("fulfillment.label_failed", order_id=str(order_id), transaction_id=transaction_id, error=message)
        await self._record_failure(db, order_id, message)
        raise LabelPurchaseError(order_id, message, transaction_id)

    async def _resolve_shipment(
        self,
        order_id: uuid.UUID,
        address: ShippingAddress,
        parcels: list[Parcel],
        rate: ShippingRate,
    ) -> tuple[str, str]:
        """Return ``(shipment_id, rate_id)`` to buy against."""
        if rate.shipment_id:
            return rate.shipment_id, rate.rate_id
        shipment = await self.client.create_shipment(address, parcels, metadata=f"Order {order_id}")
        for candidate in shipment.rates:
            if candidate.carrier == rate.carrier and candidate.service_level == rate.service_level:
                return shipment.shipment_id, candidate.rate_id
        return shipment.shipment_id, rate.rate_id

    async def _settle_transaction(self, transaction: LabelTransaction, log) -> LabelTransaction:
        if not transaction.is_pending:
            return transaction
        log.info("fulfillment.transaction_queued", delay_seconds=self.requeue_delay_seconds)
        await self.sleep(self.requeue_delay_seconds)
        try:
            return await self.client.get_transaction(transaction.transaction_id)
        except ShippingProviderError as exc:
            log.warning("fulfillment.transaction_recheck_failed", error=str(exc))
            return transaction

    async def purchase_label(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        address: ShippingAddress,
        parcels: list[Parcel],
        rate: ShippingRate,
    ) -> LabelResult:
        log = logger.bind(order_id=str(order_id), rate_id=rate.rate_id, carrier=rate.carrier)

        result = await db.execute(select(Order.shipping_status, Order.order_status).where(Order.order_id == order_id))
        row = result.one_or_none()
        if row is None:
            raise OrderNotFoundError(str(order_id))
        shipping_status, order_status = row
        if order_status in UNLABELLABLE_ORDER_STATES:
            log.warning("fulfillment.label_refused_closed_order", order_status=order_status)
            raise OrderClosedError(f"Order {order_id} is {order_status}")
        if shipping_status not in LABEL_RETRY_STATES:
            raise LabelAlreadyPurchasedError(f"Order {order_id} already has a label ({shipping_status})")
        missing = address.missing_fields()
        if missing:
            raise IncompleteAddressError(missing)

        try:
            shipment_id, rate_id = await self._resolve_shipment(order_id, address, parcels, rate)
            transaction = await self.client.create_transaction(rate_id, metadata=f"Order {order_id}")
        except ShippingProviderError as exc:
            await self._fail(db, order_id, f"Label purchase failed: {exc}")

        transaction = await self._settle_transaction(transaction, log)

        if transaction.errored:
            await self._fail(
                db,
                order_id,
                f"Label purchase error (transaction {transaction.transaction_id}): {transaction.error_text()}",
                transaction.transaction_id,
            )
        if not transaction.tracking_number:
            await self._fail(
                db,
                order_id,
                f"Label purchase {transaction.status or 'unknown'} without tracking number "
                f"(transaction {transaction.transaction_id})",
                transaction.transaction_id,
            )

        carrier = transaction.carrier or rate.carrier
        label = LabelResult(
            order_id=order_id,
            shipment_id=shipment_id,
            transaction_id=transaction.transaction_id,
            tracking_number=transaction.tracking_number,
            tracking_url=derive_tracking_url(transaction.tracking_number, carrier, transaction.tracking_url),
            label_url=transaction.label_url,
            carrier=carrier,
            service_level=transaction.service_level or rate.service_level,
            cost=transaction.amount if transaction.amount is not None else rate.amount,
        )

        outcome = await db.execute(
            update(Order)
            .where(
                Order.order_id == order_id,
                Order.shipping_status.in_(LABEL_RETRY_STATES),
                Order.order_status.not_in(UNLABELLABLE_ORDER_STATES),
            )
            .values(
                shipment_id=label.shipment_id,
                tracking_number=label.tracking_number,
                tracking_url=label.tracking_url,
                shipping_label_url=label.label_url,
                shipping_carrier=label.carrier,
                shipping_service=label.service_level,
                shipping_cost=label.cost,
                shipping_status=ShippingStatus.LABEL_CREATED.value,
                shipping_error=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if outcome.rowcount == 0:
            log.error(
                "fulfillment.orphaned_label",
                transaction_id=label.transaction_id,
                tracking_number=label.tracking_number,
            )
            raise LabelAlreadyPurchasedError(f"Order {order_id} was labelled concurrently")

        log.info(
            "fulfillment.label_purchased",
            shipment_id=label.shipment_id,
            transaction_id=label.transaction_id,
            tracking_number=label.tracking_number,
        )
        return label

    async def auto_fulfill(self, db: AsyncSession, order_id: uuid.UUID) -> LabelResult | None:
        """
        Buy the cheapest label for a paid order that has an address and no
        label yet. Returns None when the order is not eligible.
        """
        order = await db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))

        log = logger.bind(order_id=str(order_id))
        if order.order_status in CLOSED_ORDER_STATES:
            log.info("fulfillment.skip_terminal_order", order_status=order.order_status)
            return None
        if order.payment_status != PaymentStatus.PAID.value:
            log.info("fulfillment.skip_unpaid", payment_status=order.payment_status)
            return None
        if order.shipping_status != ShippingStatus.NONE.value or order.shipping_error:
            log.info("fulfillment.skip_already_handled", shipping_status=order.shipping_status)
            return None
        if not order.shipping_address:
            log.info("fulfillment.skip_no_address")
            return None

        address = ShippingAddress.from_mapping(order.shipping_address)
        parcel = estimate_parcel(order.line_items)

        missing = address.missing_fields()
        if missing:
            await self._fail(db, order_id, f"Shipping address is missing: {', '.join(missing)}")

        try:
            rates = await self.get_rates(address, [parcel])
        except ShippingProviderError as exc:
            await self._fail(db, order_id, f"Rate lookup failed: {exc}")
        if not rates:
            await self._fail(db, order_id, "No shipping rates available for this address")

        return await self.purchase_label(db, order_id, address, [parcel], rates[0])

    async def reconcile_shipment(self, db: AsyncSession, notification: ShipmentNotification) -> ShipmentReconcileResult:
        return await reconcile_shipment(db, notification)


# ── Shipment webhooks ──────────────────────────────────────────────────────


async def _find_order(db: AsyncSession, notification: ShipmentNotification) -> uuid.UUID | None:
    if notification.event_type in TRANSACTION_EVENTS:
        column, value = Order.shipment_id, notification.shipment_id
    else:
        column, value = Order.tracking_number, notification.tracking_number
    if not value:
        return None
    result = await db.execute(select(Order.order_id).where(column == value).limit(1))
    return result.scalar_one_or_none()


async def _adopt_label(db: AsyncSession, notification: ShipmentNotification) -> ShipmentReconcileResult:
    """
    A successful transaction the order has no record of (the purchasing
    call died before persisting). The metadata names the order.
    """
    try:
        order_id = uuid.UUID(notification.metadata_order_id or "")
    except ValueError:
        return ShipmentReconcileResult(ShipmentOutcome.UNMATCHED)

    outcome = await db.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.shipping_status.in_(LABEL_RETRY_STATES))
        .values(
            shipment_id=notification.shipment_id,
            tracking_number=notification.tracking_number,
            tracking_url=derive_tracking_url(
                notification.tracking_number, notification.carrier, notification.tracking_url
            ),
            shipping_label_url=notification.label_url,
            shipping_carrier=notification.carrier,
            shipping_status=ShippingStatus.LABEL_CREATED.value,
            shipping_error=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if outcome.rowcount == 0:
        return ShipmentReconcileResult(ShipmentOutcome.NO_CHANGE, order_id)
    logger.info("fulfillment.label_adopted", order_id=str(order_id), tracking_number=notification.tracking_number)
    return ShipmentReconcileResult(ShipmentOutcome.UPDATED, order_id, ShippingStatus.LABEL_CREATED)


async def reconcile_shipment(db: AsyncSession, notification: ShipmentNotification) -> ShipmentReconcileResult:
    """Apply a pushed transaction/tracking event. Idempotent and forward-only."""
    log = logger.bind(
        event_type=notification.event_type,
        shipment_id=notification.shipment_id,
        tracking_number=notification.tracking_number,
    )
    if notification.event_type not in HANDLED_EVENTS:
        log.info("fulfillment.event_ignored")
        return ShipmentReconcileResult(ShipmentOutcome.IGNORED)

    target = shipping_state_for(notification)
    if target is None:
        log.info("fulfillment.status_not_actionable", status=notification.status)
        return ShipmentReconcileResult(ShipmentOutcome.IGNORED)

    order_id = await _find_order(db, notification)
    if order_id is None:
        if (
            notification.event_type in TRANSACTION_EVENTS
            and target == ShippingStatus.LABEL_CREATED
            and notification.tracking_number
        ):
            return await _adopt_label(db, notification)
        log.warning("fulfillment.unmatched")
        return ShipmentReconcileResult(ShipmentOutcome.UNMATCHED)

    values: dict[str, Any] = {"shipping_status": target.value, "updated_at": utcnow()}
    follow = _order_status_after(target)
    if follow is not None:
        values["order_status"] = follow

    sources = [s.value for s in shipping_sources_for(target)]
    outcome = await db.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.shipping_status.in_(sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if outcome.rowcount:
        log.info("fulfillment.shipping_status_updated", order_id=str(order_id), shipping_status=target.value)
        return ShipmentReconcileResult(ShipmentOutcome.UPDATED, order_id, target)

    result = await db.execute(select(Order.shipping_status).where(Order.order_id == order_id))
    current = ShippingStatus(result.scalar_one())
    if current == target:
        return ShipmentReconcileResult(ShipmentOutcome.NO_CHANGE, order_id, current)
    log.warning("fulfillment.regression_blocked", order_id=str(order_id), current=current.value, target=target.value)
    return ShipmentReconcileResult(ShipmentOutcome.BLOCKED, order_id, current)
