"""
Risk Signal Evaluators

Seven independent checks, each turning one facet of an order snapshot into
a non-negative score contribution plus zero or more flag codes:

  customer   - account age, verification, payment/cancellation history
  value      - absolute order value and deviation from the customer's norm
  frequency  - orders placed in the last hour / day
  payment    - payment status at time of scoring
  product    - line quantities and unit-price spread
  pattern    - rapid successive and duplicate orders
  email      - contact address quality

Evaluators never share state. A data-layer failure propagates to the
engine, which converts it to a fixed penalty and a ``*_CHECK_ERROR`` flag.
"""

from __future__ import annotations

import math
import re
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from risk.history import OrderHistoryReader
from risk.policy import RiskPolicy

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

KNOWN_PAYMENT_STATUSES = {"paid", "pending", "failed"}


# ── Snapshot & signal containers ──────────────────────────────────────────


@dataclass(frozen=True)
class LineItemSnapshot:
    product_id: str | None
    quantity: int
    unit_price: float


@dataclass(frozen=True)
class OrderSnapshot:
    """Immutable view of an order at the moment it is scored."""

    order_id: uuid.UUID
    customer_id: uuid.UUID
    total: float
    payment_status: str | None = "pending"
    customer_email: str | None = None
    customer_created_at: datetime | None = None
    line_items: tuple[LineItemSnapshot, ...] = ()


@dataclass(frozen=True)
class RiskSignal:
    score: int = 0
    flags: tuple[str, ...] = field(default_factory=tuple)


Evaluator = Callable[[OrderHistoryReader, OrderSnapshot, RiskPolicy, datetime], Awaitable[RiskSignal]]


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def order_signature(total, item_count: int) -> str:
    """Total + item count; identical signatures in a short window suggest a double submit."""
    return f"{Decimal(str(total)).quantize(Decimal('0.01'))}-{item_count}"


def price_variation(prices: list[float]) -> float:
    """Coefficient of variation (population std / mean) of unit prices."""
    if len(prices) <= 1:
        return 0.0
    mean = sum(prices) / len(prices)
    if mean <= 0:
        return 0.0
    variance = sum((p - mean) ** 2 for p in prices) / len(prices)
    return math.sqrt(variance) / mean


# ── 1. Customer ───────────────────────────────────────────────────────────


async def evaluate_customer(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    customer = await history.get_customer(snapshot.customer_id)
    if customer is None:
        return RiskSignal(policy.user_not_found_weight, ("USER_NOT_FOUND",))

    score = 0
    flags: list[str] = []

    created_at = customer.created_at or snapshot.customer_created_at
    if created_at is None:
        flags.append("ACCOUNT_AGE_UNKNOWN")
    else:
        age_days = (now - _naive_utc(created_at)).total_seconds() / 86400
        if age_days < 1:
            flags.append("NEW_USER_24H")
            score += policy.new_user_24h_weight
        elif age_days < 7:
            flags.append("NEW_USER_WEEK")
            score += policy.new_user_week_weight

    if not customer.is_verified:
        flags.append("EMAIL_NOT_VERIFIED")
        score += policy.email_not_verified_weight

    orders = await history.recent_orders(snapshot.customer_id, policy.history_window)
    if not orders:
        flags.append("FIRST_ORDER")
        score += policy.first_order_weight
    else:
        failed = sum(1 for o in orders if o.payment_status == "failed")
        if failed:
            flags.append("PREVIOUS_PAYMENT_FAILURES")
            score += failed * policy.failed_payment_weight_each

        cancelled = sum(1 for o in orders if o.order_status == "cancelled")
        if cancelled > policy.cancellation_limit:
            flags.append("MULTIPLE_CANCELLATIONS")
            score += policy.multiple_cancellations_weight

    return RiskSignal(score, tuple(flags))


# ── 2. Order value ────────────────────────────────────────────────────────


async def evaluate_order_value(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    score = 0
    flags: list[str] = []
    total = float(snapshot.total)

    if total > policy.high_value_total:
        flags.append("HIGH_VALUE_ORDER")
        score += policy.high_value_weight
    elif total > policy.medium_value_total:
        flags.append("MEDIUM_VALUE_ORDER")
        score += policy.medium_value_weight

    paid_totals = await history.recent_paid_totals(snapshot.customer_id, policy.history_window)
    if paid_totals:
        average = sum(paid_totals) / len(paid_totals)
        if total > average * policy.unusual_average_multiple:
            flags.append("UNUSUAL_HIGH_VALUE")
            score += policy.unusual_average_weight
        if total > max(paid_totals) * policy.historical_max_multiple:
            flags.append("EXCEEDS_HISTORICAL_MAX")
            score += policy.historical_max_weight

    return RiskSignal(score, tuple(flags))


# ── 3. Frequency ──────────────────────────────────────────────────────────


async def evaluate_frequency(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    score = 0
    flags: list[str] = []

    # The order being scored counts toward its own window.
    hourly = await history.count_orders_since(snapshot.customer_id, now - timedelta(hours=1)) + 1
    daily = await history.count_orders_since(snapshot.customer_id, now - timedelta(hours=24)) + 1

    if hourly >= policy.hourly_excessive:
        flags.append("EXCESSIVE_HOURLY_ORDERS")
        score += policy.hourly_excessive_weight
    elif hourly >= policy.hourly_high:
        flags.append("HIGH_HOURLY_FREQUENCY")
        score += policy.hourly_high_weight

    if daily >= policy.daily_excessive:
        flags.append("EXCESSIVE_DAILY_ORDERS")
        score += policy.daily_excessive_weight
    elif daily >= policy.daily_high:
        flags.append("HIGH_DAILY_FREQUENCY")
        score += policy.daily_high_weight

    return RiskSignal(score, tuple(flags))


# ── 4. Payment state ──────────────────────────────────────────────────────


async def evaluate_payment_state(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    status = (snapshot.payment_status or "").strip().lower()
    if status == "paid":
        return RiskSignal()
    if status == "pending":
        return RiskSignal(policy.payment_pending_weight, ("PAYMENT_PENDING",))
    if status == "failed":
        return RiskSignal(policy.payment_failed_weight, ("PAYMENT_FAILED",))
    return RiskSignal(policy.payment_unknown_weight, ("UNKNOWN_PAYMENT_STATUS",))


# ── 5. Product mix ────────────────────────────────────────────────────────


async def evaluate_product_mix(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    if not snapshot.line_items:
        return RiskSignal(0, ("NO_LINE_ITEMS",))

    score = 0
    flags: list[str] = []

    total_quantity = sum(item.quantity for item in snapshot.line_items)
    if total_quantity > policy.bulk_quantity:
        flags.append("BULK_ORDER")
        score += policy.bulk_weight
    elif total_quantity > policy.large_quantity:
        flags.append("LARGE_QUANTITY")
        score += policy.large_quantity_weight

    if price_variation([float(item.unit_price) for item in snapshot.line_items]) > policy.price_variation_limit:
        flags.append("PRICE_INCONSISTENCY")
        score += policy.price_inconsistency_weight

    return RiskSignal(score, tuple(flags))


# ── 6. Pattern ────────────────────────────────────────────────────────────


async def evaluate_patterns(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    score = 0
    flags: list[str] = []

    recent = await history.orders_since(snapshot.customer_id, now - timedelta(minutes=policy.rapid_window_minutes))
    signatures = [order_signature(o.total, len(o.line_items)) for o in recent]
    signatures.append(order_signature(snapshot.total, len(snapshot.line_items)))

    if len(signatures) > policy.rapid_order_limit:
        flags.append("RAPID_SUCCESSIVE_ORDERS")
        score += policy.rapid_orders_weight

    if len(signatures) > 1:
        duplicates = max(Counter(signatures).values()) - 1
        if duplicates > 1:
            flags.append("DUPLICATE_ORDERS")
            score += policy.duplicate_orders_weight

    return RiskSignal(score, tuple(flags))


# ── 7. Email ──────────────────────────────────────────────────────────────


async def evaluate_email(
    history: OrderHistoryReader,
    snapshot: OrderSnapshot,
    policy: RiskPolicy,
    now: datetime,
) -> RiskSignal:
    email = (snapshot.customer_email or "").strip().lower()
    if not email:
        return RiskSignal(0, ("EMAIL_UNAVAILABLE",))
    if not _EMAIL_RE.match(email):
        return RiskSignal(policy.malformed_email_weight, ("MALFORMED_EMAIL",))
    domain = email.rsplit("@", 1)[1]
    if domain in policy.disposable_email_domains:
        return RiskSignal(policy.disposable_email_weight, ("DISPOSABLE_EMAIL_DOMAIN",))
    return RiskSignal()


# Order matters only for the order flags appear in.
EVALUATORS: tuple[tuple[str, Evaluator], ...] = (
    ("customer", evaluate_customer),
    ("value", evaluate_order_value),
    ("frequency", evaluate_frequency),
    ("payment", evaluate_payment_state),
    ("product", evaluate_product_mix),
    ("pattern", evaluate_patterns),
    ("email", evaluate_email),
)
