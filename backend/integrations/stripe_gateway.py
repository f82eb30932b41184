"""
Payment Gateway Client (Stripe REST)

Reads checkout sessions and maps them, and pushed gateway events, into
the engine's ``PaymentStatus`` vocabulary. The engine never creates or
mutates gateway objects; it only looks them up.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from core.config import get_settings
from db.enums import PaymentStatus
from integrations.base import PaymentGatewayError, ProviderClient, ProviderType, is_retryable

_read_retry = retry(
    retry=retry_if_exception(is_retryable),
    stop=stop_after_attempt(2),
    wait=wait_fixed(1),
    reraise=True,
)

# Event type → authoritative outcome
SUCCEEDED_EVENTS = frozenset(
    {
        "checkout.session.async_payment_succeeded",
        "payment_intent.succeeded",
        "charge.succeeded",
    }
)
FAILED_EVENTS = frozenset(
    {
        "checkout.session.async_payment_failed",
        "checkout.session.expired",
        "payment_intent.payment_failed",
        "charge.failed",
    }
)
# Outcome depends on the payload's own status field
STATUS_BEARING_EVENTS = frozenset({"checkout.session.completed", "charge.updated"})

HANDLED_EVENTS = SUCCEEDED_EVENTS | FAILED_EVENTS | STATUS_BEARING_EVENTS

_PAID_VALUES = {"paid", "no_payment_required", "succeeded"}
_FAILED_VALUES = {"failed", "canceled", "expired"}


# ── Gateway objects ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    payment_status: str
    status: str | None = None
    order_id: str | None = None
    payment_intent: str | None = None
    created: int | None = None


@dataclass(frozen=True)
class PaymentNotification:
    """A pushed gateway event reduced to the fields the reconciler reads."""

    event_type: str
    object_id: str
    status: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    payment_intent: str | None = None
    event_id: str | None = None

    @property
    def order_id(self) -> str | None:
        return self.metadata.get("orderId") or self.metadata.get("order_id")


def map_checkout_session(raw: dict[str, Any]) -> CheckoutSession:
    """Map a Stripe checkout session object."""
    metadata = raw.get("metadata") or {}
    payment_intent = raw.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    return CheckoutSession(
        session_id=raw.get("id", ""),
        payment_status=(raw.get("payment_status") or "").lower(),
        status=(raw.get("status") or None),
        order_id=metadata.get("orderId") or metadata.get("order_id"),
        payment_intent=payment_intent,
        created=raw.get("created"),
    )


def session_payment_state(session: CheckoutSession) -> PaymentStatus:
    """
    Authoritative payment state of a checkout session.

    Paid sessions are paid; expired sessions will never be paid; anything
    else (open, or complete with an asynchronous payment in flight) is
    still settling.
    """
    if session.payment_status in _PAID_VALUES:
        return PaymentStatus.PAID
    if (session.status or "").lower() == "expired":
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def notification_payment_state(notification: PaymentNotification) -> PaymentStatus | None:
    """Local payment state implied by a pushed event, or None for unknown event types."""
    if notification.event_type in SUCCEEDED_EVENTS:
        return PaymentStatus.PAID
    if notification.event_type in FAILED_EVENTS:
        return PaymentStatus.FAILED
    if notification.event_type in STATUS_BEARING_EVENTS:
        status = (notification.status or "").lower()
        if status in _PAID_VALUES:
            return PaymentStatus.PAID
        if status in _FAILED_VALUES:
            return PaymentStatus.FAILED
        return PaymentStatus.PENDING
    return None


def parse_payment_event(payload: dict[str, Any]) -> PaymentNotification:
    """
    Normalize a gateway event.

    Accepts the Stripe envelope ``{"id", "type", "data": {"object": {...}}}``
    and the flat ``{"eventType", "objectId", "status", "metadata"}`` shape.
    """
    if "data" in payload and isinstance(payload.get("data"), dict):
        obj = payload["data"].get("object") or {}
        event_type = payload.get("type") or ""
        object_id = obj.get("id") or ""
        if obj.get("object") == "charge" or event_type.startswith("charge."):
            status = obj.get("status")
        else:
            status = obj.get("payment_status") or obj.get("status")
        payment_intent = obj.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        if event_type.startswith("payment_intent."):
            payment_intent = object_id
        return PaymentNotification(
            event_type=event_type,
            object_id=object_id,
            status=status,
            metadata=dict(obj.get("metadata") or {}),
            payment_intent=payment_intent,
            event_id=payload.get("id"),
        )

    return PaymentNotification(
        event_type=payload.get("eventType") or payload.get("type") or "",
        object_id=payload.get("objectId") or payload.get("object_id") or "",
        status=payload.get("status"),
        metadata=dict(payload.get("metadata") or {}),
        payment_intent=payload.get("paymentIntent"),
        event_id=payload.get("id"),
    )


# ── Client ─────────────────────────────────────────────────────────────────


class StripeGateway(ProviderClient):
    """Read-only client for Stripe checkout sessions."""

    error_cls = PaymentGatewayError

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.stripe.com/v1",
        page_size: int = 100,
        max_pages: int = 5,
        transport=None,
    ):
        super().__init__(base_url, transport=transport)
        self.secret_key = secret_key
        self.page_size = page_size
        self.max_pages = max_pages

    @classmethod
    def from_settings(cls, settings=None, transport=None) -> "StripeGateway":
        settings = settings or get_settings()
        if not settings.stripe_secret_key:
            raise PaymentGatewayError("Stripe secret key not configured")
        return cls(
            secret_key=settings.stripe_secret_key,
            base_url=settings.stripe_api_base,
            page_size=settings.stripe_session_page_size,
            max_pages=settings.stripe_session_max_pages,
            transport=transport,
        )

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.PAYMENT_GATEWAY

    def auth_kwargs(self) -> dict[str, Any]:
        return {"auth": (self.secret_key, "")}

    @_read_retry
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession | None:
        response = await self._request("GET", f"/checkout/sessions/{session_id}")
        if response.status_code == 404:
            return None
        return map_checkout_session(self._json_or_raise(response, "retrieve_checkout_session"))

    @_read_retry
    async def _list_sessions(self, **params: Any) -> dict[str, Any]:
        response = await self._request("GET", "/checkout/sessions", params={"limit": self.page_size, **params})
        return self._json_or_raise(response, "list_checkout_sessions")

    async def find_checkout_session_for_order(self, order_id: str) -> CheckoutSession | None:
        """
        Find the checkout session whose metadata carries ``order_id``.

        Sessions come back newest first. A paid session wins over any other;
        otherwise the newest matching session is returned.
        """
        matches: list[CheckoutSession] = []
        starting_after: str | None = None

        for _ in range(self.max_pages):
            params = {"starting_after": starting_after} if starting_after else {}
            page = await self._list_sessions(**params)
            sessions = page.get("data") or []
            for raw in sessions:
                session = map_checkout_session(raw)
                if session.order_id == order_id:
                    if session_payment_state(session) == PaymentStatus.PAID:
                        return session
                    matches.append(session)
            if not page.get("has_more") or not sessions:
                break
            starting_after = sessions[-1].get("id")

        return matches[0] if matches else None

    async def find_session_by_payment_intent(self, payment_intent: str) -> CheckoutSession | None:
        page = await self._list_sessions(payment_intent=payment_intent)
        sessions = page.get("data") or []
        return map_checkout_session(sessions[0]) if sessions else None
