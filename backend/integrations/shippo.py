"""
Shipping Provider Client (Shippo REST)

Address validation, rate shopping and label purchase, plus the mapping of
Shippo transaction/tracking objects into ``ShippingStatus``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from core.config import get_settings
from db.enums import ShippingStatus
from integrations.base import ProviderClient, ProviderType, ShippingProviderError, is_retryable

_read_retry = retry(
    retry=retry_if_exception(is_retryable),
    stop=stop_after_attempt(2),
    wait=wait_fixed(1),
    reraise=True,
)

REQUIRED_ADDRESS_FIELDS = ("name", "street1", "city", "state", "zip", "country")

TRANSACTION_QUEUED = "queued"
TRANSACTION_WAITING = "waiting"
TRANSACTION_SUCCESS = "success"
TRANSACTION_ERROR = "error"

TRANSACTION_EVENTS = frozenset({"transaction.created", "transaction.updated"})
TRACKING_EVENTS = frozenset({"track.updated"})
HANDLED_EVENTS = TRANSACTION_EVENTS | TRACKING_EVENTS

_TRANSACTION_STATUS_MAP = {
    "success": ShippingStatus.LABEL_CREATED,
    "error": ShippingStatus.FAILED,
    "refunded": ShippingStatus.FAILED,
    "refundpending": ShippingStatus.FAILED,
}

_TRACKING_STATUS_MAP = {
    "pre_transit": ShippingStatus.LABEL_CREATED,
    "transit": ShippingStatus.IN_TRANSIT,
    "delivered": ShippingStatus.DELIVERED,
    "returned": ShippingStatus.FAILED,
    "failure": ShippingStatus.FAILED,
}

_ORDER_METADATA_RE = re.compile(r"order[\s:#]*([0-9a-fA-F-]{36})", re.IGNORECASE)


# ── Value objects ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ShippingAddress:
    name: str = ""
    street1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"
    company: str = ""
    street2: str = ""
    email: str = ""
    phone: str = ""

    # Accepted spellings for fields coming from checkout forms and stored JSON
    _ALIASES = {
        "full_name": "name",
        "fullName": "name",
        "address1": "street1",
        "line1": "street1",
        "address2": "street2",
        "line2": "street2",
        "postal_code": "zip",
        "postalCode": "zip",
        "zipCode": "zip",
        "zip_code": "zip",
        "province": "state",
    }

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> "ShippingAddress":
        values: dict[str, str] = {}
        for key, value in (data or {}).items():
            name = cls._ALIASES.get(key, key)
            if name in cls.__dataclass_fields__ and value is not None and name not in values:
                values[name] = str(value).strip()
        return cls(**values)

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_ADDRESS_FIELDS if not getattr(self, name)]

    def to_provider(self) -> dict[str, str]:
        return {
            "name": self.name,
            "company": self.company,
            "street1": self.street1,
            "street2": self.street2,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "country": self.country,
            "email": self.email,
            "phone": self.phone,
        }

    def to_dict(self) -> dict[str, str]:
        return self.to_provider()


@dataclass(frozen=True)
class Parcel:
    length: float
    width: float
    height: float
    weight: float
    distance_unit: str = "in"
    mass_unit: str = "lb"

    def to_provider(self) -> dict[str, str]:
        return {
            "length": f"{self.length:g}",
            "width": f"{self.width:g}",
            "height": f"{self.height:g}",
            "weight": f"{self.weight:g}",
            "distance_unit": self.distance_unit,
            "mass_unit": self.mass_unit,
        }


@dataclass(frozen=True)
class ShippingRate:
    rate_id: str
    carrier: str
    service_level: str
    amount: Decimal
    currency: str = "USD"
    estimated_days: int | None = None
    shipment_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate_id": self.rate_id,
            "carrier": self.carrier,
            "service_level": self.service_level,
            "amount": str(self.amount),
            "currency": self.currency,
            "estimated_days": self.estimated_days,
            "shipment_id": self.shipment_id,
        }


@dataclass(frozen=True)
class Shipment:
    shipment_id: str
    rates: tuple[ShippingRate, ...] = ()
    messages: tuple[str, ...] = ()


@dataclass(frozen=True)
class LabelTransaction:
    transaction_id: str
    status: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    label_url: str | None = None
    carrier: str | None = None
    service_level: str | None = None
    amount: Decimal | None = None
    messages: tuple[str, ...] = ()

    @property
    def is_pending(self) -> bool:
        return self.status in (TRANSACTION_QUEUED, TRANSACTION_WAITING)

    @property
    def succeeded(self) -> bool:
        return self.status == TRANSACTION_SUCCESS

    @property
    def errored(self) -> bool:
        return self.status == TRANSACTION_ERROR

    def error_text(self) -> str:
        return "; ".join(self.messages) or "Unknown error"


@dataclass(frozen=True)
class ShipmentNotification:
    """A pushed shipping event reduced to the fields the orchestrator reads."""

    event_type: str
    object_id: str | None = None
    shipment_id: str | None = None
    tracking_number: str | None = None
    status: str | None = None
    carrier: str | None = None
    tracking_url: str | None = None
    label_url: str | None = None
    metadata: str | None = None

    @property
    def metadata_order_id(self) -> str | None:
        match = _ORDER_METADATA_RE.search(self.metadata or "")
        return match.group(1) if match else None


# ── Mapping ────────────────────────────────────────────────────────────────


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _messages(raw: Any) -> tuple[str, ...]:
    out: list[str] = []
    for message in raw or []:
        if isinstance(message, dict):
            text = message.get("text") or ""
            source = message.get("source")
            out.append(f"{source}: {text}" if source else text)
        elif message:
            out.append(str(message))
    return tuple(m for m in out if m)


def map_rate(raw: dict[str, Any]) -> ShippingRate:
    servicelevel = raw.get("servicelevel") or {}
    service = servicelevel.get("name") or raw.get("servicelevel_name") or "Standard Shipping"
    days = raw.get("estimated_days")
    return ShippingRate(
        rate_id=raw.get("object_id", ""),
        carrier=raw.get("provider") or raw.get("carrier") or "",
        service_level=service,
        amount=_decimal(raw.get("amount")) or Decimal("0"),
        currency=raw.get("currency") or "USD",
        estimated_days=int(days) if days not in (None, "") else None,
        shipment_id=raw.get("shipment"),
    )


def map_transaction(raw: dict[str, Any]) -> LabelTransaction:
    rate = raw.get("rate")
    rate = rate if isinstance(rate, dict) else {}
    servicelevel = rate.get("servicelevel") or {}
    return LabelTransaction(
        transaction_id=raw.get("object_id", ""),
        status=(raw.get("status") or raw.get("object_status") or "").lower(),
        tracking_number=raw.get("tracking_number") or None,
        tracking_url=raw.get("tracking_url_provider") or None,
        label_url=raw.get("label_url") or None,
        carrier=rate.get("provider") or None,
        service_level=servicelevel.get("name") or rate.get("servicelevel_name") or None,
        amount=_decimal(rate.get("amount")),
        messages=_messages(raw.get("messages")),
    )


def normalize_event_type(event_type: str) -> str:
    """``track_updated`` (Shippo webhook names) → ``track.updated``."""
    return (event_type or "").strip().lower().replace("_", ".", 1)


def parse_shipping_event(payload: dict[str, Any]) -> ShipmentNotification:
    """
    Normalize a shipping webhook.

    Accepts Shippo's ``{"event": "track_updated", "data": {...}}`` envelope
    and the flat ``{"eventType", "objectId", "trackingNumber", "status"}``.
    """
    if isinstance(payload.get("data"), dict):
        data = payload["data"]
        event_type = normalize_event_type(payload.get("event", ""))
        rate = data.get("rate") if isinstance(data.get("rate"), dict) else {}
        tracking_status = data.get("tracking_status")
        if isinstance(tracking_status, dict):
            status = tracking_status.get("status")
        else:
            status = data.get("status") or data.get("object_status")
        return ShipmentNotification(
            event_type=event_type,
            object_id=data.get("object_id"),
            shipment_id=data.get("shipment") or rate.get("shipment"),
            tracking_number=data.get("tracking_number"),
            status=(status or "").lower() or None,
            carrier=data.get("carrier") or rate.get("provider"),
            tracking_url=data.get("tracking_url_provider"),
            label_url=data.get("label_url"),
            metadata=data.get("metadata") if isinstance(data.get("metadata"), str) else None,
        )

    event_type = normalize_event_type(payload.get("eventType") or payload.get("event", ""))
    object_id = payload.get("objectId") or payload.get("object_id")
    return ShipmentNotification(
        event_type=event_type,
        object_id=object_id,
        shipment_id=payload.get("shipmentId") or (object_id if event_type in TRANSACTION_EVENTS else None),
        tracking_number=payload.get("trackingNumber") or payload.get("tracking_number"),
        status=(payload.get("status") or "").lower() or None,
        carrier=payload.get("carrier"),
        tracking_url=payload.get("trackingUrl"),
        label_url=payload.get("labelUrl"),
        metadata=payload.get("metadata") if isinstance(payload.get("metadata"), str) else None,
    )


def shipping_state_for(notification: ShipmentNotification) -> ShippingStatus | None:
    """
    Local shipping status implied by a notification, or None when it
    carries nothing actionable (queued transactions, UNKNOWN tracking).
    Values already in local vocabulary pass through unchanged.
    """
    status = (notification.status or "").lower()
    try:
        return ShippingStatus(status)
    except ValueError:
        pass
    if notification.event_type in TRANSACTION_EVENTS:
        return _TRANSACTION_STATUS_MAP.get(status)
    if notification.event_type in TRACKING_EVENTS:
        return _TRACKING_STATUS_MAP.get(status)
    return None


# ── Client ─────────────────────────────────────────────────────────────────


class ShippoClient(ProviderClient):
    """Client for the Shippo REST API."""

    error_cls = ShippingProviderError

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.goshippo.com",
        sender: ShippingAddress | None = None,
        transport=None,
    ):
        super().__init__(base_url, transport=transport)
        self.api_token = api_token
        self.sender = sender or ShippingAddress()

    @classmethod
    def from_settings(cls, settings=None, transport=None) -> "ShippoClient":
        settings = settings or get_settings()
        if not settings.shippo_api_token:
            raise ShippingProviderError("Shippo API token not configured")
        sender = ShippingAddress(
            name=settings.shipper_name,
            company=settings.shipper_company,
            email=settings.shipper_email,
            phone=settings.shipper_phone,
            street1=settings.shipper_street1,
            street2=settings.shipper_street2,
            city=settings.shipper_city,
            state=settings.shipper_state,
            zip=settings.shipper_zip,
            country=settings.shipper_country,
        )
        return cls(settings.shippo_api_token, base_url=settings.shippo_api_base, sender=sender, transport=transport)

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.SHIPPING

    def auth_kwargs(self) -> dict[str, Any]:
        return {"headers": {"Authorization": f"ShippoToken {self.api_token}"}}

    @_read_retry
    async def validate_address(self, address: ShippingAddress) -> dict[str, Any]:
        """Create-and-validate an address; returns the provider's address object."""
        response = await self._request("POST", "/addresses/", json={**address.to_provider(), "validate": True})
        return self._json_or_raise(response, "validate_address")

    @_read_retry
    async def create_shipment(self, address: ShippingAddress, parcels: list[Parcel], metadata: str = "") -> Shipment:
        """Create a shipment and return its rates. Creating a shipment buys nothing."""
        body = {
            "address_from": self.sender.to_provider(),
            "address_to": address.to_provider(),
            "parcels": [p.to_provider() for p in parcels],
            "async": False,
        }
        if metadata:
            body["metadata"] = metadata
        response = await self._request("POST", "/shipments/", json=body)
        payload = self._json_or_raise(response, "create_shipment")
        shipment_id = payload.get("object_id", "")
        rates = tuple(map_rate({"shipment": shipment_id, **r}) for r in payload.get("rates") or [])
        return Shipment(shipment_id=shipment_id, rates=rates, messages=_messages(payload.get("messages")))

    async def create_transaction(self, rate_id: str, metadata: str = "") -> LabelTransaction:
        """Purchase a label for ``rate_id``. Money moves here: never retried."""
        body = {"rate": rate_id, "label_file_type": "PDF", "async": False}
        if metadata:
            body["metadata"] = metadata
        response = await self._request("POST", "/transactions/", json=body)
        return map_transaction(self._json_or_raise(response, "create_transaction"))

    @_read_retry
    async def get_transaction(self, transaction_id: str) -> LabelTransaction:
        response = await self._request("GET", f"/transactions/{transaction_id}")
        return map_transaction(self._json_or_raise(response, "get_transaction"))
