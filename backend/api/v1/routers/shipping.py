"""
Shipping Router: address validation, rate shopping, operator label purchase.
"""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_fulfillment_orchestrator
from db.models import Order
from fulfillment.orchestrator import (
    FulfillmentOrchestrator,
    IncompleteAddressError,
    LabelAlreadyPurchasedError,
    LabelPurchaseError,
    OrderClosedError,
    OrderNotFoundError,
    estimate_parcel,
)
from integrations.base import ShippingProviderError
from integrations.shippo import Parcel, ShippingAddress, ShippingRate

router = APIRouter(prefix="/api/v1/shipping", tags=["shipping"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AddressIn(BaseModel):
    name: str = ""
    company: str = ""
    street1: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"
    email: str = ""
    phone: str = ""

    def to_address(self) -> ShippingAddress:
        return ShippingAddress.from_mapping(self.model_dump())


class ParcelIn(BaseModel):
    length: float = Field(gt=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    weight: float = Field(gt=0)
    distance_unit: str = "in"
    mass_unit: str = "lb"

    def to_parcel(self) -> Parcel:
        return Parcel(**self.model_dump())


class RateIn(BaseModel):
    rate_id: str
    carrier: str
    service_level: str
    amount: Decimal
    currency: str = "USD"
    estimated_days: int | None = None
    shipment_id: str | None = None

    def to_rate(self) -> ShippingRate:
        return ShippingRate(**self.model_dump())


class RatesRequest(BaseModel):
    address: AddressIn
    parcels: list[ParcelIn] = []
    order_id: UUID | None = None


class LabelRequest(BaseModel):
    rate: RateIn
    address: AddressIn | None = None
    parcels: list[ParcelIn] = []


# ─── Helpers ────────────────────────────────────────────────────────────────


async def _load_order(db: AsyncSession, order_id: UUID) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


async def _resolve_parcels(db: AsyncSession, parcels: list[ParcelIn], order_id: UUID | None) -> list[Parcel]:
    if parcels:
        return [p.to_parcel() for p in parcels]
    if order_id is None:
        raise HTTPException(status_code=422, detail="Provide parcels or an order_id to estimate them from")
    order = await _load_order(db, order_id)
    return [estimate_parcel(order.line_items)]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/address/validate")
async def validate_address(
    address: AddressIn,
    orchestrator: FulfillmentOrchestrator = Depends(get_fulfillment_orchestrator),
):
    return await orchestrator.validate_address(address.to_address())


@router.post("/rates")
async def get_rates(
    body: RatesRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: FulfillmentOrchestrator = Depends(get_fulfillment_orchestrator),
):
    parcels = await _resolve_parcels(db, body.parcels, body.order_id)
    try:
        rates = await orchestrator.get_rates(body.address.to_address(), parcels)
    except IncompleteAddressError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except ShippingProviderError as exc:
        raise HTTPException(status_code=502, detail=f"Shipping provider error: {exc}")
    return {"rates": [r.to_dict() for r in rates]}


@router.post("/orders/{order_id}/label")
async def purchase_label(
    order_id: UUID,
    body: LabelRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: FulfillmentOrchestrator = Depends(get_fulfillment_orchestrator),
):
    """Buy a label for an order at the chosen rate."""
    order = await _load_order(db, order_id)
    if body.address is not None:
        address = body.address.to_address()
    else:
        address = ShippingAddress.from_mapping(order.shipping_address)
    parcels = await _resolve_parcels(db, body.parcels, order_id)

    try:
        label = await orchestrator.purchase_label(db, order_id, address, parcels, body.rate.to_rate())
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except IncompleteAddressError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except (LabelAlreadyPurchasedError, OrderClosedError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except LabelPurchaseError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return label.to_dict()
