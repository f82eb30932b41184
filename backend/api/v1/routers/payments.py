"""
Payments Router: operator hook to re-check one order against the gateway.
"""

from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_app_settings, get_db, get_fulfillment_dispatcher, get_payment_gateway
from core.config import Settings
from integrations.base import PaymentGatewayError
from integrations.stripe_gateway import StripeGateway
from payments.reconciler import verify_order_payment

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/orders/{order_id}/verify")
async def verify_payment(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    gateway: StripeGateway | None = Depends(get_payment_gateway),
    dispatch=Depends(get_fulfillment_dispatcher),
):
    """Reconcile a pending order now instead of waiting for the next sweep."""
    if gateway is None:
        raise HTTPException(status_code=503, detail="Payment gateway not configured")

    try:
        result = await verify_order_payment(
            db, order_id, gateway, stale_window=timedelta(hours=settings.payment_stale_window_hours)
        )
    except PaymentGatewayError as exc:
        raise HTTPException(status_code=502, detail=f"Payment gateway error: {exc}")
    if result is None:
        raise HTTPException(status_code=404, detail="Order not found")

    if result.became_paid:
        dispatch(str(order_id))

    return {
        "order_id": str(order_id),
        "outcome": result.outcome.value,
        "payment_status": result.payment_status.value if result.payment_status else None,
    }
