"""
Webhooks Router: payment gateway and shipping provider notifications.

Both receivers answer 200 for anything they understood, including event
types they deliberately ignore, so providers stop redelivering. A gateway
outage while resolving an event answers 503 so the gateway retries.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_app_settings, get_db, get_fulfillment_dispatcher, get_payment_gateway
from core.config import Settings
from core.security import verify_shared_token, verify_stripe_signature
from fulfillment.orchestrator import reconcile_shipment
from integrations.base import PaymentGatewayError
from integrations.shippo import parse_shipping_event
from integrations.stripe_gateway import StripeGateway, parse_payment_event
from payments.reconciler import reconcile_payment

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])
logger = structlog.get_logger()


def _json_body(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be an object")
    return payload


@router.post("/payments")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    gateway: StripeGateway | None = Depends(get_payment_gateway),
    dispatch=Depends(get_fulfillment_dispatcher),
):
    """Handle payment gateway events with signature verification."""
    body = await request.body()

    if settings.stripe_webhook_secret:
        signature = request.headers.get("stripe-signature", "")
        if not verify_stripe_signature(body, signature, secret=settings.stripe_webhook_secret):
            logger.warning("webhooks.payment_signature_rejected")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    notification = parse_payment_event(_json_body(body))
    try:
        result = await reconcile_payment(db, notification, gateway)
    except PaymentGatewayError as exc:
        logger.error("webhooks.payment_gateway_unavailable", event_type=notification.event_type, error=str(exc))
        raise HTTPException(status_code=503, detail="Payment gateway unavailable")

    if result.became_paid:
        try:
            dispatch(str(result.order_id))
        except Exception as exc:  # noqa: BLE001
            # Payment is already recorded at this point.
            logger.error(
                "webhooks.fulfillment_dispatch_failed",
                order_id=str(result.order_id),
                error=str(exc),
                exc_info=True,
            )

    return {
        "status": "received",
        "event_type": notification.event_type,
        "outcome": result.outcome.value,
        "order_id": str(result.order_id) if result.order_id else None,
    }


@router.post("/shipping")
async def shipping_webhook(
    request: Request,
    token: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Handle shipping provider transaction and tracking events."""
    if not verify_shared_token(token, settings.shippo_webhook_token):
        logger.warning("webhooks.shipping_token_rejected")
        raise HTTPException(status_code=401, detail="Invalid webhook token")

    notification = parse_shipping_event(_json_body(await request.body()))
    result = await reconcile_shipment(db, notification)

    return {
        "status": "received",
        "event_type": notification.event_type,
        "outcome": result.outcome.value,
        "order_id": str(result.order_id) if result.order_id else None,
    }
