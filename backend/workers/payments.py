"""
Payment Workers: scheduled sweep of orders still pending locally.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from datetime import datetime, timedelta, timezone

import structlog

from db.session import create_run_engine
from workers.celery_app import celery_app

logger = structlog.get_logger()


def build_gateway(settings):
    from integrations.stripe_gateway import StripeGateway

    if not settings.stripe_secret_key:
        return None
    return StripeGateway.from_settings(settings)


def dispatch_fulfillment(order_id: str) -> None:
    from workers.fulfillment import fulfill_paid_order

    fulfill_paid_order.delay(order_id)


@celery_app.task(
    name="workers.payments.sweep_pending_payments",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def sweep_pending_payments(self, stale_window_hours: int | None = None):
    """
    Reconcile every locally pending order against the payment gateway.

    Counts only reflect writes this run made, so overlapping runs and
    reruns never double count.
    """
    run_id = self.request.id or "manual"

    async def _sweep():
        from core.config import get_settings
        from payments.reconciler import sweep_pending_payments as sweep

        settings = get_settings()
        gateway = build_gateway(settings)
        if gateway is None:
            logger.warning("payments.sweep.skipped", reason="gateway_not_configured", run_id=run_id)
            return {"status": "skipped", "reason": "gateway_not_configured", "run_id": run_id}

        hours = stale_window_hours or settings.payment_stale_window_hours
        engine, async_session = create_run_engine(settings.database_url)
        try:
            async with async_session() as db:
                result = await sweep(db, gateway, stale_window=timedelta(hours=hours))

            summary = result.to_dict()
            dispatched = 0
            for order_id in summary["fixed_order_ids"]:
                try:
                    dispatch_fulfillment(order_id)
                    dispatched += 1
                except Exception as exc:  # noqa: BLE001
                    # Payment is already recorded at this point.
                    logger.error(
                        "payments.sweep.fulfillment_dispatch_failed", order_id=order_id, error=str(exc), exc_info=True
                    )

            return {
                "status": "success",
                **summary,
                "fulfillment_dispatched": dispatched,
                "stale_window_hours": hours,
                "completed_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_sweep())
    except Exception as exc:  # noqa: BLE001
        logger.error("payments.sweep.failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
