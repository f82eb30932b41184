"""
Fulfillment Workers: buy a label once an order is paid.

Label purchase sits off the request path here, so the queued-transaction
recheck delay never holds up a webhook response.
"""

import asyncio
import uuid
from datetime import datetime, timezone

import structlog

from db.session import create_run_engine
from workers.celery_app import celery_app

logger = structlog.get_logger()


def build_orchestrator(settings):
    from fulfillment.orchestrator import FulfillmentOrchestrator
    from integrations.shippo import ShippoClient

    return FulfillmentOrchestrator(
        ShippoClient.from_settings(settings),
        requeue_delay_seconds=settings.label_requeue_delay_seconds,
    )


@celery_app.task(
    name="workers.fulfillment.fulfill_paid_order",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def fulfill_paid_order(self, order_id: str):
    """
    Buy the cheapest label for a paid order.

    Provider failures are terminal for the attempt and already recorded on
    the order as ``shipping_error``; only infrastructure faults retry.
    """
    run_id = self.request.id or "manual"
    logger.info("fulfillment.task_started", order_id=order_id, run_id=run_id)

    async def _fulfill():
        from core.config import get_settings
        from fulfillment.orchestrator import (
            LabelAlreadyPurchasedError,
            LabelPurchaseError,
            OrderClosedError,
            OrderNotFoundError,
        )

        settings = get_settings()
        orchestrator = build_orchestrator(settings)
        engine, async_session = create_run_engine(settings.database_url)
        try:
            async with async_session() as db:
                try:
                    label = await orchestrator.auto_fulfill(db, uuid.UUID(order_id))
                except (LabelPurchaseError, LabelAlreadyPurchasedError, OrderClosedError, OrderNotFoundError) as exc:
                    logger.warning("fulfillment.task_not_fulfilled", order_id=order_id, reason=str(exc))
                    return {"status": "failed", "order_id": order_id, "reason": str(exc), "run_id": run_id}

            if label is None:
                return {"status": "skipped", "order_id": order_id, "run_id": run_id}
            return {
                "status": "success",
                **label.to_dict(),
                "completed_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_fulfill())
    except Exception as exc:  # noqa: BLE001
        logger.error("fulfillment.task_failed", order_id=order_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
