"""
OrderOps API Dependencies

Dependency injection for DB sessions and provider collaborators. Tests
override these through ``app.dependency_overrides``.
"""

from collections.abc import AsyncGenerator, Callable

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from db.session import AsyncSessionLocal
from fulfillment.orchestrator import FulfillmentOrchestrator
from integrations.base import ProviderError
from integrations.shippo import ShippoClient
from integrations.stripe_gateway import StripeGateway
from risk.engine import RiskScoringEngine
from risk.policy import RiskPolicy


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_app_settings() -> Settings:
    return get_settings()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


def get_risk_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> RiskScoringEngine:
    """Risk engine scoring with the thresholds and email blocklist from settings."""
    return RiskScoringEngine(session_factory, policy=RiskPolicy.from_settings(settings))


def get_payment_gateway(settings: Settings = Depends(get_app_settings)) -> StripeGateway | None:
    """Gateway client, or None when no secret key is configured (metadata-only webhooks still work)."""
    if not settings.stripe_secret_key:
        return None
    return StripeGateway.from_settings(settings)


def get_shipping_client(settings: Settings = Depends(get_app_settings)) -> ShippoClient:
    try:
        return ShippoClient.from_settings(settings)
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def get_fulfillment_orchestrator(
    client: ShippoClient = Depends(get_shipping_client),
    settings: Settings = Depends(get_app_settings),
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(client, requeue_delay_seconds=settings.label_requeue_delay_seconds)


def get_fulfillment_dispatcher() -> Callable[[str], None]:
    """Hand a newly paid order to the fulfilment worker."""
    from workers.fulfillment import fulfill_paid_order

    def dispatch(order_id: str) -> None:
        fulfill_paid_order.delay(order_id)

    return dispatch
