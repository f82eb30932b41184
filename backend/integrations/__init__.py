"""
External provider adapters.

The engine reconciles against two collaborators it does not own:
  - Payment gateway   (Stripe REST, checkout sessions and payment events)
  - Shipping provider (Shippo REST, rates and labels and tracking events)

Usage:
    from integrations import ShippoClient, StripeGateway

    gateway = StripeGateway.from_settings()
    session = await gateway.find_checkout_session_for_order(str(order_id))
"""

from integrations.base import (
    PaymentGatewayError,
    ProviderClient,
    ProviderError,
    ProviderType,
    ShippingProviderError,
)
from integrations.shippo import (
    LabelTransaction,
    Parcel,
    ShipmentNotification,
    ShippingAddress,
    ShippingRate,
    ShippoClient,
)
from integrations.stripe_gateway import CheckoutSession, PaymentNotification, StripeGateway

__all__ = [
    "ProviderType",
    "ProviderError",
    "PaymentGatewayError",
    "ShippingProviderError",
    "ProviderClient",
    "StripeGateway",
    "CheckoutSession",
    "PaymentNotification",
    "ShippoClient",
    "ShippingAddress",
    "Parcel",
    "ShippingRate",
    "LabelTransaction",
    "ShipmentNotification",
]
