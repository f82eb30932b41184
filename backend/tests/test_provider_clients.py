"""
Tests for the payment gateway and shipping provider clients.

HTTP is served by ``httpx.MockTransport``; no network access.
"""

import base64
import json
from decimal import Decimal

import httpx
import pytest

from core.config import Settings
from db.enums import PaymentStatus, ShippingStatus
from integrations.base import PaymentGatewayError, ShippingProviderError
from integrations.shippo import (
    Parcel,
    ShipmentNotification,
    ShippingAddress,
    ShippoClient,
    map_transaction,
    parse_shipping_event,
    shipping_state_for,
)
from integrations.stripe_gateway import (
    CheckoutSession,
    PaymentNotification,
    StripeGateway,
    map_checkout_session,
    notification_payment_state,
    parse_payment_event,
    session_payment_state,
)


def _session(session_id, order_id, payment_status="unpaid", status="open", **extra):
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "status": status,
        "metadata": {"orderId": order_id},
        **extra,
    }


class Recorder:
    """Route requests to a handler and keep every request seen."""

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


# ── Payment state mapping ─────────────────────────────────────────────────


class TestPaymentMapping:
    def test_session_states(self):
        assert session_payment_state(CheckoutSession("cs_1", "paid", "complete")) == PaymentStatus.PAID
        assert session_payment_state(CheckoutSession("cs_2", "no_payment_required")) == PaymentStatus.PAID
        assert session_payment_state(CheckoutSession("cs_3", "unpaid", "expired")) == PaymentStatus.FAILED
        assert session_payment_state(CheckoutSession("cs_4", "unpaid", "open")) == PaymentStatus.PENDING
        assert session_payment_state(CheckoutSession("cs_5", "unpaid", "complete")) == PaymentStatus.PENDING

    @pytest.mark.parametrize(
        "event_type,status,expected",
        [
            ("checkout.session.async_payment_succeeded", None, PaymentStatus.PAID),
            ("payment_intent.succeeded", None, PaymentStatus.PAID),
            ("charge.succeeded", None, PaymentStatus.PAID),
            ("checkout.session.async_payment_failed", None, PaymentStatus.FAILED),
            ("checkout.session.expired", None, PaymentStatus.FAILED),
            ("payment_intent.payment_failed", None, PaymentStatus.FAILED),
            ("checkout.session.completed", "paid", PaymentStatus.PAID),
            ("checkout.session.completed", "unpaid", PaymentStatus.PENDING),
            ("charge.updated", "failed", PaymentStatus.FAILED),
            ("charge.updated", "succeeded", PaymentStatus.PAID),
            ("invoice.created", "paid", None),
        ],
    )
    def test_notification_states(self, event_type, status, expected):
        notification = PaymentNotification(event_type=event_type, object_id="obj_1", status=status)
        assert notification_payment_state(notification) == expected

    def test_parse_stripe_envelope(self):
        event = parse_payment_event(
            {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "data": {
                    "object": _session(
                        "cs_1", "order-1", payment_status="paid", status="complete", payment_intent="pi_1"
                    )
                },
            }
        )
        assert event.event_type == "checkout.session.completed"
        assert event.object_id == "cs_1"
        assert event.status == "paid"
        assert event.order_id == "order-1"
        assert event.payment_intent == "pi_1"
        assert event.event_id == "evt_1"

    def test_parse_charge_uses_charge_status(self):
        event = parse_payment_event(
            {"type": "charge.updated", "data": {"object": {"id": "ch_1", "object": "charge", "status": "failed"}}}
        )
        assert event.status == "failed"

    def test_parse_payment_intent_carries_its_own_id(self):
        event = parse_payment_event(
            {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_9", "status": "succeeded"}}}
        )
        assert event.payment_intent == "pi_9"

    def test_parse_flat_payload(self):
        event = parse_payment_event(
            {
                "eventType": "checkout.session.completed",
                "objectId": "cs_7",
                "status": "paid",
                "metadata": {"order_id": "o-7"},
            }
        )
        assert event.object_id == "cs_7"
        assert event.order_id == "o-7"

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": "evt_2", "type": None, "data": {"object": {"id": None, "payment_status": "paid"}}},
            {"eventType": None, "objectId": None, "object_id": None, "status": "paid"},
        ],
    )
    def test_parse_null_identifiers_as_empty(self, payload):
        event = parse_payment_event(payload)
        assert event.event_type == ""
        assert event.object_id == ""

    def test_map_session_with_expanded_intent(self):
        session = map_checkout_session(_session("cs_1", "o-1", payment_status="PAID", payment_intent={"id": "pi_x"}))
        assert session.payment_status == "paid"
        assert session.payment_intent == "pi_x"


# ── Stripe client ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestStripeGateway:
    async def test_retrieve_session_uses_basic_auth(self):
        recorder = Recorder(lambda request: httpx.Response(200, json=_session("cs_1", "o-1", payment_status="paid")))
        gateway = StripeGateway("sk_test_123", transport=recorder.transport)

        session = await gateway.retrieve_checkout_session("cs_1")

        assert session.order_id == "o-1"
        request = recorder.requests[0]
        assert request.url.path == "/v1/checkout/sessions/cs_1"
        assert request.headers["authorization"] == "Basic " + base64.b64encode(b"sk_test_123:").decode()

    async def test_missing_session_is_none(self):
        recorder = Recorder(lambda request: httpx.Response(404, json={"error": {"message": "No such session"}}))
        gateway = StripeGateway("sk_test_123", transport=recorder.transport)

        assert await gateway.retrieve_checkout_session("cs_gone") is None

    async def test_server_error_is_retried_once(self):
        responses = iter([httpx.Response(502), httpx.Response(200, json=_session("cs_1", "o-1"))])
        recorder = Recorder(lambda request: next(responses))
        gateway = StripeGateway("sk_test_123", transport=recorder.transport)

        session = await gateway.retrieve_checkout_session("cs_1")

        assert session.session_id == "cs_1"
        assert len(recorder.requests) == 2

    async def test_client_error_is_not_retried(self):
        recorder = Recorder(lambda request: httpx.Response(401, json={"error": {}}))
        gateway = StripeGateway("sk_bad", transport=recorder.transport)

        with pytest.raises(PaymentGatewayError) as exc:
            await gateway.retrieve_checkout_session("cs_1")

        assert exc.value.status_code == 401
        assert len(recorder.requests) == 1

    async def test_find_session_pages_until_paid_match(self):
        pages = {
            None: {
                "data": [_session("cs_c", "other"), _session("cs_b", "o-1", status="expired")],
                "has_more": True,
            },
            "cs_b": {"data": [_session("cs_a", "o-1", payment_status="paid", status="complete")], "has_more": False},
        }
        recorder = Recorder(
            lambda request: httpx.Response(200, json=pages[request.url.params.get("starting_after")])
        )
        gateway = StripeGateway("sk_test_123", transport=recorder.transport)

        session = await gateway.find_checkout_session_for_order("o-1")

        assert session.session_id == "cs_a"
        assert len(recorder.requests) == 2
        assert recorder.requests[0].url.params["limit"] == "100"

    async def test_find_session_falls_back_to_newest_match(self):
        page = {"data": [_session("cs_new", "o-1"), _session("cs_old", "o-1", status="expired")], "has_more": False}
        recorder = Recorder(lambda request: httpx.Response(200, json=page))
        gateway = StripeGateway("sk_test_123", transport=recorder.transport)

        assert (await gateway.find_checkout_session_for_order("o-1")).session_id == "cs_new"

    async def test_find_session_respects_page_limit(self):
        recorder = Recorder(
            lambda request: httpx.Response(200, json={"data": [_session("cs_x", "other")], "has_more": True})
        )
        gateway = StripeGateway("sk_test_123", max_pages=3, transport=recorder.transport)

        assert await gateway.find_checkout_session_for_order("o-1") is None
        assert len(recorder.requests) == 3

    async def test_find_by_payment_intent(self):
        recorder = Recorder(lambda request: httpx.Response(200, json={"data": [_session("cs_pi", "o-2")]}))
        gateway = StripeGateway("sk_test_123", transport=recorder.transport)

        session = await gateway.find_session_by_payment_intent("pi_2")

        assert session.order_id == "o-2"
        assert recorder.requests[0].url.params["payment_intent"] == "pi_2"


# ── Shipping mapping ──────────────────────────────────────────────────────


class TestShippingMapping:
    def test_address_aliases(self):
        address = ShippingAddress.from_mapping(
            {"fullName": "Dana Buyer", "address1": "215 Clayton St", "city": "SF", "state": "CA", "postalCode": "94117"}
        )
        assert address.name == "Dana Buyer"
        assert address.street1 == "215 Clayton St"
        assert address.zip == "94117"
        assert address.missing_fields() == []

    def test_parcel_formatting(self):
        assert Parcel(length=10, width=8, height=6, weight=2.5).to_provider()["weight"] == "2.5"
        assert Parcel(length=10, width=8, height=6, weight=2.0).to_provider()["length"] == "10"

    def test_map_transaction(self):
        transaction = map_transaction(
            {
                "object_id": "txn_1",
                "status": "SUCCESS",
                "tracking_number": "TRK1",
                "tracking_url_provider": "",
                "label_url": "https://labels.example/1.pdf",
                "rate": {"provider": "UPS", "servicelevel": {"name": "Ground"}, "amount": "7.10"},
                "messages": [{"source": "UPS", "text": "Saturday delivery unavailable"}],
            }
        )
        assert transaction.succeeded
        assert transaction.tracking_url is None
        assert transaction.carrier == "UPS"
        assert transaction.amount == Decimal("7.10")
        assert transaction.messages == ("UPS: Saturday delivery unavailable",)

    def test_parse_tracking_envelope(self):
        event = parse_shipping_event(
            {
                "event": "track_updated",
                "data": {"tracking_number": "TRK1", "carrier": "usps", "tracking_status": {"status": "DELIVERED"}},
            }
        )
        assert event.event_type == "track.updated"
        assert event.status == "delivered"
        assert shipping_state_for(event) == ShippingStatus.DELIVERED

    def test_parse_transaction_envelope(self):
        event = parse_shipping_event(
            {
                "event": "transaction_updated",
                "data": {
                    "object_id": "txn_1",
                    "status": "ERROR",
                    "rate": {"shipment": "shp_1", "provider": "UPS"},
                    "metadata": "Order 0b7c6a38-6a3a-4d2f-9c55-2a1f0b3b7f11",
                },
            }
        )
        assert event.shipment_id == "shp_1"
        assert event.carrier == "UPS"
        assert event.metadata_order_id == "0b7c6a38-6a3a-4d2f-9c55-2a1f0b3b7f11"
        assert shipping_state_for(event) == ShippingStatus.FAILED

    def test_parse_flat_payload(self):
        event = parse_shipping_event({"eventType": "transaction.created", "objectId": "shp_2", "status": "success"})
        assert event.shipment_id == "shp_2"
        assert shipping_state_for(event) == ShippingStatus.LABEL_CREATED

    @pytest.mark.parametrize(
        "event_type,status,expected",
        [
            ("track.updated", "pre_transit", ShippingStatus.LABEL_CREATED),
            ("track.updated", "transit", ShippingStatus.IN_TRANSIT),
            ("track.updated", "returned", ShippingStatus.FAILED),
            ("track.updated", "unknown", None),
            ("transaction.updated", "queued", None),
            ("transaction.updated", "refunded", ShippingStatus.FAILED),
            ("track.updated", "in_transit", ShippingStatus.IN_TRANSIT),
        ],
    )
    def test_state_mapping(self, event_type, status, expected):
        assert shipping_state_for(ShipmentNotification(event_type=event_type, status=status)) == expected


# ── Shippo client ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestShippoClient:
    address = ShippingAddress(name="Dana Buyer", street1="215 Clayton St", city="SF", state="CA", zip="94117")

    async def test_create_shipment_maps_rates(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["address_to"]["zip"] == "94117"
            assert body["parcels"][0]["weight"] == "2"
            assert body["metadata"] == "Order 1"
            return httpx.Response(
                201,
                json={
                    "object_id": "shp_1",
                    "rates": [
                        {"object_id": "r1", "provider": "USPS", "servicelevel": {"name": "Priority"}, "amount": "9.45"},
                        {"object_id": "r2", "provider": "UPS", "servicelevel": {"name": "Ground"}, "amount": "7.10"},
                    ],
                },
            )

        recorder = Recorder(handler)
        client = ShippoClient("shippo_test_tok", transport=recorder.transport)

        shipment = await client.create_shipment(self.address, [Parcel(10, 8, 6, 2)], metadata="Order 1")

        assert shipment.shipment_id == "shp_1"
        assert [r.rate_id for r in shipment.rates] == ["r1", "r2"]
        assert all(r.shipment_id == "shp_1" for r in shipment.rates)
        assert recorder.requests[0].headers["authorization"] == "ShippoToken shippo_test_tok"

    async def test_label_purchase_is_never_retried(self):
        recorder = Recorder(lambda request: httpx.Response(503, text="unavailable"))
        client = ShippoClient("shippo_test_tok", transport=recorder.transport)

        with pytest.raises(ShippingProviderError) as exc:
            await client.create_transaction("r2")

        assert exc.value.retryable is True
        assert len(recorder.requests) == 1

    async def test_transport_error_becomes_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        recorder = Recorder(handler)
        client = ShippoClient("shippo_test_tok", transport=recorder.transport)

        with pytest.raises(ShippingProviderError):
            await client.get_transaction("txn_1")

        assert len(recorder.requests) == 2


class TestClientConfiguration:
    def test_gateway_requires_secret_key(self):
        with pytest.raises(PaymentGatewayError):
            StripeGateway.from_settings(Settings(stripe_secret_key=""))

    def test_shippo_uses_configured_sender(self):
        client = ShippoClient.from_settings(Settings(shippo_api_token="tok", shipper_city="Charleston"))
        assert client.sender.city == "Charleston"

    def test_shippo_requires_token(self):
        with pytest.raises(ShippingProviderError):
            ShippoClient.from_settings(Settings(shippo_api_token=""))
