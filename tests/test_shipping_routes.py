"""
Tests for shipping API routes and schemas.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from conftest import FakeCarrier
from courier_gateway.api.routes import shipping
from courier_gateway.core.exceptions import (
    NotFound,
    RateLimited,
    ServiceUnavailable,
    UnexpectedResponseShape,
    WaybillExhausted,
)
from courier_gateway.core.http_client import RetryConfig
from courier_gateway.models.carrier import CarrierCode
from courier_gateway.models.shipment import CarrierFailure, LiveRate
from courier_gateway.schemas.shipping import (
    CarrierErrorResponse,
    QuoteRequest,
    ShipmentCreate,
)
from courier_gateway.services.credential_store import CredentialStore
from courier_gateway.services.gateway import Gateway
from courier_gateway.services.rate_cards import StaticRateCardRepository
from courier_gateway.services.waybill_pool import WaybillPool

MUMBAI = {"pincode": "400001", "city": "Mumbai", "state": "Maharashtra"}
BENGALURU = {"pincode": "560001", "city": "Bengaluru", "state": "Karnataka"}


def shipment_payload(**overrides):
    payload = {
        "carrier": "DELHIVERY",
        "order_id": "ORD-1001",
        "pickup": MUMBAI,
        "delivery": BENGALURU,
        "consignee_name": "Asha Verma",
        "consignee_address": "12 MG Road",
        "consignee_phone": "+91 98765-43210",
        "shipper_name": "Test Seller",
        "shipper_address": "4 Warehouse Lane",
        "shipper_phone": "9123456780",
        "weight": 1.2,
        "dimensions": {"length": 10, "width": 10, "height": 10},
        "declared_value": "1000",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def delhivery():
    return FakeCarrier(CarrierCode.DELHIVERY, max_waybill_batch=10000, live_rates=True)


@pytest.fixture
def ekart():
    return FakeCarrier(CarrierCode.EKART)


@pytest.fixture
def client(cache, delhivery, ekart):
    carriers = {c.carrier_code: c for c in (delhivery, ekart)}
    app = FastAPI()
    app.include_router(shipping.router, prefix="/api")
    app.state.gateway = Gateway(
        carriers=carriers,
        credential_store=CredentialStore(cache),
        waybill_pool=WaybillPool(cache, carriers, replenishment_floor=10),
        rate_cards=StaticRateCardRepository(),
        timeout_seconds=1.0,
        retry_config=RetryConfig(max_attempts=2, base_delay=0.001, max_delay=0.01, jitter_factor=0),
    )
    return TestClient(app)


class TestSchemas:

    def test_quote_request_weight_bounds(self):
        QuoteRequest(origin=MUMBAI, destination=BENGALURU, weight=0.5)

        for weight in (0, -1, 51):
            with pytest.raises(ValidationError):
                QuoteRequest(origin=MUMBAI, destination=BENGALURU, weight=weight)

    def test_location_pincode_pattern(self):
        with pytest.raises(ValidationError):
            QuoteRequest(origin={**MUMBAI, "pincode": "4000"}, destination=BENGALURU, weight=1)

    def test_shipment_create_normalizes_phone(self):
        shipment = ShipmentCreate(**shipment_payload())
        details = shipment.to_details()

        assert details.consignee_phone == "9876543210"
        assert details.pickup.pincode == "400001"
        assert details.dimensions.length == 10
        assert details.declared_value == Decimal("1000")

    def test_shipment_create_rejects_short_phone(self):
        with pytest.raises(ValidationError):
            ShipmentCreate(**shipment_payload(consignee_phone="12345"))

    def test_shipment_create_unknown_carrier(self):
        with pytest.raises(ValidationError):
            ShipmentCreate(**shipment_payload(carrier="DTDC"))

    def test_error_response_hides_unexpected_errors(self):
        failure = CarrierFailure(carrier=CarrierCode.EKART, error=KeyError("secret internals"))
        response = CarrierErrorResponse.from_failure(failure)

        assert response.code == "INTERNAL_ERROR"
        assert "secret" not in response.message


class TestErrorMapping:

    @pytest.mark.parametrize("error,status_code", [
        (NotFound("gone"), 404),
        (UnexpectedResponseShape("weird"), 502),
        (ServiceUnavailable("down"), 503),
        (WaybillExhausted("empty", requested=1, available=0), 503),
    ])
    def test_status_for_error(self, error, status_code):
        exc = shipping.to_http_exception(error)
        assert exc.status_code == status_code
        assert exc.detail["code"] == error.code

    def test_rate_limited_carries_retry_after(self):
        exc = shipping.to_http_exception(RateLimited("slow", retry_after_seconds=42.7))
        assert exc.status_code == 429
        assert exc.headers == {"Retry-After": "42"}


class TestServiceabilityEndpoint:

    def test_all_carriers(self, client):
        response = client.get("/api/shipping/serviceability/560001")

        assert response.status_code == 200
        data = response.json()
        assert data["pincode"] == "560001"
        assert {r["carrier"] for r in data["results"]} == {"DELHIVERY", "EKART"}
        assert data["errors"] == []

    def test_failing_carrier_listed_in_errors(self, client, ekart):
        ekart.check_serviceability = AsyncMock(side_effect=NotFound("no such pin", carrier="EKART"))

        data = client.get("/api/shipping/serviceability/560001").json()

        assert [r["carrier"] for r in data["results"]] == ["DELHIVERY"]
        assert data["errors"] == [{"carrier": "EKART", "code": "NOT_FOUND", "message": "no such pin"}]

    def test_single_carrier(self, client):
        data = client.get("/api/shipping/serviceability/560001", params={"carrier": "EKART"}).json()
        assert [r["carrier"] for r in data["results"]] == ["EKART"]

    def test_unconfigured_carrier(self, client):
        response = client.get("/api/shipping/serviceability/560001", params={"carrier": "XPRESSBEES"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "CARRIER_NOT_CONFIGURED"

    def test_malformed_pincode(self, client):
        response = client.get("/api/shipping/serviceability/56AB01")

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_FAILED"


class TestQuoteEndpoint:

    def test_quotes_ranked_by_total(self, client, delhivery):
        delhivery.calculate_rate = AsyncMock(return_value=LiveRate(service_name="Surface", freight=Decimal("120")))

        response = client.post("/api/shipping/quotes", json={
            "origin": MUMBAI,
            "destination": BENGALURU,
            "weight": 1.2,
            "dimensions": {"length": 10, "width": 10, "height": 10},
        })

        assert response.status_code == 200
        data = response.json()
        assert data["zone"] == "METRO_TO_METRO"
        totals = [Decimal(q["total"]) for q in data["quotes"]]
        assert totals == sorted(totals)
        assert {q["carrier"] for q in data["quotes"]} == {"DELHIVERY", "EKART"}
        assert [q["live_rate"] for q in data["quotes"] if q["carrier"] == "DELHIVERY"] == [True]
        assert data["errors"] == []

    def test_invalid_body(self, client):
        response = client.post("/api/shipping/quotes", json={"origin": MUMBAI, "destination": BENGALURU})
        assert response.status_code == 422


class TestShipmentEndpoints:

    def test_book(self, client, delhivery):
        response = client.post("/api/shipping/shipments", json=shipment_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["carrier"] == "DELHIVERY"
        assert data["waybill"] == data["external_id"]
        assert data["tracking_url"] == f"https://carrier.test/track/{data['external_id']}"
        assert delhivery.fetch_calls == [10]

    def test_book_cod_without_amount(self, client):
        response = client.post("/api/shipping/shipments", json=shipment_payload(payment_type="COD"))

        assert response.status_code == 422
        assert response.json()["detail"]["carrier"] == "DELHIVERY"

    def test_book_with_exhausted_pool(self, client, delhivery):
        delhivery.fetch_waybills = AsyncMock(side_effect=ServiceUnavailable("down", carrier="DELHIVERY"))

        response = client.post("/api/shipping/shipments", json=shipment_payload())

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "WAYBILL_EXHAUSTED"

    def test_tracking(self, client):
        response = client.get("/api/shipping/shipments/EKART/EK100/tracking")

        assert response.status_code == 200
        data = response.json()
        assert data["current_status"] == "in_transit"
        assert [e["status"] for e in data["events"]] == ["in_transit", "picked_up"]
        assert data["tracking_url"] == "https://carrier.test/track/EK100"

    def test_tracking_unknown_shipment(self, client, ekart):
        ekart.track_shipment = AsyncMock(side_effect=NotFound("unknown id", carrier="EKART"))

        response = client.get("/api/shipping/shipments/EKART/NOPE/tracking")

        assert response.status_code == 404

    def test_cancel(self, client):
        response = client.post("/api/shipping/shipments/EKART/EK100/cancel")

        assert response.status_code == 200
        assert response.json()["cancelled"] is True


class TestHealthEndpoint:

    def test_without_monitor_reports_unknown(self, client):
        response = client.get("/api/shipping/health")

        assert response.status_code == 200
        assert {h["state"] for h in response.json()} == {"unknown"}

    def test_gateway_not_initialized(self):
        app = FastAPI()
        app.include_router(shipping.router, prefix="/api")

        response = TestClient(app).get("/api/shipping/health")

        assert response.status_code == 503
