"""
Shared fixtures for courier gateway tests.
"""
import os

# Set test environment before the package reads settings
os.environ["ENVIRONMENT"] = "development"
os.environ["REDIS_URL"] = ""
os.environ["HEALTH_PROBE_PINCODE"] = "110001"

from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from typing import Optional

import pytest

from courier_gateway.core.cache import InMemoryCache
from courier_gateway.core.http_client import CarrierHTTPClient
from courier_gateway.core.monitoring import metrics
from courier_gateway.models.carrier import (
    AuthScheme,
    CarrierCode,
    CarrierIdentity,
    Waybill,
    WaybillBatch,
)
from courier_gateway.models.shipment import (
    BookingResult,
    CancelResult,
    Dimensions,
    Location,
    PaymentType,
    ServiceabilityResult,
    ShipmentDetails,
    TrackingEvent,
    TrackingStatus,
    TrackingTimeline,
)
from courier_gateway.modules.shipping.carriers.base import BaseCarrier


class FakeCarrier(BaseCarrier):
    """
    In-process adapter for gateway/pool/monitor tests.

    Operations return canned results; tests swap any of them for an
    AsyncMock on the instance.
    """

    def __init__(
        self,
        code: CarrierCode,
        credential_store=None,
        max_waybill_batch: int = 0,
        live_rates: bool = False,
    ):
        identity = CarrierIdentity(
            carrier=code,
            service_tier="default",
            auth_scheme=AuthScheme.STATIC_TOKEN,
            secrets={"token": "test-token"},
            base_url="https://carrier.test",
        )
        super().__init__([identity], credential_store, CarrierHTTPClient(code.value, identity.base_url))
        self._code = code
        self.max_waybill_batch = max_waybill_batch
        self.supports_live_rates = live_rates
        self.fetch_calls = []
        self._serial = count(1)

    @property
    def carrier_code(self) -> CarrierCode:
        return self._code

    @property
    def carrier_name(self) -> str:
        return self._code.value.title()

    async def check_serviceability(self, pincode, service_tier=None):
        return ServiceabilityResult(
            carrier=self._code,
            pincode=pincode,
            serviceable=True,
            cod_available=True,
            prepaid_available=True,
        )

    async def fetch_waybills(self, count: int) -> WaybillBatch:
        self.fetch_calls.append(count)
        prefix = self._code.value[:3]
        return WaybillBatch(waybills=[
            Waybill(number=f"{prefix}{next(self._serial):08d}", carrier=self._code)
            for _ in range(count)
        ])

    async def book_shipment(self, details, waybill=None):
        external_id = waybill or f"{self._code.value[:3]}-{details.order_id}"
        return BookingResult(
            carrier=self._code,
            external_id=external_id,
            status="booked",
            waybill=waybill,
        )

    async def track_shipment(self, external_id):
        return TrackingTimeline.from_events(self._code, external_id, [
            TrackingEvent(
                timestamp=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
                status=TrackingStatus.PICKED_UP,
                location="Mumbai",
                description="Picked up",
                raw_status="Picked Up",
            ),
            TrackingEvent(
                timestamp=datetime(2024, 5, 2, 9, 30, tzinfo=timezone.utc),
                status=TrackingStatus.IN_TRANSIT,
                location="Pune Hub",
                description="In transit",
                raw_status="In Transit",
            ),
        ])

    async def cancel_shipment(self, external_id):
        return CancelResult(carrier=self._code, external_id=external_id, cancelled=True)

    def get_tracking_url(self, external_id: str) -> str:
        return f"https://carrier.test/track/{external_id}"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def mumbai():
    return Location(pincode="400001", city="Mumbai", state="Maharashtra")


@pytest.fixture
def mumbai_andheri():
    return Location(pincode="400053", city=" mumbai ", state="Maharashtra")


@pytest.fixture
def bengaluru():
    return Location(pincode="560001", city="Bengaluru", state="Karnataka")


def make_details(
    pickup: Location,
    delivery: Location,
    payment_type: PaymentType = PaymentType.PREPAID,
    collectible_amount: Decimal = Decimal("0"),
    weight: float = 1.2,
    order_id: str = "ORD-1001",
    service_tier: Optional[str] = None,
) -> ShipmentDetails:
    return ShipmentDetails(
        order_id=order_id,
        pickup=pickup,
        delivery=delivery,
        consignee_name="Asha Verma",
        consignee_address="12 MG Road",
        consignee_phone="9876543210",
        shipper_name="Test Seller",
        shipper_address="4 Warehouse Lane",
        shipper_phone="9123456780",
        weight=weight,
        dimensions=Dimensions(10, 10, 10),
        payment_type=payment_type,
        collectible_amount=collectible_amount,
        declared_value=Decimal("1000"),
        product_description="Books",
        service_tier=service_tier,
    )


@pytest.fixture
def shipment_details(mumbai, bengaluru):
    return make_details(mumbai, bengaluru)
