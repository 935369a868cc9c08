"""
Carrier-agnostic shipment models.

These are the only shapes that leave a carrier adapter. Money is Decimal,
weight is kilograms, dimensions are centimetres.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from courier_gateway.models.carrier import CarrierCode


class TrackingStatus(str, enum.Enum):
    """Closed, carrier-agnostic tracking vocabulary."""
    PENDING_PICKUP = "pending_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"  # NDR: delivery attempted and failed
    RTO_IN_TRANSIT = "rto_in_transit"
    RTO_DELIVERED = "rto_delivered"
    CANCELLED = "cancelled"
    EXCEPTION = "exception"
    UNKNOWN = "unknown"


class HealthState(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class PaymentType(str, enum.Enum):
    PREPAID = "PREPAID"
    COD = "COD"


class Zone(str, enum.Enum):
    """Coarse origin/destination proximity class."""
    SPECIAL_ZONE = "SPECIAL_ZONE"
    WITHIN_CITY = "WITHIN_CITY"
    WITHIN_STATE = "WITHIN_STATE"
    WITHIN_REGION = "WITHIN_REGION"
    METRO_TO_METRO = "METRO_TO_METRO"
    REST_OF_INDIA = "REST_OF_INDIA"


@dataclass(frozen=True)
class Location:
    pincode: str
    city: str
    state: str
    region: Optional[str] = None


@dataclass(frozen=True)
class Dimensions:
    """Package dimensions in centimetres."""
    length: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass
class ShipmentDetails:
    """Input for booking (and live rating)."""
    order_id: str
    pickup: Location
    delivery: Location
    consignee_name: str
    consignee_address: str
    consignee_phone: str
    shipper_name: str
    shipper_address: str
    shipper_phone: str
    weight: float  # kg
    dimensions: Dimensions = field(default_factory=Dimensions)
    payment_type: PaymentType = PaymentType.PREPAID
    collectible_amount: Decimal = Decimal("0")
    declared_value: Decimal = Decimal("0")
    product_description: str = "Product"
    quantity: int = 1
    service_tier: Optional[str] = None


@dataclass(frozen=True)
class RateCard:
    """Zone price row owned by the surrounding application."""
    carrier: CarrierCode
    service_name: str
    base_rate: Decimal
    addl_rate: Decimal
    cod_fee: Decimal = Decimal("0")
    cod_percent: Decimal = Decimal("0")
    rto_rate: Decimal = Decimal("0")
    min_billable_weight: Decimal = Decimal("0.5")
    billing_unit: Decimal = Decimal("0.5")
    dimensional_factor: int = 5000


@dataclass(frozen=True)
class ShipmentQuote:
    """
    Fully itemized quote.

    total == shipping_cost + rto_charge + cod_charge + gst, summed in that order.
    shipping_cost == base_rate + additional_charge.
    """
    carrier: CarrierCode
    service_name: str
    zone: Zone
    actual_weight: Decimal
    volumetric_weight: Decimal
    chargeable_weight: Decimal
    weight_multiplier: int
    base_rate: Decimal
    additional_charge: Decimal
    shipping_cost: Decimal
    cod_charge: Decimal
    rto_charge: Decimal
    gst: Decimal
    total: Decimal
    live_rate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier": self.carrier.value,
            "service_name": self.service_name,
            "zone": self.zone.value,
            "actual_weight": str(self.actual_weight),
            "volumetric_weight": str(self.volumetric_weight),
            "chargeable_weight": str(self.chargeable_weight),
            "weight_multiplier": self.weight_multiplier,
            "base_rate": str(self.base_rate),
            "additional_charge": str(self.additional_charge),
            "shipping_cost": str(self.shipping_cost),
            "cod_charge": str(self.cod_charge),
            "rto_charge": str(self.rto_charge),
            "gst": str(self.gst),
            "total": str(self.total),
            "live_rate": self.live_rate,
        }


@dataclass(frozen=True)
class LiveRate:
    """Carrier-priced charges returned by a live rating API."""
    service_name: str
    freight: Decimal
    cod_charge: Decimal = Decimal("0")
    rto_charge: Decimal = Decimal("0")
    gst: Optional[Decimal] = None
    raw: Any = None


@dataclass(frozen=True)
class TrackingEvent:
    timestamp: datetime
    status: TrackingStatus
    location: str
    description: str
    raw_status: str


@dataclass(frozen=True)
class TrackingTimeline:
    """Newest-first, never mutated; a new fetch replaces it."""
    carrier: CarrierCode
    external_id: str
    events: Tuple[TrackingEvent, ...] = ()
    expected_delivery: Optional[datetime] = None

    @classmethod
    def from_events(
        cls,
        carrier: CarrierCode,
        external_id: str,
        events: List[TrackingEvent],
        expected_delivery: Optional[datetime] = None,
    ) -> "TrackingTimeline":
        ordered = tuple(sorted(events, key=lambda e: e.timestamp, reverse=True))
        return cls(carrier=carrier, external_id=external_id, events=ordered, expected_delivery=expected_delivery)

    @property
    def current_status(self) -> TrackingStatus:
        return self.events[0].status if self.events else TrackingStatus.UNKNOWN


@dataclass(frozen=True)
class ServiceabilityResult:
    carrier: CarrierCode
    pincode: str
    serviceable: bool
    cod_available: bool
    prepaid_available: bool


@dataclass(frozen=True)
class BookingResult:
    carrier: CarrierCode
    external_id: str
    status: str
    waybill: Optional[str] = None
    label_url: Optional[str] = None
    tracking_url: Optional[str] = None


@dataclass(frozen=True)
class CancelResult:
    carrier: CarrierCode
    external_id: str
    cancelled: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class CarrierFailure:
    """One carrier's error inside a multi-carrier result."""
    carrier: CarrierCode
    error: Exception


@dataclass
class QuoteResult:
    """Partial-success container for shopping-around quotes."""
    quotes: List[ShipmentQuote] = field(default_factory=list)
    errors: List[CarrierFailure] = field(default_factory=list)


@dataclass
class ServiceabilityBatch:
    results: List[ServiceabilityResult] = field(default_factory=list)
    errors: List[CarrierFailure] = field(default_factory=list)
