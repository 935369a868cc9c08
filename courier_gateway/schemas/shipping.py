"""
Shipping Schemas

Pydantic models for the gateway's HTTP surface. Request models convert to
the carrier-agnostic dataclasses; response models read from them.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from courier_gateway.core.exceptions import GatewayError
from courier_gateway.models.carrier import CarrierCode
from courier_gateway.models.shipment import (
    CarrierFailure,
    Dimensions,
    Location,
    PaymentType,
    ShipmentDetails,
    TrackingStatus,
    TrackingTimeline,
)


# ==================== Shared ====================


class LocationIn(BaseModel):
    pincode: str = Field(..., pattern=r"^\d{6}$")
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    region: Optional[str] = Field(None, max_length=50)

    def to_location(self) -> Location:
        return Location(pincode=self.pincode, city=self.city, state=self.state, region=self.region)


class DimensionsIn(BaseModel):
    """Package dimensions in centimetres."""
    length: float = Field(0, ge=0)
    width: float = Field(0, ge=0)
    height: float = Field(0, ge=0)

    def to_dimensions(self) -> Dimensions:
        return Dimensions(length=self.length, width=self.width, height=self.height)


class CarrierErrorResponse(BaseModel):
    """One carrier's failure inside a multi-carrier response."""
    carrier: CarrierCode
    code: str
    message: str

    @classmethod
    def from_failure(cls, failure: CarrierFailure) -> "CarrierErrorResponse":
        error = failure.error
        if isinstance(error, GatewayError):
            return cls(carrier=failure.carrier, code=error.code, message=error.message)
        return cls(carrier=failure.carrier, code="INTERNAL_ERROR", message="Unexpected carrier error")


# ==================== Serviceability ====================


class ServiceabilityResponse(BaseModel):
    carrier: CarrierCode
    pincode: str
    serviceable: bool
    cod_available: bool
    prepaid_available: bool

    class Config:
        from_attributes = True


class ServiceabilityListResponse(BaseModel):
    pincode: str
    results: List[ServiceabilityResponse]
    errors: List[CarrierErrorResponse] = []


# ==================== Quotes ====================


class QuoteRequest(BaseModel):
    """Shop-around quote across every configured carrier."""
    origin: LocationIn
    destination: LocationIn
    weight: float = Field(..., gt=0, le=50, description="Weight in kg")
    dimensions: Optional[DimensionsIn] = None
    payment_type: PaymentType = PaymentType.PREPAID
    collectible_amount: Decimal = Field(Decimal("0"), ge=0)
    include_rto: bool = False


class QuoteResponse(BaseModel):
    """A single itemized quote."""
    carrier: CarrierCode
    service_name: str
    zone: str
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

    class Config:
        from_attributes = True


class QuoteListResponse(BaseModel):
    """Quotes ranked by total, plus carriers that failed to quote."""
    zone: Optional[str] = None
    quotes: List[QuoteResponse]
    errors: List[CarrierErrorResponse] = []


# ==================== Shipments ====================


class ShipmentCreate(BaseModel):
    """Book a shipment with a named carrier."""
    carrier: CarrierCode
    order_id: str = Field(..., min_length=1, max_length=50)
    pickup: LocationIn
    delivery: LocationIn
    consignee_name: str = Field(..., min_length=1, max_length=100)
    consignee_address: str = Field(..., min_length=1, max_length=300)
    consignee_phone: str
    shipper_name: str = Field(..., min_length=1, max_length=100)
    shipper_address: str = Field(..., min_length=1, max_length=300)
    shipper_phone: str
    weight: float = Field(..., gt=0, description="Weight in kg")
    dimensions: Optional[DimensionsIn] = None
    payment_type: PaymentType = PaymentType.PREPAID
    collectible_amount: Decimal = Field(Decimal("0"), ge=0)
    declared_value: Decimal = Field(Decimal("0"), ge=0)
    product_description: str = Field("Product", max_length=200)
    quantity: int = Field(1, ge=1)
    service_tier: Optional[str] = None

    @field_validator("consignee_phone", "shipper_phone")
    @classmethod
    def validate_phone(cls, v):
        digits = re.sub(r'\D', '', v)
        if len(digits) < 10 or len(digits) > 12:
            raise ValueError("Phone number must be 10-12 digits")
        return digits[-10:]

    def to_details(self) -> ShipmentDetails:
        return ShipmentDetails(
            order_id=self.order_id,
            pickup=self.pickup.to_location(),
            delivery=self.delivery.to_location(),
            consignee_name=self.consignee_name,
            consignee_address=self.consignee_address,
            consignee_phone=self.consignee_phone,
            shipper_name=self.shipper_name,
            shipper_address=self.shipper_address,
            shipper_phone=self.shipper_phone,
            weight=self.weight,
            dimensions=self.dimensions.to_dimensions() if self.dimensions else Dimensions(),
            payment_type=self.payment_type,
            collectible_amount=self.collectible_amount,
            declared_value=self.declared_value,
            product_description=self.product_description,
            quantity=self.quantity,
            service_tier=self.service_tier,
        )


class BookingResponse(BaseModel):
    carrier: CarrierCode
    external_id: str
    status: str
    waybill: Optional[str] = None
    label_url: Optional[str] = None
    tracking_url: Optional[str] = None

    class Config:
        from_attributes = True


class CancelResponse(BaseModel):
    carrier: CarrierCode
    external_id: str
    cancelled: bool
    message: Optional[str] = None

    class Config:
        from_attributes = True


# ==================== Tracking ====================


class TrackingEventResponse(BaseModel):
    timestamp: datetime
    status: TrackingStatus
    location: str
    description: str
    raw_status: str

    class Config:
        from_attributes = True


class TrackingResponse(BaseModel):
    """Newest-first tracking timeline."""
    carrier: CarrierCode
    external_id: str
    current_status: str
    expected_delivery: Optional[datetime] = None
    tracking_url: Optional[str] = None
    events: List[TrackingEventResponse] = []

    @classmethod
    def from_timeline(cls, timeline: TrackingTimeline, tracking_url: Optional[str] = None) -> "TrackingResponse":
        return cls(
            carrier=timeline.carrier,
            external_id=timeline.external_id,
            current_status=timeline.current_status.value,
            expected_delivery=timeline.expected_delivery,
            tracking_url=tracking_url,
            events=[TrackingEventResponse.model_validate(e) for e in timeline.events],
        )


# ==================== Health ====================


class CarrierHealthResponse(BaseModel):
    carrier: str
    state: str
    last_latency_ms: Optional[float] = None
    last_error: Optional[str] = None
    last_probe_at: Optional[datetime] = None
    consecutive_failures: int = 0
    requests_total: int = 0
    latency_p95_ms: float = 0
