from courier_gateway.models.carrier import (
    AccessToken,
    AuthScheme,
    CarrierCode,
    CarrierIdentity,
    FormCredential,
    Waybill,
    WaybillBatch,
)
from courier_gateway.models.shipment import (
    BookingResult,
    CancelResult,
    CarrierFailure,
    Dimensions,
    HealthState,
    LiveRate,
    Location,
    PaymentType,
    QuoteResult,
    RateCard,
    ServiceabilityBatch,
    ServiceabilityResult,
    ShipmentDetails,
    ShipmentQuote,
    TrackingEvent,
    TrackingStatus,
    TrackingTimeline,
    Zone,
)

__all__ = [
    "AccessToken",
    "AuthScheme",
    "BookingResult",
    "CancelResult",
    "CarrierCode",
    "CarrierFailure",
    "CarrierIdentity",
    "Dimensions",
    "FormCredential",
    "HealthState",
    "LiveRate",
    "Location",
    "PaymentType",
    "QuoteResult",
    "RateCard",
    "ServiceabilityBatch",
    "ServiceabilityResult",
    "ShipmentDetails",
    "ShipmentQuote",
    "TrackingEvent",
    "TrackingStatus",
    "TrackingTimeline",
    "Waybill",
    "WaybillBatch",
    "Zone",
]
