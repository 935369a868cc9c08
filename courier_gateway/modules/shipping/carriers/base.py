"""
Base Carrier Interface

- All carriers implement this interface
- Each carrier provides its own:
  - Pincode serviceability
  - Booking (manifest) with a pre-reserved waybill where supported
  - Tracking with status mapping onto TrackingStatus
  - Cancellation
  - Public tracking URL
- Carrier field names, date formats and status codes never leave the adapter

Adapters raise GatewayError subclasses. They do not retry and do not
refresh tokens; the gateway owns both.
"""
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from courier_gateway.core.config import settings
from courier_gateway.core.exceptions import (
    CarrierNotConfigured,
    UnexpectedResponseShape,
    ValidationFailed,
)
from courier_gateway.core.http_client import CarrierHTTPClient
from courier_gateway.models.carrier import (
    AccessToken,
    CarrierCode,
    CarrierIdentity,
    FormCredential,
    WaybillBatch,
)
from courier_gateway.models.shipment import (
    BookingResult,
    CancelResult,
    LiveRate,
    PaymentType,
    ServiceabilityResult,
    ShipmentDetails,
    TrackingStatus,
    TrackingTimeline,
    Zone,
)

logger = logging.getLogger(__name__)

PINCODE_PATTERN = re.compile(r"^\d{6}$")

CARRIER_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
    "%d %b, %Y, %H:%M",
    "%d-%b-%Y %H:%M",
    "%d-%b-%Y",
)


def validate_pincode(pincode: Any) -> str:
    """Normalize an Indian PIN code, raising ValidationFailed if malformed."""
    value = str(pincode or "").strip()
    if not PINCODE_PATTERN.match(value):
        raise ValidationFailed(
            f"Invalid pincode '{value}': expected 6 digits",
            details={"pincode": value},
        )
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse the date shapes carriers send.

    Accepts ISO-8601 strings (with or without offset), "YYYY-MM-DD HH:MM:SS",
    and epoch seconds or milliseconds. Naive values are taken as UTC.
    """
    if value in (None, ""):
        return None

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        epoch = float(value)
        if epoch > 1e11:  # milliseconds
            epoch /= 1000
        return datetime.fromtimestamp(epoch, tz=timezone.utc)

    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in CARRIER_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BaseCarrier(ABC):
    """
    Abstract base class for all shipping carriers.

    One instance per carrier. A carrier may hold several identities (one per
    service tier / shipper code); the first configured identity is the default.
    """

    # Bulk waybill fetch limit; 0 means the carrier assigns AWBs at booking.
    max_waybill_batch: int = 0
    supports_live_rates: bool = False
    # True when service tiers map to distinct accounts (shipper codes).
    # Otherwise a tier is a shipping mode and every tier uses the default identity.
    identity_per_tier: bool = False

    # Booking limits mirrored from the carrier's own validation
    min_weight_kg: float = 0.1
    max_weight_kg: float = 50.0
    min_cod_amount: Decimal = Decimal("1")
    max_cod_amount: Decimal = Decimal("50000")
    max_dimensions_cm: Optional[tuple] = None  # (length, width, height)

    # Carrier status string -> normalized status
    status_map: Mapping[str, TrackingStatus] = {}

    def __init__(
        self,
        identities: List[CarrierIdentity],
        credential_store,
        http_client: CarrierHTTPClient,
    ):
        if not identities:
            raise CarrierNotConfigured(f"{self.carrier_name} has no configured identity")
        self._identities: Dict[str, CarrierIdentity] = {i.service_tier: i for i in identities}
        self._default_tier = identities[0].service_tier
        self.credential_store = credential_store
        self.http = http_client

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        """Return the carrier code enum value."""

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return the human-readable carrier name."""

    @property
    def supports_waybill_prefetch(self) -> bool:
        return self.max_waybill_batch > 0

    @property
    def identities(self) -> List[CarrierIdentity]:
        return list(self._identities.values())

    def identity_for(self, service_tier: Optional[str] = None) -> CarrierIdentity:
        """
        Identity for a service tier; the default identity when tier is None.

        Carriers without per-tier accounts answer every tier with the
        default identity, so "express" on Delhivery still authenticates.
        """
        tier = service_tier or self._default_tier
        identity = self._identities.get(tier)
        if identity is None and not self.identity_per_tier:
            return self._identities[self._default_tier]
        if identity is None:
            raise CarrierNotConfigured(
                f"{self.carrier_name} has no identity for service tier '{tier}'",
                carrier=self.carrier_code.value,
                details={"service_tier": tier, "configured": sorted(self._identities)},
            )
        return identity

    async def credential(
        self, service_tier: Optional[str] = None
    ) -> Union[AccessToken, FormCredential]:
        return await self.credential_store.get_token(self.identity_for(service_tier))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def check_serviceability(
        self, pincode: str, service_tier: Optional[str] = None
    ) -> ServiceabilityResult:
        """
        Check whether the carrier delivers to a pincode.

        Args:
            pincode: Validated 6-digit PIN code
            service_tier: Identity to use; default identity when None

        Returns:
            ServiceabilityResult with COD/prepaid availability
        """

    async def calculate_rate(self, details: ShipmentDetails, zone: Zone) -> LiveRate:
        """
        Price a shipment with the carrier's own rating API.

        Only called when supports_live_rates is True.
        """
        raise ValidationFailed(
            f"{self.carrier_name} does not offer live rating",
            carrier=self.carrier_code.value,
        )

    @abstractmethod
    async def book_shipment(
        self, details: ShipmentDetails, waybill: Optional[str] = None
    ) -> BookingResult:
        """
        Create the shipment with the carrier.

        Args:
            details: Validated shipment details
            waybill: Pre-reserved waybill for prefetch carriers, else None

        Returns:
            BookingResult with the carrier's external id
        """

    @abstractmethod
    async def track_shipment(self, external_id: str) -> TrackingTimeline:
        """Fetch the full tracking timeline, newest event first."""

    @abstractmethod
    async def cancel_shipment(self, external_id: str) -> CancelResult:
        """Cancel a booked shipment."""

    async def fetch_waybills(self, count: int) -> WaybillBatch:
        """
        Reserve waybills in bulk.

        Carriers that assign AWBs at booking return the manual-process marker.
        """
        return WaybillBatch(waybills=[], manual_process=True)

    async def probe(self) -> Any:
        """Lightest available call, used by the health monitor."""
        return await self.check_serviceability(settings.HEALTH_PROBE_PINCODE)

    @abstractmethod
    def get_tracking_url(self, external_id: str) -> str:
        """Public tracking page for a shipment."""

    def map_status(self, carrier_status: str) -> TrackingStatus:
        """Map carrier-specific status to normalized TrackingStatus."""
        status_upper = (carrier_status or "").upper().strip()
        if not status_upper:
            return TrackingStatus.UNKNOWN

        # Check direct mapping
        if status_upper in self.status_map:
            return self.status_map[status_upper]

        # Check partial matches, longest key first so "UNDELIVERED" beats "DELIVERED"
        for key in sorted(self.status_map, key=len, reverse=True):
            if key in status_upper:
                return self.status_map[key]

        logger.warning(f"Unknown {self.carrier_name} status: {carrier_status}, mapping to UNKNOWN")
        return TrackingStatus.UNKNOWN

    # -------------------------------------------------------------------------
    # Validation helpers
    # -------------------------------------------------------------------------

    def validate_shipment(self, details: ShipmentDetails) -> None:
        """
        Reject bookings the carrier would reject anyway.

        Raises:
            CarrierNotConfigured if the service tier has no identity
            ValidationFailed listing every problem found
        """
        self.identity_for(details.service_tier)

        errors: List[str] = []

        required = {
            "order_id": details.order_id,
            "consignee_name": details.consignee_name,
            "consignee_address": details.consignee_address,
            "consignee_phone": details.consignee_phone,
            "shipper_address": details.shipper_address,
        }
        errors.extend(f"Missing required field: {name}" for name, value in required.items() if not value)

        for label, location in (("pickup", details.pickup), ("delivery", details.delivery)):
            if not PINCODE_PATTERN.match(str(location.pincode or "").strip()):
                errors.append(f"Invalid {label} pincode format")

        if not (self.min_weight_kg <= details.weight <= self.max_weight_kg):
            errors.append(f"Weight must be between {self.min_weight_kg}kg and {self.max_weight_kg}kg")

        if details.payment_type == PaymentType.COD:
            amount = Decimal(str(details.collectible_amount or 0))
            if amount < self.min_cod_amount:
                errors.append("COD amount is required and must be greater than 0")
            elif amount > self.max_cod_amount:
                errors.append(f"COD amount cannot exceed {self.max_cod_amount}")

        if self.max_dimensions_cm:
            dims = details.dimensions
            max_l, max_w, max_h = self.max_dimensions_cm
            if dims.length > max_l or dims.width > max_w or dims.height > max_h:
                errors.append("Package dimensions exceed limits")

        if errors:
            raise ValidationFailed(
                f"{self.carrier_name} shipment validation failed",
                carrier=self.carrier_code.value,
                details={"errors": errors, "order_id": details.order_id},
            )

    def _require(self, data: Any, *path: Union[str, int]) -> Any:
        """Walk a response path, raising UnexpectedResponseShape on a miss."""
        current = data
        for part in path:
            try:
                current = current[part]
            except (KeyError, IndexError, TypeError):
                raise UnexpectedResponseShape(
                    f"{self.carrier_name} response missing '{'.'.join(str(p) for p in path)}'",
                    carrier=self.carrier_code.value,
                    raw=data,
                ) from None
        return current
