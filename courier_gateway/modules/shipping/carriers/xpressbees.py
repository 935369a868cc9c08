"""
XpressBees Carrier Implementation

- Login JWT auth: email/password POST, token returned in "data"
- AWBs are assigned at booking time (no pre-fetch)
- Tracking events arrive grouped by status category
"""
import logging
from typing import List, Optional, Tuple

from courier_gateway.core.exceptions import (
    AuthenticationFailed,
    NotFound,
    UnexpectedResponseShape,
    ValidationFailed,
)
from courier_gateway.core.http_client import CarrierHTTPClient
from courier_gateway.models.carrier import CarrierCode, CarrierIdentity
from courier_gateway.models.shipment import (
    BookingResult,
    CancelResult,
    PaymentType,
    ServiceabilityResult,
    ShipmentDetails,
    TrackingEvent,
    TrackingStatus,
    TrackingTimeline,
)
from courier_gateway.modules.shipping.carriers import register_carrier
from courier_gateway.modules.shipping.carriers.base import BaseCarrier, parse_timestamp
from courier_gateway.services.credential_store import register_login

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/users/login"
SERVICEABILITY_PATH = "/api/courier/serviceability"
CREATE_SHIPMENT_PATH = "/api/shipments2"
TRACK_PATH = "/api/shipments2/track"
CANCEL_PATH = "/api/shipments2/cancel"

TRACKING_CATEGORIES = ("delivered", "out for delivery", "in transit", "pending pickup", "rto", "exception")

XPRESSBEES_STATUS_MAP = {
    "PENDING PICKUP": TrackingStatus.PENDING_PICKUP,
    "BOOKED": TrackingStatus.PENDING_PICKUP,
    "PICKED UP": TrackingStatus.PICKED_UP,
    "PKD": TrackingStatus.PICKED_UP,
    "IN TRANSIT": TrackingStatus.IN_TRANSIT,
    "OUT FOR DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "OFD": TrackingStatus.OUT_FOR_DELIVERY,
    "DELIVERED": TrackingStatus.DELIVERED,
    "UNDELIVERED": TrackingStatus.UNDELIVERED,
    "NDR": TrackingStatus.UNDELIVERED,
    "RTO DELIVERED": TrackingStatus.RTO_DELIVERED,
    "RTO": TrackingStatus.RTO_IN_TRANSIT,
    "CANCELLED": TrackingStatus.CANCELLED,
    "LOST": TrackingStatus.EXCEPTION,
    "EXCEPTION": TrackingStatus.EXCEPTION,
}


async def xpressbees_login(identity: CarrierIdentity, http: CarrierHTTPClient) -> Tuple[str, Optional[int]]:
    """
    Exchange email/password for a JWT.

    The login response carries no expiry, so the TTL is left to the
    identity (TOKEN_DEFAULT_TTL_SECONDS) unless the carrier starts sending one.
    """
    data = await http.post_json(
        LOGIN_PATH,
        json={"email": identity.secret("email"), "password": identity.secret("password")},
    )
    if isinstance(data, dict) and data.get("status") and data.get("data"):
        expires_in = data.get("expires_in")
        return data["data"], int(expires_in) if expires_in else None
    raise AuthenticationFailed(
        "XpressBees login rejected",
        carrier=CarrierCode.XPRESSBEES.value,
        raw=data,
    )


register_login(CarrierCode.XPRESSBEES, xpressbees_login)


@register_carrier(CarrierCode.XPRESSBEES)
class XpressBeesCarrier(BaseCarrier):
    """XpressBees implementation."""

    status_map = XPRESSBEES_STATUS_MAP

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.XPRESSBEES

    @property
    def carrier_name(self) -> str:
        return "XpressBees"

    async def _headers(self, service_tier: Optional[str] = None):
        token = await self.credential(service_tier)
        return {"Authorization": f"Bearer {token.value}", "Content-Type": "application/json"}

    async def check_serviceability(
        self, pincode: str, service_tier: Optional[str] = None
    ) -> ServiceabilityResult:
        results = {}
        for payment_type in ("cod", "prepaid"):
            data = await self.http.post_json(
                SERVICEABILITY_PATH,
                json={
                    "origin": pincode,
                    "destination": pincode,
                    "payment_type": payment_type,
                    "order_amount": "100",
                    "weight": "500",
                },
                headers=await self._headers(service_tier),
            )
            if not isinstance(data, dict) or "status" not in data:
                raise UnexpectedResponseShape(
                    "XpressBees serviceability response missing status",
                    carrier=self.carrier_code.value,
                    raw=data,
                )
            results[payment_type] = bool(data.get("status")) and bool(data.get("data"))

        return ServiceabilityResult(
            carrier=self.carrier_code,
            pincode=pincode,
            serviceable=results["cod"] or results["prepaid"],
            cod_available=results["cod"],
            prepaid_available=results["prepaid"],
        )

    async def book_shipment(
        self, details: ShipmentDetails, waybill: Optional[str] = None
    ) -> BookingResult:
        is_cod = details.payment_type == PaymentType.COD
        dims = details.dimensions
        payload = {
            "order_number": details.order_id,
            "payment_type": "cod" if is_cod else "prepaid",
            "order_amount": str(details.declared_value or details.collectible_amount),
            "collectable_amount": str(details.collectible_amount) if is_cod else "0",
            "package_weight": int(round(details.weight * 1000)),
            "package_length": dims.length or 10,
            "package_breadth": dims.width or 10,
            "package_height": dims.height or 10,
            "consignee": {
                "name": details.consignee_name,
                "address": details.consignee_address,
                "city": details.delivery.city,
                "state": details.delivery.state,
                "pincode": details.delivery.pincode,
                "phone": details.consignee_phone,
            },
            "pickup": {
                "warehouse_name": details.shipper_name,
                "name": details.shipper_name,
                "address": details.shipper_address,
                "city": details.pickup.city,
                "state": details.pickup.state,
                "pincode": details.pickup.pincode,
                "phone": details.shipper_phone,
            },
            "order_items": [{
                "name": details.product_description,
                "qty": str(details.quantity),
                "price": str(details.declared_value),
            }],
        }

        data = await self.http.post_json(
            CREATE_SHIPMENT_PATH,
            json=payload,
            headers=await self._headers(details.service_tier),
        )
        if not isinstance(data, dict):
            raise UnexpectedResponseShape(
                "XpressBees booking response was not an object",
                carrier=self.carrier_code.value,
                raw=data,
            )

        result = data.get("data") if isinstance(data.get("data"), dict) else data
        succeeded = data.get("response") is True or data.get("status") is True
        awb = result.get("awb_number")
        if not succeeded or not awb:
            raise ValidationFailed(
                f"XpressBees rejected order {details.order_id}",
                carrier=self.carrier_code.value,
                details={"message": data.get("message")},
                raw=data,
            )

        logger.info(f"XpressBees: booked order {details.order_id} as {awb}")
        return BookingResult(
            carrier=self.carrier_code,
            external_id=str(awb),
            status="booked",
            waybill=str(awb),
            label_url=result.get("label"),
            tracking_url=self.get_tracking_url(str(awb)),
        )

    async def track_shipment(self, external_id: str) -> TrackingTimeline:
        data = await self.http.post_json(
            TRACK_PATH,
            json={"awb_number": external_id},
            headers=await self._headers(),
        )
        if not isinstance(data, dict) or not (data.get("response") is True or data.get("status") is True):
            raise NotFound(
                f"XpressBees has no tracking data for {external_id}",
                carrier=self.carrier_code.value,
                raw=data,
            )

        tracking_data = data.get("tracking_data")
        if not isinstance(tracking_data, dict):
            raise UnexpectedResponseShape(
                "XpressBees tracking response missing tracking_data",
                carrier=self.carrier_code.value,
                raw=data,
            )

        events: List[TrackingEvent] = []
        for category in TRACKING_CATEGORIES:
            for item in tracking_data.get(category) or []:
                timestamp = parse_timestamp(item.get("event_time"))
                if timestamp is None:
                    continue
                raw_status = item.get("status") or category
                events.append(TrackingEvent(
                    timestamp=timestamp,
                    status=self.map_status(raw_status),
                    location=item.get("location") or "",
                    description=item.get("message") or raw_status,
                    raw_status=raw_status,
                ))

        return TrackingTimeline.from_events(self.carrier_code, external_id, events)

    async def cancel_shipment(self, external_id: str) -> CancelResult:
        data = await self.http.post_json(
            CANCEL_PATH,
            json={"awb_number": external_id},
            headers=await self._headers(),
        )
        if not isinstance(data, dict):
            raise UnexpectedResponseShape(
                "XpressBees cancel response was not an object",
                carrier=self.carrier_code.value,
                raw=data,
            )
        return CancelResult(
            carrier=self.carrier_code,
            external_id=external_id,
            cancelled=data.get("response") is True or data.get("status") is True,
            message=data.get("message"),
        )

    def get_tracking_url(self, external_id: str) -> str:
        return f"https://www.xpressbees.com/shipment/tracking?awbNo={external_id}"
