"""
Ekart Carrier Implementation

- OAuth2 client credentials (token handled by CredentialStore)
- Tracking id assigned at booking time (no pre-fetch)
"""
import logging
from typing import List, Optional

from courier_gateway.core.exceptions import NotFound, UnexpectedResponseShape, ValidationFailed
from courier_gateway.models.carrier import CarrierCode
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

logger = logging.getLogger(__name__)

CREATE_PATH = "/api/v1/package/create"
CANCEL_PATH = "/api/v1/package/cancel"
TRACK_PATH = "/api/v1/track"
SERVICEABILITY_PATH = "/api/v2/serviceability"

EKART_STATUS_MAP = {
    "CREATED": TrackingStatus.PENDING_PICKUP,
    "PICKUP SCHEDULED": TrackingStatus.PENDING_PICKUP,
    "PICKUP_SCHEDULED": TrackingStatus.PENDING_PICKUP,
    "PICKED UP": TrackingStatus.PICKED_UP,
    "PICKUP_COMPLETE": TrackingStatus.PICKED_UP,
    "IN TRANSIT": TrackingStatus.IN_TRANSIT,
    "IN_TRANSIT": TrackingStatus.IN_TRANSIT,
    "SHIPPED": TrackingStatus.IN_TRANSIT,
    "OUT FOR DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "OUT_FOR_DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "DELIVERED": TrackingStatus.DELIVERED,
    "UNDELIVERED": TrackingStatus.UNDELIVERED,
    "UNDELIVERED_ATTEMPTED": TrackingStatus.UNDELIVERED,
    "RETURN_DELIVERED": TrackingStatus.RTO_DELIVERED,
    "RTO_DELIVERED": TrackingStatus.RTO_DELIVERED,
    "RETURN": TrackingStatus.RTO_IN_TRANSIT,
    "RTO": TrackingStatus.RTO_IN_TRANSIT,
    "CANCELLED": TrackingStatus.CANCELLED,
    "LOST": TrackingStatus.EXCEPTION,
    "DAMAGED": TrackingStatus.EXCEPTION,
}


@register_carrier(CarrierCode.EKART)
class EkartCarrier(BaseCarrier):
    """Ekart Logistics implementation."""

    status_map = EKART_STATUS_MAP

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.EKART

    @property
    def carrier_name(self) -> str:
        return "Ekart"

    async def _headers(self, service_tier: Optional[str] = None):
        token = await self.credential(service_tier)
        return {"Authorization": f"Bearer {token.value}", "Content-Type": "application/json"}

    async def check_serviceability(
        self, pincode: str, service_tier: Optional[str] = None
    ) -> ServiceabilityResult:
        data = await self.http.get_json(
            f"{SERVICEABILITY_PATH}/{pincode}",
            headers=await self._headers(service_tier),
        )
        if not isinstance(data, dict) or "status" not in data:
            raise UnexpectedResponseShape(
                "Ekart serviceability response missing status",
                carrier=self.carrier_code.value,
                raw=data,
            )

        serviceable = bool(data["status"])
        details = data.get("details") or {}
        return ServiceabilityResult(
            carrier=self.carrier_code,
            pincode=pincode,
            serviceable=serviceable,
            cod_available=serviceable and bool(details.get("cod", True)),
            prepaid_available=serviceable and bool(details.get("prepaid", True)),
        )

    @staticmethod
    def _location(name: str, address: str, location, phone: str):
        return {
            "name": name,
            "address": address,
            "city": location.city,
            "state": location.state,
            "country": "India",
            "phone": phone,
            "pin": location.pincode,
        }

    async def book_shipment(
        self, details: ShipmentDetails, waybill: Optional[str] = None
    ) -> BookingResult:
        is_cod = details.payment_type == PaymentType.COD
        dims = details.dimensions
        value = str(details.declared_value or details.collectible_amount)
        shipper = self._location(details.shipper_name, details.shipper_address, details.pickup, details.shipper_phone)
        payload = {
            "seller_name": details.shipper_name,
            "seller_address": details.shipper_address,
            "order_number": details.order_id,
            "invoice_number": details.order_id,
            "consignee_name": details.consignee_name,
            "products_desc": details.product_description,
            "payment_mode": "COD" if is_cod else "Prepaid",
            "category_of_goods": "General",
            "total_amount": value,
            "taxable_amount": value,
            "commodity_value": value,
            "cod_amount": str(details.collectible_amount) if is_cod else "0",
            "quantity": details.quantity,
            "weight": int(round(details.weight * 1000)),  # grams
            "length": round(dims.length or 10),
            "width": round(dims.width or 10),
            "height": round(dims.height or 10),
            "drop_location": self._location(
                details.consignee_name, details.consignee_address, details.delivery, details.consignee_phone
            ),
            "pickup_location": shipper,
            "return_location": shipper,
        }

        data = await self.http.post_json(
            CREATE_PATH,
            json=payload,
            headers=await self._headers(details.service_tier),
        )
        if not isinstance(data, dict):
            raise UnexpectedResponseShape(
                "Ekart booking response was not an object",
                carrier=self.carrier_code.value,
                raw=data,
            )
        tracking_id = data.get("tracking_id")
        if not data.get("status") or not tracking_id:
            raise ValidationFailed(
                f"Ekart rejected order {details.order_id}",
                carrier=self.carrier_code.value,
                details={"remark": data.get("remark")},
                raw=data,
            )

        logger.info(f"Ekart: booked order {details.order_id} as {tracking_id}")
        return BookingResult(
            carrier=self.carrier_code,
            external_id=tracking_id,
            status="booked",
            waybill=tracking_id,
            tracking_url=self.get_tracking_url(tracking_id),
        )

    async def track_shipment(self, external_id: str) -> TrackingTimeline:
        data = await self.http.get_json(f"{TRACK_PATH}/{external_id}")
        track = data.get("track") if isinstance(data, dict) else None
        if not track:
            raise NotFound(
                f"Ekart has no tracking data for {external_id}",
                carrier=self.carrier_code.value,
                raw=data,
            )

        history = track.get("details") or [track]
        events: List[TrackingEvent] = []
        for item in history:
            timestamp = parse_timestamp(item.get("ctime"))
            if timestamp is None:
                continue
            raw_status = item.get("status") or ""
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=self.map_status(raw_status),
                location=item.get("location") or "",
                description=item.get("desc") or raw_status,
                raw_status=raw_status,
            ))

        return TrackingTimeline.from_events(
            self.carrier_code,
            external_id,
            events,
            expected_delivery=parse_timestamp(data.get("edd")),
        )

    async def cancel_shipment(self, external_id: str) -> CancelResult:
        response = await self.http.request(
            "DELETE",
            CANCEL_PATH,
            params={"tracking_id": external_id},
            headers=await self._headers(),
        )
        data = self.http.parse_json(response)
        if not isinstance(data, dict):
            raise UnexpectedResponseShape(
                "Ekart cancel response was not an object",
                carrier=self.carrier_code.value,
                raw=data,
            )
        return CancelResult(
            carrier=self.carrier_code,
            external_id=external_id,
            cancelled=bool(data.get("status")),
            message=data.get("remark"),
        )

    def get_tracking_url(self, external_id: str) -> str:
        return f"{self.identity_for().base_url.rstrip('/')}/track/{external_id}"
