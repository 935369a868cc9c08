"""
Ecom Express Carrier Implementation

- Form credentials: username/password go in every form body
- One shipper code (service tier) per identity: BA, EXSPLUS
- AWB pre-fetch through fetch_awb (up to 1000 per call)
"""
import json
import logging
from typing import Any, Dict, List, Optional

from courier_gateway.core.exceptions import NotFound, UnexpectedResponseShape, ValidationFailed
from courier_gateway.models.carrier import CarrierCode, Waybill, WaybillBatch
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

PINCODE_PATH = "/apiv2/pincodes/"
FETCH_AWB_PATH = "/apiv2/fetch_awb/"
MANIFEST_PATH = "/apiv2/manifest_awb/"
CANCEL_PATH = "/apiv2/cancel_awb/"
TRACKING_URL = "https://plapi.ecomexpress.in/track_me/api/mawbd/"

MAX_AWB_COUNT = 1000

ECOMEXPRESS_STATUS_MAP = {
    "SOFT DATA UPLOADED": TrackingStatus.PENDING_PICKUP,
    "PICKUP ASSIGNED": TrackingStatus.PENDING_PICKUP,
    "FIELD PICKUP DONE": TrackingStatus.PICKED_UP,
    "PICKED UP": TrackingStatus.PICKED_UP,
    "SHIPMENT PICKED UP": TrackingStatus.PICKED_UP,
    "BAGGED": TrackingStatus.IN_TRANSIT,
    "IN TRANSIT": TrackingStatus.IN_TRANSIT,
    "BAG ADDED TO CONNECTION": TrackingStatus.IN_TRANSIT,
    "SHIPMENT REDIRECTED": TrackingStatus.IN_TRANSIT,
    "OUT FOR DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "DELIVERED": TrackingStatus.DELIVERED,
    "UNDELIVERED": TrackingStatus.UNDELIVERED,
    "NOT DELIVERED": TrackingStatus.UNDELIVERED,
    "RTO DELIVERED": TrackingStatus.RTO_DELIVERED,
    "RETURNED TO SHIPPER": TrackingStatus.RTO_DELIVERED,
    "RTO": TrackingStatus.RTO_IN_TRANSIT,
    "CANCELLED": TrackingStatus.CANCELLED,
    "SHIPMENT LOST": TrackingStatus.EXCEPTION,
    "DAMAGED": TrackingStatus.EXCEPTION,
}


@register_carrier(CarrierCode.ECOMEXPRESS)
class EcomExpressCarrier(BaseCarrier):
    """Ecom Express implementation."""

    max_waybill_batch = MAX_AWB_COUNT
    identity_per_tier = True
    status_map = ECOMEXPRESS_STATUS_MAP

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.ECOMEXPRESS

    @property
    def carrier_name(self) -> str:
        return "Ecom Express"

    async def _form(self, service_tier: Optional[str] = None, **params) -> Dict[str, str]:
        """Form body with credentials, dropping empty values."""
        credential = await self.credential(service_tier)
        form = {"username": credential.username, "password": credential.password}
        form.update({k: str(v) for k, v in params.items() if v is not None})
        return form

    async def check_serviceability(
        self, pincode: str, service_tier: Optional[str] = None
    ) -> ServiceabilityResult:
        data = await self.http.post_json(PINCODE_PATH, data=await self._form(service_tier, pincode=pincode))
        if not isinstance(data, list):
            raise UnexpectedResponseShape(
                "Ecom Express pincode response was not a list",
                carrier=self.carrier_code.value,
                raw=data,
            )

        entry = next((item for item in data if str(item.get("pincode")) == pincode), None)
        serviceable = bool(entry) and bool(entry.get("active", True))
        return ServiceabilityResult(
            carrier=self.carrier_code,
            pincode=pincode,
            serviceable=serviceable,
            cod_available=serviceable and bool(entry.get("cod_available", True)),
            prepaid_available=serviceable and bool(entry.get("prepaid_available", True)),
        )

    async def fetch_waybills(self, count: int) -> WaybillBatch:
        count = min(count, self.max_waybill_batch)
        data = await self.http.post_json(FETCH_AWB_PATH, data=await self._form(count=count, type="PPD"))

        awbs = data.get("awb") if isinstance(data, dict) else None
        if not isinstance(awbs, list):
            raise UnexpectedResponseShape(
                "Ecom Express fetch_awb response missing awb list",
                carrier=self.carrier_code.value,
                raw=data,
            )

        logger.info(f"Ecom Express: fetched {len(awbs)} AWBs (requested {count})")
        return WaybillBatch(waybills=[Waybill(number=str(n), carrier=self.carrier_code) for n in awbs])

    def _manifest_entry(self, details: ShipmentDetails, waybill: str) -> Dict[str, Any]:
        is_cod = details.payment_type == PaymentType.COD
        dims = details.dimensions
        return {
            "AWB_NUMBER": waybill,
            "ORDER_NUMBER": details.order_id,
            "PRODUCT": "COD" if is_cod else "PPD",
            "CONSIGNEE": details.consignee_name,
            "CONSIGNEE_ADDRESS1": details.consignee_address,
            "DESTINATION_CITY": details.delivery.city,
            "STATE": details.delivery.state,
            "PINCODE": details.delivery.pincode,
            "MOBILE": details.consignee_phone,
            "ITEM_DESCRIPTION": details.product_description,
            "PIECES": details.quantity,
            "COLLECTABLE_VALUE": str(details.collectible_amount) if is_cod else "0",
            "DECLARED_VALUE": str(details.declared_value or details.collectible_amount),
            "ACTUAL_WEIGHT": details.weight,
            "LENGTH": dims.length or 10,
            "BREADTH": dims.width or 10,
            "HEIGHT": dims.height or 10,
            "PICKUP_NAME": details.shipper_name,
            "PICKUP_ADDRESS_LINE1": details.shipper_address,
            "PICKUP_PINCODE": details.pickup.pincode,
            "PICKUP_MOBILE": details.shipper_phone,
            "RETURN_NAME": details.shipper_name,
            "RETURN_ADDRESS_LINE1": details.shipper_address,
            "RETURN_PINCODE": details.pickup.pincode,
            "RETURN_MOBILE": details.shipper_phone,
        }

    async def book_shipment(
        self, details: ShipmentDetails, waybill: Optional[str] = None
    ) -> BookingResult:
        if not waybill:
            raise ValidationFailed(
                "Ecom Express booking requires a pre-fetched AWB",
                carrier=self.carrier_code.value,
            )

        form = await self._form(
            details.service_tier,
            json_input=json.dumps([self._manifest_entry(details, waybill)]),
        )
        data = await self.http.post_json(MANIFEST_PATH, data=form)

        shipments = data.get("shipments") if isinstance(data, dict) else None
        if not shipments:
            raise UnexpectedResponseShape(
                "Ecom Express manifest response missing shipments",
                carrier=self.carrier_code.value,
                raw=data,
            )

        shipment = shipments[0]
        if not shipment.get("success"):
            raise ValidationFailed(
                f"Ecom Express rejected order {details.order_id}",
                carrier=self.carrier_code.value,
                details={"reason": shipment.get("reason")},
                raw=data,
            )

        logger.info(f"Ecom Express: booked order {details.order_id} as {waybill}")
        return BookingResult(
            carrier=self.carrier_code,
            external_id=waybill,
            status="manifested",
            waybill=waybill,
            tracking_url=self.get_tracking_url(waybill),
        )

    async def track_shipment(self, external_id: str) -> TrackingTimeline:
        data = await self.http.post_json(TRACKING_URL, data=await self._form(awb=external_id))
        if not isinstance(data, dict) or not data.get("success"):
            raise NotFound(
                f"Ecom Express has no tracking data for {external_id}",
                carrier=self.carrier_code.value,
                raw=data,
            )

        tracking = data.get("data") or data
        history = tracking.get("scans") or tracking.get("tracking_history") or []
        events: List[TrackingEvent] = []
        for scan in history:
            timestamp = parse_timestamp(scan.get("updated_on") or scan.get("timestamp"))
            if timestamp is None:
                continue
            raw_status = scan.get("status") or ""
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=self.map_status(raw_status),
                location=scan.get("location_city") or scan.get("location") or "",
                description=scan.get("reason") or raw_status,
                raw_status=raw_status,
            ))

        return TrackingTimeline.from_events(
            self.carrier_code,
            external_id,
            events,
            expected_delivery=parse_timestamp(tracking.get("expected_delivery_date")),
        )

    async def cancel_shipment(self, external_id: str) -> CancelResult:
        data = await self.http.post_json(CANCEL_PATH, data=await self._form(awbs=external_id))
        if not isinstance(data, list) or not data:
            raise UnexpectedResponseShape(
                "Ecom Express cancel response was not a list",
                carrier=self.carrier_code.value,
                raw=data,
            )
        result = data[0]
        return CancelResult(
            carrier=self.carrier_code,
            external_id=external_id,
            cancelled=bool(result.get("success")),
            message=result.get("reason"),
        )

    def get_tracking_url(self, external_id: str) -> str:
        return f"https://www.ecomexpress.in/tracking/?awb={external_id}"
