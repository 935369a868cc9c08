"""
Delhivery Carrier Implementation

- Static token auth: "Authorization: Token <api token>"
- Bulk waybill pre-fetch (up to 10000 per call)
- Live rating through the invoice charges API
- Registered via @register_carrier decorator
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from courier_gateway.core.exceptions import NotFound, UnexpectedResponseShape, ValidationFailed
from courier_gateway.models.carrier import CarrierCode, Waybill, WaybillBatch
from courier_gateway.models.shipment import (
    BookingResult,
    CancelResult,
    LiveRate,
    PaymentType,
    ServiceabilityResult,
    ShipmentDetails,
    TrackingEvent,
    TrackingStatus,
    TrackingTimeline,
    Zone,
)
from courier_gateway.modules.shipping.carriers import register_carrier
from courier_gateway.modules.shipping.carriers.base import BaseCarrier, parse_timestamp

logger = logging.getLogger(__name__)

PINCODE_PATH = "/c/api/pin-codes/json/"
BULK_WAYBILL_PATH = "/waybill/api/bulk/json/"
CREATE_ORDER_PATH = "/api/cmu/create.json"
EDIT_ORDER_PATH = "/api/p/edit"
TRACK_PATH = "/api/v1/packages/json/"
CHARGES_PATH = "/api/kinko/v1/invoice/charges/.json"

MAX_WAYBILL_COUNT = 10000

# Delhivery scan status to TrackingStatus mapping
DELHIVERY_STATUS_MAP = {
    # Booked, awaiting pickup
    "MANIFESTED": TrackingStatus.PENDING_PICKUP,
    "NOT PICKED": TrackingStatus.PENDING_PICKUP,
    "OPEN": TrackingStatus.PENDING_PICKUP,
    # Picked Up
    "PICKED UP": TrackingStatus.PICKED_UP,
    # In Transit
    "IN TRANSIT": TrackingStatus.IN_TRANSIT,
    "PENDING": TrackingStatus.IN_TRANSIT,
    # Out for Delivery
    "DISPATCHED": TrackingStatus.OUT_FOR_DELIVERY,
    "OUT FOR DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    # Delivered
    "DELIVERED": TrackingStatus.DELIVERED,
    # Failed attempt
    "UNDELIVERED": TrackingStatus.UNDELIVERED,
    # Return to origin
    "RTO": TrackingStatus.RTO_IN_TRANSIT,
    "RETURNED": TrackingStatus.RTO_DELIVERED,
    # Cancelled
    "CANCELLED": TrackingStatus.CANCELLED,
    "CANCELED": TrackingStatus.CANCELLED,
    # Exception
    "LOST": TrackingStatus.EXCEPTION,
    "DAMAGED": TrackingStatus.EXCEPTION,
}


@register_carrier(CarrierCode.DELHIVERY)
class DelhiveryCarrier(BaseCarrier):
    """Delhivery B2C (surface/express) implementation."""

    max_waybill_batch = MAX_WAYBILL_COUNT
    supports_live_rates = True
    max_dimensions_cm = (120, 80, 80)
    status_map = DELHIVERY_STATUS_MAP

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.DELHIVERY

    @property
    def carrier_name(self) -> str:
        return "Delhivery"

    async def _headers(self, service_tier: Optional[str] = None) -> Dict[str, str]:
        token = await self.credential(service_tier)
        return {
            "Authorization": f"Token {token.value}",
            "Accept": "application/json",
        }

    @property
    def _client_name(self) -> str:
        return self.identity_for().secret("client_name")

    async def check_serviceability(
        self, pincode: str, service_tier: Optional[str] = None
    ) -> ServiceabilityResult:
        data = await self.http.get_json(
            PINCODE_PATH,
            params={"filter_codes": pincode},
            headers=await self._headers(service_tier),
        )
        codes = self._require(data, "delivery_codes")

        entry = next(
            (c.get("postal_code", {}) for c in codes if str(c.get("postal_code", {}).get("pin")) == pincode),
            None,
        )
        if entry is None:
            logger.debug(f"Delhivery: pincode {pincode} not in network")
            return ServiceabilityResult(
                carrier=self.carrier_code,
                pincode=pincode,
                serviceable=False,
                cod_available=False,
                prepaid_available=False,
            )

        cod = entry.get("cod") == "Y"
        prepaid = entry.get("pre_paid") == "Y"
        return ServiceabilityResult(
            carrier=self.carrier_code,
            pincode=pincode,
            serviceable=cod or prepaid,
            cod_available=cod,
            prepaid_available=prepaid,
        )

    async def fetch_waybills(self, count: int) -> WaybillBatch:
        count = min(count, self.max_waybill_batch)
        response = await self.http.request(
            "GET",
            BULK_WAYBILL_PATH,
            params={"cl": self._client_name, "count": count},
            headers=await self._headers(),
        )
        data = self.http.parse_json(response)

        # Single waybills come back as a bare string, batches as a comma list
        if isinstance(data, str):
            numbers = [n.strip() for n in data.split(",") if n.strip()]
        elif isinstance(data, list):
            numbers = [str(n).strip() for n in data if str(n).strip()]
        else:
            raise UnexpectedResponseShape(
                "Delhivery waybill response was neither list nor string",
                carrier=self.carrier_code.value,
                raw=data,
            )

        logger.info(f"Delhivery: fetched {len(numbers)} waybills (requested {count})")
        return WaybillBatch(waybills=[Waybill(number=n, carrier=self.carrier_code) for n in numbers])

    async def calculate_rate(self, details: ShipmentDetails, zone: Zone) -> LiveRate:
        is_cod = details.payment_type == PaymentType.COD
        params = {
            "md": "E" if (details.service_tier or "").lower() == "express" else "S",
            "ss": "Delivered",
            "o_pin": details.pickup.pincode,
            "d_pin": details.delivery.pincode,
            "cgm": int(round(details.weight * 1000)),
            "pt": "COD" if is_cod else "Pre-paid",
            "cod": str(details.collectible_amount) if is_cod else "0",
        }
        data = await self.http.get_json(CHARGES_PATH, params=params, headers=await self._headers())
        row = self._require(data, 0)

        tax = row.get("tax_data") or {}
        gst_parts = [Decimal(str(v)) for k, v in tax.items() if k.lower() in ("igst", "cgst", "sgst", "ugst")]
        return LiveRate(
            service_name="Surface" if params["md"] == "S" else "Express",
            freight=Decimal(str(row.get("charge_DL", row.get("freight_charge", 0)) or 0)),
            cod_charge=Decimal(str(row.get("charge_COD", row.get("cod_charges", 0)) or 0)),
            rto_charge=Decimal(str(row.get("charge_RTO", 0) or 0)),
            gst=sum(gst_parts, Decimal("0")) if gst_parts else None,
            raw=row,
        )

    def _build_payload(self, details: ShipmentDetails, waybill: str) -> Dict[str, Any]:
        is_cod = details.payment_type == PaymentType.COD
        dims = details.dimensions
        return {
            "shipments": [{
                # Consignee details
                "name": details.consignee_name,
                "add": details.consignee_address,
                "pin": details.delivery.pincode,
                "city": details.delivery.city,
                "state": details.delivery.state,
                "country": "India",
                "phone": details.consignee_phone,
                # Order details
                "order": details.order_id,
                "payment_mode": "COD" if is_cod else "Prepaid",
                "cod_amount": str(details.collectible_amount) if is_cod else "0",
                "total_amount": str(details.declared_value or details.collectible_amount),
                # Return details
                "return_pin": details.pickup.pincode,
                "return_add": details.shipper_address,
                "return_phone": details.shipper_phone,
                "return_city": details.pickup.city,
                "return_state": details.pickup.state,
                "return_country": "India",
                # Package details
                "waybill": waybill,
                "weight": int(round(details.weight * 1000)),  # grams
                "shipping_mode": "Express" if (details.service_tier or "").lower() == "express" else "Surface",
                "shipment_length": dims.length or 10,
                "shipment_width": dims.width or 10,
                "shipment_height": dims.height or 10,
                # Product details
                "products_desc": details.product_description,
                "quantity": details.quantity,
                "seller_name": details.shipper_name,
                "seller_add": details.shipper_address,
                "seller_inv": details.order_id,
            }],
            "pickup_location": {"name": self._client_name},
        }

    async def book_shipment(
        self, details: ShipmentDetails, waybill: Optional[str] = None
    ) -> BookingResult:
        if not waybill:
            raise ValidationFailed(
                "Delhivery booking requires a pre-fetched waybill",
                carrier=self.carrier_code.value,
            )

        payload = self._build_payload(details, waybill)
        data = await self.http.post_json(
            CREATE_ORDER_PATH,
            data={"format": "json", "data": json.dumps(payload)},
            headers=await self._headers(details.service_tier),
        )

        packages = data.get("packages") if isinstance(data, dict) else None
        if packages:
            package = packages[0]
            status = str(package.get("status", ""))
            if "success" in status.lower():
                awb = package.get("waybill") or waybill
                logger.info(f"Delhivery: booked order {details.order_id} as {awb}")
                return BookingResult(
                    carrier=self.carrier_code,
                    external_id=awb,
                    status=status,
                    waybill=awb,
                    tracking_url=self.get_tracking_url(awb),
                )
            raise ValidationFailed(
                f"Delhivery rejected order {details.order_id}",
                carrier=self.carrier_code.value,
                details={"remarks": package.get("remarks")},
                raw=data,
            )

        if isinstance(data, dict) and data.get("rmk"):
            raise ValidationFailed(
                f"Delhivery rejected order {details.order_id}",
                carrier=self.carrier_code.value,
                raw=data,
            )

        raise UnexpectedResponseShape(
            "Delhivery create response had neither packages nor rmk",
            carrier=self.carrier_code.value,
            raw=data,
        )

    async def track_shipment(self, external_id: str) -> TrackingTimeline:
        data = await self.http.get_json(
            TRACK_PATH,
            params={"waybill": external_id},
            headers=await self._headers(),
        )
        shipments = data.get("ShipmentData") if isinstance(data, dict) else None
        if not shipments:
            raise NotFound(
                f"Delhivery has no tracking data for {external_id}",
                carrier=self.carrier_code.value,
                raw=data,
            )

        shipment = self._require(shipments, 0, "Shipment")
        events: List[TrackingEvent] = []
        for scan in shipment.get("Scans") or []:
            detail = scan.get("ScanDetail", scan)
            timestamp = parse_timestamp(detail.get("ScanDateTime"))
            if timestamp is None:
                continue
            raw_status = detail.get("Scan") or detail.get("ScanType") or ""
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=self._scan_status(raw_status, detail.get("ScanType")),
                location=detail.get("ScannedLocation") or "",
                description=detail.get("Instructions") or raw_status,
                raw_status=raw_status,
            ))

        return TrackingTimeline.from_events(
            self.carrier_code,
            external_id,
            events,
            expected_delivery=parse_timestamp(shipment.get("ExpectedDeliveryDate")),
        )

    def _scan_status(self, scan: str, scan_type: Optional[str]) -> TrackingStatus:
        status = self.map_status(scan)
        # ScanType RT marks the return leg regardless of scan text
        if (scan_type or "").upper() == "RT":
            if status == TrackingStatus.DELIVERED or status == TrackingStatus.RTO_DELIVERED:
                return TrackingStatus.RTO_DELIVERED
            return TrackingStatus.RTO_IN_TRANSIT
        return status

    async def cancel_shipment(self, external_id: str) -> CancelResult:
        data = await self.http.post_json(
            EDIT_ORDER_PATH,
            json={"waybill": external_id, "cancellation": "true"},
            headers=await self._headers(),
        )
        if not isinstance(data, dict):
            raise UnexpectedResponseShape(
                "Delhivery cancel response was not an object",
                carrier=self.carrier_code.value,
                raw=data,
            )
        cancelled = bool(data.get("status"))
        return CancelResult(
            carrier=self.carrier_code,
            external_id=external_id,
            cancelled=cancelled,
            message=data.get("remark"),
        )

    def get_tracking_url(self, external_id: str) -> str:
        return f"https://www.delhivery.com/track/package/{external_id}"
