"""
Blue Dart Carrier Implementation

- Login JWT auth: API gateway ClientID/clientSecret headers exchanged for a
  JWTToken, sent back on every call in the JWTToken header
- Every request body carries a Profile (login id + licence key)
- AWBs are assigned by GenerateWayBill at booking (no pre-fetch)
- Scan dates arrive as "dd-Mon-yyyy" with a separate "HH:MM" time
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

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

LOGIN_PATH = "/in/transportation/token/v1/login"
PINCODE_PATH = "/in/transportation/finder/v1/GetServicesforPincode"
WAYBILL_PATH = "/in/transportation/waybill/v1/GenerateWayBill"
CANCEL_PATH = "/in/transportation/waybill/v1/CancelWaybill"
TRACK_PATH = "/in/transportation/tracking/v1/shipment"

# Air express; sub-product C collects cash on delivery
PRODUCT_CODE = "A"
SUB_PRODUCT_PREPAID = "P"
SUB_PRODUCT_COD = "C"

BLUEDART_STATUS_MAP = {
    "PICKUP REGISTERED": TrackingStatus.PENDING_PICKUP,
    "SHIPMENT BOOKED": TrackingStatus.PENDING_PICKUP,
    "PICKED UP": TrackingStatus.PICKED_UP,
    "IN TRANSIT": TrackingStatus.IN_TRANSIT,
    "ARRIVED": TrackingStatus.IN_TRANSIT,
    "OUTSCANNED": TrackingStatus.IN_TRANSIT,
    "OUT FOR DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "DELIVERED": TrackingStatus.DELIVERED,
    "UNDELIVERED": TrackingStatus.UNDELIVERED,
    "CONSIGNEE NOT AVAILABLE": TrackingStatus.UNDELIVERED,
    "RETURNED TO ORIGIN": TrackingStatus.RTO_IN_TRANSIT,
    "RTO DELIVERED": TrackingStatus.RTO_DELIVERED,
    "RETURNED TO SHIPPER": TrackingStatus.RTO_DELIVERED,
    "CANCELLED": TrackingStatus.CANCELLED,
    "LOST": TrackingStatus.EXCEPTION,
    "DAMAGED": TrackingStatus.EXCEPTION,
}


async def bluedart_login(identity: CarrierIdentity, http: CarrierHTTPClient) -> Tuple[str, Optional[int]]:
    """Exchange API gateway keys for a JWTToken; expiry comes from the identity."""
    data = await http.get_json(
        LOGIN_PATH,
        headers={"ClientID": identity.secret("client_id"), "clientSecret": identity.secret("client_secret")},
    )
    if isinstance(data, dict) and data.get("JWTToken"):
        return data["JWTToken"], None
    raise AuthenticationFailed(
        "Blue Dart login rejected",
        carrier=CarrierCode.BLUEDART.value,
        raw=data,
    )


register_login(CarrierCode.BLUEDART, bluedart_login)


def _status_messages(result: Dict[str, Any]) -> List[str]:
    return [s.get("StatusInformation") for s in result.get("Status") or [] if s.get("StatusInformation")]


@register_carrier(CarrierCode.BLUEDART)
class BlueDartCarrier(BaseCarrier):
    """Blue Dart air express implementation."""

    status_map = BLUEDART_STATUS_MAP

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.BLUEDART

    @property
    def carrier_name(self) -> str:
        return "Blue Dart"

    async def _headers(self, service_tier: Optional[str] = None) -> Dict[str, str]:
        token = await self.credential(service_tier)
        return {"JWTToken": token.value, "Content-Type": "application/json"}

    def _profile(self, service_tier: Optional[str] = None) -> Dict[str, str]:
        identity = self.identity_for(service_tier)
        return {
            "Api_type": "S",
            "LicenceKey": identity.secret("license_key"),
            "LoginID": identity.secret("login_id"),
        }

    def _result(self, data: Any, key: str) -> Dict[str, Any]:
        result = self._require(data, key)
        if not isinstance(result, dict):
            raise UnexpectedResponseShape(
                f"Blue Dart {key} was not an object",
                carrier=self.carrier_code.value,
                raw=data,
            )
        return result

    async def check_serviceability(
        self, pincode: str, service_tier: Optional[str] = None
    ) -> ServiceabilityResult:
        data = await self.http.post_json(
            PINCODE_PATH,
            json={"pinCode": pincode, "profile": self._profile(service_tier)},
            headers=await self._headers(service_tier),
        )
        result = self._result(data, "GetServicesforPincodeResult")

        # IsError here means the pincode is outside the network
        if result.get("IsError"):
            cod = prepaid = False
        else:
            cod = result.get("eTailCODAirInbound") == "Yes"
            prepaid = result.get("eTailPrePaidAirInbound") == "Yes"

        return ServiceabilityResult(
            carrier=self.carrier_code,
            pincode=pincode,
            serviceable=cod or prepaid,
            cod_available=cod,
            prepaid_available=prepaid,
        )

    def _build_payload(self, details: ShipmentDetails) -> Dict[str, Any]:
        identity = self.identity_for(details.service_tier)
        is_cod = details.payment_type == PaymentType.COD
        dims = details.dimensions
        pickup_ms = int(datetime.now(timezone.utc).timestamp() * 1000)

        return {
            "Request": {
                "Consignee": {
                    "ConsigneeName": details.consignee_name,
                    "ConsigneeAttention": details.consignee_name,
                    "ConsigneeAddress1": details.consignee_address,
                    "ConsigneePincode": details.delivery.pincode,
                    "ConsigneeMobile": details.consignee_phone,
                },
                "Shipper": {
                    "CustomerName": details.shipper_name,
                    "Sender": details.shipper_name,
                    "CustomerAddress1": details.shipper_address,
                    "CustomerPincode": details.pickup.pincode,
                    "CustomerMobile": details.shipper_phone,
                    "CustomerCode": identity.secret("customer_code"),
                    "OriginArea": identity.secret("origin_area"),
                },
                "Services": {
                    "ProductCode": PRODUCT_CODE,
                    "SubProductCode": SUB_PRODUCT_COD if is_cod else SUB_PRODUCT_PREPAID,
                    "ActualWeight": details.weight,
                    "CollectableAmount": float(details.collectible_amount) if is_cod else 0,
                    "DeclaredValue": float(details.declared_value),
                    "CreditReferenceNo": details.order_id,
                    "PieceCount": details.quantity,
                    "PickupDate": f"/Date({pickup_ms})/",
                    "PickupTime": "1600",
                    "RegisterPickup": True,
                    "Commodity": {"CommodityDetail1": details.product_description},
                    "Dimensions": [{
                        "Length": dims.length,
                        "Breadth": dims.width,
                        "Height": dims.height,
                        "Count": details.quantity,
                    }],
                },
            },
            "Profile": self._profile(details.service_tier),
        }

    async def book_shipment(
        self, details: ShipmentDetails, waybill: Optional[str] = None
    ) -> BookingResult:
        data = await self.http.post_json(
            WAYBILL_PATH,
            json=self._build_payload(details),
            headers=await self._headers(details.service_tier),
        )
        result = self._result(data, "GenerateWayBillResult")

        awb = result.get("AWBNo")
        if result.get("IsError") or not awb:
            raise ValidationFailed(
                f"Blue Dart rejected order {details.order_id}",
                carrier=self.carrier_code.value,
                details={"status": _status_messages(result)},
                raw=data,
            )

        logger.info(f"Blue Dart: booked order {details.order_id} as {awb}")
        return BookingResult(
            carrier=self.carrier_code,
            external_id=str(awb),
            status="booked",
            waybill=str(awb),
            tracking_url=self.get_tracking_url(str(awb)),
        )

    async def track_shipment(self, external_id: str) -> TrackingTimeline:
        identity = self.identity_for()
        data = await self.http.get_json(
            TRACK_PATH,
            params={
                "handler": "tnt",
                "action": "custawbquery",
                "loginid": identity.secret("login_id"),
                "lickey": identity.secret("license_key"),
                "awb": "awb",
                "numbers": external_id,
                "format": "json",
                "verno": 1,
                "scan": 1,
            },
            headers=await self._headers(),
        )
        shipment_data = self._result(data, "ShipmentData")
        shipments = shipment_data.get("Shipment")
        if isinstance(shipments, dict):
            shipments = [shipments]
        if not shipments or shipments[0].get("StatusType") == "NF":
            raise NotFound(
                f"Blue Dart has no tracking data for {external_id}",
                carrier=self.carrier_code.value,
                raw=data,
            )

        shipment = shipments[0]
        events: List[TrackingEvent] = []
        for scan in shipment.get("Scans") or []:
            detail = scan.get("ScanDetail") or {}
            timestamp = parse_timestamp(f"{detail.get('ScanDate', '')} {detail.get('ScanTime', '')}".strip())
            if timestamp is None:
                continue
            raw_status = detail.get("Scan") or ""
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=self.map_status(raw_status),
                location=detail.get("ScannedLocation") or "",
                description=raw_status,
                raw_status=raw_status,
            ))

        return TrackingTimeline.from_events(
            self.carrier_code,
            external_id,
            events,
            expected_delivery=parse_timestamp(shipment.get("ExpectedDeliveryDate")),
        )

    async def cancel_shipment(self, external_id: str) -> CancelResult:
        data = await self.http.post_json(
            CANCEL_PATH,
            json={"Request": {"AWBNo": external_id}, "Profile": self._profile()},
            headers=await self._headers(),
        )
        result = self._result(data, "CancelWaybillResult")
        messages = _status_messages(result)
        return CancelResult(
            carrier=self.carrier_code,
            external_id=external_id,
            cancelled=not result.get("IsError"),
            message=messages[0] if messages else None,
        )

    def get_tracking_url(self, external_id: str) -> str:
        return f"https://www.bluedart.com/tracking/{external_id}"
