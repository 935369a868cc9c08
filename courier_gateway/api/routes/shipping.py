"""
Shipping API Routes

Provides endpoints for:
- Pincode serviceability (one carrier or all)
- Shop-around rate quotes
- Shipment booking, tracking and cancellation
- Carrier health

Gateway errors are mapped onto HTTP statuses; the body is the error's
to_dict() so callers get the same code/severity the logs show.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from courier_gateway.core.exceptions import (
    AuthenticationFailed,
    CarrierNotConfigured,
    GatewayError,
    NotFound,
    NotServiceable,
    RateLimited,
    ServiceUnavailable,
    UnexpectedResponseShape,
    ValidationFailed,
    WaybillExhausted,
)
from courier_gateway.models.carrier import CarrierCode
from courier_gateway.schemas.shipping import (
    BookingResponse,
    CancelResponse,
    CarrierErrorResponse,
    CarrierHealthResponse,
    QuoteListResponse,
    QuoteRequest,
    QuoteResponse,
    ServiceabilityListResponse,
    ServiceabilityResponse,
    ShipmentCreate,
    TrackingResponse,
)
from courier_gateway.services.gateway import Gateway
from courier_gateway.services.zones import determine_zone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


# Most specific first: CarrierNotConfigured is a ValidationFailed
ERROR_STATUS = (
    (CarrierNotConfigured, status.HTTP_400_BAD_REQUEST),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotServiceable, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (AuthenticationFailed, status.HTTP_502_BAD_GATEWAY),
    (UnexpectedResponseShape, status.HTTP_502_BAD_GATEWAY),
    (ServiceUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (WaybillExhausted, status.HTTP_503_SERVICE_UNAVAILABLE),
)


# ==================== Helper Functions ====================


def get_gateway(request: Request) -> Gateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Shipping gateway not initialized")
    return gateway


def to_http_exception(error: GatewayError) -> HTTPException:
    """Map a gateway error onto an HTTPException."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    headers = None
    if isinstance(error, RateLimited) and error.retry_after_seconds:
        headers = {"Retry-After": str(int(error.retry_after_seconds))}

    if status_code >= 500:
        logger.error(f"Shipping request failed: {error!r}")
    else:
        logger.info(f"Shipping request rejected: {error!r}")
    return HTTPException(status_code=status_code, detail=error.to_dict(), headers=headers)


# ==================== Serviceability ====================


@router.get("/serviceability/{pincode}", response_model=ServiceabilityListResponse)
async def check_serviceability(
    pincode: str,
    carrier: Optional[CarrierCode] = Query(None, description="Limit to one carrier"),
    gateway: Gateway = Depends(get_gateway),
):
    """Check whether one carrier, or every configured carrier, delivers to a pincode."""
    try:
        batch = await gateway.check_serviceability(pincode, carrier)
    except GatewayError as e:
        raise to_http_exception(e)

    return ServiceabilityListResponse(
        pincode=pincode,
        results=[ServiceabilityResponse.model_validate(r) for r in batch.results],
        errors=[CarrierErrorResponse.from_failure(f) for f in batch.errors],
    )


# ==================== Quotes ====================


@router.post("/quotes", response_model=QuoteListResponse)
async def get_quotes(
    request: QuoteRequest,
    gateway: Gateway = Depends(get_gateway),
):
    """
    Quote every configured carrier.

    Returns all quotes ranked by total. Carriers that failed to quote are
    listed under errors rather than failing the request.
    """
    origin = request.origin.to_location()
    destination = request.destination.to_location()
    try:
        result = await gateway.get_quotes(
            origin,
            destination,
            request.weight,
            request.dimensions.to_dimensions() if request.dimensions else None,
            request.payment_type,
            request.collectible_amount,
            include_rto=request.include_rto,
        )
    except GatewayError as e:
        raise to_http_exception(e)

    return QuoteListResponse(
        zone=determine_zone(origin, destination).value,
        quotes=[QuoteResponse.model_validate(q.to_dict()) for q in result.quotes],
        errors=[CarrierErrorResponse.from_failure(f) for f in result.errors],
    )


# ==================== Shipments ====================


@router.post("/shipments", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book_shipment(
    shipment: ShipmentCreate,
    gateway: Gateway = Depends(get_gateway),
):
    """
    Book a shipment with the named carrier.

    Prefetch carriers consume a waybill from the pool; a failed booking does
    not give it back.
    """
    try:
        booking = await gateway.book_shipment(shipment.carrier, shipment.to_details())
    except GatewayError as e:
        raise to_http_exception(e)
    return BookingResponse.model_validate(booking)


@router.get("/shipments/{carrier}/{external_id}/tracking", response_model=TrackingResponse)
async def track_shipment(
    carrier: CarrierCode,
    external_id: str,
    gateway: Gateway = Depends(get_gateway),
):
    """Fetch the latest tracking timeline, newest event first."""
    try:
        timeline = await gateway.track_shipment(carrier, external_id)
        tracking_url = gateway.get_tracking_url(carrier, external_id)
    except GatewayError as e:
        raise to_http_exception(e)
    return TrackingResponse.from_timeline(timeline, tracking_url=tracking_url)


@router.post("/shipments/{carrier}/{external_id}/cancel", response_model=CancelResponse)
async def cancel_shipment(
    carrier: CarrierCode,
    external_id: str,
    gateway: Gateway = Depends(get_gateway),
):
    """Cancel a booked shipment."""
    try:
        result = await gateway.cancel_shipment(carrier, external_id)
    except GatewayError as e:
        raise to_http_exception(e)
    return CancelResponse.model_validate(result)


# ==================== Health ====================


@router.get("/health", response_model=List[CarrierHealthResponse])
async def carrier_health(gateway: Gateway = Depends(get_gateway)):
    """Latest probe state per carrier. Informational only."""
    return gateway.get_health()
