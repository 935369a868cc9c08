"""
Shipping Gateway

Single entry point the application calls. For every capability:

1. Resolve the adapter(s): one named carrier, or every configured carrier
   for shopping-around queries
2. Invoke the adapter with a bounded timeout
3. On AuthenticationFailed, invalidate the carrier's tokens and retry once
4. On transient failure (timeout, 5xx, rate limit) retry with exponential
   backoff and jitter, capped at GATEWAY_MAX_ATTEMPTS
5. Permanent failures propagate immediately

Multi-carrier calls never abort on one carrier's failure: successful
results come back alongside a per-carrier error list.

Health state is informational. A carrier marked unhealthy is still tried.
"""
import asyncio
import dataclasses
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import httpx

from courier_gateway.core.cache import CacheBackend, create_cache
from courier_gateway.core.config import Settings, build_identities, settings
from courier_gateway.core.exceptions import (
    AuthenticationFailed,
    CarrierNotConfigured,
    GatewayError,
    RateLimited,
    ServiceUnavailable,
    ValidationFailed,
    is_transient,
)
from courier_gateway.core.http_client import RetryConfig, calculate_backoff
from courier_gateway.models.carrier import CarrierCode
from courier_gateway.models.shipment import (
    BookingResult,
    CancelResult,
    CarrierFailure,
    Dimensions,
    HealthState,
    Location,
    PaymentType,
    QuoteResult,
    ServiceabilityBatch,
    ServiceabilityResult,
    ShipmentDetails,
    ShipmentQuote,
    TrackingTimeline,
)
from courier_gateway.modules.shipping.carriers import BaseCarrier, CarrierFactory
from courier_gateway.modules.shipping.carriers.base import validate_pincode
from courier_gateway.services.credential_store import CredentialStore
from courier_gateway.services.health_monitor import HealthMonitor
from courier_gateway.services.rate_cards import RateCardRepository, StaticRateCardRepository
from courier_gateway.services.rate_normalizer import (
    GST_RATE,
    compute_quote,
    quote_from_live_rate,
    to_decimal,
    validate_weight,
)
from courier_gateway.services.waybill_pool import WaybillPool
from courier_gateway.services.zones import determine_zone

logger = logging.getLogger(__name__)

T = TypeVar("T")

CarrierRef = Union[CarrierCode, str]


class Gateway:
    """
    Usage:
        gateway = await create_gateway()
        quotes = await gateway.get_quotes(origin, destination, 1.2, Dimensions(10, 10, 10), PaymentType.COD, 1000)
        booking = await gateway.book_shipment(CarrierCode.DELHIVERY, details)
        timeline = await gateway.track_shipment(CarrierCode.DELHIVERY, booking.external_id)
    """

    def __init__(
        self,
        carriers: Dict[CarrierCode, BaseCarrier],
        credential_store: CredentialStore,
        waybill_pool: WaybillPool,
        rate_cards: RateCardRepository,
        health_monitor: Optional[HealthMonitor] = None,
        timeout_seconds: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        gst_rate: Decimal = GST_RATE,
    ):
        self.carriers = carriers
        self.credential_store = credential_store
        self.waybill_pool = waybill_pool
        self.rate_cards = rate_cards
        self.health_monitor = health_monitor
        self.timeout_seconds = timeout_seconds
        self.retry_config = retry_config or RetryConfig()
        self.gst_rate = gst_rate

    # -------------------------------------------------------------------------
    # Adapter resolution
    # -------------------------------------------------------------------------

    def get_adapter(self, carrier: CarrierRef) -> BaseCarrier:
        """
        Raises:
            CarrierNotConfigured: unknown carrier code or no credentials
        """
        try:
            code = carrier if isinstance(carrier, CarrierCode) else CarrierCode(str(carrier).upper())
        except ValueError:
            raise CarrierNotConfigured(
                f"Unknown carrier: {carrier}",
                details={"available": [c.value for c in self.carriers]},
            ) from None

        adapter = self.carriers.get(code)
        if adapter is None:
            raise CarrierNotConfigured(
                f"Carrier {code.value} is not configured",
                carrier=code.value,
                details={"available": [c.value for c in self.carriers]},
            )
        return adapter

    @property
    def configured_carriers(self) -> List[CarrierCode]:
        return list(self.carriers)

    # -------------------------------------------------------------------------
    # Call policy
    # -------------------------------------------------------------------------

    async def _call(
        self,
        adapter: BaseCarrier,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one adapter call under the timeout, auth-retry and backoff policy."""
        carrier = adapter.carrier_code.value
        cfg = self.retry_config
        auth_retried = False
        attempt = 0

        while True:
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                error: GatewayError = ServiceUnavailable(
                    f"{carrier} {operation} timed out after {self.timeout_seconds}s",
                    carrier=carrier,
                )
            except AuthenticationFailed:
                if auth_retried:
                    raise
                auth_retried = True
                logger.warning(f"[GATEWAY:{carrier}] {operation} auth failed, forcing token refresh")
                await self._invalidate_tokens(adapter)
                continue
            except GatewayError as e:
                if not is_transient(e):
                    raise
                error = e

            attempt += 1
            if attempt >= cfg.max_attempts:
                logger.error(f"[GATEWAY:{carrier}] {operation} failed after {attempt} attempts: {error.message}")
                raise error

            delay = calculate_backoff(cfg, attempt - 1)
            if isinstance(error, RateLimited) and error.retry_after_seconds:
                if error.retry_after_seconds > cfg.max_delay:
                    logger.warning(
                        f"[GATEWAY:{carrier}] {operation} rate limited for "
                        f"{error.retry_after_seconds:.0f}s, not waiting"
                    )
                    raise error
                delay = max(delay, error.retry_after_seconds)

            logger.warning(
                f"[GATEWAY:{carrier}] {operation} attempt {attempt}/{cfg.max_attempts} "
                f"failed ({error.code}), retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    async def _invalidate_tokens(self, adapter: BaseCarrier) -> None:
        for identity in adapter.identities:
            await self.credential_store.invalidate(identity)

    # -------------------------------------------------------------------------
    # Serviceability
    # -------------------------------------------------------------------------

    async def check_serviceability(
        self, pincode: str, carrier: Optional[CarrierRef] = None
    ) -> ServiceabilityBatch:
        """
        Check one carrier, or every configured carrier concurrently.

        A named carrier's failure propagates. Across all carriers, failures
        are collected per carrier.
        """
        pincode = validate_pincode(pincode)

        if carrier is not None:
            adapter = self.get_adapter(carrier)
            result = await self._call(
                adapter, "check_serviceability", lambda: adapter.check_serviceability(pincode)
            )
            return ServiceabilityBatch(results=[result])

        adapters = list(self.carriers.values())
        outcomes = await asyncio.gather(
            *(
                self._call(a, "check_serviceability", lambda a=a: a.check_serviceability(pincode))
                for a in adapters
            ),
            return_exceptions=True,
        )

        batch = ServiceabilityBatch()
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, ServiceabilityResult):
                batch.results.append(outcome)
            else:
                batch.errors.append(self._failure(adapter, "check_serviceability", outcome))
        return batch

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    async def get_quotes(
        self,
        origin: Location,
        destination: Location,
        weight: Any,
        dimensions: Optional[Dimensions] = None,
        payment_type: PaymentType = PaymentType.PREPAID,
        collectible_amount: Any = 0,
        include_rto: bool = False,
    ) -> QuoteResult:
        """
        Quote every configured carrier concurrently.

        Live-rating carriers are priced by their API; the rest from the rate
        card repository, one quote per card. Quotes are ranked by total;
        picking one is the caller's business.
        """
        validate_pincode(origin.pincode)
        validate_pincode(destination.pincode)
        validate_weight(weight)

        dimensions = dimensions or Dimensions()
        zone = determine_zone(origin, destination)
        logger.info(
            f"[GATEWAY] Quoting {origin.pincode} -> {destination.pincode} "
            f"zone={zone.value} weight={weight} payment={payment_type.value}"
        )

        adapters = list(self.carriers.values())
        outcomes = await asyncio.gather(
            *(
                self._quote_carrier(
                    a, origin, destination, zone, weight, dimensions,
                    payment_type, collectible_amount, include_rto,
                )
                for a in adapters
            ),
            return_exceptions=True,
        )

        result = QuoteResult()
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, list):
                result.quotes.extend(outcome)
            else:
                result.errors.append(self._failure(adapter, "get_quotes", outcome))

        result.quotes.sort(key=lambda q: (q.total, q.carrier.value, q.service_name))
        return result

    async def _quote_carrier(
        self,
        adapter: BaseCarrier,
        origin: Location,
        destination: Location,
        zone,
        weight: Any,
        dimensions: Dimensions,
        payment_type: PaymentType,
        collectible_amount: Any,
        include_rto: bool,
    ) -> List[ShipmentQuote]:
        code = adapter.carrier_code

        if adapter.supports_live_rates:
            details = ShipmentDetails(
                order_id="",
                pickup=origin,
                delivery=destination,
                consignee_name="",
                consignee_address="",
                consignee_phone="",
                shipper_name="",
                shipper_address="",
                shipper_phone="",
                weight=float(weight),
                dimensions=dimensions,
                payment_type=payment_type,
                collectible_amount=to_decimal(collectible_amount),
            )
            live_rate = await self._call(adapter, "calculate_rate", lambda: adapter.calculate_rate(details, zone))
            return [quote_from_live_rate(
                code, zone, weight, dimensions, payment_type, live_rate,
                include_rto=include_rto, gst_rate=self.gst_rate,
            )]

        cards = self.rate_cards.rates_for_zone(zone, code)
        if not cards:
            logger.debug(f"[GATEWAY:{code.value}] No rate card for zone {zone.value}")
        return [
            compute_quote(
                zone, weight, dimensions, payment_type, collectible_amount, card,
                include_rto=include_rto, gst_rate=self.gst_rate,
            )
            for card in cards
        ]

    # -------------------------------------------------------------------------
    # Booking / tracking / cancellation
    # -------------------------------------------------------------------------

    async def book_shipment(self, carrier: CarrierRef, details: ShipmentDetails) -> BookingResult:
        """
        Validate, reserve a waybill (prefetch carriers only) and book.

        A waybill taken for a booking that then fails is gone for good;
        carriers do not accept a reused AWB.
        """
        adapter = self.get_adapter(carrier)
        code = adapter.carrier_code
        adapter.validate_shipment(details)

        waybill: Optional[str] = None
        if adapter.supports_waybill_prefetch:
            [reserved] = await self.waybill_pool.take(code, 1)
            waybill = reserved.number

        try:
            result = await self._call(adapter, "book_shipment", lambda: adapter.book_shipment(details, waybill))
        except GatewayError as e:
            if waybill:
                logger.warning(
                    f"[GATEWAY:{code.value}] Booking {details.order_id} failed ({e.code}), "
                    f"waybill {waybill} is consumed"
                )
            raise

        if not result.tracking_url:
            result = dataclasses.replace(result, tracking_url=adapter.get_tracking_url(result.external_id))
        logger.info(f"[GATEWAY:{code.value}] Booked {details.order_id} as {result.external_id}")
        return result

    async def track_shipment(self, carrier: CarrierRef, external_id: str) -> TrackingTimeline:
        adapter = self.get_adapter(carrier)
        external_id = self._require_id(external_id)
        return await self._call(adapter, "track_shipment", lambda: adapter.track_shipment(external_id))

    async def cancel_shipment(self, carrier: CarrierRef, external_id: str) -> CancelResult:
        adapter = self.get_adapter(carrier)
        external_id = self._require_id(external_id)
        result = await self._call(adapter, "cancel_shipment", lambda: adapter.cancel_shipment(external_id))
        logger.info(
            f"[GATEWAY:{adapter.carrier_code.value}] Cancel {external_id}: "
            f"{'cancelled' if result.cancelled else 'refused'}"
        )
        return result

    def get_tracking_url(self, carrier: CarrierRef, external_id: str) -> str:
        return self.get_adapter(carrier).get_tracking_url(self._require_id(external_id))

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def get_health(self) -> List[Dict[str, Any]]:
        """Latest probe state per configured carrier."""
        if self.health_monitor is None:
            return [
                {"carrier": code.value, "state": HealthState.UNKNOWN.value}
                for code in self.carriers
            ]
        return [health.to_dict() for health in self.health_monitor.snapshot()]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_id(external_id: str) -> str:
        value = str(external_id or "").strip()
        if not value:
            raise ValidationFailed("Shipment id is required")
        return value

    @staticmethod
    def _failure(adapter: BaseCarrier, operation: str, error: BaseException) -> CarrierFailure:
        if isinstance(error, GatewayError):
            logger.warning(f"[GATEWAY:{adapter.carrier_code.value}] {operation} failed: {error.code} {error.message}")
        elif isinstance(error, Exception):
            logger.error(
                f"[GATEWAY:{adapter.carrier_code.value}] {operation} raised unexpectedly",
                exc_info=error,
            )
        else:
            # CancelledError and friends are not carrier failures
            raise error
        return CarrierFailure(carrier=adapter.carrier_code, error=error)

    async def close(self) -> None:
        """Close carrier and auth HTTP clients."""
        for adapter in self.carriers.values():
            await adapter.http.close()
        await self.credential_store.close()


async def create_gateway(
    config: Settings = settings,
    cache: Optional[CacheBackend] = None,
    rate_cards: Optional[RateCardRepository] = None,
    transports: Optional[Dict[CarrierCode, httpx.AsyncBaseTransport]] = None,
) -> Gateway:
    """
    Wire a Gateway from settings.

    Carriers without credentials are skipped. Redis is used for tokens and
    waybills when REDIS_URL is set and reachable.
    """
    cache = cache or await create_cache()
    credential_store = CredentialStore(
        cache,
        safety_margin_seconds=config.TOKEN_SAFETY_MARGIN_SECONDS,
        default_ttl_seconds=config.TOKEN_DEFAULT_TTL_SECONDS,
        timeout=config.GATEWAY_REQUEST_TIMEOUT_SECONDS,
    )
    carriers = CarrierFactory.build_all(
        build_identities(config),
        credential_store,
        timeout=config.GATEWAY_REQUEST_TIMEOUT_SECONDS,
        transports=transports,
    )
    if not carriers:
        logger.warning("[GATEWAY] No carriers configured")

    health_monitor = HealthMonitor(
        carriers,
        interval_seconds=config.HEALTH_PROBE_INTERVAL_SECONDS,
        probe_timeout_seconds=config.HEALTH_PROBE_TIMEOUT_SECONDS,
        sla_ms=config.HEALTH_PROBE_SLA_MS,
    )

    return Gateway(
        carriers=carriers,
        credential_store=credential_store,
        waybill_pool=WaybillPool(cache, carriers, replenishment_floor=config.WAYBILL_REPLENISHMENT_FLOOR),
        rate_cards=rate_cards or StaticRateCardRepository(),
        health_monitor=health_monitor,
        timeout_seconds=config.GATEWAY_REQUEST_TIMEOUT_SECONDS,
        retry_config=RetryConfig(
            max_attempts=config.GATEWAY_MAX_ATTEMPTS,
            base_delay=config.GATEWAY_BACKOFF_BASE_SECONDS,
            max_delay=config.GATEWAY_BACKOFF_MAX_SECONDS,
            jitter_factor=config.GATEWAY_BACKOFF_JITTER,
        ),
        gst_rate=Decimal(str(config.GST_RATE)),
    )
