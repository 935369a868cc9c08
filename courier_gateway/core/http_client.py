"""
Carrier HTTP transport

One client per carrier, so one carrier's slow responses or rate limits
never touch another's connection pool or block state.

- Mandatory timeout on every call (default 30s)
- Status codes mapped onto the gateway error taxonomy
- 429 Retry-After respected: the carrier is blocked until then and
  further calls fail fast with RateLimited instead of queuing. A 429
  answered to a health probe is reported but does not open the block
- Every call increments carrier_requests_total for the health monitor

Retries are NOT done here; the gateway owns retry policy.
"""
import logging
import random
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from courier_gateway.core.exceptions import (
    AuthenticationFailed,
    NotFound,
    RateLimited,
    ServiceUnavailable,
    UnexpectedResponseShape,
    ValidationFailed,
)
from courier_gateway.core.monitoring import (
    CARRIER_ERRORS,
    CARRIER_LATENCY,
    CARRIER_REQUESTS,
    metrics,
)

logger = logging.getLogger(__name__)

# Set while a health probe runs; a probe never opens a Retry-After block
_probing: ContextVar[bool] = ContextVar("carrier_probe", default=False)


@contextmanager
def probe_scope():
    """Mark calls made inside the block as health probes."""
    token = _probing.set(True)
    try:
        yield
    finally:
        _probing.reset(token)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 8.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.25       # Random jitter (0-1)


def calculate_backoff(cfg: RetryConfig, attempt: int) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
    """
    delay = cfg.base_delay * (cfg.exponential_base ** attempt)
    jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
    delay += jitter
    return max(0.0, min(delay, cfg.max_delay))


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Parse Retry-After header, returns seconds to wait."""
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return None

    try:
        return max(0.0, float(int(retry_after)))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(retry_after)
        return max(0.0, dt.timestamp() - time.time())
    except (ValueError, TypeError):
        pass

    return None


class CarrierHTTPClient:
    """
    Async HTTP client bound to a single carrier.

    Usage:
        client = CarrierHTTPClient(CarrierCode.DELHIVERY, "https://track.delhivery.com")
        response = await client.request("GET", "/c/api/pin-codes/json/", params={...})
        data = client.parse_json(response)
    """

    def __init__(
        self,
        carrier: str,
        base_url: str,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.carrier = carrier
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.blocked_until: Optional[float] = None

    @property
    def _labels(self) -> Dict[str, str]:
        return {"carrier": str(self.carrier)}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        """Close the underlying connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _check_preflight_block(self) -> None:
        """Fail fast while the carrier's Retry-After window is open."""
        if self.blocked_until is None:
            return
        remaining = self.blocked_until - time.time()
        if remaining > 0:
            raise RateLimited(
                f"{self.carrier} rate limited for another {remaining:.0f}s",
                retry_after_seconds=remaining,
                carrier=str(self.carrier),
            )
        self.blocked_until = None

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Issue one request and classify the outcome.

        Returns the response for 2xx/3xx. Raises a GatewayError subclass
        otherwise. Cancellation of the awaiting task cancels the HTTP call.
        """
        self._check_preflight_block()

        client = self._get_client()
        metrics.increment(CARRIER_REQUESTS, labels=self._labels)
        started = time.monotonic()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            metrics.increment(CARRIER_ERRORS, labels=self._labels)
            logger.warning(f"[HTTP:{self.carrier}] Timeout on {method} {url}")
            raise ServiceUnavailable(
                f"{self.carrier} timed out",
                carrier=str(self.carrier),
                details={"reason": "timeout"},
            ) from e
        except httpx.TransportError as e:
            metrics.increment(CARRIER_ERRORS, labels=self._labels)
            logger.warning(f"[HTTP:{self.carrier}] Transport error on {method} {url}: {e}")
            raise ServiceUnavailable(
                f"{self.carrier} unreachable",
                carrier=str(self.carrier),
                details={"reason": type(e).__name__},
            ) from e
        finally:
            metrics.observe(CARRIER_LATENCY, time.monotonic() - started, labels=self._labels)

        logger.debug(f"[HTTP:{self.carrier}] {method} {url} -> {response.status_code}")

        if response.status_code < 400:
            return response

        metrics.increment(CARRIER_ERRORS, labels=self._labels)
        raise self._classify(response)

    def _classify(self, response: httpx.Response):
        status_code = response.status_code
        raw = self._safe_body(response)
        carrier = str(self.carrier)
        details = {"status": status_code}

        if status_code == 429:
            retry_after = parse_retry_after(response)
            if retry_after and not _probing.get():
                self.blocked_until = time.time() + retry_after
            logger.warning(f"[HTTP:{carrier}] 429 rate limited, retry_after={retry_after}")
            return RateLimited(
                f"{carrier} rate limited",
                retry_after_seconds=retry_after,
                carrier=carrier,
                raw=raw,
            )
        if status_code in (401, 403):
            return AuthenticationFailed(f"{carrier} rejected credentials", carrier=carrier, raw=raw, details=details)
        if status_code == 404:
            return NotFound(f"{carrier} resource not found", carrier=carrier, raw=raw, details=details)
        if status_code >= 500:
            return ServiceUnavailable(f"{carrier} returned {status_code}", carrier=carrier, raw=raw, details=details)
        return ValidationFailed(f"{carrier} rejected the request", carrier=carrier, raw=raw, details=details)

    @staticmethod
    def _safe_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:500]

    def parse_json(self, response: httpx.Response) -> Any:
        """Decode a JSON body or raise UnexpectedResponseShape."""
        try:
            return response.json()
        except ValueError as e:
            raise UnexpectedResponseShape(
                f"{self.carrier} returned non-JSON body",
                carrier=str(self.carrier),
                raw=response.text[:500],
            ) from e

    async def get_json(self, url: str, **kwargs) -> Any:
        return self.parse_json(await self.request("GET", url, **kwargs))

    async def post_json(self, url: str, **kwargs) -> Any:
        return self.parse_json(await self.request("POST", url, **kwargs))
