"""
Carrier Health Monitor

Per-carrier state machine driven by a periodic probe (the lightest adapter
call, a single-pincode serviceability check):

- UNKNOWN: no probe has completed yet
- HEALTHY: probe succeeded within the SLA latency
- DEGRADED: probe succeeded over SLA, or failed with a non-fatal error
- UNHEALTHY: auth failure, timeout or carrier outage

The probe loop runs on its own schedule with its own timeout and never
retries, so probes never compete with user traffic; a 429 answered to a probe
is recorded without blocking user calls. State is informational:
the gateway never refuses a booking because a carrier looks unhealthy.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from courier_gateway.core.exceptions import (
    AuthenticationFailed,
    GatewayError,
    ServiceUnavailable,
)
from courier_gateway.core.http_client import probe_scope
from courier_gateway.core.monitoring import CARRIER_LATENCY, CARRIER_REQUESTS, metrics
from courier_gateway.models.carrier import CarrierCode
from courier_gateway.models.shipment import HealthState

logger = logging.getLogger(__name__)

FATAL_ERRORS = (AuthenticationFailed, ServiceUnavailable)


@dataclass
class CarrierHealth:
    """Latest probe outcome for one carrier."""
    carrier: CarrierCode
    state: HealthState = HealthState.UNKNOWN
    last_latency_ms: Optional[float] = None
    last_error: Optional[str] = None
    last_probe_at: Optional[datetime] = None
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        labels = {"carrier": self.carrier.value}
        return {
            "carrier": self.carrier.value,
            "state": self.state.value,
            "last_latency_ms": self.last_latency_ms,
            "last_error": self.last_error,
            "last_probe_at": self.last_probe_at.isoformat() if self.last_probe_at else None,
            "consecutive_failures": self.consecutive_failures,
            "requests_total": metrics.get_counter(CARRIER_REQUESTS, labels=labels),
            "latency_p95_ms": round(metrics.get_histogram_stats(CARRIER_LATENCY, labels=labels)["p95"] * 1000, 1),
        }


class HealthMonitor:
    """
    Usage:
        monitor = HealthMonitor(carriers, interval_seconds=300)
        await monitor.start()
        ...
        monitor.snapshot()
        await monitor.stop()
    """

    def __init__(
        self,
        carriers: Dict,
        interval_seconds: float = 300,
        probe_timeout_seconds: float = 10.0,
        sla_ms: float = 2000,
    ):
        self.carriers = carriers
        self.interval_seconds = interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self.sla_ms = sla_ms
        self._health: Dict[CarrierCode, CarrierHealth] = {
            code: CarrierHealth(carrier=code) for code in carriers
        }
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def state(self, carrier: CarrierCode) -> HealthState:
        health = self._health.get(carrier)
        return health.state if health else HealthState.UNKNOWN

    def snapshot(self) -> List[CarrierHealth]:
        return list(self._health.values())

    async def start(self) -> None:
        """Start the probe loop."""
        if self._running:
            logger.info("[HEALTH] Monitor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"[HEALTH] Monitor started for {[c.value for c in self.carriers]} "
            f"(interval={self.interval_seconds}s, sla={self.sla_ms}ms)"
        )

    async def stop(self) -> None:
        """Stop the probe loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[HEALTH] Monitor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.probe_all()
            await asyncio.sleep(self.interval_seconds)

    async def probe_all(self) -> List[CarrierHealth]:
        """Run one probe round across every carrier concurrently."""
        await asyncio.gather(*(self.probe(code) for code in self.carriers))
        return self.snapshot()

    async def probe(self, carrier: CarrierCode) -> CarrierHealth:
        adapter = self.carriers[carrier]
        health = self._health.setdefault(carrier, CarrierHealth(carrier=carrier))
        started = time.monotonic()
        error: Optional[str] = None

        try:
            with probe_scope():
                await asyncio.wait_for(adapter.probe(), timeout=self.probe_timeout_seconds)
        except asyncio.TimeoutError:
            new_state = HealthState.UNHEALTHY
            error = f"probe timed out after {self.probe_timeout_seconds}s"
        except FATAL_ERRORS as e:
            new_state = HealthState.UNHEALTHY
            error = f"{e.code}: {e.message}"
        except GatewayError as e:
            new_state = HealthState.DEGRADED
            error = f"{e.code}: {e.message}"
        except Exception as e:
            logger.exception(f"[HEALTH:{carrier.value}] Probe raised unexpectedly")
            new_state = HealthState.UNHEALTHY
            error = f"{type(e).__name__}: {e}"
        else:
            latency_ms = (time.monotonic() - started) * 1000
            new_state = HealthState.HEALTHY if latency_ms <= self.sla_ms else HealthState.DEGRADED
            if new_state == HealthState.DEGRADED:
                error = f"latency {latency_ms:.0f}ms over SLA {self.sla_ms}ms"

        health.last_latency_ms = round((time.monotonic() - started) * 1000, 1)
        health.last_probe_at = datetime.now(timezone.utc)
        health.last_error = error
        health.consecutive_failures = 0 if new_state == HealthState.HEALTHY else health.consecutive_failures + 1
        self._transition(health, new_state)
        return health

    def _transition(self, health: CarrierHealth, new_state: HealthState) -> None:
        old_state = health.state
        health.state = new_state
        if old_state == new_state:
            return
        message = f"[HEALTH:{health.carrier.value}] {old_state.value} -> {new_state.value}"
        if health.last_error:
            message += f" ({health.last_error})"
        if new_state == HealthState.UNHEALTHY:
            logger.error(message)
        elif new_state == HealthState.DEGRADED:
            logger.warning(message)
        else:
            logger.info(message)
