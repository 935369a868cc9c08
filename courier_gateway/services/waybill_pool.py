"""
Waybill Pool

Pre-fetched waybills per carrier, persisted through the cache abstraction
so several processes draw from one pool when Redis is configured.

Invariants:
- take() is destructive: a waybill leaves the pool the instant it is
  handed out and is never put back, even if the booking then fails
- the same waybill is never handed out twice
- replenishment is single-flight per carrier
- an unsatisfiable request raises WaybillExhausted; no synthetic ids
"""
import asyncio
import logging
from typing import Dict, List

from courier_gateway.core.cache import CacheBackend
from courier_gateway.core.exceptions import GatewayError, WaybillExhausted
from courier_gateway.models.carrier import CarrierCode, Waybill

logger = logging.getLogger(__name__)


class WaybillPool:
    """
    Usage:
        pool = WaybillPool(cache, carriers, replenishment_floor=1000)
        [waybill] = await pool.take(CarrierCode.DELHIVERY, 1)
    """

    def __init__(self, cache: CacheBackend, carriers: Dict, replenishment_floor: int = 1000):
        self.cache = cache
        self.carriers = carriers
        self.replenishment_floor = replenishment_floor
        self._locks: Dict[CarrierCode, asyncio.Lock] = {}

    @staticmethod
    def _key(carrier: CarrierCode) -> str:
        return f"waybills:{carrier.value}"

    def _lock(self, carrier: CarrierCode) -> asyncio.Lock:
        lock = self._locks.get(carrier)
        if lock is None:
            lock = self._locks[carrier] = asyncio.Lock()
        return lock

    def batch_size(self, carrier: CarrierCode, requested: int) -> int:
        """max(2 x requested, floor), bounded by the carrier's bulk limit."""
        adapter = self.carriers[carrier]
        return min(max(2 * requested, self.replenishment_floor), adapter.max_waybill_batch)

    async def available(self, carrier: CarrierCode) -> int:
        return await self.cache.length(self._key(carrier))

    async def take(self, carrier: CarrierCode, count: int) -> List[Waybill]:
        """
        Remove and return count waybills.

        Raises:
            WaybillExhausted: replenishment failed or fell short
        """
        if count <= 0:
            return []

        key = self._key(carrier)
        taken = await self.cache.pop_many(key, count)
        if len(taken) < count:
            taken.extend(await self._take_with_replenishment(carrier, count - len(taken), already=taken))

        logger.debug(f"[WAYBILL:{carrier.value}] Handed out {len(taken)}")
        return [Waybill(number=n, carrier=carrier) for n in taken]

    async def _take_with_replenishment(
        self, carrier: CarrierCode, needed: int, already: List[str]
    ) -> List[str]:
        key = self._key(carrier)
        async with self._lock(carrier):
            # Another waiter may have replenished while we queued
            got = await self.cache.pop_many(key, needed)
            if len(got) == needed:
                return got

            try:
                await self._replenish(carrier, len(already) + needed)
            except WaybillExhausted:
                self._log_discarded(carrier, already + got)
                raise
            except GatewayError as e:
                self._log_discarded(carrier, already + got)
                raise WaybillExhausted(
                    f"{carrier.value} waybill replenishment failed: {e.message}",
                    requested=len(already) + needed,
                    available=len(already) + len(got),
                    carrier=carrier.value,
                    raw=e.raw,
                ) from e

            got.extend(await self.cache.pop_many(key, needed - len(got)))
            if len(got) < needed:
                self._log_discarded(carrier, already + got)
                raise WaybillExhausted(
                    f"{carrier.value} returned too few waybills",
                    requested=len(already) + needed,
                    available=len(already) + len(got),
                    carrier=carrier.value,
                )
            return got

    @staticmethod
    def _log_discarded(carrier: CarrierCode, numbers: List[str]) -> None:
        # Partially popped waybills are lost with the failed request
        if numbers:
            logger.warning(
                f"[WAYBILL:{carrier.value}] Discarding {len(numbers)} waybills from an unsatisfied request"
            )

    async def _replenish(self, carrier: CarrierCode, requested: int) -> None:
        adapter = self.carriers.get(carrier)
        if adapter is None or not adapter.supports_waybill_prefetch:
            raise WaybillExhausted(
                f"{carrier.value} does not support waybill pre-fetch",
                requested=requested,
                available=0,
                carrier=carrier.value,
            )

        size = self.batch_size(carrier, requested)
        logger.info(f"[WAYBILL:{carrier.value}] Replenishing with batch of {size}")
        batch = await adapter.fetch_waybills(size)

        if batch.manual_process:
            raise WaybillExhausted(
                f"{carrier.value} requires manual waybill assignment",
                requested=requested,
                available=0,
                carrier=carrier.value,
            )

        numbers = [w.number for w in batch.waybills]
        total = await self.cache.push_many(self._key(carrier), numbers)
        logger.info(f"[WAYBILL:{carrier.value}] Pool now holds {total}")
