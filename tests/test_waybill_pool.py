"""
Tests for the waybill pool.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeCarrier
from courier_gateway.core.exceptions import ServiceUnavailable, WaybillExhausted
from courier_gateway.models.carrier import CarrierCode, WaybillBatch
from courier_gateway.services.waybill_pool import WaybillPool


@pytest.fixture
def delhivery():
    return FakeCarrier(CarrierCode.DELHIVERY, max_waybill_batch=10000)


@pytest.fixture
def pool(cache, delhivery):
    return WaybillPool(cache, {CarrierCode.DELHIVERY: delhivery}, replenishment_floor=50)


class TestTake:

    @pytest.mark.asyncio
    async def test_take_zero_does_no_io(self, cache, delhivery):
        cache.pop_many = AsyncMock()
        pool = WaybillPool(cache, {CarrierCode.DELHIVERY: delhivery})

        assert await pool.take(CarrierCode.DELHIVERY, 0) == []

        cache.pop_many.assert_not_called()
        assert delhivery.fetch_calls == []

    @pytest.mark.asyncio
    async def test_empty_pool_replenishes_with_floor(self, pool, delhivery):
        waybills = await pool.take(CarrierCode.DELHIVERY, 3)

        assert len(waybills) == 3
        assert delhivery.fetch_calls == [50]
        assert await pool.available(CarrierCode.DELHIVERY) == 47

    @pytest.mark.asyncio
    async def test_served_from_cache_when_stocked(self, pool, delhivery):
        await pool.take(CarrierCode.DELHIVERY, 1)
        await pool.take(CarrierCode.DELHIVERY, 10)

        assert delhivery.fetch_calls == [50]

    @pytest.mark.asyncio
    async def test_never_hands_out_the_same_waybill_twice(self, pool):
        seen = []
        for size in (1, 7, 30, 25, 1, 60):
            seen.extend(w.number for w in await pool.take(CarrierCode.DELHIVERY, size))

        assert len(seen) == len(set(seen))

    @pytest.mark.asyncio
    async def test_concurrent_takes_are_unique_and_single_flight(self, pool, delhivery):
        batches = await asyncio.gather(*(pool.take(CarrierCode.DELHIVERY, 2) for _ in range(20)))
        numbers = [w.number for batch in batches for w in batch]

        assert len(numbers) == 40
        assert len(set(numbers)) == 40
        assert delhivery.fetch_calls == [50]

    @pytest.mark.asyncio
    async def test_waybills_tagged_with_carrier(self, pool):
        [waybill] = await pool.take(CarrierCode.DELHIVERY, 1)
        assert waybill.carrier == CarrierCode.DELHIVERY


class TestBatchSize:

    def test_floor_applies_to_small_requests(self, pool):
        assert pool.batch_size(CarrierCode.DELHIVERY, 1) == 50

    def test_double_the_request_above_floor(self, pool):
        assert pool.batch_size(CarrierCode.DELHIVERY, 400) == 800

    def test_bounded_by_carrier_limit(self, cache):
        ecom = FakeCarrier(CarrierCode.ECOMEXPRESS, max_waybill_batch=1000)
        pool = WaybillPool(cache, {CarrierCode.ECOMEXPRESS: ecom}, replenishment_floor=1000)
        assert pool.batch_size(CarrierCode.ECOMEXPRESS, 900) == 1000


class TestExhaustion:

    @pytest.mark.asyncio
    async def test_replenishment_failure(self, pool, delhivery):
        delhivery.fetch_waybills = AsyncMock(side_effect=ServiceUnavailable("down", carrier="DELHIVERY"))

        with pytest.raises(WaybillExhausted) as exc_info:
            await pool.take(CarrierCode.DELHIVERY, 1)

        assert exc_info.value.details["requested"] == 1
        assert exc_info.value.details["available"] == 0

    @pytest.mark.asyncio
    async def test_short_batch(self, pool, delhivery):
        short = await FakeCarrier(CarrierCode.DELHIVERY).fetch_waybills(2)
        delhivery.fetch_waybills = AsyncMock(return_value=short)

        with pytest.raises(WaybillExhausted):
            await pool.take(CarrierCode.DELHIVERY, 5)

    @pytest.mark.asyncio
    async def test_manual_process_carrier(self, cache):
        xpressbees = FakeCarrier(CarrierCode.XPRESSBEES)
        pool = WaybillPool(cache, {CarrierCode.XPRESSBEES: xpressbees})

        with pytest.raises(WaybillExhausted):
            await pool.take(CarrierCode.XPRESSBEES, 1)

    @pytest.mark.asyncio
    async def test_manual_marker_never_becomes_waybills(self, pool, delhivery):
        delhivery.fetch_waybills = AsyncMock(return_value=WaybillBatch(manual_process=True))

        with pytest.raises(WaybillExhausted):
            await pool.take(CarrierCode.DELHIVERY, 1)
        assert await pool.available(CarrierCode.DELHIVERY) == 0
