"""
Tests for the per-carrier HTTP client: status classification, rate limiting and backoff.
"""
import time
from email.utils import formatdate

import httpx
import pytest

from courier_gateway.core.exceptions import (
    AuthenticationFailed,
    NotFound,
    RateLimited,
    ServiceUnavailable,
    UnexpectedResponseShape,
    ValidationFailed,
)
from courier_gateway.core.http_client import (
    CarrierHTTPClient,
    RetryConfig,
    calculate_backoff,
    parse_retry_after,
    probe_scope,
)
from courier_gateway.core.monitoring import CARRIER_ERRORS, CARRIER_REQUESTS, metrics


def client_for(handler) -> CarrierHTTPClient:
    return CarrierHTTPClient("DELHIVERY", "https://carrier.test", transport=httpx.MockTransport(handler))


class TestClassification:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (400, ValidationFailed),
        (401, AuthenticationFailed),
        (403, AuthenticationFailed),
        (404, NotFound),
        (500, ServiceUnavailable),
        (503, ServiceUnavailable),
    ])
    async def test_status_codes(self, status, error):
        client = client_for(lambda request: httpx.Response(status, json={"error": "nope"}))

        with pytest.raises(error) as exc_info:
            await client.get_json("/anything")
        await client.close()

        assert exc_info.value.carrier == "DELHIVERY"
        assert exc_info.value.raw == {"error": "nope"}

    @pytest.mark.asyncio
    async def test_success_returns_json(self):
        client = client_for(lambda request: httpx.Response(200, json={"ok": True}))
        assert await client.get_json("/ping") == {"ok": True}
        await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = client_for(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(UnexpectedResponseShape) as exc_info:
            await client.get_json("/ping")
        await client.close()

        assert "maintenance" in exc_info.value.raw

    @pytest.mark.asyncio
    async def test_timeout_is_service_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = client_for(handler)
        with pytest.raises(ServiceUnavailable) as exc_info:
            await client.get_json("/slow")
        await client.close()

        assert exc_info.value.details["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_connection_error_is_service_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = client_for(handler)
        with pytest.raises(ServiceUnavailable):
            await client.get_json("/down")
        await client.close()

    @pytest.mark.asyncio
    async def test_request_and_error_counters(self):
        responses = iter([httpx.Response(200, json={}), httpx.Response(502)])
        client = client_for(lambda request: next(responses))

        await client.get_json("/one")
        with pytest.raises(ServiceUnavailable):
            await client.get_json("/two")
        await client.close()

        labels = {"carrier": "DELHIVERY"}
        assert metrics.get_counter(CARRIER_REQUESTS, labels=labels) == 2
        assert metrics.get_counter(CARRIER_ERRORS, labels=labels) == 1

    @pytest.mark.asyncio
    async def test_latency_exported_with_all_metrics(self):
        client = client_for(lambda request: httpx.Response(200, json={}))

        await client.get_json("/one")
        await client.get_json("/two")
        await client.close()

        exported = metrics.get_all_metrics()
        latency = exported["histograms"]["carrier_request_duration_seconds{carrier=DELHIVERY}"]
        assert latency["count"] == 2
        assert 0 <= latency["min"] <= latency["p95"] <= latency["max"]
        assert exported["counters"]["carrier_requests_total{carrier=DELHIVERY}"] == 2


class TestRateLimiting:

    @pytest.mark.asyncio
    async def test_retry_after_blocks_further_calls(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "60"})

        client = client_for(handler)
        with pytest.raises(RateLimited) as first:
            await client.get_json("/rated")
        with pytest.raises(RateLimited) as second:
            await client.get_json("/rated")
        await client.close()

        assert first.value.retry_after_seconds == 60
        assert 0 < second.value.retry_after_seconds <= 60
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_block_lifts_after_window(self):
        client = client_for(lambda request: httpx.Response(200, json={"ok": True}))
        client.blocked_until = time.time() - 1

        assert await client.get_json("/ping") == {"ok": True}
        assert client.blocked_until is None
        await client.close()

    @pytest.mark.asyncio
    async def test_429_without_header_does_not_block(self):
        responses = iter([httpx.Response(429), httpx.Response(200, json={})])
        client = client_for(lambda request: next(responses))

        with pytest.raises(RateLimited) as exc_info:
            await client.get_json("/rated")
        assert exc_info.value.retry_after_seconds is None
        assert await client.get_json("/rated") == {}
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check_429_does_not_block_user_calls(self):
        responses = iter([
            httpx.Response(429, headers={"Retry-After": "60"}),
            httpx.Response(200, json={"ok": True}),
        ])
        client = client_for(lambda request: next(responses))

        with probe_scope():
            with pytest.raises(RateLimited) as exc_info:
                await client.get_json("/pin")

        assert exc_info.value.retry_after_seconds == 60
        assert client.blocked_until is None
        assert await client.get_json("/pin") == {"ok": True}
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check_honours_existing_block(self):
        calls = []
        client = client_for(lambda request: calls.append(request) or httpx.Response(200, json={}))
        client.blocked_until = time.time() + 30

        with probe_scope():
            with pytest.raises(RateLimited):
                await client.get_json("/pin")

        assert calls == []
        await client.close()


class TestRetryAfterParsing:

    def test_seconds(self):
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "120"})) == 120.0

    def test_http_date(self):
        header = formatdate(time.time() + 30, usegmt=True)
        seconds = parse_retry_after(httpx.Response(429, headers={"Retry-After": header}))
        assert 25 <= seconds <= 31

    def test_missing_or_garbage(self):
        assert parse_retry_after(httpx.Response(429)) is None
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "soon"})) is None


class TestBackoff:

    def test_grows_exponentially_within_jitter(self):
        cfg = RetryConfig(base_delay=0.5, jitter_factor=0.25, max_delay=100)
        for attempt, nominal in enumerate([0.5, 1.0, 2.0, 4.0]):
            delay = calculate_backoff(cfg, attempt)
            assert nominal * 0.75 <= delay <= nominal * 1.25

    def test_capped_at_max_delay(self):
        cfg = RetryConfig(base_delay=1.0, max_delay=8.0)
        assert all(calculate_backoff(cfg, 10) <= 8.0 for _ in range(20))

    def test_no_jitter_is_deterministic(self):
        cfg = RetryConfig(base_delay=0.5, jitter_factor=0)
        assert calculate_backoff(cfg, 2) == 2.0
