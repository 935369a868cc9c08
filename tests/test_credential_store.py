"""
Tests for the credential store: scheme dispatch, caching and single-flight refresh.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from courier_gateway.core.cache import InMemoryCache
from courier_gateway.core.exceptions import AuthenticationFailed, ServiceUnavailable
from courier_gateway.models.carrier import (
    AccessToken,
    AuthScheme,
    CarrierCode,
    CarrierIdentity,
    FormCredential,
)
from courier_gateway.services.credential_store import CredentialStore


def jwt_identity(default_ttl=None):
    return CarrierIdentity(
        carrier=CarrierCode.XPRESSBEES,
        service_tier="standard",
        auth_scheme=AuthScheme.LOGIN_JWT,
        secrets={"email": "ops@example.com", "password": "secret"},
        base_url="https://xb.test",
        default_token_ttl_seconds=default_ttl,
    )


def oauth_identity():
    return CarrierIdentity(
        carrier=CarrierCode.EKART,
        service_tier="surface",
        auth_scheme=AuthScheme.OAUTH2_CLIENT_CREDENTIALS,
        secrets={"client_id": "client", "client_secret": "shh"},
        base_url="https://ekart.test",
        auth_url="https://ekart.test/auth/token",
    )


class CountingLogin:
    """Login function that records every call."""

    def __init__(self, token="jwt-token", ttl=3600, delay=0.02, error=None):
        self.calls = 0
        self.token = token
        self.ttl = ttl
        self.delay = delay
        self.error = error

    async def __call__(self, identity, http):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return f"{self.token}-{self.calls}", self.ttl


class LaggingCache(InMemoryCache):
    """Cache whose reads return `lag` seconds after the value was read."""

    def __init__(self, lag):
        super().__init__()
        self.lag = lag

    async def get(self, key):
        value = await super().get(key)
        await asyncio.sleep(self.lag)
        return value


class TestStaticAndForm:

    @pytest.mark.asyncio
    async def test_static_token_has_no_expiry(self, cache):
        identity = CarrierIdentity(
            carrier=CarrierCode.DELHIVERY,
            service_tier="surface",
            auth_scheme=AuthScheme.STATIC_TOKEN,
            secrets={"token": "static-abc"},
            base_url="https://dl.test",
        )
        token = await CredentialStore(cache).get_token(identity)

        assert isinstance(token, AccessToken)
        assert token.value == "static-abc"
        assert token.expires_at is None
        assert token.identity_key == "DELHIVERY:surface"

    @pytest.mark.asyncio
    async def test_missing_static_token(self, cache):
        identity = CarrierIdentity(
            carrier=CarrierCode.DELHIVERY,
            service_tier="surface",
            auth_scheme=AuthScheme.STATIC_TOKEN,
            secrets={},
            base_url="https://dl.test",
        )
        with pytest.raises(AuthenticationFailed):
            await CredentialStore(cache).get_token(identity)

    @pytest.mark.asyncio
    async def test_form_credentials_pass_through(self, cache):
        identity = CarrierIdentity(
            carrier=CarrierCode.ECOMEXPRESS,
            service_tier="BA",
            auth_scheme=AuthScheme.FORM_CREDENTIALS,
            secrets={"username": "shipper", "password": "pw"},
            base_url="https://ecom.test",
        )
        credential = await CredentialStore(cache).get_token(identity)

        assert isinstance(credential, FormCredential)
        assert credential.username == "shipper"
        assert credential.password == "pw"
        assert "pw" not in repr(credential)


class TestLoginJwt:

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_refresh(self, cache):
        login = CountingLogin()
        store = CredentialStore(cache, login_functions={CarrierCode.XPRESSBEES: login})
        identity = jwt_identity()

        tokens = await asyncio.gather(*(store.get_token(identity) for _ in range(25)))

        assert login.calls == 1
        assert {t.value for t in tokens} == {"jwt-token-1"}

    @pytest.mark.asyncio
    async def test_stale_read_after_finished_refresh_does_not_login_again(self):
        login = CountingLogin(delay=0)
        store = CredentialStore(LaggingCache(lag=0.1), login_functions={CarrierCode.XPRESSBEES: login})
        identity = jwt_identity()

        # first caller's refresh completes at ~0.2s; the second reads the
        # empty cache at 0.15s and only sees the result at 0.25s
        first = asyncio.create_task(store.get_token(identity))
        await asyncio.sleep(0.15)
        second = asyncio.create_task(store.get_token(identity))
        tokens = await asyncio.gather(first, second)

        assert login.calls == 1
        assert {t.value for t in tokens} == {"jwt-token-1"}

    @pytest.mark.asyncio
    async def test_cached_token_reused(self, cache):
        login = CountingLogin()
        store = CredentialStore(cache, login_functions={CarrierCode.XPRESSBEES: login})

        first = await store.get_token(jwt_identity())
        second = await store.get_token(jwt_identity())

        assert login.calls == 1
        assert first.value == second.value

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(self, cache):
        login = CountingLogin()
        store = CredentialStore(cache, safety_margin_seconds=300, login_functions={CarrierCode.XPRESSBEES: login})
        identity = jwt_identity()
        now = datetime.now(timezone.utc)
        await cache.set("token:XPRESSBEES:standard", {
            "value": "about-to-expire",
            "issued_at": (now - timedelta(minutes=55)).isoformat(),
            "expires_at": (now + timedelta(seconds=120)).isoformat(),
        })

        token = await store.get_token(identity)

        assert login.calls == 1
        assert token.value == "jwt-token-1"
        assert token.is_usable(300)

    @pytest.mark.asyncio
    async def test_identity_default_ttl_when_carrier_omits_one(self, cache):
        login = CountingLogin(ttl=None)
        store = CredentialStore(cache, default_ttl_seconds=3600, login_functions={CarrierCode.XPRESSBEES: login})

        token = await store.get_token(jwt_identity(default_ttl=1800))

        assert (token.expires_at - token.issued_at) == timedelta(seconds=1800)

    @pytest.mark.asyncio
    async def test_store_default_ttl_as_last_resort(self, cache):
        login = CountingLogin(ttl=None)
        store = CredentialStore(cache, default_ttl_seconds=900, login_functions={CarrierCode.XPRESSBEES: login})

        token = await store.get_token(jwt_identity())

        assert (token.expires_at - token.issued_at) == timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_refresh_failure_raises_auth_error_without_retry(self, cache):
        login = CountingLogin(error=ServiceUnavailable("login endpoint down", carrier="XPRESSBEES"))
        store = CredentialStore(cache, login_functions={CarrierCode.XPRESSBEES: login})

        with pytest.raises(AuthenticationFailed) as exc_info:
            await store.get_token(jwt_identity())

        assert login.calls == 1
        assert exc_info.value.carrier == "XPRESSBEES"
        assert exc_info.value.details["cause"] == "SERVICE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_cached(self, cache):
        login = CountingLogin(error=ServiceUnavailable("down"))
        store = CredentialStore(cache, login_functions={CarrierCode.XPRESSBEES: login})

        for _ in range(2):
            with pytest.raises(AuthenticationFailed):
                await store.get_token(jwt_identity())

        assert login.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, cache):
        login = CountingLogin()
        store = CredentialStore(cache, login_functions={CarrierCode.XPRESSBEES: login})
        identity = jwt_identity()

        await store.get_token(identity)
        await store.invalidate(identity)
        token = await store.get_token(identity)

        assert login.calls == 2
        assert token.value == "jwt-token-2"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_refresh(self, cache):
        login = CountingLogin(delay=0.05)
        store = CredentialStore(cache, login_functions={CarrierCode.XPRESSBEES: login})
        identity = jwt_identity()

        impatient = asyncio.create_task(store.get_token(identity))
        patient = asyncio.create_task(store.get_token(identity))
        await asyncio.sleep(0.01)
        impatient.cancel()

        token = await patient
        with pytest.raises(asyncio.CancelledError):
            await impatient

        assert token.value == "jwt-token-1"
        assert login.calls == 1

    @pytest.mark.asyncio
    async def test_unregistered_login_function(self, cache):
        store = CredentialStore(cache, login_functions={})
        with pytest.raises(AuthenticationFailed):
            await store.get_token(jwt_identity())


class TestClientCredentials:

    @pytest.mark.asyncio
    async def test_basic_auth_grant(self, cache):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": "oauth-abc", "expires_in": 7200})

        store = CredentialStore(cache, transport=httpx.MockTransport(handler))
        token = await store.get_token(oauth_identity())
        await store.close()

        assert token.value == "oauth-abc"
        assert (token.expires_at - token.issued_at) == timedelta(seconds=7200)
        [request] = seen
        assert request.url.path == "/auth/token"
        assert request.headers["Authorization"] == "Basic Y2xpZW50OnNoaA=="
        assert request.content == b"grant_type=client_credentials"

    @pytest.mark.asyncio
    async def test_rejected_client(self, cache):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "invalid_client"}))
        store = CredentialStore(cache, transport=transport)

        with pytest.raises(AuthenticationFailed) as exc_info:
            await store.get_token(oauth_identity())
        await store.close()

        # Carrier payload kept for diagnostics, never as the message
        assert exc_info.value.raw == {"error": "invalid_client"}
        assert "invalid_client" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_access_token(self, cache):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"token_type": "bearer"}))
        store = CredentialStore(cache, transport=transport)

        with pytest.raises(AuthenticationFailed):
            await store.get_token(oauth_identity())
        await store.close()
