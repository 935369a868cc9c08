"""
Credential Store

Turns a CarrierIdentity into a usable credential, dispatching on the
identity's auth scheme tag:

- static_token: the configured token, no expiry
- login_jwt: carrier-specific login function, token cached until expiry
- oauth2_client_credentials: grant_type=client_credentials with HTTP Basic
- form_credentials: username/password pass-through

Tokens are persisted through the cache abstraction with TTL = time to
expiry, so several gateway processes sharing Redis log in once. Refresh is
single-flight per identity: concurrent callers await one shared task.
A token is never handed out within the safety margin of its expiry.

No retries here. A failed refresh raises AuthenticationFailed and the
gateway decides what to do.
"""
import asyncio
import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

import httpx

from courier_gateway.core.cache import CacheBackend
from courier_gateway.core.exceptions import AuthenticationFailed, GatewayError
from courier_gateway.core.http_client import CarrierHTTPClient
from courier_gateway.models.carrier import (
    AccessToken,
    AuthScheme,
    CarrierCode,
    CarrierIdentity,
    FormCredential,
)

logger = logging.getLogger(__name__)

# (token, ttl_seconds or None)
LoginResult = Tuple[str, Optional[int]]
LoginFunction = Callable[[CarrierIdentity, CarrierHTTPClient], Awaitable[LoginResult]]

# Registry of login-jwt login functions, one per carrier
_LOGIN_REGISTRY: Dict[CarrierCode, LoginFunction] = {}


def register_login(carrier_code: CarrierCode, login: LoginFunction) -> LoginFunction:
    """
    Register the login function for a login-jwt carrier.

    The function receives the identity and an HTTP client bound to the
    identity's base URL, and returns (token, ttl_seconds). A ttl of None
    falls back to the identity's default TTL.
    """
    _LOGIN_REGISTRY[carrier_code] = login
    logger.debug(f"Registered login function for {carrier_code.value}")
    return login


Credential = Union[AccessToken, FormCredential]


class CredentialStore:
    """
    Usage:
        store = CredentialStore(cache)
        token = await store.get_token(identity)
        ...
        await store.invalidate(identity)   # after the carrier rejected it
    """

    def __init__(
        self,
        cache: CacheBackend,
        safety_margin_seconds: int = 300,
        default_ttl_seconds: int = 3600,
        timeout: float = 30.0,
        login_functions: Optional[Dict[CarrierCode, LoginFunction]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache
        self.safety_margin_seconds = safety_margin_seconds
        self.default_ttl_seconds = default_ttl_seconds
        self.timeout = timeout
        self._login_functions = login_functions
        self._transport = transport
        self._auth_clients: Dict[str, CarrierHTTPClient] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    @staticmethod
    def _cache_key(identity: CarrierIdentity) -> str:
        return f"token:{identity.key}"

    async def get_token(self, identity: CarrierIdentity) -> Credential:
        """
        Return a credential usable right now.

        Raises:
            AuthenticationFailed: secrets missing or the carrier refused them
        """
        scheme = identity.auth_scheme

        if scheme == AuthScheme.STATIC_TOKEN:
            token = identity.secret("token")
            if not token:
                raise AuthenticationFailed(
                    f"No static token configured for {identity.key}",
                    carrier=identity.carrier.value,
                )
            return AccessToken(
                value=token,
                issued_at=datetime.now(timezone.utc),
                expires_at=None,
                identity_key=identity.key,
            )

        if scheme == AuthScheme.FORM_CREDENTIALS:
            username, password = identity.secret("username"), identity.secret("password")
            if not (username and password):
                raise AuthenticationFailed(
                    f"No form credentials configured for {identity.key}",
                    carrier=identity.carrier.value,
                )
            return FormCredential(username=username, password=password, identity_key=identity.key)

        cached = await self._load(identity)
        if cached and cached.is_usable(self.safety_margin_seconds):
            return cached

        return await self._refresh_single_flight(identity)

    async def invalidate(self, identity: CarrierIdentity) -> None:
        """Evict the cached token so the next get_token refreshes."""
        await self.cache.delete(self._cache_key(identity))
        logger.info(f"[AUTH:{identity.key}] Token invalidated")

    async def close(self) -> None:
        for client in self._auth_clients.values():
            await client.close()
        self._auth_clients.clear()

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def _refresh_single_flight(self, identity: CarrierIdentity) -> AccessToken:
        key = identity.key
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(identity))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._on_refresh_done(k, t))
        else:
            logger.debug(f"[AUTH:{key}] Joining in-flight refresh")

        # shield: a cancelled waiter must not cancel the refresh others await
        return await asyncio.shield(task)

    def _on_refresh_done(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # mark retrieved even when every waiter was cancelled
            task.exception()

    async def _refresh(self, identity: CarrierIdentity) -> AccessToken:
        # A caller whose cache read predates the last refresh lands here
        # after that refresh finished; reuse its token instead of logging in.
        cached = await self._load(identity)
        if cached and cached.is_usable(self.safety_margin_seconds):
            logger.debug(f"[AUTH:{identity.key}] Token refreshed meanwhile, reusing it")
            return cached

        logger.info(f"[AUTH:{identity.key}] Refreshing {identity.auth_scheme.value} token")
        try:
            if identity.auth_scheme == AuthScheme.LOGIN_JWT:
                value, ttl = await self._login(identity)
            elif identity.auth_scheme == AuthScheme.OAUTH2_CLIENT_CREDENTIALS:
                value, ttl = await self._client_credentials(identity)
            else:
                raise AuthenticationFailed(
                    f"Unsupported auth scheme {identity.auth_scheme.value}",
                    carrier=identity.carrier.value,
                )
        except AuthenticationFailed:
            raise
        except GatewayError as e:
            raise AuthenticationFailed(
                f"Token refresh failed for {identity.key}: {e.message}",
                carrier=identity.carrier.value,
                details={"cause": e.code},
                raw=e.raw,
            ) from e

        if not value:
            raise AuthenticationFailed(
                f"Carrier returned an empty token for {identity.key}",
                carrier=identity.carrier.value,
            )

        ttl = ttl or identity.default_token_ttl_seconds or self.default_ttl_seconds
        issued_at = datetime.now(timezone.utc)
        token = AccessToken(
            value=value,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl),
            identity_key=identity.key,
        )
        await self._store(identity, token, ttl)
        logger.info(f"[AUTH:{identity.key}] Token obtained, expires in {ttl}s")
        return token

    async def _login(self, identity: CarrierIdentity) -> Tuple[str, Optional[int]]:
        registry = self._login_functions if self._login_functions is not None else _LOGIN_REGISTRY
        login = registry.get(identity.carrier)
        if login is None:
            raise AuthenticationFailed(
                f"No login function registered for {identity.carrier.value}",
                carrier=identity.carrier.value,
            )
        return await login(identity, self._auth_client(identity, identity.base_url))

    async def _client_credentials(self, identity: CarrierIdentity) -> Tuple[str, Optional[int]]:
        if not identity.auth_url:
            raise AuthenticationFailed(
                f"No auth URL configured for {identity.key}",
                carrier=identity.carrier.value,
            )

        auth_string = f"{identity.secret('client_id')}:{identity.secret('client_secret')}"
        auth_header = base64.b64encode(auth_string.encode()).decode()

        client = self._auth_client(identity, identity.auth_url)
        data = await client.post_json(
            identity.auth_url,
            headers={
                "Authorization": f"Basic {auth_header}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data={"grant_type": "client_credentials"},
        )

        if not isinstance(data, dict) or "access_token" not in data:
            raise AuthenticationFailed(
                f"Token endpoint response missing access_token for {identity.key}",
                carrier=identity.carrier.value,
                raw=data,
            )
        expires_in = data.get("expires_in")
        return data["access_token"], int(expires_in) if expires_in else None

    def _auth_client(self, identity: CarrierIdentity, base_url: str) -> CarrierHTTPClient:
        client = self._auth_clients.get(identity.key)
        if client is None:
            client = CarrierHTTPClient(
                identity.carrier.value,
                base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
            self._auth_clients[identity.key] = client
        return client

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _load(self, identity: CarrierIdentity) -> Optional[AccessToken]:
        data = await self.cache.get(self._cache_key(identity))
        if not data:
            return None
        return AccessToken(
            value=data["value"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
            identity_key=identity.key,
        )

    async def _store(self, identity: CarrierIdentity, token: AccessToken, ttl: int) -> None:
        await self.cache.set(
            self._cache_key(identity),
            {
                "value": token.value,
                "issued_at": token.issued_at.isoformat(),
                "expires_at": token.expires_at.isoformat() if token.expires_at else None,
            },
            ttl_seconds=ttl,
        )
