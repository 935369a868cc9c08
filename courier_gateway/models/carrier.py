"""
Carrier identity and credential models.

A carrier may have several identities (one per shipper code / service
tier). Identities are tagged with their auth scheme; the credential store
dispatches on the tag rather than on a class hierarchy.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import List, Mapping, Optional


class CarrierCode(str, enum.Enum):
    """
    Supported shipping carriers.

    Each carrier is enabled by configuring its credentials.
    """
    DELHIVERY = "DELHIVERY"
    XPRESSBEES = "XPRESSBEES"
    EKART = "EKART"
    ECOMEXPRESS = "ECOMEXPRESS"
    BLUEDART = "BLUEDART"


class AuthScheme(str, enum.Enum):
    """How a carrier identity authenticates."""
    STATIC_TOKEN = "static_token"
    LOGIN_JWT = "login_jwt"
    OAUTH2_CLIENT_CREDENTIALS = "oauth2_client_credentials"
    FORM_CREDENTIALS = "form_credentials"


@dataclass(frozen=True)
class CarrierIdentity:
    """A named credential set. Immutable after configuration load."""
    carrier: CarrierCode
    service_tier: str
    auth_scheme: AuthScheme
    secrets: Mapping[str, str]
    base_url: str
    auth_url: Optional[str] = None
    default_token_ttl_seconds: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "secrets", MappingProxyType(dict(self.secrets)))

    @property
    def key(self) -> str:
        """Stable cache key for this identity."""
        return f"{self.carrier.value}:{self.service_tier}"

    def secret(self, name: str) -> str:
        return self.secrets.get(name, "")

    def __repr__(self) -> str:
        # secrets stay out of logs
        return (
            f"CarrierIdentity(carrier={self.carrier.value!r}, "
            f"service_tier={self.service_tier!r}, auth_scheme={self.auth_scheme.value!r})"
        )


@dataclass(frozen=True)
class AccessToken:
    """Derived, ephemeral bearer credential."""
    value: str
    issued_at: datetime
    expires_at: Optional[datetime]
    identity_key: str

    def is_usable(self, safety_margin_seconds: int, now: Optional[datetime] = None) -> bool:
        """False once we are within the safety margin of expiry."""
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() > safety_margin_seconds


@dataclass(frozen=True)
class FormCredential:
    """Username/password pair embedded in every request body."""
    username: str
    password: str
    identity_key: str

    def __repr__(self) -> str:
        return f"FormCredential(username={self.username!r}, identity_key={self.identity_key!r})"


@dataclass(frozen=True)
class Waybill:
    """Carrier-issued shipment identifier reserved before booking."""
    number: str
    carrier: CarrierCode


@dataclass
class WaybillBatch:
    """
    Result of a bulk waybill fetch.

    manual_process marks carriers that assign AWBs at booking time and
    cannot pre-fetch; such a batch is always empty.
    """
    waybills: List[Waybill] = field(default_factory=list)
    manual_process: bool = False
