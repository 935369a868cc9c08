"""
Gateway configuration

Settings come from the environment (or .env). Carrier credentials are
optional: a carrier with missing credentials is simply not configured and
build_identities() skips it with a warning.

SECURITY: production refuses carrier sandbox/staging base URLs.
"""
import logging
import os
from typing import List

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from courier_gateway.models.carrier import AuthScheme, CarrierCode, CarrierIdentity

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = "Courier Gateway"
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # Redis (tokens, waybills). Empty = in-process cache only.
    REDIS_URL: str = ""
    CACHE_KEY_PREFIX: str = "courier_gateway:"

    # Gateway call policy
    GATEWAY_REQUEST_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_BACKOFF_BASE_SECONDS: float = 0.5
    GATEWAY_BACKOFF_MAX_SECONDS: float = 8.0
    GATEWAY_BACKOFF_JITTER: float = 0.25

    # Token lifecycle
    TOKEN_SAFETY_MARGIN_SECONDS: int = 300
    TOKEN_DEFAULT_TTL_SECONDS: int = 3600

    # Waybill pool
    WAYBILL_REPLENISHMENT_FLOOR: int = 1000

    # Health monitor (own timeout, separate from user traffic)
    HEALTH_MONITOR_ENABLED: bool = True
    HEALTH_PROBE_INTERVAL_SECONDS: int = 300
    HEALTH_PROBE_TIMEOUT_SECONDS: float = 10.0
    HEALTH_PROBE_SLA_MS: int = 2000
    HEALTH_PROBE_PINCODE: str = "110001"

    # Pricing
    GST_RATE: float = 0.18

    # Delhivery (static token)
    DELHIVERY_API_TOKEN: str = ""
    DELHIVERY_CLIENT_NAME: str = ""
    DELHIVERY_BASE_URL: str = "https://track.delhivery.com"

    # XpressBees (login JWT)
    XPRESSBEES_EMAIL: str = ""
    XPRESSBEES_PASSWORD: str = ""
    XPRESSBEES_BASE_URL: str = "https://shipment.xpressbees.com"

    # Ekart (OAuth2 client credentials)
    EKART_CLIENT_ID: str = ""
    EKART_CLIENT_SECRET: str = ""
    EKART_BASE_URL: str = "https://app.elite.ekartlogistics.in"
    EKART_AUTH_URL: str = "https://app.elite.ekartlogistics.in/integrations/v2/auth/token"

    # Ecom Express (form credentials, one shipper code per service tier)
    ECOMEXPRESS_BASE_URL: str = "https://api.ecomexpress.in"
    ECOMEXPRESS_BA_USERNAME: str = ""
    ECOMEXPRESS_BA_PASSWORD: str = ""
    ECOMEXPRESS_EXSPLUS_USERNAME: str = ""
    ECOMEXPRESS_EXSPLUS_PASSWORD: str = ""

    # Blue Dart (login JWT through the API gateway, profile on every call)
    BLUEDART_BASE_URL: str = "https://apigateway.bluedart.com"
    BLUEDART_CLIENT_ID: str = ""
    BLUEDART_CLIENT_SECRET: str = ""
    BLUEDART_LOGIN_ID: str = ""
    BLUEDART_LICENSE_KEY: str = ""
    BLUEDART_CUSTOMER_CODE: str = ""
    BLUEDART_ORIGIN_AREA: str = ""

    @model_validator(mode="after")
    def validate_production_config(self):
        """Catch staging endpoints leaking into production."""
        if self.ENVIRONMENT == "production":
            urls = [
                self.DELHIVERY_BASE_URL,
                self.XPRESSBEES_BASE_URL,
                self.EKART_BASE_URL,
                self.ECOMEXPRESS_BASE_URL,
                self.BLUEDART_BASE_URL,
            ]
            errors = [
                f"Sandbox/staging carrier URL '{url}' is forbidden in production"
                for url in urls
                if any(marker in url for marker in ("staging", "sandbox", "clbeta"))
            ]
            if errors:
                raise ValueError(
                    "PRODUCTION CONFIG VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )
        return self


def build_identities(config: Settings) -> List[CarrierIdentity]:
    """
    Turn configured credentials into CarrierIdentity values.

    Carriers missing any required secret are skipped.
    """
    identities: List[CarrierIdentity] = []

    if config.DELHIVERY_API_TOKEN:
        identities.append(CarrierIdentity(
            carrier=CarrierCode.DELHIVERY,
            service_tier="surface",
            auth_scheme=AuthScheme.STATIC_TOKEN,
            secrets={"token": config.DELHIVERY_API_TOKEN, "client_name": config.DELHIVERY_CLIENT_NAME},
            base_url=config.DELHIVERY_BASE_URL,
        ))
    else:
        logger.warning("Delhivery credentials not configured, carrier disabled")

    if config.XPRESSBEES_EMAIL and config.XPRESSBEES_PASSWORD:
        identities.append(CarrierIdentity(
            carrier=CarrierCode.XPRESSBEES,
            service_tier="standard",
            auth_scheme=AuthScheme.LOGIN_JWT,
            secrets={"email": config.XPRESSBEES_EMAIL, "password": config.XPRESSBEES_PASSWORD},
            base_url=config.XPRESSBEES_BASE_URL,
            default_token_ttl_seconds=config.TOKEN_DEFAULT_TTL_SECONDS,
        ))
    else:
        logger.warning("XpressBees credentials not configured, carrier disabled")

    if config.EKART_CLIENT_ID and config.EKART_CLIENT_SECRET:
        identities.append(CarrierIdentity(
            carrier=CarrierCode.EKART,
            service_tier="surface",
            auth_scheme=AuthScheme.OAUTH2_CLIENT_CREDENTIALS,
            secrets={"client_id": config.EKART_CLIENT_ID, "client_secret": config.EKART_CLIENT_SECRET},
            base_url=config.EKART_BASE_URL,
            auth_url=config.EKART_AUTH_URL,
            default_token_ttl_seconds=config.TOKEN_DEFAULT_TTL_SECONDS,
        ))
    else:
        logger.warning("Ekart credentials not configured, carrier disabled")

    for tier in ("BA", "EXSPLUS"):
        username = getattr(config, f"ECOMEXPRESS_{tier}_USERNAME")
        password = getattr(config, f"ECOMEXPRESS_{tier}_PASSWORD")
        if username and password:
            identities.append(CarrierIdentity(
                carrier=CarrierCode.ECOMEXPRESS,
                service_tier=tier,
                auth_scheme=AuthScheme.FORM_CREDENTIALS,
                secrets={"username": username, "password": password},
                base_url=config.ECOMEXPRESS_BASE_URL,
            ))

    bluedart_required = (
        config.BLUEDART_CLIENT_ID,
        config.BLUEDART_CLIENT_SECRET,
        config.BLUEDART_LOGIN_ID,
        config.BLUEDART_LICENSE_KEY,
    )
    if all(bluedart_required):
        identities.append(CarrierIdentity(
            carrier=CarrierCode.BLUEDART,
            service_tier="air",
            auth_scheme=AuthScheme.LOGIN_JWT,
            secrets={
                "client_id": config.BLUEDART_CLIENT_ID,
                "client_secret": config.BLUEDART_CLIENT_SECRET,
                "login_id": config.BLUEDART_LOGIN_ID,
                "license_key": config.BLUEDART_LICENSE_KEY,
                "customer_code": config.BLUEDART_CUSTOMER_CODE,
                "origin_area": config.BLUEDART_ORIGIN_AREA,
            },
            base_url=config.BLUEDART_BASE_URL,
            default_token_ttl_seconds=config.TOKEN_DEFAULT_TTL_SECONDS,
        ))
    else:
        logger.warning("Blue Dart credentials not configured, carrier disabled")

    return identities


try:
    settings = Settings()
except Exception:
    if os.getenv("ENVIRONMENT", "development") == "development":
        logger.warning("Settings validation failed, using development defaults.")
        os.environ.setdefault("ENVIRONMENT", "development")
        settings = Settings(ENVIRONMENT="development")
    else:
        raise
