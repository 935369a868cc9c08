"""
Carrier Registry and Factory

- CarrierFactory creates carrier adapters based on CarrierCode
- Only carriers with at least one configured identity are built
- Each adapter gets its own HTTP client so carriers never share a pool
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Type

import httpx

from courier_gateway.core.http_client import CarrierHTTPClient
from courier_gateway.models.carrier import CarrierCode, CarrierIdentity
from courier_gateway.modules.shipping.carriers.base import BaseCarrier

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierCode, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.DELHIVERY)
        class DelhiveryCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        _CARRIER_REGISTRY[carrier_code] = cls
        logger.debug(f"Registered carrier: {carrier_code.value} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """Factory for creating carrier adapters from configured identities."""

    @classmethod
    def get_carrier(
        cls,
        carrier_code: CarrierCode,
        identities: List[CarrierIdentity],
        credential_store,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Optional[BaseCarrier]:
        """
        Build one adapter.

        Returns:
            BaseCarrier instance or None if no implementation/identity
        """
        carrier_cls = _CARRIER_REGISTRY.get(carrier_code)
        if not carrier_cls:
            logger.warning(f"No implementation registered for carrier: {carrier_code.value}")
            return None
        if not identities:
            logger.debug(f"Carrier {carrier_code.value} has no identities, skipping")
            return None

        http_client = CarrierHTTPClient(
            carrier_code.value,
            identities[0].base_url,
            timeout=timeout,
            transport=transport,
        )
        return carrier_cls(identities, credential_store, http_client)

    @classmethod
    def build_all(
        cls,
        identities: List[CarrierIdentity],
        credential_store,
        timeout: float = 30.0,
        transports: Optional[Dict[CarrierCode, httpx.AsyncBaseTransport]] = None,
    ) -> Dict[CarrierCode, BaseCarrier]:
        """Build one adapter per carrier that has identities."""
        grouped: Dict[CarrierCode, List[CarrierIdentity]] = defaultdict(list)
        for identity in identities:
            grouped[identity.carrier].append(identity)

        carriers: Dict[CarrierCode, BaseCarrier] = {}
        for code, carrier_identities in grouped.items():
            transport = (transports or {}).get(code)
            carrier = cls.get_carrier(code, carrier_identities, credential_store, timeout, transport)
            if carrier:
                carriers[code] = carrier
                logger.info(
                    f"Carrier enabled: {code.value} "
                    f"(tiers={[i.service_tier for i in carrier_identities]})"
                )
        return carriers

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from courier_gateway.modules.shipping.carriers.bluedart import BlueDartCarrier  # noqa: E402, F401
from courier_gateway.modules.shipping.carriers.delhivery import DelhiveryCarrier  # noqa: E402, F401
from courier_gateway.modules.shipping.carriers.ecomexpress import EcomExpressCarrier  # noqa: E402, F401
from courier_gateway.modules.shipping.carriers.ekart import EkartCarrier  # noqa: E402, F401
from courier_gateway.modules.shipping.carriers.xpressbees import XpressBeesCarrier  # noqa: E402, F401
