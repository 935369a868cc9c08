"""
Rate-card repository.

The surrounding application owns rate cards; the gateway only asks for
the cards that apply to a zone and carrier. StaticRateCardRepository
serves the default 0.5 kg slab table and is used when nothing else is
plugged in.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from courier_gateway.models.carrier import CarrierCode
from courier_gateway.models.shipment import RateCard, Zone


class RateCardRepository(ABC):
    """Source of zone price rows."""

    @abstractmethod
    def rates_for_zone(self, zone: Zone, carrier: CarrierCode) -> List[RateCard]:
        """All cards (one per service) for a carrier in a zone. May be empty."""


# (base, additional per 0.5 kg) per zone
ZoneRates = Dict[Zone, Tuple[str, str]]

# carrier -> (service name, zone rates, cod fee, cod percent)
# Live-rated carriers (Delhivery) are priced by their API and have no row.
DEFAULT_RATE_TABLE: Dict[CarrierCode, Tuple[str, ZoneRates, str, str]] = {
    CarrierCode.XPRESSBEES: (
        "Air",
        {
            Zone.WITHIN_CITY: ("27", "16"),
            Zone.WITHIN_STATE: ("27", "16"),
            Zone.METRO_TO_METRO: ("37", "34"),
            Zone.REST_OF_INDIA: ("51", "40"),
            Zone.SPECIAL_ZONE: ("55", "47"),
        },
        "27",
        "1.18",
    ),
    CarrierCode.EKART: (
        "Surface",
        {
            Zone.WITHIN_CITY: ("31", "29"),
            Zone.WITHIN_STATE: ("33", "31"),
            Zone.METRO_TO_METRO: ("38", "36"),
            Zone.REST_OF_INDIA: ("40", "38"),
            Zone.SPECIAL_ZONE: ("45", "43"),
        },
        "30",
        "1.5",
    ),
    CarrierCode.ECOMEXPRESS: (
        "Standard",
        {
            Zone.WITHIN_CITY: ("37", "36"),
            Zone.WITHIN_STATE: ("45", "43"),
            Zone.METRO_TO_METRO: ("48", "47"),
            Zone.REST_OF_INDIA: ("49", "48"),
            Zone.SPECIAL_ZONE: ("64", "62"),
        },
        "35",
        "1.5",
    ),
    CarrierCode.BLUEDART: (
        "Air",
        {
            Zone.WITHIN_CITY: ("37", "36"),
            Zone.WITHIN_STATE: ("45", "43"),
            Zone.METRO_TO_METRO: ("48", "47"),
            Zone.REST_OF_INDIA: ("49", "48"),
            Zone.SPECIAL_ZONE: ("64", "62"),
        },
        "35",
        "1.5",
    ),
}

# Zones the table has no column for
ZONE_FALLBACK = {
    Zone.WITHIN_REGION: Zone.REST_OF_INDIA,
}


def default_rate_cards() -> List[Tuple[Zone, RateCard]]:
    """Expand DEFAULT_RATE_TABLE into RateCard rows, one per zone column."""
    cards = []
    for carrier, (service, zones, cod_fee, cod_percent) in DEFAULT_RATE_TABLE.items():
        for zone, (base, addl) in zones.items():
            cards.append((zone, RateCard(
                carrier=carrier,
                service_name=service,
                base_rate=Decimal(base),
                addl_rate=Decimal(addl),
                cod_fee=Decimal(cod_fee),
                cod_percent=Decimal(cod_percent),
                rto_rate=Decimal(addl),
            )))
    return cards


class StaticRateCardRepository(RateCardRepository):
    """In-memory rate cards keyed by (zone, carrier)."""

    def __init__(self, cards: Optional[Iterable[Tuple[Zone, RateCard]]] = None):
        self._cards: Dict[Tuple[Zone, CarrierCode], List[RateCard]] = {}
        for zone, card in (cards if cards is not None else default_rate_cards()):
            self._cards.setdefault((zone, card.carrier), []).append(card)

    def rates_for_zone(self, zone: Zone, carrier: CarrierCode) -> List[RateCard]:
        cards = self._cards.get((zone, carrier))
        if cards is None and zone in ZONE_FALLBACK:
            cards = self._cards.get((ZONE_FALLBACK[zone], carrier))
        return list(cards or [])
