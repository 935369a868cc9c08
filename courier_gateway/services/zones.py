"""
Zone resolution for Indian domestic shipments.

Precedence, first match wins:
    1. destination state in the special-handling set -> SPECIAL_ZONE
    2. same city                                     -> WITHIN_CITY
    3. same state                                    -> WITHIN_STATE
    4. same region                                   -> WITHIN_REGION
    5. both cities metro                             -> METRO_TO_METRO
    6. otherwise                                     -> REST_OF_INDIA

Names compare case- and whitespace-insensitively.
"""
from typing import Optional

from courier_gateway.models.shipment import Location, Zone

METRO_CITIES = frozenset({
    "mumbai",
    "delhi",
    "new delhi",
    "bangalore",
    "bengaluru",
    "kolkata",
    "chennai",
    "hyderabad",
    "pune",
    "ahmedabad",
})

# North-East states plus Jammu & Kashmir
SPECIAL_STATES = frozenset({
    "arunachal pradesh",
    "assam",
    "manipur",
    "meghalaya",
    "mizoram",
    "nagaland",
    "tripura",
    "sikkim",
    "jammu & kashmir",
    "jammu and kashmir",
})

STATE_REGIONS = {
    # North
    "delhi": "north",
    "haryana": "north",
    "punjab": "north",
    "chandigarh": "north",
    "himachal pradesh": "north",
    "uttarakhand": "north",
    "uttar pradesh": "north",
    "rajasthan": "north",
    "jammu & kashmir": "north",
    "jammu and kashmir": "north",
    "ladakh": "north",
    # West
    "maharashtra": "west",
    "gujarat": "west",
    "goa": "west",
    "dadra and nagar haveli and daman and diu": "west",
    # Central
    "madhya pradesh": "central",
    "chhattisgarh": "central",
    # South
    "karnataka": "south",
    "tamil nadu": "south",
    "kerala": "south",
    "andhra pradesh": "south",
    "telangana": "south",
    "puducherry": "south",
    "lakshadweep": "south",
    # East
    "west bengal": "east",
    "odisha": "east",
    "bihar": "east",
    "jharkhand": "east",
    "andaman and nicobar islands": "east",
    # North-East
    "assam": "north_east",
    "arunachal pradesh": "north_east",
    "manipur": "north_east",
    "meghalaya": "north_east",
    "mizoram": "north_east",
    "nagaland": "north_east",
    "tripura": "north_east",
    "sikkim": "north_east",
}


def _norm(value: Optional[str]) -> str:
    return " ".join((value or "").lower().split())


def region_of(location: Location) -> Optional[str]:
    """Declared region, else the region of the location's state."""
    if location.region:
        return _norm(location.region)
    return STATE_REGIONS.get(_norm(location.state))


def determine_zone(origin: Location, destination: Location) -> Zone:
    """Classify an origin/destination pair. Total and deterministic."""
    origin_city, dest_city = _norm(origin.city), _norm(destination.city)
    origin_state, dest_state = _norm(origin.state), _norm(destination.state)

    if dest_state in SPECIAL_STATES:
        return Zone.SPECIAL_ZONE

    if origin_city and origin_city == dest_city:
        return Zone.WITHIN_CITY

    if origin_state and origin_state == dest_state:
        return Zone.WITHIN_STATE

    origin_region = region_of(origin)
    if origin_region and origin_region == region_of(destination):
        return Zone.WITHIN_REGION

    if origin_city in METRO_CITIES and dest_city in METRO_CITIES:
        return Zone.METRO_TO_METRO

    return Zone.REST_OF_INDIA
