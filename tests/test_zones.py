"""
Tests for zone resolution.
"""
import itertools

import pytest

from courier_gateway.models.shipment import Location, Zone
from courier_gateway.services.zones import determine_zone, region_of


def loc(city, state, pincode="110001", region=None):
    return Location(pincode=pincode, city=city, state=state, region=region)


class TestDetermineZone:

    @pytest.mark.parametrize("origin,destination,expected", [
        (loc("Mumbai", "Maharashtra"), loc("Mumbai", "Maharashtra"), Zone.WITHIN_CITY),
        (loc("Pune", "Maharashtra"), loc("Nagpur", "Maharashtra"), Zone.WITHIN_STATE),
        (loc("Delhi", "Delhi"), loc("Chandigarh", "Chandigarh"), Zone.WITHIN_REGION),
        (loc("Mumbai", "Maharashtra"), loc("Bengaluru", "Karnataka"), Zone.METRO_TO_METRO),
        (loc("Kolkata", "West Bengal"), loc("Chennai", "Tamil Nadu"), Zone.METRO_TO_METRO),
        (loc("Jaipur", "Rajasthan"), loc("Kochi", "Kerala"), Zone.REST_OF_INDIA),
        (loc("Delhi", "Delhi"), loc("Guwahati", "Assam"), Zone.SPECIAL_ZONE),
        (loc("Delhi", "Delhi"), loc("Srinagar", "Jammu & Kashmir"), Zone.SPECIAL_ZONE),
    ])
    def test_precedence(self, origin, destination, expected):
        assert determine_zone(origin, destination) == expected

    def test_special_region_beats_same_city(self):
        assert determine_zone(loc("Guwahati", "Assam"), loc("Guwahati", "Assam")) == Zone.SPECIAL_ZONE

    def test_same_city_beats_metro(self):
        assert determine_zone(loc("Delhi", "Delhi"), loc("Delhi", "Delhi")) == Zone.WITHIN_CITY

    def test_case_and_whitespace_insensitive(self):
        assert determine_zone(loc("MUMBAI", "maharashtra"), loc("  mumbai ", "Maharashtra")) == Zone.WITHIN_CITY
        assert determine_zone(loc("Pune", "MAHARASHTRA"), loc("Nashik", " maharashtra")) == Zone.WITHIN_STATE

    def test_declared_region_overrides_state_table(self):
        origin = loc("Indore", "Madhya Pradesh", region="Central-West")
        destination = loc("Surat", "Gujarat", region="central-west")
        assert determine_zone(origin, destination) == Zone.WITHIN_REGION

    def test_unknown_states_fall_through(self):
        assert determine_zone(loc("Atlantis", "Nowhere"), loc("Lemuria", "Elsewhere")) == Zone.REST_OF_INDIA

    def test_total_and_deterministic(self):
        places = [
            loc("Mumbai", "Maharashtra"),
            loc("Pune", "Maharashtra"),
            loc("Delhi", "Delhi"),
            loc("Gurugram", "Haryana"),
            loc("Bengaluru", "Karnataka"),
            loc("Imphal", "Manipur"),
            loc("", ""),
        ]
        for origin, destination in itertools.product(places, repeat=2):
            first = determine_zone(origin, destination)
            assert isinstance(first, Zone)
            assert all(determine_zone(origin, destination) == first for _ in range(3))


class TestRegionOf:

    def test_from_state_table(self):
        assert region_of(loc("Chennai", "Tamil Nadu")) == "south"

    def test_unknown_state(self):
        assert region_of(loc("X", "Unknown")) is None
