import random
from dataclasses import replace
from types import MappingProxyType
from unittest.mock import patch

import pytest

from domain.models import Coordinates, GeocodeResult, Location, PlaceRecord
from domain.territory import default_territory
from services.duplicates import haversine_km
from services.geocoding import MapsSearchScrapeAdapter, NominatimAdapter, PhotonAdapter
from services.resolution_chain import FALLBACK_SOURCE, ResolutionChain


class FakeAdapter:
    def __init__(self, name, confidence, answers=None, tier="fast"):
        self.name = name
        self.confidence = confidence
        self.tier = tier
        self.answers = answers or {}
        self.calls = []

    def geocode(self, query):
        self.calls.append(query)
        point = self.answers.get(query, self.answers.get("*"))
        if point is None:
            return None
        return GeocodeResult(point[0], point[1], self.confidence, self.name)


def _record(rid="r1", name="Some Cafe", category="restaurant", district=None, island=None,
            address=None, coords=None, provenance=None, confidence=None):
    return PlaceRecord(
        id=rid,
        name=name,
        category=category,
        location=Location(
            address=address,
            district=district,
            island=island,
            coordinates=Coordinates(*coords) if coords else None,
        ),
        provenance=dict(provenance or {}),
        coordinate_confidence=confidence,
    )


@pytest.fixture
def territory():
    return default_territory()


@patch("services.geocoding._session.get")
def test_verified_name_resolves_without_network(mock_get, territory):
    adapters = [
        PhotonAdapter(territory, 0.85),
        NominatimAdapter(territory, 0.9),
        MapsSearchScrapeAdapter(territory, 0.95),
    ]
    chain = ResolutionChain(territory, adapters, rng=random.Random(1))

    result = chain.resolve(_record(name="Stingray City", category="tour"))

    assert (result.lat, result.lng) == (19.3757, -81.3048)
    assert result.confidence == 1.0
    assert result.source == "verified"
    mock_get.assert_not_called()


def test_partial_verified_match(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(1))
    result = chain.resolve(_record(name="Kaibo Beach Bar & Grill"))
    assert result.source == "verified-partial"
    assert result.confidence == 0.95


def test_injected_fixture_table_is_used(territory):
    fixture = replace(territory, verified_locations=MappingProxyType({"test lagoon": (19.30, -81.20)}))
    chain = ResolutionChain(fixture, [], rng=random.Random(1))

    assert chain.resolve(_record(name="Test Lagoon")).source == "verified"
    assert chain.resolve(_record(name="Stingray City")).source == FALLBACK_SOURCE


def test_build_queries_specific_to_generic_without_blanks(territory):
    chain = ResolutionChain(territory, [])
    record = _record(name="Cafe Del Sol", address="Camana Bay", district="George Town", island="Grand Cayman")

    assert chain.build_queries(record) == [
        "Cafe Del Sol, Camana Bay, George Town, Grand Cayman, Cayman Islands",
        "Cafe Del Sol, George Town, Grand Cayman, Cayman Islands",
        "Cafe Del Sol, Grand Cayman, Cayman Islands",
        "Camana Bay, Cayman Islands",
        "Cafe Del Sol, Cayman Islands",
    ]
    assert chain.build_queries(_record(name="Cafe Del Sol")) == ["Cafe Del Sol, Cayman Islands"]


def test_highest_confidence_wins_and_ties_go_to_earlier_adapter(territory):
    a = FakeAdapter("a", 0.85, {"*": (19.30, -81.30)})
    b = FakeAdapter("b", 0.90, {"*": (19.31, -81.31)})
    c = FakeAdapter("c", 0.90, {"*": (19.32, -81.32)})
    chain = ResolutionChain(territory, [a, b, c])

    result = chain.resolve(_record(name="Unknown Spot"))

    assert result.source == "b"


def test_stops_at_first_query_with_a_hit(territory):
    record = _record(name="Unknown Spot", island="Grand Cayman")
    chain = ResolutionChain(territory, [])
    queries = chain.build_queries(record)
    adapter = FakeAdapter("a", 0.9, {queries[1]: (19.30, -81.30)})
    chain = ResolutionChain(territory, [adapter])

    result = chain.resolve(record)

    assert result.source == "a"
    assert adapter.calls == queries[:2]


def test_last_resort_only_after_fast_adapters_fail_and_only_first_query(territory):
    fast = FakeAdapter("fast", 0.9)
    slow = FakeAdapter("scrape", 0.95, {"*": (19.3653, -81.2622)}, tier="last_resort")
    record = _record(name="Hidden Shack", island="Grand Cayman")
    chain = ResolutionChain(territory, [fast, slow])

    result = chain.resolve(record)

    assert result.source == "scrape"
    assert len(fast.calls) == len(chain.build_queries(record))
    assert slow.calls == chain.build_queries(record)[:1]


def test_fallback_uses_district_centroid_with_valid_jitter(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(3))
    record = _record(name="Nameless", district="George Town")

    result = chain.resolve(record)

    assert result.source == FALLBACK_SOURCE
    assert result.confidence == 0.3
    lat0, lng0 = territory.district_centroids["george town"]
    assert abs(result.lat - lat0) <= 0.0025
    assert abs(result.lng - lng0) <= 0.0025
    assert chain.validator.validate(result.lat, result.lng, "restaurant").valid


def test_fallback_is_deterministic_for_a_seed(territory):
    record = _record(name="Nameless", district="Bodden Town")
    r1 = ResolutionChain(territory, [], rng=random.Random(42)).resolve(record)
    r2 = ResolutionChain(territory, [], rng=random.Random(42)).resolve(record)
    assert r1 == r2


def test_fallback_prefers_island_then_territory_centroid(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(5))
    brac = chain.fallback(_record(name="Nameless", island="Cayman Brac"))
    assert brac.display_name == "cayman brac"
    assert chain.validator.detect_island(brac.lat, brac.lng) == "Cayman Brac"

    nowhere = chain.fallback(_record(name="Nameless"))
    assert nowhere.display_name == "cayman islands"


def test_apply_writes_verified_over_distant_existing(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(1))
    record = _record(name="Stingray City", category="tour", coords=(19.30, -81.20))

    updated, correction = chain.apply(record, chain.resolve(record))

    assert updated.coordinates == Coordinates(19.3757, -81.3048)
    assert updated.coordinate_source == "verified"
    assert updated.precision["decimals"] >= 4
    assert correction is not None
    assert correction.old == Coordinates(19.30, -81.20)
    assert correction.distance_km == pytest.approx(haversine_km(19.30, -81.20, 19.3757, -81.3048))
    assert record.coordinates == Coordinates(19.30, -81.20)


def test_apply_ignores_moves_under_threshold(territory):
    chain = ResolutionChain(territory, [])
    record = _record(name="Stingray City", category="tour", coords=(19.3760, -81.3050))
    updated, correction = chain.apply(record, chain.resolve(record))
    assert correction is None
    assert updated is record


def test_fallback_never_overwrites_valid_existing(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(1))
    record = _record(name="Nameless", district="East End", coords=(19.2866, -81.3744))
    updated, correction = chain.apply(record, chain.resolve(record))
    assert correction is None
    assert updated.coordinates == Coordinates(19.2866, -81.3744)


def test_fallback_replaces_invalid_existing(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(1))
    record = _record(name="Nameless", district="George Town", coords=(19.33, -81.50))
    updated, correction = chain.apply(record, chain.resolve(record))
    assert correction is not None
    assert updated.coordinate_source == FALLBACK_SOURCE
    assert chain.validator.validate_coordinates(updated.coordinates, "restaurant").valid


def test_geocode_does_not_replace_verified(territory):
    chain = ResolutionChain(territory, [])
    record = _record(name="Somewhere", coords=(19.3428, -81.3890), provenance={"coordinates": "verified"})
    weak = GeocodeResult(19.2866, -81.3744, 0.85, "photon")
    _, correction = chain.apply(record, weak)
    assert correction is None


def test_geocode_in_sea_is_nudged_east_of_coast(territory):
    chain = ResolutionChain(territory, [], rng=random.Random(9))
    record = _record(name="Beach Grill")
    updated, correction = chain.apply(record, GeocodeResult(19.33, -81.50, 0.9, "nominatim"))

    assert correction is not None
    assert updated.coordinate_source == "geocode:nominatim+coast-fix"
    assert updated.coordinates.lng > chain.validator.coastline_lng(19.33)


def test_apply_is_idempotent(territory):
    adapter = FakeAdapter("nominatim", 0.9, {"*": (19.2950, -81.3850)})
    chain = ResolutionChain(territory, [adapter], rng=random.Random(2))
    records = [
        _record(rid="a", name="Stingray City", category="tour", coords=(19.30, -81.20)),
        _record(rid="b", name="Some Cafe", coords=(19.33, -81.50)),
        _record(rid="c", name="Lonely Place", district="Savannah"),
    ]

    once = [chain.apply(r, chain.resolve_final(r))[0] for r in records]
    twice = [chain.apply(r, chain.resolve_final(r)) for r in once]

    for first, (second, correction) in zip(once, twice):
        assert correction is None
        assert second == first
