"""
Territory configuration for the Cayman Islands.

Everything the validator and the resolution chain need to know about the
territory lives in a single frozen ``TerritoryConfig``. Callers build one
(``default_territory()`` or ``load_territory(path)``) and pass it in, so tests
can swap in fixture tables without touching module state.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


@dataclass(frozen=True)
class Island:
    name: str
    bounds: BoundingBox
    center: Tuple[float, float]


@dataclass(frozen=True)
class TerritoryConfig:
    name: str
    country_code: str
    islands: Tuple[Island, ...]
    outer_bounds: BoundingBox
    main_island: str
    # (lat, max_west_lng) knots, north to south
    west_coastline: Tuple[Tuple[float, float], ...]
    offshore_categories: frozenset
    district_centroids: Mapping[str, Tuple[float, float]]
    district_islands: Mapping[str, str]
    verified_locations: Mapping[str, Tuple[float, float]]
    suspicious_points: Tuple[Tuple[float, float], ...] = field(default_factory=tuple)
    default_centroid: Tuple[float, float] = (19.3200, -81.3500)

    def island(self, name: Optional[str]) -> Optional[Island]:
        if not name:
            return None
        key = name.strip().lower()
        for isl in self.islands:
            if isl.name.lower() == key:
                return isl
        return None


_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_place_name(name: Optional[str]) -> str:
    """Lowercase, drop apostrophes, collapse everything else to single spaces."""
    if not name:
        return ""
    lowered = name.lower().replace("'", "").replace("’", "")
    return _NON_ALNUM.sub(" ", lowered).strip()


GRAND_CAYMAN = Island("Grand Cayman", BoundingBox(19.25, 19.40, -81.45, -81.05), (19.3133, -81.2546))
CAYMAN_BRAC = Island("Cayman Brac", BoundingBox(19.68, 19.75, -79.95, -79.70), (19.7167, -79.8833))
LITTLE_CAYMAN = Island("Little Cayman", BoundingBox(19.65, 19.72, -80.15, -79.95), (19.6833, -80.0667))

# Hand-tuned west coast of Grand Cayman (West Bay down to South Sound).
WEST_COASTLINE = (
    (19.395, -81.413),
    (19.390, -81.412),
    (19.385, -81.410),
    (19.380, -81.408),
    (19.375, -81.406),
    (19.370, -81.404),
    (19.365, -81.402),
    (19.360, -81.400),
    (19.355, -81.398),
    (19.350, -81.396),
    (19.345, -81.394),
    (19.340, -81.393),
    (19.335, -81.392),
    (19.330, -81.391),
    (19.325, -81.390),
    (19.320, -81.389),
    (19.315, -81.388),
    (19.310, -81.388),
    (19.305, -81.388),
    (19.300, -81.389),
    (19.295, -81.390),
    (19.290, -81.392),
    (19.285, -81.394),
    (19.280, -81.395),
    (19.275, -81.396),
    (19.270, -81.395),
)

OFFSHORE_CATEGORIES = frozenset(
    {
        "dive-site",
        "diving",
        "snorkeling",
        "water-activity",
        "water-sports",
        "watersports",
        "boat-tour",
        "tour",
        "sandbar",
    }
)

# Inland points, checked against the coastline table.
DISTRICT_CENTROIDS = {
    "west bay": (19.3750, -81.4000),
    "seven mile beach": (19.3400, -81.3880),
    "george town": (19.2900, -81.3800),
    "camana bay": (19.3271, -81.3775),
    "south sound": (19.2800, -81.3850),
    "prospect": (19.2920, -81.3550),
    "red bay": (19.2880, -81.3600),
    "savannah": (19.2800, -81.3300),
    "bodden town": (19.2850, -81.2500),
    "north side": (19.3500, -81.2000),
    "east end": (19.3050, -81.1000),
    "rum point": (19.3650, -81.2610),
    "cayman kai": (19.3680, -81.2650),
    "grand cayman": (19.3200, -81.3500),
    "stake bay": (19.7200, -79.8200),
    "creek": (19.7100, -79.8400),
    "spot bay": (19.7300, -79.7500),
    "cotton tree bay": (19.6967, -79.8756),
    "cayman brac": (19.7100, -79.8200),
    "blossom village": (19.6623, -80.0623),
    "point of sand": (19.6712, -79.9789),
    "little cayman": (19.6650, -80.0600),
}

DISTRICT_ISLANDS = {
    "west bay": "Grand Cayman",
    "seven mile beach": "Grand Cayman",
    "george town": "Grand Cayman",
    "camana bay": "Grand Cayman",
    "south sound": "Grand Cayman",
    "prospect": "Grand Cayman",
    "red bay": "Grand Cayman",
    "savannah": "Grand Cayman",
    "bodden town": "Grand Cayman",
    "north side": "Grand Cayman",
    "east end": "Grand Cayman",
    "rum point": "Grand Cayman",
    "cayman kai": "Grand Cayman",
    "stake bay": "Cayman Brac",
    "creek": "Cayman Brac",
    "spot bay": "Cayman Brac",
    "cotton tree bay": "Cayman Brac",
    "blossom village": "Little Cayman",
    "point of sand": "Little Cayman",
}

# Names are normalized with normalize_place_name when the table is built.
VERIFIED_LOCATIONS = {
    "seven mile beach": (19.3428, -81.3890),
    "cemetery beach": (19.3655, -81.3950),
    "governors beach": (19.3400, -81.3880),
    "public beach": (19.3428, -81.3890),
    "west bay public beach": (19.3700, -81.4000),
    "boatswains beach": (19.3810, -81.4050),
    "cayman turtle centre": (19.3636, -81.4000),
    "cayman turtle farm": (19.3636, -81.4000),
    "dolphin discovery grand cayman": (19.3636, -81.4000),
    "hell": (19.3870, -81.4000),
    "stingray city": (19.3757, -81.3048),
    "starfish point": (19.3563, -81.2835),
    "rum point": (19.3728, -81.2700),
    "kaibo beach bar": (19.3653, -81.2622),
    "spotts beach": (19.2705, -81.3146),
    "smith barcadere": (19.2766, -81.3900),
    "the ritz carlton grand cayman": (19.3350, -81.3870),
    "kimpton seafire resort": (19.3536, -81.3879),
    "westin grand cayman": (19.3350, -81.3880),
    "grand cayman marriott beach resort": (19.3320, -81.3880),
    "grand old house": (19.2920, -81.3778),
    "lobster pot": (19.2950, -81.3850),
    "the wharf": (19.3030, -81.3860),
    "camana bay": (19.3270, -81.3810),
    "george town": (19.2866, -81.3744),
    "owen roberts international airport": (19.2927, -81.3577),
    "pedro st james": (19.2680, -81.3180),
    "queen elizabeth ii botanic park": (19.3140, -81.1710),
    "cayman crystal caves": (19.3480, -81.1580),
    "mastic trail": (19.3200, -81.1900),
    "uss kittiwake": (19.3700, -81.4000),
    "heritage beach": (19.3030, -81.0950),
    "colliers public beach": (19.3075, -81.0885),
    "water cay public beach": (19.3547, -81.2755),
    "cayman kai public beach": (19.3690, -81.2665),
    "south sound public beach": (19.2750, -81.3850),
    "pageant beach": (19.2945, -81.3830),
    "long beach": (19.7150, -79.7700),
    "point of sand": (19.6550, -79.9600),
    "pirates point resort": (19.6590, -80.0997),
    "southern cross club": (19.6657, -80.0689),
    "little cayman beach resort": (19.6608, -80.0915),
    "charles kirkconnell international airport": (19.6870, -79.8828),
    "edward bodden airfield": (19.6600, -80.0900),
}

SUSPICIOUS_POINTS = (
    (19.3133, -81.2546),  # territory centroid
    (19.2956, -81.3812),  # generic George Town
    (19.2928, -81.3577),  # airport
)


def _freeze_points(table: Dict[str, Tuple[float, float]], normalize: bool = False) -> Mapping[str, Tuple[float, float]]:
    frozen: Dict[str, Tuple[float, float]] = {}
    for key, (lat, lng) in table.items():
        name = normalize_place_name(key) if normalize else key.strip().lower()
        frozen[name] = (float(lat), float(lng))
    return MappingProxyType(frozen)


def default_territory() -> TerritoryConfig:
    return TerritoryConfig(
        name="Cayman Islands",
        country_code="ky",
        islands=(GRAND_CAYMAN, CAYMAN_BRAC, LITTLE_CAYMAN),
        outer_bounds=BoundingBox(19.20, 19.80, -81.55, -79.65),
        main_island=GRAND_CAYMAN.name,
        west_coastline=WEST_COASTLINE,
        offshore_categories=OFFSHORE_CATEGORIES,
        district_centroids=_freeze_points(DISTRICT_CENTROIDS),
        district_islands=MappingProxyType(dict(DISTRICT_ISLANDS)),
        verified_locations=_freeze_points(VERIFIED_LOCATIONS, normalize=True),
        suspicious_points=SUSPICIOUS_POINTS,
    )


def load_territory(path: str | Path, base: Optional[TerritoryConfig] = None) -> TerritoryConfig:
    """
    Overlay verified locations / district centroids from a JSON file.

    Expected shape::

        {"verifiedLocations": {"name": [lat, lng]},
         "districtCentroids": {"district": [lat, lng]}}

    Keys present in the file extend (and override) the base tables.
    """
    base = base or default_territory()
    data = json.loads(Path(path).read_text(encoding="utf-8"))

    verified = dict(base.verified_locations)
    for name, point in (data.get("verifiedLocations") or {}).items():
        verified[normalize_place_name(name)] = (float(point[0]), float(point[1]))

    centroids = dict(base.district_centroids)
    for name, point in (data.get("districtCentroids") or {}).items():
        centroids[name.strip().lower()] = (float(point[0]), float(point[1]))

    return TerritoryConfig(
        name=base.name,
        country_code=base.country_code,
        islands=base.islands,
        outer_bounds=base.outer_bounds,
        main_island=base.main_island,
        west_coastline=base.west_coastline,
        offshore_categories=base.offshore_categories,
        district_centroids=MappingProxyType(centroids),
        district_islands=base.district_islands,
        verified_locations=MappingProxyType(verified),
        suspicious_points=base.suspicious_points,
        default_centroid=base.default_centroid,
    )
