"""
Bounds and coastline validation for territory coordinates.

A single bounding box per island is too coarse for Grand Cayman's west coast
(Seven Mile Beach and West Bay curve in and out), so the main island also
carries a latitude-indexed coastline table: for a given latitude, anything
west of the interpolated longitude is sea.
"""
from __future__ import annotations

import logging
import math
import random
from typing import List, Optional

from domain.models import Coordinates, IssueKind, ValidationResult, decimal_places
from domain.territory import TerritoryConfig, default_territory

logger = logging.getLogger(__name__)

__all__ = ["BoundsValidator", "decimal_places"]

# Nudge range east of the coastline, in degrees (~200-500 m).
NUDGE_MIN_DEG = 0.002
NUDGE_MAX_DEG = 0.005
# Points east of this longitude are on the sister islands, far from the
# Grand Cayman coastline table.
MAIN_ISLAND_EAST_LIMIT = -80.5


class BoundsValidator:
    def __init__(self, territory: Optional[TerritoryConfig] = None, rng: Optional[random.Random] = None):
        self.territory = territory or default_territory()
        self.rng = rng or random.Random()
        main = self.territory.island(self.territory.main_island)
        self._main_bounds = main.bounds if main else None

    # --- lookups ---------------------------------------------------------

    def in_outer_bounds(self, lat: float, lng: float) -> bool:
        return self.territory.outer_bounds.contains(lat, lng)

    def detect_island(self, lat: float, lng: float) -> Optional[str]:
        for island in self.territory.islands:
            if island.bounds.contains(lat, lng):
                return island.name
        return None

    def is_offshore_category(self, category: Optional[str]) -> bool:
        return (category or "").strip().lower() in self.territory.offshore_categories

    def coastline_lng(self, lat: float) -> Optional[float]:
        """
        Maximum westward longitude for ``lat`` on the main island, or None when
        the latitude is outside the main island's span.

        Linear interpolation between knots, clamped to the first/last knot.
        """
        knots = self.territory.west_coastline
        if not knots or self._main_bounds is None:
            return None
        if lat < self._main_bounds.min_lat or lat > self._main_bounds.max_lat:
            return None
        if lat >= knots[0][0]:
            return knots[0][1]
        if lat <= knots[-1][0]:
            return knots[-1][1]
        for (lat_hi, lng_hi), (lat_lo, lng_lo) in zip(knots, knots[1:]):
            if lat_lo <= lat <= lat_hi:
                ratio = (lat - lat_lo) / (lat_hi - lat_lo)
                return lng_lo + ratio * (lng_hi - lng_lo)
        return knots[-1][1]

    def is_west_of_coastline(self, lat: float, lng: float) -> bool:
        if lng > MAIN_ISLAND_EAST_LIMIT:
            return False
        coast = self.coastline_lng(lat)
        return coast is not None and lng < coast

    # --- validation ------------------------------------------------------

    def validate(
        self,
        lat: Optional[float],
        lng: Optional[float],
        category: Optional[str] = None,
        declared_island: Optional[str] = None,
    ) -> ValidationResult:
        """
        Validate a coordinate for a place of ``category``.

        Offshore categories (dive sites, boat tours, sandbars) skip the
        coastline and island checks but must still fall inside the outer
        territory box. A ``west_of_coastline`` failure carries a suggested
        fix just east of the coast; ``outside_territory`` and ``off_island``
        need a full re-geocode instead.
        """
        if lat is None or lng is None or not (math.isfinite(lat) and math.isfinite(lng)) or lat == 0 or lng == 0:
            return ValidationResult(valid=False, reason=IssueKind.MISSING_COORDINATES)

        if not self.in_outer_bounds(lat, lng):
            return ValidationResult(valid=False, reason=IssueKind.OUTSIDE_TERRITORY)

        detected = self.detect_island(lat, lng)
        warnings: List[str] = []
        declared = self.territory.island(declared_island)
        if declared is not None and detected is not None and declared.name != detected:
            warnings.append(f"Coordinates suggest {detected}, but island is set to {declared.name}")

        if self.is_offshore_category(category):
            return ValidationResult(valid=True, warnings=warnings, detected_island=detected)

        if self.is_west_of_coastline(lat, lng):
            coast = self.coastline_lng(lat)
            fix = Coordinates(lat, coast + self.rng.uniform(NUDGE_MIN_DEG, NUDGE_MAX_DEG))
            return ValidationResult(
                valid=False,
                reason=IssueKind.WEST_OF_COASTLINE,
                suggested_fix=fix,
                warnings=warnings,
                detected_island=detected,
            )

        if detected is None:
            return ValidationResult(valid=False, reason=IssueKind.OFF_ISLAND, warnings=warnings)

        return ValidationResult(valid=True, warnings=warnings, detected_island=detected)

    def validate_coordinates(
        self,
        coords: Optional[Coordinates],
        category: Optional[str] = None,
        declared_island: Optional[str] = None,
    ) -> ValidationResult:
        if coords is None:
            return ValidationResult(valid=False, reason=IssueKind.MISSING_COORDINATES)
        return self.validate(coords.lat, coords.lng, category, declared_island)
