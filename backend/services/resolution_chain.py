"""
Ordered coordinate resolution for a single place record.

verified table (exact, then partial) -> fast adapters, concurrently, query by
query from specific to generic -> last-resort adapters on the first query ->
district / island / territory centroid with jitter. ``resolve`` always
answers; ``apply`` decides whether the answer is allowed to replace what the
record already carries.
"""
from __future__ import annotations

import logging
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Iterable, List, Optional, Sequence, Tuple

from domain.models import (
    CoordinatePrecedence,
    Coordinates,
    Correction,
    GeocodeResult,
    PlaceRecord,
    decimal_places,
)
from domain.territory import TerritoryConfig, default_territory
from services.bounds_validator import BoundsValidator
from services.duplicates import haversine_km
from services.geocoding import TIER_LAST_RESORT, GeocodeAdapter, VerifiedTableAdapter

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "district-centroid"
COAST_FIX_SUFFIX = "+coast-fix"
MAX_JITTER_DRAWS = 10
# Hand-entered table values carry at least this many meaningful decimals.
VERIFIED_MIN_DECIMALS = 4


def provenance_tag(result: GeocodeResult) -> str:
    if result.source.startswith("verified") or result.source == FALLBACK_SOURCE:
        return result.source
    return f"geocode:{result.source}"


class ResolutionChain:
    def __init__(
        self,
        territory: Optional[TerritoryConfig] = None,
        adapters: Optional[Sequence[GeocodeAdapter]] = None,
        rng: Optional[random.Random] = None,
        validator: Optional[BoundsValidator] = None,
        min_change_km: Optional[float] = None,
        high_confidence: Optional[float] = None,
        fallback_confidence: Optional[float] = None,
        jitter_deg: Optional[float] = None,
    ):
        from settings import settings

        self.territory = territory or default_territory()
        self.rng = rng or random.Random()
        self.validator = validator or BoundsValidator(self.territory, rng=self.rng)
        self.verified = VerifiedTableAdapter(self.territory)
        adapters = list(adapters or [])
        self.fast_adapters = [a for a in adapters if a.tier != TIER_LAST_RESORT]
        self.last_resort_adapters = [a for a in adapters if a.tier == TIER_LAST_RESORT]
        self.min_change_km = settings.MIN_CHANGE_KM if min_change_km is None else min_change_km
        self.high_confidence = settings.HIGH_CONFIDENCE if high_confidence is None else high_confidence
        self.fallback_confidence = (
            settings.FALLBACK_CONFIDENCE if fallback_confidence is None else fallback_confidence
        )
        self.jitter_deg = settings.FALLBACK_JITTER_DEG if jitter_deg is None else jitter_deg

    # --- lookups ---------------------------------------------------------

    def match_verified(self, name: str) -> Optional[GeocodeResult]:
        return self.verified.geocode(name) or self.verified.lookup_partial(name)

    def build_queries(self, record: PlaceRecord) -> List[str]:
        """Search strings from most to least specific; blanks and repeats dropped."""
        loc = record.location
        territory = self.territory.name
        name = record.name if record.name and record.name.strip() else None
        candidates = [
            (name, loc.address, loc.district, loc.island, territory) if name else (),
            (name, loc.district, loc.island, territory) if name else (),
            (name, loc.island, territory) if name else (),
            (loc.address, territory) if loc.address else (),
            (name, territory) if name else (),
        ]
        queries: List[str] = []
        seen = set()
        for parts in candidates:
            cleaned = [p.strip() for p in parts if p and p.strip()]
            if len(cleaned) < 2:
                continue
            query = ", ".join(cleaned)
            if query.lower() not in seen:
                seen.add(query.lower())
                queries.append(query)
        return queries

    def _best_of(self, results: Iterable[Optional[GeocodeResult]]) -> Optional[GeocodeResult]:
        # Strict ">" keeps the earlier adapter on ties.
        best: Optional[GeocodeResult] = None
        for result in results:
            if result is not None and (best is None or result.confidence > best.confidence):
                best = result
        return best

    def _query_fast(self, query: str) -> Optional[GeocodeResult]:
        if not self.fast_adapters:
            return None
        if len(self.fast_adapters) == 1:
            return self.fast_adapters[0].geocode(query)
        with ThreadPoolExecutor(max_workers=len(self.fast_adapters)) as pool:
            futures = [pool.submit(adapter.geocode, query) for adapter in self.fast_adapters]
            return self._best_of(f.result() for f in futures)

    def resolve(self, record: PlaceRecord) -> GeocodeResult:
        verified = self.match_verified(record.name)
        if verified is not None:
            logger.debug("Verified match for %s: %s", record.name, verified.display_name)
            return verified

        queries = self.build_queries(record)
        for query in queries:
            result = self._query_fast(query)
            if result is not None:
                return result

        if queries:
            for adapter in self.last_resort_adapters:
                result = adapter.geocode(queries[0])
                if result is not None:
                    return result

        return self.fallback(record)

    def _fallback_center(self, record: PlaceRecord) -> Tuple[Tuple[float, float], str]:
        district = (record.location.district or "").strip().lower()
        if district and district in self.territory.district_centroids:
            return self.territory.district_centroids[district], district
        island = self.territory.island(record.location.island)
        if island is not None:
            return island.center, island.name.lower()
        return self.territory.default_centroid, self.territory.name.lower()

    def fallback(self, record: PlaceRecord) -> GeocodeResult:
        """Jittered centroid that passes validation, else the bare centroid."""
        (lat, lng), label = self._fallback_center(record)
        for _ in range(MAX_JITTER_DRAWS):
            j_lat = lat + self.rng.uniform(-self.jitter_deg, self.jitter_deg)
            j_lng = lng + self.rng.uniform(-self.jitter_deg, self.jitter_deg)
            if self.validator.validate(j_lat, j_lng, record.category).valid:
                return GeocodeResult(j_lat, j_lng, self.fallback_confidence, FALLBACK_SOURCE, label)
        return GeocodeResult(lat, lng, self.fallback_confidence, FALLBACK_SOURCE, label)

    def finalize(
        self,
        record: PlaceRecord,
        result: GeocodeResult,
        validator: Optional[BoundsValidator] = None,
    ) -> GeocodeResult:
        """
        Make ``result`` valid for this record's category: nudge it east of the
        coastline when the validator suggests a fix, otherwise fall back to
        the centroid. A valid result comes back unchanged, so finalizing twice
        is a no-op.
        """
        validator = validator or self.validator
        check = validator.validate(result.lat, result.lng, record.category, record.location.island)
        if check.valid:
            return result
        if check.suggested_fix is not None:
            source = result.source if result.source.endswith(COAST_FIX_SUFFIX) else result.source + COAST_FIX_SUFFIX
            return replace(result, lat=check.suggested_fix.lat, lng=check.suggested_fix.lng, source=source)
        logger.info("%s: %s result rejected (%s), using centroid", record.name, result.source,
                    check.reason.value if check.reason else "invalid")
        return self.fallback(record)

    def resolve_final(self, record: PlaceRecord) -> GeocodeResult:
        return self.finalize(record, self.resolve(record))

    # --- write-back ------------------------------------------------------

    def result_precedence(self, result: GeocodeResult) -> CoordinatePrecedence:
        if result.source.startswith("verified"):
            return CoordinatePrecedence.VERIFIED
        if result.source == FALLBACK_SOURCE:
            return CoordinatePrecedence.FALLBACK
        if result.confidence >= self.high_confidence:
            return CoordinatePrecedence.GEOCODE
        return CoordinatePrecedence.EXISTING

    def record_precedence(self, record: PlaceRecord) -> CoordinatePrecedence:
        base = record.coordinate_source.split("+", 1)[0]
        if base.startswith("verified"):
            return CoordinatePrecedence.VERIFIED
        if base == FALLBACK_SOURCE:
            return CoordinatePrecedence.FALLBACK
        if base.startswith("geocode:"):
            conf = record.coordinate_confidence
            if conf is None or conf >= self.high_confidence:
                return CoordinatePrecedence.GEOCODE
        return CoordinatePrecedence.EXISTING

    def should_write_back(
        self,
        record: PlaceRecord,
        result: GeocodeResult,
        current_valid: bool = True,
        tag: Optional[str] = None,
    ) -> bool:
        """
        Missing or invalid coordinates are always replaced. Otherwise the new
        point must be more than ``min_change_km`` away and must not come from
        a lower-precedence source. Equal precedence only replaces at geocode
        level or above, and never when the same source answered before.
        """
        current = record.coordinates
        if current is None or not current_valid:
            return True
        if haversine_km(current.lat, current.lng, result.lat, result.lng) <= self.min_change_km:
            return False
        new_p = self.result_precedence(result)
        old_p = self.record_precedence(record)
        if new_p > old_p:
            return True
        if new_p < old_p or new_p < CoordinatePrecedence.GEOCODE:
            return False
        return (tag or provenance_tag(result)) != record.coordinate_source

    def apply(
        self,
        record: PlaceRecord,
        result: GeocodeResult,
        validator: Optional[BoundsValidator] = None,
    ) -> Tuple[PlaceRecord, Optional[Correction]]:
        """
        Validate ``result`` for this record, nudge or replace it if needed,
        and return ``(record', correction)``. The input record is untouched;
        ``correction`` is None when nothing was written.
        """
        validator = validator or self.validator
        result = self.finalize(record, result, validator)
        tag = provenance_tag(result)

        current = record.coordinates
        current_valid = validator.validate_coordinates(current, record.category, record.location.island).valid
        if not self.should_write_back(record, result, current_valid=current_valid, tag=tag):
            return record, None

        new_coords = Coordinates(result.lat, result.lng).rounded()
        decimals = min(decimal_places(new_coords.lat), decimal_places(new_coords.lng))
        if result.source.startswith("verified"):
            decimals = max(decimals, VERIFIED_MIN_DECIMALS)

        updated = replace(
            record,
            location=replace(record.location, coordinates=new_coords),
            precision={**record.precision, "decimals": decimals},
            provenance={**record.provenance, "coordinates": tag},
            coordinate_confidence=result.confidence,
        )
        distance = haversine_km(current.lat, current.lng, new_coords.lat, new_coords.lng) if current else None
        correction = Correction(
            record_id=record.id,
            name=record.name,
            old=current,
            new=new_coords,
            distance_km=distance,
            source=tag,
            confidence=result.confidence,
        )
        return updated, correction
