"""
Duplicate place detection.

Two records describe the same place when they share an external identifier
(same key, same value), or when they are in the same category, have names
at least ``name_threshold`` similar and sit within ``distance_km`` of each
other. All pairs are compared, so this is O(N^2); fine for a few thousand
records.
"""
from __future__ import annotations

import logging
import math
import re
from typing import List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from domain.models import DuplicateCandidate, PlaceRecord

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def normalize_for_similarity(name: Optional[str]) -> str:
    return _NON_ALNUM.sub("", (name or "").lower())


def name_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1 - edit distance / longer length, over lowercase alphanumerics."""
    na = normalize_for_similarity(a)
    nb = normalize_for_similarity(b)
    if not na and not nb:
        return 0.0
    longest = max(len(na), len(nb))
    return 1.0 - Levenshtein.distance(na, nb) / longest


def record_distance_km(a: PlaceRecord, b: PlaceRecord) -> Optional[float]:
    ca, cb = a.coordinates, b.coordinates
    if ca is None or cb is None:
        return None
    return haversine_km(ca.lat, ca.lng, cb.lat, cb.lng)


def shared_external_id(a: PlaceRecord, b: PlaceRecord) -> Optional[str]:
    for key in sorted(set(a.external_ids) & set(b.external_ids)):
        if a.external_ids[key] and a.external_ids[key] == b.external_ids[key]:
            return key
    return None


def compare(
    a: PlaceRecord,
    b: PlaceRecord,
    name_threshold: Optional[float] = None,
    distance_km: Optional[float] = None,
) -> Optional[DuplicateCandidate]:
    """Return a candidate when ``a`` and ``b`` are duplicates, else None."""
    if name_threshold is None or distance_km is None:
        from settings import settings

        name_threshold = settings.DUPLICATE_NAME_SIMILARITY if name_threshold is None else name_threshold
        distance_km = settings.DUPLICATE_DISTANCE_KM if distance_km is None else distance_km

    similarity = name_similarity(a.name, b.name)
    distance = record_distance_km(a, b)

    if shared_external_id(a, b):
        return DuplicateCandidate(a, b, similarity, distance, "external_id")

    if (a.category or "").lower() != (b.category or "").lower():
        return None
    if similarity < name_threshold or distance is None or distance > distance_km:
        return None
    return DuplicateCandidate(a, b, similarity, distance, "name_proximity")


def is_duplicate(a: PlaceRecord, b: PlaceRecord, **kwargs) -> bool:
    return compare(a, b, **kwargs) is not None


def find_duplicates(records: Sequence[PlaceRecord], **kwargs) -> List[DuplicateCandidate]:
    """Every duplicate pair once, in input order (i < j)."""
    candidates: List[DuplicateCandidate] = []
    for i in range(len(records)):
        for j in range(i + 1, len(records)):
            candidate = compare(records[i], records[j], **kwargs)
            if candidate is not None:
                candidates.append(candidate)
    logger.info("Duplicate scan: %d records, %d candidate pairs", len(records), len(candidates))
    return candidates
