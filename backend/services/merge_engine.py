"""
Merge engine: admission merge (existing + incoming -> canonical places) and
the enrichment pass that fills gaps in canonical records from a secondary
source keyed by the same ids.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from domain.models import CanonicalPlace, PlaceRecord
from services.duplicates import compare

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERNS = ("placeholder", "unsplash", "default", "no-image", "noimage", "missing")
DEFAULT_RATING = 4.0

# (path inside record.extra, is_numeric)
ENRICHABLE_FIELDS: Tuple[Tuple[Tuple[str, ...], bool], ...] = (
    (("ratings", "overall"), True),
    (("ratings", "reviewCount"), True),
    (("media", "thumbnail"), False),
    (("media", "images"), False),
    (("contact", "phone"), False),
    (("contact", "email"), False),
    (("contact", "website"), False),
    (("contact", "bookingUrl"), False),
    (("hours", "display"), False),
    (("business", "priceRange"), False),
    (("description",), False),
)


def merge(
    existing: Sequence[PlaceRecord],
    incoming: Sequence[PlaceRecord],
    **compare_kwargs,
) -> List[CanonicalPlace]:
    """
    Keep every existing record; admit an incoming record only if it is not a
    duplicate of anything already kept. A dropped record's id is appended to
    the ``merged_from`` of the canonical it duplicates.
    """
    canon: List[CanonicalPlace] = [CanonicalPlace.from_record(r) for r in existing]
    dropped = 0
    for record in incoming:
        match_idx: Optional[int] = None
        for idx, kept in enumerate(canon):
            candidate = compare(kept, record, **compare_kwargs)
            if candidate is not None:
                match_idx = idx
                logger.info(
                    "Dropping %s (%s): duplicate of %s (%s) by %s",
                    record.id, record.name, kept.id, kept.name, candidate.reason,
                )
                break
        if match_idx is None:
            canon.append(CanonicalPlace.from_record(record))
            continue
        dropped += 1
        kept = canon[match_idx]
        external_ids = dict(record.external_ids)
        external_ids.update(kept.external_ids)
        canon[match_idx] = replace(
            kept,
            merged_from=kept.merged_from + [record.id],
            external_ids=external_ids,
        )
    logger.info("Merge: %d existing + %d incoming -> %d canonical (%d dropped)",
                len(existing), len(incoming), len(canon), dropped)
    return canon


def dedupe(records: Sequence[PlaceRecord], **compare_kwargs) -> List[CanonicalPlace]:
    """Collapse duplicates within one set; first occurrence wins."""
    return merge([], records, **compare_kwargs)


def is_placeholder(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        text = value.strip().lower()
        return not text or any(p in text for p in PLACEHOLDER_PATTERNS)
    if isinstance(value, (list, tuple)):
        return not value or all(is_placeholder(v) for v in value)
    if isinstance(value, dict):
        return not value
    return False


def _get_path(data: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    node: Any = data
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _set_path(data: Dict[str, Any], path: Tuple[str, ...], value: Any) -> Dict[str, Any]:
    """Copy-on-write set; nested dicts along the path are copied."""
    out = dict(data)
    if len(path) == 1:
        out[path[0]] = value
        return out
    child = out.get(path[0])
    out[path[0]] = _set_path(child if isinstance(child, dict) else {}, path[1:], value)
    return out


def _clean(value: Any) -> Any:
    if isinstance(value, list):
        return [v for v in value if not is_placeholder(v)]
    return value


def should_replace(old: Any, new: Any, numeric: bool = False, path: Tuple[str, ...] = ()) -> bool:
    if numeric:
        if not isinstance(new, (int, float)) or isinstance(new, bool) or new == 0:
            return False
        if old is None or old == 0:
            return True
        return path == ("ratings", "overall") and float(old) == DEFAULT_RATING and float(new) != DEFAULT_RATING
    if is_placeholder(new):
        return False
    return is_placeholder(old)


def enrich(
    canonical: Sequence[PlaceRecord],
    secondary_by_id: Mapping[str, PlaceRecord],
    source: str = "enrichment",
) -> List[PlaceRecord]:
    """
    Fill absent, placeholder or default-valued fields of each canonical record
    from the secondary record with the same id. Real values are never
    overwritten; addresses are only replaced by longer ones.
    """
    out: List[PlaceRecord] = []
    touched = 0
    for record in canonical:
        secondary = secondary_by_id.get(record.id)
        if secondary is None:
            out.append(record)
            continue

        extra = record.extra
        provenance = dict(record.provenance)
        changed: List[str] = []
        for path, numeric in ENRICHABLE_FIELDS:
            old = _get_path(extra, path)
            new = _get_path(secondary.extra, path)
            if should_replace(old, new, numeric=numeric, path=path):
                extra = _set_path(extra, path, _clean(new))
                field_name = ".".join(path)
                provenance[field_name] = source
                changed.append(field_name)

        location = record.location
        new_address = (secondary.location.address or "").strip()
        if len(new_address) > len(location.address or ""):
            location = replace(location, address=new_address)
            provenance["location.address"] = source
            changed.append("location.address")

        if not changed:
            out.append(record)
            continue
        touched += 1
        logger.debug("Enriched %s: %s", record.id, ", ".join(changed))
        out.append(replace(record, extra=extra, location=location, provenance=provenance))

    logger.info("Enrichment: %d of %d records updated from %d secondary entries",
                touched, len(canonical), len(secondary_by_id))
    return out
