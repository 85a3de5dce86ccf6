"""
End-to-end reconciliation: validate -> resolve -> dedupe -> enrich -> audit.

Pure orchestration over in-memory records; reading and writing files is the
caller's job (see scripts/run_pipeline.py).
"""
from __future__ import annotations

import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from domain.models import Correction, DuplicateCandidate, PlaceRecord, QualityReport
from domain.territory import TerritoryConfig, default_territory
from services.batch_scheduler import BatchScheduler
from services.checkpoint import CheckpointStore
from services.duplicates import find_duplicates
from services.geocode_cache_sqlite import GeocodeCache, get_default_geocode_cache
from services.geocoding import build_default_adapters
from services.merge_engine import dedupe, enrich
from services.quality_audit import audit
from services.resolution_chain import ResolutionChain

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    records: List[PlaceRecord]
    corrections: List[Correction] = field(default_factory=list)
    duplicates: List[DuplicateCandidate] = field(default_factory=list)
    audit: Optional[QualityReport] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    def report(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"stats": dict(self.stats)}
        out["corrections"] = [c.to_dict() for c in self.corrections]
        out["duplicates"] = [d.to_dict() for d in self.duplicates]
        if self.audit is not None:
            audit_dict = self.audit.to_dict()
            out["generatedAt"] = audit_dict["generatedAt"]
            out["unresolvedFraction"] = audit_dict["unresolvedFraction"]
            out["issues"] = audit_dict["issues"]
            out["categoryStats"] = audit_dict["categoryStats"]
            out["reprocess"] = audit_dict["reprocess"]
        return out


def build_chain(
    territory: Optional[TerritoryConfig] = None,
    offline: Optional[bool] = None,
    seed: Optional[int] = None,
    cache: Optional[GeocodeCache] = None,
) -> ResolutionChain:
    """Chain wired from settings. ``offline`` leaves only the verified table and the fallback."""
    from settings import settings

    territory = territory or default_territory()
    offline = settings.GEOCODE_OFFLINE if offline is None else offline
    adapters = []
    if not offline:
        adapters = build_default_adapters(territory, settings, cache=cache or get_default_geocode_cache())
    return ResolutionChain(territory, adapters, rng=random.Random(seed))


def run_pipeline(
    records: Sequence[PlaceRecord],
    chain: ResolutionChain,
    *,
    workers: Optional[int] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
    checkpoint_every: Optional[int] = None,
    inter_request_delay: Optional[float] = None,
    only_ids: Optional[Iterable[str]] = None,
    secondary_by_id: Optional[Mapping[str, PlaceRecord]] = None,
    archive_checkpoint: bool = True,
) -> PipelineResult:
    """
    Run every stage over ``records``. ``only_ids`` restricts resolution to
    those records (e.g. a previous report's reprocess list); the rest pass
    through to dedupe and audit unchanged. Callers that still have output to
    persist pass ``archive_checkpoint=False`` and archive once it is written.
    """
    validator = chain.validator
    invalid_before = sum(
        1 for r in records
        if not validator.validate_coordinates(r.coordinates, r.category, r.location.island).valid
    )
    logger.info("Pipeline start: %d records, %d with invalid coordinates", len(records), invalid_before)

    wanted = set(only_ids) if only_ids is not None else None
    targets = [r for r in records if wanted is None or r.id in wanted]
    scheduler = BatchScheduler(
        chain.resolve_final,
        workers=workers,
        checkpoint_store=checkpoint_store,
        checkpoint_every=checkpoint_every,
        inter_request_delay=inter_request_delay,
        fallback_fn=chain.fallback,
    )
    outcome = scheduler.run(targets)

    updated: List[PlaceRecord] = []
    corrections: List[Correction] = []
    for record in records:
        result = outcome.results.get(record.id)
        if result is None:
            updated.append(record)
            continue
        new_record, correction = chain.apply(record, result)
        updated.append(new_record)
        if correction is not None:
            corrections.append(correction)

    duplicates = find_duplicates(updated)
    canonical: List[PlaceRecord] = list(dedupe(updated))
    if secondary_by_id:
        canonical = enrich(canonical, secondary_by_id)

    report = audit(canonical, validator)
    if checkpoint_store is not None and archive_checkpoint:
        checkpoint_store.archive()

    sources = Counter(c.source for c in corrections)
    stats = {
        "inputRecords": len(records),
        "outputRecords": len(canonical),
        "resolved": len(targets),
        "resumed": outcome.skipped,
        "failed": len(outcome.failed),
        "invalidBefore": invalid_before,
        "corrected": len(corrections),
        "duplicatesFound": len(duplicates),
        "merged": len(records) - len(canonical),
        "resultsBySource": dict(outcome.by_source),
        "correctionsBySource": dict(sources),
        "unresolved": len(report.unresolved_ids),
    }
    log_summary(stats)
    return PipelineResult(records=canonical, corrections=corrections, duplicates=duplicates, audit=report, stats=stats)


def log_summary(stats: Mapping[str, Any]) -> None:
    logger.info(
        "Summary: %d in -> %d out, %d corrected, %d merged, %d unresolved, %d failed",
        stats.get("inputRecords", 0),
        stats.get("outputRecords", 0),
        stats.get("corrected", 0),
        stats.get("merged", 0),
        stats.get("unresolved", 0),
        stats.get("failed", 0),
    )
    for source, count in sorted((stats.get("resultsBySource") or {}).items()):
        logger.info("  %-28s %d", source, count)


def reprocess_ids_from_report(report: Mapping[str, Any]) -> List[str]:
    return [str(x) for x in report.get("reprocess") or []]
