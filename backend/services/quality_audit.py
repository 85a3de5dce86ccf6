"""
Read-only quality audit of a set of place records.

Produces per-record issues, per-category stats and a ranked list of record
ids worth re-processing. Records are never modified.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from domain.models import (
    CategoryStats,
    IssueKind,
    PlaceRecord,
    QualityIssue,
    QualityReport,
    Severity,
    decimal_places,
)
from services.bounds_validator import BoundsValidator
from services.merge_engine import is_placeholder

logger = logging.getLogger(__name__)

MIN_DECIMALS = 4
SUSPICIOUS_TOLERANCE_DEG = 0.00005
GENERIC_NAME_WORDS = frozenset({"test", "placeholder", "sample", "example", "untitled", "unnamed"})
REQUIRED_FIELDS = ("id", "name", "category")
RATING_MIN, RATING_MAX = 0.0, 5.0
MIN_DESCRIPTION_CHARS = 50

COORDINATE_KINDS = frozenset(
    {
        IssueKind.MISSING_COORDINATES,
        IssueKind.OUTSIDE_TERRITORY,
        IssueKind.OFF_ISLAND,
        IssueKind.WEST_OF_COASTLINE,
    }
)


def _issue(record: PlaceRecord, severity: Severity, kind: IssueKind, **evidence) -> QualityIssue:
    return QualityIssue(
        record_id=record.id,
        record_name=record.name,
        category=record.category,
        severity=severity,
        issue_kind=kind,
        evidence=evidence,
    )


def _is_suspicious(lat: float, lng: float, points) -> bool:
    if float(lat).is_integer() or float(lng).is_integer():
        return True
    return any(
        abs(lat - p_lat) < SUSPICIOUS_TOLERANCE_DEG and abs(lng - p_lng) < SUSPICIOUS_TOLERANCE_DEG
        for p_lat, p_lng in points
    )


def _is_generic_name(name: str) -> bool:
    words = "".join(c if c.isalnum() else " " for c in (name or "").lower()).split()
    return not words or any(w in GENERIC_NAME_WORDS for w in words)


def _image_problem(url: Any) -> Optional[str]:
    if not isinstance(url, str) or not url.strip():
        return "empty"
    if is_placeholder(url):
        return "placeholder"
    if not url.strip().lower().startswith(("http://", "https://")):
        return "invalid_url"
    return None


def _content_issues(record: PlaceRecord) -> List[QualityIssue]:
    """Field-level checks on the carried-through attributes (media, ratings, description)."""
    issues: List[QualityIssue] = []
    missing = [name for name in REQUIRED_FIELDS if not getattr(record, name)]
    if missing:
        issues.append(_issue(record, Severity.CRITICAL, IssueKind.MISSING_FIELDS, fields=missing))

    media = record.extra.get("media")
    if isinstance(media, Mapping):
        if "thumbnail" in media:
            problem = _image_problem(media["thumbnail"])
            if problem:
                issues.append(
                    _issue(record, Severity.WARNING, IssueKind.INVALID_IMAGE,
                           field="media.thumbnail", url=media["thumbnail"], problem=problem)
                )
        images = media.get("images")
        if isinstance(images, list):
            for url in images:
                problem = _image_problem(url)
                if problem:
                    issues.append(
                        _issue(record, Severity.INFO, IssueKind.INVALID_IMAGE,
                               field="media.images", url=url, problem=problem)
                    )

    ratings = record.extra.get("ratings")
    if isinstance(ratings, Mapping):
        overall = ratings.get("overall")
        if isinstance(overall, (int, float)) and not isinstance(overall, bool):
            if not RATING_MIN <= overall <= RATING_MAX:
                issues.append(_issue(record, Severity.WARNING, IssueKind.RATING_OUT_OF_RANGE, rating=overall))

    description = record.extra.get("description")
    if isinstance(description, str) and description.strip():
        length = len(description.strip())
        if length < MIN_DESCRIPTION_CHARS:
            issues.append(_issue(record, Severity.INFO, IssueKind.SHORT_DESCRIPTION, length=length))
    return issues


def check_record(record: PlaceRecord, validator: BoundsValidator) -> List[QualityIssue]:
    issues: List[QualityIssue] = []
    coords = record.coordinates

    if coords is None:
        issues.append(_issue(record, Severity.CRITICAL, IssueKind.MISSING_COORDINATES))
    else:
        result = validator.validate(coords.lat, coords.lng, record.category, record.location.island)
        if not result.valid and result.reason is not None:
            evidence = {"lat": coords.lat, "lng": coords.lng}
            if result.suggested_fix is not None:
                evidence["suggestedFix"] = result.suggested_fix.to_dict()
            issues.append(_issue(record, Severity.CRITICAL, result.reason, **evidence))
        for warning in result.warnings:
            issues.append(
                _issue(record, Severity.WARNING, IssueKind.ISLAND_MISMATCH,
                       declared=record.location.island, detected=result.detected_island, message=warning)
            )
        if result.reason is not IssueKind.MISSING_COORDINATES:
            decimals = record.precision.get("decimals")
            if decimals is None:
                decimals = min(decimal_places(coords.lat), decimal_places(coords.lng))
            if decimals < MIN_DECIMALS:
                issues.append(_issue(record, Severity.WARNING, IssueKind.LOW_PRECISION, decimals=decimals))
            if not record.coordinate_source.startswith("verified") and _is_suspicious(
                coords.lat, coords.lng, validator.territory.suspicious_points
            ):
                issues.append(
                    _issue(record, Severity.WARNING, IssueKind.SUSPICIOUS_DEFAULT, lat=coords.lat, lng=coords.lng)
                )

    if _is_generic_name(record.name):
        issues.append(_issue(record, Severity.INFO, IssueKind.PLACEHOLDER_NAME, name=record.name))
    issues.extend(_content_issues(record))
    return issues


def audit(
    records: Sequence[PlaceRecord],
    validator: Optional[BoundsValidator] = None,
    now: Optional[datetime] = None,
) -> QualityReport:
    validator = validator or BoundsValidator()
    report = QualityReport(generated_at=now or datetime.now(timezone.utc), total_records=len(records))

    ranking = []
    for idx, record in enumerate(records):
        issues = check_record(record, validator)
        category = record.category or "uncategorized"
        stats = report.category_stats.setdefault(category, CategoryStats())
        stats.count += 1
        if not issues:
            continue

        report.issues.extend(issues)
        stats.with_issues += 1
        critical = sum(1 for i in issues if i.severity is Severity.CRITICAL)
        warnings = sum(1 for i in issues if i.severity is Severity.WARNING)
        if critical:
            stats.critical += 1
        if any(i.severity is Severity.CRITICAL and i.issue_kind in COORDINATE_KINDS for i in issues):
            report.unresolved_ids.append(record.id)
        if critical or warnings:
            ranking.append((-critical, -warnings, idx, record.id))

    report.reprocess = [record_id for *_, record_id in sorted(ranking)]

    by_severity: Dict[str, int] = {}
    for issue in report.issues:
        by_severity[issue.severity.value] = by_severity.get(issue.severity.value, 0) + 1
    logger.info(
        "Audit: %d records, %d issues %s, %d unresolved (%.1f%%)",
        report.total_records, len(report.issues), by_severity,
        len(report.unresolved_ids), report.unresolved_fraction * 100,
    )
    return report
