"""
Core domain models for the place reconciliation pipeline.
These are framework-agnostic and can be used across all services.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional

# Stored coordinates keep this many decimals (~0.1 m).
STORED_DECIMALS = 6

_KNOWN_KEYS = {"id", "name", "category", "location", "precision", "provenance",
               "externalIds", "coordinateConfidence", "coordinateSource", "mergedFrom"}
_KNOWN_LOCATION_KEYS = {"address", "district", "island", "coordinates",
                        "latitude", "longitude", "osmId", "googlePlaceId"}


class Severity(str, Enum):
    """Severity of a quality issue."""
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IssueKind(str, Enum):
    MISSING_COORDINATES = "missing_coordinates"
    OUTSIDE_TERRITORY = "outside_territory"
    OFF_ISLAND = "off_island"
    WEST_OF_COASTLINE = "west_of_coastline"
    LOW_PRECISION = "low_precision"
    ISLAND_MISMATCH = "island_mismatch"
    SUSPICIOUS_DEFAULT = "suspicious_default"
    PLACEHOLDER_NAME = "placeholder_name"
    MISSING_FIELDS = "missing_fields"
    INVALID_IMAGE = "invalid_image"
    RATING_OUT_OF_RANGE = "rating_out_of_range"
    SHORT_DESCRIPTION = "short_description"


class CoordinatePrecedence(IntEnum):
    """Lower precedence never overwrites higher."""
    FALLBACK = 0
    EXISTING = 1
    GEOCODE = 2
    VERIFIED = 3


def decimal_places(value: Optional[float]) -> int:
    """Number of decimals actually carried by a stored float."""
    if value is None:
        return 0
    try:
        exponent = Decimal(repr(float(value))).as_tuple().exponent
    except (InvalidOperation, ValueError, TypeError):
        return 0
    return max(0, -int(exponent)) if isinstance(exponent, int) else 0


def has_id_and_name(item: Mapping[str, Any]) -> bool:
    """True when a raw record carries an id and a name; 0 is a valid id."""
    return item.get("id") not in (None, "") and item.get("name") not in (None, "")


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def rounded(self, decimals: int = STORED_DECIMALS) -> "Coordinates":
        return Coordinates(round(self.lat, decimals), round(self.lng, decimals))

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Coordinates"]:
        if not data:
            return None
        lat = _to_float(data.get("lat", data.get("latitude")))
        lng = _to_float(data.get("lng", data.get("lon", data.get("longitude"))))
        if lat is None or lng is None:
            return None
        return cls(lat=lat, lng=lng)


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    confidence: float
    source: str
    display_name: Optional[str] = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "confidence": self.confidence,
            "source": self.source,
            "displayName": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeocodeResult":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            confidence=float(data.get("confidence", 0.0)),
            source=str(data.get("source", "")),
            display_name=data.get("displayName"),
        )


@dataclass(frozen=True)
class Location:
    address: Optional[str] = None
    district: Optional[str] = None
    island: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlaceRecord:
    """
    A place as delivered by one source.

    Records are treated as immutable: every pipeline stage returns new
    instances (``dataclasses.replace``) instead of editing in place.
    ``extra`` carries every input attribute the pipeline does not interpret
    (ratings, media, contact...) so nothing is lost on output.
    """
    id: str
    name: str
    category: str = ""
    location: Location = field(default_factory=Location)
    precision: Dict[str, int] = field(default_factory=dict)
    provenance: Dict[str, str] = field(default_factory=dict)
    external_ids: Dict[str, str] = field(default_factory=dict)
    coordinate_confidence: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def coordinates(self) -> Optional[Coordinates]:
        return self.location.coordinates

    @property
    def coordinate_source(self) -> str:
        return self.provenance.get("coordinates", "existing")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlaceRecord":
        loc = data.get("location") or {}
        coords = Coordinates.from_dict(loc.get("coordinates"))
        if coords is None and ("latitude" in loc or "longitude" in loc):
            coords = Coordinates.from_dict({"lat": loc.get("latitude"), "lng": loc.get("longitude")})

        external_ids: Dict[str, str] = {}
        if loc.get("osmId"):
            external_ids["osm"] = str(loc["osmId"])
        if loc.get("googlePlaceId"):
            external_ids["google"] = str(loc["googlePlaceId"])
        for key, value in (data.get("externalIds") or {}).items():
            if value:
                external_ids[str(key)] = str(value)

        precision = dict(data.get("precision") or {})
        if coords is not None and not isinstance(precision.get("decimals"), int):
            precision["decimals"] = min(decimal_places(coords.lat), decimal_places(coords.lng))

        provenance = {str(k): str(v) for k, v in (data.get("provenance") or {}).items()}
        if data.get("coordinateSource") and "coordinates" not in provenance:
            provenance["coordinates"] = str(data["coordinateSource"])

        location = Location(
            address=loc.get("address") or None,
            district=loc.get("district") or loc.get("area") or None,
            island=loc.get("island") or None,
            coordinates=coords,
            extra={k: v for k, v in loc.items() if k not in _KNOWN_LOCATION_KEYS},
        )
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "") or ""),
            category=str(data.get("category", "") or ""),
            location=location,
            precision=precision,
            provenance=provenance,
            external_ids=external_ids,
            coordinate_confidence=_to_float(data.get("coordinateConfidence")),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        loc: Dict[str, Any] = dict(self.location.extra)
        loc["address"] = self.location.address
        loc["district"] = self.location.district
        loc["island"] = self.location.island
        if self.location.coordinates is not None:
            loc["coordinates"] = self.location.coordinates.to_dict()
        if "osm" in self.external_ids:
            loc["osmId"] = self.external_ids["osm"]
        if "google" in self.external_ids:
            loc["googlePlaceId"] = self.external_ids["google"]

        out: Dict[str, Any] = {"id": self.id, "name": self.name, "category": self.category}
        out.update(self.extra)
        out["location"] = loc
        if self.precision:
            out["precision"] = dict(self.precision)
        if self.provenance:
            out["provenance"] = dict(self.provenance)
            out["coordinateSource"] = self.coordinate_source
        if self.coordinate_confidence is not None:
            out["coordinateConfidence"] = self.coordinate_confidence
        extra_ids = {k: v for k, v in self.external_ids.items() if k not in ("osm", "google")}
        if extra_ids:
            out["externalIds"] = extra_ids
        return out


@dataclass(frozen=True)
class CanonicalPlace(PlaceRecord):
    """The single deduplicated record for one real-world place."""
    merged_from: List[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: PlaceRecord, merged_from: Optional[List[str]] = None) -> "CanonicalPlace":
        return cls(
            id=record.id,
            name=record.name,
            category=record.category,
            location=record.location,
            precision=dict(record.precision),
            provenance=dict(record.provenance),
            external_ids=dict(record.external_ids),
            coordinate_confidence=record.coordinate_confidence,
            extra=dict(record.extra),
            merged_from=list(merged_from or getattr(record, "merged_from", []) or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.merged_from:
            out["mergedFrom"] = list(self.merged_from)
        return out


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[IssueKind] = None
    suggested_fix: Optional[Coordinates] = None
    warnings: List[str] = field(default_factory=list)
    detected_island: Optional[str] = None

    @property
    def needs_regeocode(self) -> bool:
        return not self.valid and self.suggested_fix is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason.value if self.reason else None,
            "suggestedFix": self.suggested_fix.to_dict() if self.suggested_fix else None,
            "warnings": list(self.warnings),
            "detectedIsland": self.detected_island,
        }


@dataclass(frozen=True)
class DuplicateCandidate:
    record_a: PlaceRecord
    record_b: PlaceRecord
    name_similarity: float
    distance_km: Optional[float]
    reason: str  # "external_id" or "name_proximity"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "a": {"id": self.record_a.id, "name": self.record_a.name},
            "b": {"id": self.record_b.id, "name": self.record_b.name},
            "nameSimilarity": round(self.name_similarity, 4),
            "distanceKm": round(self.distance_km, 4) if self.distance_km is not None else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Correction:
    record_id: str
    name: str
    old: Optional[Coordinates]
    new: Coordinates
    distance_km: Optional[float]
    source: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "name": self.name,
            "oldCoord": self.old.to_dict() if self.old else None,
            "newCoord": self.new.to_dict(),
            "distanceKm": round(self.distance_km, 4) if self.distance_km is not None else None,
            "source": self.source,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class QualityIssue:
    record_id: str
    record_name: str
    category: str
    severity: Severity
    issue_kind: IssueKind
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "recordName": self.record_name,
            "category": self.category,
            "severity": self.severity.value,
            "issueKind": self.issue_kind.value,
            "evidence": dict(self.evidence),
        }


@dataclass
class CategoryStats:
    count: int = 0
    with_issues: int = 0
    critical: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"count": self.count, "withIssues": self.with_issues, "critical": self.critical}


@dataclass
class QualityReport:
    generated_at: datetime
    total_records: int
    issues: List[QualityIssue] = field(default_factory=list)
    category_stats: Dict[str, CategoryStats] = field(default_factory=dict)
    reprocess: List[str] = field(default_factory=list)
    unresolved_ids: List[str] = field(default_factory=list)

    @property
    def unresolved_fraction(self) -> float:
        if self.total_records == 0:
            return 0.0
        return len(self.unresolved_ids) / self.total_records

    def issues_for(self, record_id: str) -> List[QualityIssue]:
        return [i for i in self.issues if i.record_id == record_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generatedAt": self.generated_at.isoformat(),
            "totalRecords": self.total_records,
            "unresolvedFraction": round(self.unresolved_fraction, 4),
            "issues": [i.to_dict() for i in self.issues],
            "categoryStats": {k: v.to_dict() for k, v in sorted(self.category_stats.items())},
            "reprocess": list(self.reprocess),
        }
