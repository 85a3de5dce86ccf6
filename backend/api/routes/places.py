"""
Place inspection API routes.

Stateless: every endpoint works on the records in the request body and
persists nothing.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from domain.models import PlaceRecord, has_id_and_name
from services.bounds_validator import BoundsValidator
from services.duplicates import find_duplicates
from services.pipeline import build_chain
from services.quality_audit import audit
from settings import settings

router = APIRouter()
validator = BoundsValidator()
_chain = None


def get_chain():
    global _chain
    if _chain is None:
        _chain = build_chain(offline=True if not settings.API_RESOLVE_ONLINE else None)
    return _chain


class CoordinatesIn(BaseModel):
    lat: float
    lng: float


class ValidateRequest(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    category: Optional[str] = None
    island: Optional[str] = None


class ValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    suggested_fix: Optional[CoordinatesIn] = None
    warnings: List[str] = Field(default_factory=list)
    detected_island: Optional[str] = None


class RecordsRequest(BaseModel):
    records: List[Dict[str, Any]]


class ResolveResponse(BaseModel):
    id: str
    name: str
    lat: float
    lng: float
    confidence: float
    source: str
    would_write: bool
    record: Dict[str, Any]


def _parse_records(raw: List[Dict[str, Any]]) -> List[PlaceRecord]:
    records = []
    for idx, item in enumerate(raw):
        if not has_id_and_name(item):
            raise HTTPException(status_code=422, detail=f"Record {idx} needs an id and a name")
        records.append(PlaceRecord.from_dict(item))
    return records


@router.post("/validate", response_model=ValidateResponse)
async def validate_coordinate(body: ValidateRequest):
    """Check one coordinate against territory bounds and the west coastline."""
    result = validator.validate(body.lat, body.lng, body.category, body.island)
    fix = result.suggested_fix
    return ValidateResponse(
        valid=result.valid,
        reason=result.reason.value if result.reason else None,
        suggested_fix=CoordinatesIn(lat=fix.lat, lng=fix.lng) if fix else None,
        warnings=result.warnings,
        detected_island=result.detected_island,
    )


@router.post("/resolve", response_model=List[ResolveResponse])
def resolve_records(body: RecordsRequest):
    """
    Run the resolution chain on each record and show what would be written.
    Offline (verified table + centroid) unless API_RESOLVE_ONLINE is set.
    """
    chain = get_chain()
    out = []
    for record in _parse_records(body.records):
        result = chain.resolve_final(record)
        updated, correction = chain.apply(record, result)
        out.append(
            ResolveResponse(
                id=record.id,
                name=record.name,
                lat=result.lat,
                lng=result.lng,
                confidence=result.confidence,
                source=result.source,
                would_write=correction is not None,
                record=updated.to_dict(),
            )
        )
    return out


@router.post("/duplicates")
async def list_duplicates(body: RecordsRequest):
    candidates = find_duplicates(_parse_records(body.records))
    return {"count": len(candidates), "duplicates": [c.to_dict() for c in candidates]}


@router.post("/audit")
async def audit_records(body: RecordsRequest):
    report = audit(_parse_records(body.records), validator)
    return report.to_dict()
