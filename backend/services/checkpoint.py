"""
JSON checkpoint for resumable batch resolution.

File shape::

    {"processedIds": [...], "results": {id: GeocodeResult}, "stats": {...},
     "startedAt": iso, "lastUpdated": iso}

Writes go to a temp file in the same directory and are swapped in with
``os.replace``, so an interrupted write leaves the previous checkpoint intact.
Only the coordinating thread calls ``save``.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from domain.models import GeocodeResult

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CheckpointState:
    processed_ids: List[str] = field(default_factory=list)
    results: Dict[str, GeocodeResult] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    started_at: str = field(default_factory=_now_iso)
    last_updated: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "processedIds": list(self.processed_ids),
            "results": {rid: r.to_dict() for rid, r in self.results.items()},
            "stats": dict(self.stats),
            "startedAt": self.started_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CheckpointState":
        return cls(
            processed_ids=[str(x) for x in data.get("processedIds") or []],
            results={str(k): GeocodeResult.from_dict(v) for k, v in (data.get("results") or {}).items()},
            stats={str(k): int(v) for k, v in (data.get("stats") or {}).items()},
            started_at=data.get("startedAt") or _now_iso(),
            last_updated=data.get("lastUpdated"),
        )


class CheckpointStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> CheckpointState:
        """Return the saved state, or a fresh one if there is none or it is unreadable."""
        if not self.path.exists():
            return CheckpointState()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            state = CheckpointState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, exc)
            return CheckpointState()
        logger.info("Loaded checkpoint: %d records already processed", len(state.processed_ids))
        return state

    def save(self, state: CheckpointState) -> None:
        state.last_updated = _now_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def archive(self) -> Optional[Path]:
        """Rename the checkpoint with a timestamp suffix after a successful run."""
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self.path.with_name(f"{self.path.stem}.{stamp}{self.path.suffix}")
        os.replace(self.path, target)
        logger.info("Archived checkpoint to %s", target)
        return target
