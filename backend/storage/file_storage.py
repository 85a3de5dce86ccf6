"""
File storage for knowledge-base JSON.

Reads the input record array, writes the reconciled output and the report,
and archives previous outputs. Currently local filesystem only.
"""
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from domain.models import PlaceRecord, has_id_and_name

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base class for fatal I/O errors."""


class InputError(StorageError):
    """Input missing, unreadable or not a JSON array of records."""


class OutputError(StorageError):
    """Output location not writable."""


class FileStorage:
    """
    Local file storage implementation.

    Outputs are written atomically (temp file + rename) so a crash never
    leaves a half-written knowledge base behind.
    """

    def __init__(self, archive_dir: Optional[str] = None):
        self.archive_dir = Path(archive_dir) if archive_dir else None

    def read_json(self, path: str | Path) -> Any:
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as exc:
            raise InputError(f"Input not found: {path}") from exc
        except (OSError, ValueError) as exc:
            raise InputError(f"Cannot read {path}: {exc}") from exc

    def read_records(self, path: str | Path) -> List[PlaceRecord]:
        """
        Load a JSON array of place objects.

        Objects without an id or name are skipped with a warning; anything
        that is not an array is an InputError.
        """
        data = self.read_json(path)
        if isinstance(data, dict) and isinstance(data.get("places"), list):
            data = data["places"]
        if not isinstance(data, list):
            raise InputError(f"{path}: expected a JSON array of records")

        records: List[PlaceRecord] = []
        for idx, item in enumerate(data):
            if not isinstance(item, dict) or not has_id_and_name(item):
                logger.warning("%s: skipping entry %d without id/name", path, idx)
                continue
            records.append(PlaceRecord.from_dict(item))
        logger.info("Loaded %d records from %s", len(records), path)
        return records

    def write_json(self, path: str | Path, payload: Any) -> Path:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as exc:
            raise OutputError(f"Cannot write {path}: {exc}") from exc
        return path

    def write_records(self, path: str | Path, records: Sequence[PlaceRecord]) -> Path:
        if self.archive_dir is not None:
            self.archive(path)
        out = self.write_json(path, [r.to_dict() for r in records])
        logger.info("Wrote %d records to %s", len(records), out)
        return out

    def write_report(self, path: str | Path, report: Dict[str, Any]) -> Path:
        out = self.write_json(path, report)
        logger.info("Wrote report to %s", out)
        return out

    def archive(self, path: str | Path) -> Optional[Path]:
        """Copy an existing file into the archive dir with a timestamp suffix."""
        path = Path(path)
        if self.archive_dir is None or not path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            target = self.archive_dir / f"{path.stem}.{stamp}{path.suffix}"
            shutil.copy2(path, target)
        except OSError as exc:
            raise OutputError(f"Cannot archive {path}: {exc}") from exc
        return target
