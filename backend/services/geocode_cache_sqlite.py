"""
SQLite-backed cache for forward geocode lookups.

Keyed by (adapter, normalized query). Misses are stored too, so a re-run over
the same records does not hit the network again for queries that found
nothing last time.
"""
from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from typing import Optional, Tuple

from domain.models import GeocodeResult

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
DATA_DIR = os.path.join(BASE_DIR, "data")
GEOCODE_CACHE_DB_FILENAME = "geocode_cache.sqlite"

# Sentinel for "cached miss" vs "not in cache".
MISS = object()


def _normalize_query(query: str) -> str:
    return " ".join(query.lower().split())


class GeocodeCache:
    def __init__(self, db_path: Optional[str] = None, default_ttl_seconds: int = 90 * 24 * 3600):
        self.db_path = db_path or os.path.join(DATA_DIR, GEOCODE_CACHE_DB_FILENAME)
        self.default_ttl_seconds = default_ttl_seconds
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS geocode_cache (
                    adapter TEXT NOT NULL,
                    query TEXT NOT NULL,
                    response_json TEXT,
                    created_at INTEGER NOT NULL,
                    ttl_seconds INTEGER NOT NULL,
                    PRIMARY KEY (adapter, query)
                )
                """
            )
            self._conn.commit()

    def get(self, adapter: str, query: str):
        """
        Return a cached GeocodeResult, ``MISS`` for a cached negative result,
        or None when nothing usable is cached.
        """
        try:
            with self._lock:
                row: Optional[Tuple[Optional[str], int, int]] = self._conn.execute(
                    "SELECT response_json, created_at, ttl_seconds FROM geocode_cache WHERE adapter=? AND query=?",
                    (adapter, _normalize_query(query)),
                ).fetchone()
        except sqlite3.Error:
            return None
        if not row:
            return None
        response_json, created_at, ttl_seconds = row
        if ttl_seconds > 0 and (time.time() - created_at) > ttl_seconds:
            return None
        if response_json is None:
            return MISS
        try:
            return GeocodeResult.from_dict(json.loads(response_json))
        except (ValueError, KeyError, TypeError):
            return None

    def put(
        self,
        adapter: str,
        query: str,
        result: Optional[GeocodeResult],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Store a result (or a miss when ``result`` is None)."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        payload = json.dumps(result.to_dict()) if result is not None else None
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO geocode_cache
                    (adapter, query, response_json, created_at, ttl_seconds)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (adapter, _normalize_query(query), payload, int(time.time()), ttl),
                )
                self._conn.commit()
        except sqlite3.Error:
            return

    def close(self) -> None:
        with self._lock:
            self._conn.close()


_default_geocode_cache: Optional[GeocodeCache] = None


def get_default_geocode_cache() -> GeocodeCache:
    global _default_geocode_cache
    if _default_geocode_cache is None:
        from settings import settings

        _default_geocode_cache = GeocodeCache(
            db_path=settings.GEOCODE_CACHE_PATH,
            default_ttl_seconds=settings.GEOCODE_CACHE_TTL_SECONDS,
        )
    return _default_geocode_cache
