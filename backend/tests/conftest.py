import sys
from pathlib import Path

import pytest

# Ensure the backend package root is on sys.path for direct pytest runs
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def isolated_geocode_cache(tmp_path, monkeypatch):
    """Keep the default SQLite geocode cache out of backend/data during tests."""
    from services import geocode_cache_sqlite
    from settings import settings

    monkeypatch.setattr(settings, "GEOCODE_CACHE_PATH", str(tmp_path / "geocode_cache.sqlite"))
    monkeypatch.setattr(geocode_cache_sqlite, "_default_geocode_cache", None)
