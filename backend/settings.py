import os

# Basic settings helper to read environment configuration.


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def _as_float(val: str | None, default: float) -> float:
    if val is None or val.strip() == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _as_int(val: str | None, default: int) -> int:
    if val is None or val.strip() == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        # Network adapters
        self.GEOCODE_OFFLINE: bool = _as_bool(os.getenv("GEOCODE_OFFLINE"), False)
        self.GEOCODE_TIMEOUT_SEC: float = _as_float(os.getenv("GEOCODE_TIMEOUT_SEC"), 5.0)
        self.GEOCODE_MAX_RETRIES: int = _as_int(os.getenv("GEOCODE_MAX_RETRIES"), 2)
        self.GEOCODE_BACKOFF_SEC: float = _as_float(os.getenv("GEOCODE_BACKOFF_SEC"), 2.0)
        self.GEOCODE_CONTACT: str = os.getenv("GEOCODE_CONTACT", "")
        self.GEOCODE_USER_AGENT: str | None = os.getenv("GEOCODE_USER_AGENT")

        self.PHOTON_URL: str = os.getenv("PHOTON_URL", "https://photon.komoot.io/api/")
        self.PHOTON_CONFIDENCE: float = _as_float(os.getenv("PHOTON_CONFIDENCE"), 0.85)
        self.PHOTON_RATE_PER_SEC: float = _as_float(os.getenv("PHOTON_RATE_PER_SEC"), 10.0)
        self.PHOTON_CALL_BUDGET: int = _as_int(os.getenv("PHOTON_CALL_BUDGET"), 5000)

        self.NOMINATIM_URL: str = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/search")
        self.NOMINATIM_CONFIDENCE: float = _as_float(os.getenv("NOMINATIM_CONFIDENCE"), 0.90)
        self.NOMINATIM_RATE_PER_SEC: float = _as_float(os.getenv("NOMINATIM_RATE_PER_SEC"), 0.9)
        self.NOMINATIM_CALL_BUDGET: int = _as_int(os.getenv("NOMINATIM_CALL_BUDGET"), 2000)

        self.MAPSCO_URL: str = os.getenv("MAPSCO_URL", "https://geocode.maps.co/search")
        self.MAPSCO_API_KEY: str | None = os.getenv("MAPSCO_API_KEY")
        self.MAPSCO_CONFIDENCE: float = _as_float(os.getenv("MAPSCO_CONFIDENCE"), 0.80)
        self.MAPSCO_RATE_PER_SEC: float = _as_float(os.getenv("MAPSCO_RATE_PER_SEC"), 1.0)
        self.MAPSCO_CALL_BUDGET: int = _as_int(os.getenv("MAPSCO_CALL_BUDGET"), 1000)

        self.MAPS_SCRAPE_ENABLED: bool = _as_bool(os.getenv("MAPS_SCRAPE_ENABLED"), True)
        self.MAPS_SCRAPE_URL: str = os.getenv("MAPS_SCRAPE_URL", "https://www.google.com/maps/search/")
        self.MAPS_SCRAPE_CONFIDENCE: float = _as_float(os.getenv("MAPS_SCRAPE_CONFIDENCE"), 0.95)
        self.MAPS_SCRAPE_RATE_PER_SEC: float = _as_float(os.getenv("MAPS_SCRAPE_RATE_PER_SEC"), 0.5)
        self.MAPS_SCRAPE_CALL_BUDGET: int = _as_int(os.getenv("MAPS_SCRAPE_CALL_BUDGET"), 50)

        # Geocode response cache
        self.GEOCODE_CACHE_PATH: str | None = os.getenv("GEOCODE_CACHE_PATH")
        self.GEOCODE_CACHE_TTL_SECONDS: int = _as_int(
            os.getenv("GEOCODE_CACHE_TTL_SECONDS"), 90 * 24 * 3600
        )

        # Resolution / scheduling
        self.FALLBACK_CONFIDENCE: float = _as_float(os.getenv("FALLBACK_CONFIDENCE"), 0.3)
        self.FALLBACK_JITTER_DEG: float = _as_float(os.getenv("FALLBACK_JITTER_DEG"), 0.0025)
        self.MIN_CHANGE_KM: float = _as_float(os.getenv("MIN_CHANGE_KM"), 0.05)
        self.HIGH_CONFIDENCE: float = _as_float(os.getenv("HIGH_CONFIDENCE"), 0.8)
        self.WORKERS: int = _as_int(os.getenv("PIPELINE_WORKERS"), 5)
        self.CHECKPOINT_EVERY: int = _as_int(os.getenv("CHECKPOINT_EVERY"), 20)
        self.INTER_REQUEST_DELAY_SEC: float = _as_float(os.getenv("INTER_REQUEST_DELAY_SEC"), 0.1)

        # Duplicates / audit
        self.DUPLICATE_NAME_SIMILARITY: float = _as_float(os.getenv("DUPLICATE_NAME_SIMILARITY"), 0.8)
        self.DUPLICATE_DISTANCE_KM: float = _as_float(os.getenv("DUPLICATE_DISTANCE_KM"), 0.1)
        self.MAX_UNRESOLVED_FRACTION: float = _as_float(os.getenv("MAX_UNRESOLVED_FRACTION"), 0.05)

        # HTTP API: /places/resolve stays offline unless enabled
        self.API_RESOLVE_ONLINE: bool = _as_bool(os.getenv("API_RESOLVE_ONLINE"), False)


settings = Settings()
