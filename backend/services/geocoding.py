"""Forward geocoding adapters (name -> coordinate) for the resolution chain.

Every adapter exposes ``geocode(query) -> GeocodeResult | None`` and never
raises: timeouts, HTTP errors and malformed payloads are logged and reported
as ``None`` so the chain can fall through to the next source. Results that
land outside the territory's outer box are dropped the same way.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from domain.models import GeocodeResult
from domain.territory import TerritoryConfig, normalize_place_name
from services.geocode_cache_sqlite import MISS, GeocodeCache
from services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)
_session = requests.Session()
_logged_ua = False

FALLBACK_UA = "island-poi-reconciler/0.1 (contact: example@example.com)"
BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

TIER_FAST = "fast"
TIER_LAST_RESORT = "last_resort"


class GeocodeError(Exception):
    """Base class for adapter failures. Never escapes an adapter."""


class NetworkFailure(GeocodeError):
    """Timeout, connection error or non-success HTTP status."""


class RateLimited(GeocodeError):
    """Upstream answered 429; retried with backoff on the same adapter."""


class MalformedResponse(NetworkFailure):
    """Payload could not be parsed."""


def _redact_email(ua: str) -> str:
    if "@" not in ua:
        return ua
    return re.sub(r"\S+@\S+", "<redacted>", ua)


def _with_territory(query: str, territory: TerritoryConfig) -> str:
    if territory.name.lower() in query.lower():
        return query
    return f"{query}, {territory.name}"


def build_user_agent(user_agent: Optional[str], contact: Optional[str]) -> str:
    if user_agent:
        return user_agent
    if contact:
        return f"island-poi-reconciler/0.1 (contact: {contact})"
    logger.warning(
        "GEOCODE_USER_AGENT / GEOCODE_CONTACT not set in environment; using fallback UA. "
        "This may violate Nominatim usage policy."
    )
    return FALLBACK_UA


class GeocodeAdapter:
    """Base adapter. Subclasses set ``name`` and implement ``geocode``."""

    name = "adapter"
    tier = TIER_FAST

    def __init__(self, territory: TerritoryConfig, confidence: float):
        self.territory = territory
        self.confidence = confidence

    def geocode(self, query: str) -> Optional[GeocodeResult]:
        raise NotImplementedError

    def _accept(self, lat: Any, lng: Any, display_name: Optional[str] = None) -> Optional[GeocodeResult]:
        """Build a result if the point is inside the outer territory box."""
        try:
            lat_f = float(lat)
            lng_f = float(lng)
        except (TypeError, ValueError):
            return None
        if not self.territory.outer_bounds.contains(lat_f, lng_f):
            return None
        return GeocodeResult(
            lat=lat_f,
            lng=lng_f,
            confidence=self.confidence,
            source=self.name,
            display_name=display_name,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} conf={self.confidence}>"


class VerifiedTableAdapter(GeocodeAdapter):
    """Literal lookups in the curated verified-location table. No network."""

    name = "verified"
    PARTIAL_CONFIDENCE = 0.95
    MIN_PARTIAL_LEN = 4

    def __init__(self, territory: TerritoryConfig, confidence: float = 1.0):
        super().__init__(territory, confidence)
        self._table = territory.verified_locations

    def geocode(self, query: str) -> Optional[GeocodeResult]:
        key = normalize_place_name(query)
        point = self._table.get(key)
        if point is None:
            return None
        return GeocodeResult(point[0], point[1], self.confidence, self.name, key)

    def lookup_partial(self, name: str) -> Optional[GeocodeResult]:
        """
        Whole-word containment either way ("kaibo beach bar & grill" contains
        "kaibo beach bar"). The shorter side must be at least
        MIN_PARTIAL_LEN characters; the longest matching key wins, ties by key.
        """
        norm = normalize_place_name(name)
        if len(norm) < self.MIN_PARTIAL_LEN:
            return None
        padded = f" {norm} "
        best: Optional[str] = None
        for key in self._table:
            if key == norm:
                continue
            shorter = key if len(key) <= len(norm) else norm
            if len(shorter) < self.MIN_PARTIAL_LEN:
                continue
            if f" {key} " in padded or padded in f" {key} ":
                if best is None or (len(key), key) > (len(best), best):
                    best = key
        if best is None:
            return None
        lat, lng = self._table[best]
        return GeocodeResult(lat, lng, self.PARTIAL_CONFIDENCE, "verified-partial", best)


class HttpGeocodeAdapter(GeocodeAdapter):
    """
    Shared plumbing for network adapters: cache, call budget, token bucket,
    429 backoff-and-retry, and failure-to-None conversion.
    """

    base_url = ""

    def __init__(
        self,
        territory: TerritoryConfig,
        confidence: float,
        *,
        base_url: Optional[str] = None,
        call_budget: int = 1000,
        limiter: Optional[TokenBucket] = None,
        timeout: float = 5.0,
        max_retries: int = 2,
        backoff_sec: float = 2.0,
        cache: Optional[GeocodeCache] = None,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(territory, confidence)
        if base_url:
            self.base_url = base_url
        self.call_budget = call_budget
        self.limiter = limiter
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_sec = backoff_sec
        self.cache = cache
        self.session = session or _session
        self.headers = dict(headers or {})
        self._sleep = sleep
        self._calls = 0
        self._calls_lock = threading.Lock()

    @property
    def calls_made(self) -> int:
        return self._calls

    def _take_budget(self) -> bool:
        with self._calls_lock:
            if self._calls >= self.call_budget:
                return False
            self._calls += 1
            return True

    def geocode(self, query: str) -> Optional[GeocodeResult]:
        if not query or not query.strip():
            return None
        if self.cache is not None:
            cached = self.cache.get(self.name, query)
            if cached is MISS:
                return None
            if cached is not None:
                return cached

        try:
            result = self._fetch_with_retry(query)
        except GeocodeError as exc:
            logger.warning("%s geocode failed for %r: %s", self.name, query, exc)
            return None

        if self.cache is not None:
            self.cache.put(self.name, query, result)
        return result

    def _fetch_with_retry(self, query: str) -> Optional[GeocodeResult]:
        attempt = 0
        while True:
            if not self._take_budget():
                logger.debug("%s call budget (%d) exhausted", self.name, self.call_budget)
                raise NetworkFailure("call budget exhausted")
            try:
                return self._fetch(query)
            except RateLimited:
                if attempt >= self.max_retries:
                    raise
                wait = self.backoff_sec * (2 ** attempt)
                logger.info("%s rate limited, retrying in %.1fs", self.name, wait)
                self._sleep(wait)
                attempt += 1

    def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> requests.Response:
        if self.limiter is not None:
            self.limiter.acquire()
        try:
            resp = self.session.get(url, params=params, headers=self.headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise NetworkFailure(f"timeout after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise NetworkFailure(str(exc)) from exc
        if resp.status_code == 429:
            raise RateLimited("HTTP 429")
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise NetworkFailure(str(exc)) from exc
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponse(f"invalid JSON: {exc}") from exc

    def _fetch(self, query: str) -> Optional[GeocodeResult]:
        raise NotImplementedError


class PhotonAdapter(HttpGeocodeAdapter):
    """Komoot Photon: fast OSM-backed text search, GeoJSON response."""

    name = "photon"
    base_url = "https://photon.komoot.io/api/"

    def _fetch(self, query: str) -> Optional[GeocodeResult]:
        lat0, lng0 = self.territory.default_centroid
        params = {
            "q": _with_territory(query, self.territory),
            "limit": "5",
            "lat": str(lat0),
            "lon": str(lng0),
        }
        data = self._json(self._get(self.base_url, params=params))
        if not isinstance(data, dict):
            raise MalformedResponse("expected GeoJSON object")
        for feature in data.get("features") or []:
            coords = ((feature or {}).get("geometry") or {}).get("coordinates")
            if not isinstance(coords, (list, tuple)) or len(coords) < 2:
                continue
            props = feature.get("properties") or {}
            result = self._accept(coords[1], coords[0], props.get("name"))
            if result:
                return result
        return None


class NominatimAdapter(HttpGeocodeAdapter):
    """OSM Nominatim search. Requires an identifying User-Agent and ~1 req/s."""

    name = "nominatim"
    base_url = "https://nominatim.openstreetmap.org/search"

    def __init__(self, territory: TerritoryConfig, confidence: float, *, api_key: Optional[str] = None, **kwargs):
        super().__init__(territory, confidence, **kwargs)
        self.api_key = api_key

    def _params(self, query: str) -> Dict[str, str]:
        params = {
            "q": query,
            "format": "jsonv2",
            "limit": "5",
            "countrycodes": self.territory.country_code,
        }
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    def _fetch(self, query: str) -> Optional[GeocodeResult]:
        global _logged_ua
        if not _logged_ua and "User-Agent" in self.headers:
            logger.debug("Nominatim User-Agent: %s", _redact_email(self.headers["User-Agent"]))
            _logged_ua = True
        data = self._json(self._get(self.base_url, params=self._params(query)))
        if not isinstance(data, list):
            raise MalformedResponse("expected a list of places")
        for item in data:
            if not isinstance(item, dict):
                continue
            result = self._accept(item.get("lat"), item.get("lon"), item.get("display_name"))
            if result:
                return result
        return None


class MapsCoAdapter(NominatimAdapter):
    """geocode.maps.co: Nominatim-compatible backup."""

    name = "mapsco"
    base_url = "https://geocode.maps.co/search"


_AT_PATTERN = re.compile(r"@(-?\d+\.\d+),(-?\d+\.\d+)")
_CENTER_PATTERN = re.compile(r"center[\"\s:]+\[?\s*(-?\d+\.\d+)\s*,\s*(-?\d+\.\d+)")


class MapsSearchScrapeAdapter(HttpGeocodeAdapter):
    """
    Last resort: fetch a consumer map search page and pull the first embedded
    ``@lat,lng`` (or ``center: [lat, lng]``) coordinate out of the HTML.
    Slow and fragile, so it runs with a small budget and only after the fast
    adapters have failed for every query.
    """

    name = "maps-scrape"
    tier = TIER_LAST_RESORT
    base_url = "https://www.google.com/maps/search/"

    def _fetch(self, query: str) -> Optional[GeocodeResult]:
        resp = self._get(self.base_url + quote(_with_territory(query, self.territory)))
        html = getattr(resp, "text", None)
        if not isinstance(html, str):
            raise MalformedResponse("no HTML body")
        for pattern in (_AT_PATTERN, _CENTER_PATTERN):
            for match in pattern.finditer(html):
                result = self._accept(match.group(1), match.group(2))
                if result:
                    return result
        return None


def build_default_adapters(
    territory: TerritoryConfig,
    cfg=None,
    cache: Optional[GeocodeCache] = None,
    session: Optional[requests.Session] = None,
) -> List[GeocodeAdapter]:
    """Adapters in priority order, configured from settings."""
    if cfg is None:
        from settings import settings as cfg
    if cfg.GEOCODE_OFFLINE:
        return []

    common = dict(
        timeout=cfg.GEOCODE_TIMEOUT_SEC,
        max_retries=cfg.GEOCODE_MAX_RETRIES,
        backoff_sec=cfg.GEOCODE_BACKOFF_SEC,
        cache=cache,
        session=session,
    )
    ua = build_user_agent(cfg.GEOCODE_USER_AGENT, cfg.GEOCODE_CONTACT)
    adapters: List[GeocodeAdapter] = [
        PhotonAdapter(
            territory,
            cfg.PHOTON_CONFIDENCE,
            base_url=cfg.PHOTON_URL,
            call_budget=cfg.PHOTON_CALL_BUDGET,
            limiter=TokenBucket(cfg.PHOTON_RATE_PER_SEC),
            headers={"Accept": "application/json", "User-Agent": ua},
            **common,
        ),
        NominatimAdapter(
            territory,
            cfg.NOMINATIM_CONFIDENCE,
            base_url=cfg.NOMINATIM_URL,
            call_budget=cfg.NOMINATIM_CALL_BUDGET,
            limiter=TokenBucket(cfg.NOMINATIM_RATE_PER_SEC, capacity=1),
            headers={"User-Agent": ua, "Accept": "application/json"},
            **common,
        ),
    ]
    if cfg.MAPSCO_API_KEY:
        adapters.append(
            MapsCoAdapter(
                territory,
                cfg.MAPSCO_CONFIDENCE,
                base_url=cfg.MAPSCO_URL,
                api_key=cfg.MAPSCO_API_KEY,
                call_budget=cfg.MAPSCO_CALL_BUDGET,
                limiter=TokenBucket(cfg.MAPSCO_RATE_PER_SEC, capacity=1),
                headers={"User-Agent": ua},
                **common,
            )
        )
    if cfg.MAPS_SCRAPE_ENABLED:
        adapters.append(
            MapsSearchScrapeAdapter(
                territory,
                cfg.MAPS_SCRAPE_CONFIDENCE,
                base_url=cfg.MAPS_SCRAPE_URL,
                call_budget=cfg.MAPS_SCRAPE_CALL_BUDGET,
                limiter=TokenBucket(cfg.MAPS_SCRAPE_RATE_PER_SEC, capacity=1),
                headers={"User-Agent": BROWSER_UA, "Accept-Language": "en"},
                **common,
            )
        )
    return adapters
