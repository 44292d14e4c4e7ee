from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import requests
from loguru import logger

from config import Configuration
from models import CatalogVenue, OpeningHours, OpeningPeriod, PhotoReference, TimePoint

BBox = Tuple[float, float, float, float]  # min_lon, min_lat, max_lon, max_lat

_POSTGREST_RESERVED = str.maketrans("", "", '",()*')


class CatalogError(RuntimeError):
    pass


class CatalogStore(ABC):
    """Read-only venue catalog. Implementations must not be mutated by the pipeline."""

    @abstractmethod
    def fetch_in_bbox(self, bbox: BBox) -> List[CatalogVenue]:
        ...

    @abstractmethod
    def fetch_by_cities(self, names: Sequence[str]) -> List[CatalogVenue]:
        """Venues whose city contains any of ``names`` (case-insensitive substring)."""

    @abstractmethod
    def fetch_all(self) -> List[CatalogVenue]:
        ...


# ---------------------------------------------------------------------------
# Row parsing (store boundary)
# ---------------------------------------------------------------------------


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_vector(value: Any) -> Optional[List[float]]:
    # pgvector columns come back from PostgREST as "[0.1,0.2,...]" strings
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, list) or not value:
        return None
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        return None


def _as_time_point(value: Any) -> Optional[TimePoint]:
    if not isinstance(value, dict):
        return None
    day = _as_int(value.get("day"))
    time_str = _as_str(value.get("time"))
    if day is None or time_str is None or not 0 <= day <= 6:
        return None
    return TimePoint(day=day, time=time_str)


def _parse_opening_hours(value: Any) -> Optional[OpeningHours]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, dict):
        return None
    periods: list[OpeningPeriod] = []
    for raw in value.get("periods") or []:
        if not isinstance(raw, dict):
            continue
        open_point = _as_time_point(raw.get("open"))
        if open_point is None:
            continue
        periods.append(OpeningPeriod(open=open_point, close=_as_time_point(raw.get("close"))))
    weekday_text = [str(t) for t in (value.get("weekday_text") or []) if isinstance(t, str)]
    hours = OpeningHours(periods=periods, weekday_text=weekday_text)
    return None if hours.is_empty() else hours


def _parse_photos(value: Any) -> List[PhotoReference]:
    photos: list[PhotoReference] = []
    for raw in value or []:
        if not isinstance(raw, dict) or not raw.get("photo_reference"):
            continue
        photos.append(
            PhotoReference(
                photo_reference=str(raw["photo_reference"]),
                width=_as_int(raw.get("width")) or 0,
                height=_as_int(raw.get("height")) or 0,
            )
        )
    return photos


def parse_venue_row(row: dict) -> Optional[CatalogVenue]:
    """Validate one catalog row. Returns None for rows without an id or a name."""
    venue_id = _as_str(row.get("google_place_id")) or _as_str(row.get("id"))
    name = _as_str(row.get("name"))
    if not venue_id or not name:
        return None

    categories = row.get("categories") or []
    if isinstance(categories, str):
        categories = [c.strip() for c in categories.split(",")]
    price_level = _as_int(row.get("price_level"))
    if price_level is not None and not 1 <= price_level <= 4:
        price_level = None

    return CatalogVenue(
        id=venue_id,
        name=name,
        address=_as_str(row.get("address")),
        city=_as_str(row.get("city")),
        lat=_as_float(row.get("latitude", row.get("lat"))),
        lng=_as_float(row.get("longitude", row.get("lng"))),
        phone=_as_str(row.get("phone")),
        website=_as_str(row.get("website")),
        rating=_as_float(row.get("google_rating", row.get("rating"))),
        review_count=_as_int(row.get("google_reviews_count", row.get("review_count"))),
        price_level=price_level,
        categories=[str(c) for c in categories if str(c).strip()],
        opening_hours=_parse_opening_hours(row.get("opening_hours")),
        photos=_parse_photos(row.get("photos")),
        summary=_as_str(row.get("summary")),
        summary_embedding=_as_vector(row.get("summary_embedding")),
        reviews_text=_as_str(row.get("reviews_text")),
        reviews_embedding=_as_vector(row.get("reviews_embedding")),
    )


def parse_venue_rows(rows: Iterable[Any]) -> List[CatalogVenue]:
    venues: list[CatalogVenue] = []
    dropped = 0
    for row in rows:
        venue = parse_venue_row(row) if isinstance(row, dict) else None
        if venue is None:
            dropped += 1
            continue
        venues.append(venue)
    if dropped:
        logger.debug("Dropped {} malformed catalog rows", dropped)
    return venues


# ---------------------------------------------------------------------------
# PostgREST (Supabase) store
# ---------------------------------------------------------------------------


@dataclass
class _RetryPolicy:
    retries: int = 3
    base_delay: float = 0.5
    budget: Optional[float] = None

    def allows(self, attempt: int, started: float, call_timeout: float) -> bool:
        """True when another attempt, including its back-off and a full timeout, fits the budget."""
        if attempt > self.retries:
            return False
        if self.budget is None:
            return True
        elapsed = time.monotonic() - started
        return elapsed + self.base_delay * attempt + call_timeout <= self.budget


def _ilike_value(name: str) -> str:
    return name.translate(_POSTGREST_RESERVED).strip()


class PostgrestCatalogStore(CatalogStore):
    def __init__(self, cfg: Configuration) -> None:
        if not cfg.catalog_url:
            raise ValueError("CATALOG_URL is required")
        self.cfg = cfg
        self.base = cfg.catalog_url.rstrip("/")
        self.session = requests.Session()
        self._cache_ttl = 60 * 5
        self._cache_max = 64
        self._cache: OrderedDict[str, Tuple[float, List[CatalogVenue]]] = OrderedDict()
        # queries run on worker threads
        self._cache_lock = threading.Lock()

    def _cache_get(self, key: str) -> Optional[List[CatalogVenue]]:
        with self._cache_lock:
            entry = self._cache.get(key)
            if not entry:
                return None
            ts, value = entry
            if time.time() - ts > self._cache_ttl:
                self._cache.pop(key, None)
                return None
            self._cache.move_to_end(key)
            return value

    def _cache_set(self, key: str, value: List[CatalogVenue]) -> None:
        with self._cache_lock:
            if key not in self._cache and len(self._cache) >= self._cache_max:
                self._cache.popitem(last=False)
            self._cache[key] = (time.time(), value)
            self._cache.move_to_end(key)

    def _get(self, params: List[Tuple[str, str]]) -> list:
        url = f"{self.base}/{self.cfg.catalog_table}"
        headers = {"Accept": "application/json"}
        if self.cfg.catalog_key:
            headers["apikey"] = self.cfg.catalog_key
            headers["Authorization"] = f"Bearer {self.cfg.catalog_key}"
        params = [("select", "*"), *params, ("limit", str(self.cfg.catalog_max_rows))]
        # a worker thread outlives the pipeline timeout, so retries must fit inside it
        policy = _RetryPolicy(budget=self.cfg.pipeline_timeout_sec)
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.get(url, headers=headers, params=params, timeout=self.cfg.catalog_timeout)
            except requests.RequestException as exc:  # network error
                if policy.allows(attempt, started, self.cfg.catalog_timeout):
                    time.sleep(policy.base_delay * attempt)
                    continue
                raise CatalogError(f"request error: {exc}")

            if resp.status_code in (429, 500, 502, 503, 504):
                if policy.allows(attempt, started, self.cfg.catalog_timeout):
                    time.sleep(policy.base_delay * attempt)
                    continue
                raise CatalogError(f"upstream {resp.status_code}: {resp.text[:300]}")

            if not resp.ok:
                raise CatalogError(f"upstream {resp.status_code}: {resp.text[:300]}")

            try:
                payload = resp.json()
            except ValueError:
                raise CatalogError("invalid json response")
            if not isinstance(payload, list):
                raise CatalogError("unexpected catalog payload")
            return payload

    def _query(self, key: str, params: List[Tuple[str, str]]) -> List[CatalogVenue]:
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)
        venues = parse_venue_rows(self._get(params))
        self._cache_set(key, list(venues))
        return venues

    def fetch_in_bbox(self, bbox: BBox) -> List[CatalogVenue]:
        min_lon, min_lat, max_lon, max_lat = bbox
        key = f"bbox:{min_lon:.5f},{min_lat:.5f},{max_lon:.5f},{max_lat:.5f}"
        params = [
            ("latitude", f"gte.{min_lat}"),
            ("latitude", f"lte.{max_lat}"),
            ("longitude", f"gte.{min_lon}"),
            ("longitude", f"lte.{max_lon}"),
        ]
        return self._query(key, params)

    def fetch_by_cities(self, names: Sequence[str]) -> List[CatalogVenue]:
        cleaned = [v for v in (_ilike_value(n) for n in names) if v]
        if not cleaned:
            return []
        key = "city:" + "|".join(sorted(c.lower() for c in cleaned))
        if len(cleaned) == 1:
            params = [("city", f"ilike.*{cleaned[0]}*")]
        else:
            clauses = ",".join(f'city.ilike."*{c}*"' for c in cleaned)
            params = [("or", f"({clauses})")]
        return self._query(key, params)

    def fetch_all(self) -> List[CatalogVenue]:
        return self._query("all", [])


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryCatalogStore(CatalogStore):
    def __init__(self, venues: Iterable[CatalogVenue]) -> None:
        self._venues: Tuple[CatalogVenue, ...] = tuple(venues)

    @classmethod
    def from_json(cls, path: str | Path) -> "InMemoryCatalogStore":
        with Path(path).open("r", encoding="utf-8") as fh:
            rows = json.load(fh)
        if isinstance(rows, dict):
            rows = rows.get("venues") or rows.get("restaurants") or []
        venues = parse_venue_rows(rows)
        logger.info("Loaded {} venues from {}", len(venues), path)
        return cls(venues)

    def fetch_in_bbox(self, bbox: BBox) -> List[CatalogVenue]:
        min_lon, min_lat, max_lon, max_lat = bbox
        return [
            v
            for v in self._venues
            if v.has_coordinates and min_lat <= v.lat <= max_lat and min_lon <= v.lng <= max_lon  # type: ignore[operator]
        ]

    def fetch_by_cities(self, names: Sequence[str]) -> List[CatalogVenue]:
        needles = [n.casefold() for n in names if n and n.strip()]
        if not needles:
            return []
        return [v for v in self._venues if v.city and any(n in v.city.casefold() for n in needles)]

    def fetch_all(self) -> List[CatalogVenue]:
        return list(self._venues)


def build_catalog(cfg: Configuration) -> CatalogStore:
    if cfg.catalog_url:
        return PostgrestCatalogStore(cfg)
    if cfg.catalog_fixture_path:
        return InMemoryCatalogStore.from_json(cfg.catalog_fixture_path)
    raise ValueError("CATALOG_URL (or CATALOG_FIXTURE_PATH) is required")
