"""City catalog used to map coordinates onto the official provider's city ids."""
from __future__ import annotations

import logging
import math
import string
import threading
import time
import unicodedata
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

CITY_LIST_TTL_SECONDS = 6 * 60 * 60
_TEXT_KEEP = frozenset(string.ascii_lowercase + string.digits)

COUNTRY_ALIASES: Dict[str, List[str]] = {
    "DE": ["germany", "deutschland", "almanya"],
    "NL": ["netherlands", "nederland", "holland", "hollanda"],
    "TR": ["turkey", "turkiye", "tuerkiye"],
    "GB": ["uk", "unitedkingdom", "england", "birlesikkrallik"],
    "US": ["usa", "unitedstates", "amerika"],
}


@dataclass
class CityRecord:
    id: int
    name: str
    country: str
    name_norm: str
    country_norm: str
    latitude: Optional[float]
    longitude: Optional[float]

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def normalize_text(value: Any) -> str:
    """Lowercase, strip accents and drop everything except ``a-z0-9``."""
    # Dotless i has no decomposition.
    decomposed = unicodedata.normalize("NFD", str(value or "").lower().replace("ı", "i"))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return "".join(ch for ch in stripped if ch in _TEXT_KEEP)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return 6371.0 * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def normalized_country_hints(country_code: str, country_name: str) -> List[str]:
    hints: List[str] = []
    code_norm = normalize_text(country_code)
    name_norm = normalize_text(country_name)
    if code_norm:
        hints.append(code_norm)
        for alias in COUNTRY_ALIASES.get((country_code or "").upper(), []):
            alias_norm = normalize_text(alias)
            if alias_norm not in hints:
                hints.append(alias_norm)
    if name_norm and name_norm not in hints:
        hints.append(name_norm)
    return hints


def score_city(
    city: CityRecord,
    city_norm: str,
    country_hints: List[str],
    latitude: float,
    longitude: float,
) -> int:
    score = 0
    if city_norm:
        if city.name_norm == city_norm:
            score += 100
        elif city.name_norm.startswith(city_norm) or city_norm.startswith(city.name_norm):
            score += 60
        elif city_norm in city.name_norm or city.name_norm in city_norm:
            score += 30

    for hint in country_hints:
        if not hint or not city.country_norm:
            continue
        if city.country_norm == hint:
            score += 25
        elif hint in city.country_norm or city.country_norm in hint:
            score += 10

    if city.has_coordinates:
        distance = haversine_km(latitude, longitude, city.latitude, city.longitude)  # type: ignore[arg-type]
        if distance < 20:
            score += 20
        elif distance < 60:
            score += 10
    return score


def match_cities(
    cities: List[CityRecord],
    latitude: float,
    longitude: float,
    city: str = "",
    country_code: str = "",
    country_name: str = "",
    limit: int = 10,
) -> List[int]:
    """Return city ids ranked by name, country and distance score."""
    city_norm = normalize_text(city)
    hints = normalized_country_hints(country_code, country_name)
    scored = []
    for record in cities:
        score = score_city(record, city_norm, hints, latitude, longitude)
        if score > 0:
            scored.append((score, record.id))
    scored.sort(key=lambda item: -item[0])
    return [city_id for _, city_id in scored[:limit]]


def nearest_cities(cities: List[CityRecord], latitude: float, longitude: float, limit: int = 20) -> List[CityRecord]:
    with_coords = [record for record in cities if record.has_coordinates]
    with_coords.sort(
        key=lambda record: haversine_km(latitude, longitude, record.latitude, record.longitude)  # type: ignore[arg-type]
    )
    return with_coords[:limit]


def collect_objects(payload: Any) -> List[Dict[str, Any]]:
    """Breadth-first list of every mapping nested anywhere in *payload*."""
    queue: List[Any] = [payload]
    rows: List[Dict[str, Any]] = []
    while queue:
        current = queue.pop(0)
        if isinstance(current, list):
            queue.extend(current)
            continue
        if not isinstance(current, dict):
            continue
        rows.append(current)
        queue.extend(value for value in current.values() if isinstance(value, (dict, list)))
    return rows


def parse_city_rows(payload: Any) -> List[CityRecord]:
    seen: Dict[int, CityRecord] = {}
    for row in collect_objects(payload):
        city_id = _safe_int(row.get("id") or row.get("cityId") or row.get("cityID") or row.get("_id"))
        name = str(row.get("name") or row.get("cityName") or row.get("city") or "").strip()
        if not city_id or city_id <= 0 or not name or city_id in seen:
            continue
        country = str(row.get("country") or row.get("countryName") or row.get("countryTitle") or "").strip()
        seen[city_id] = CityRecord(
            id=city_id,
            name=name,
            country=country,
            name_norm=normalize_text(name),
            country_norm=normalize_text(country),
            latitude=_first_float(row, ("latitude", "lat", "enlem")),
            longitude=_first_float(row, ("longitude", "lon", "lng", "boylam")),
        )
    return list(seen.values())


class LocationCatalog:
    """Lazily loads and memoises the provider city list; safe to drop and rebuild."""

    def __init__(
        self,
        loader: Callable[[], Any],
        ttl_seconds: float = CITY_LIST_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cities: Optional[List[CityRecord]] = None
        self._loaded_at = 0.0
        self._labels: Dict[int, str] = {}

    def cities(self, refresh: bool = False) -> List[CityRecord]:
        """Return the cached city list, loading it on first use or once stale."""
        with self._lock:
            stale = self._cities is not None and self._clock() - self._loaded_at >= self._ttl_seconds
            if refresh or stale:
                self._cities = None
            if self._cities is None:
                records = parse_city_rows(self._loader())
                LOGGER.debug("Loaded %d provider cities", len(records))
                self._cities = records
                self._loaded_at = self._clock()
                for record in records:
                    self._labels.setdefault(record.id, record.name)
            return list(self._cities)

    def invalidate(self) -> None:
        with self._lock:
            self._cities = None
            self._labels.clear()

    def label_for(self, city_id: int) -> Optional[str]:
        with self._lock:
            return self._labels.get(city_id)

    def remember_label(self, city_id: int, label: str) -> None:
        with self._lock:
            self._labels[city_id] = label


def _safe_int(value: Any) -> Optional[int]:
    try:
        if value in (None, ""):
            return None
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _first_float(row: Dict[str, Any], keys: tuple) -> Optional[float]:
    for key in keys:
        value = row.get(key)
        try:
            if value in (None, ""):
                continue
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return None
