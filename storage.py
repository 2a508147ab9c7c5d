"""Key-value cache store plus the cached timings, location and qibla records kept in it."""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from errors import DataIntegrityError
from prayer_times import Timings

LOGGER = logging.getLogger(__name__)

SETTINGS_KEY = "settings:v1"
LATEST_TIMINGS_KEY = "timings:latest:v1"
LATEST_LOCATION_KEY = "location:latest:v1"
QIBLA_CACHE_PREFIX = "qibla"
LATEST_QIBLA_KEY = "qibla:latest:v1"
MOSQUES_CACHE_PREFIX = "mosques:cache:v1"


class CacheStore(Protocol):
    """String key-value persistence with no cross-key transactions."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class MemoryCacheStore:
    """Process-local store, used by tests and as a scratch cache."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())


class JsonFileCacheStore:
    """Persist every key in a single JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            LOGGER.debug("No cache file at %s; starting empty", self._path)
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError):
            LOGGER.warning("Cache file %s is unreadable; starting empty", self._path, exc_info=True)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle, indent=2)
        os.replace(tmp_path, self._path)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def round_coordinate(value: float) -> float:
    return round(float(value), 2)


def format_coordinate(value: float) -> str:
    return f"{float(value):.2f}"


def get_json(store: CacheStore, key: str) -> Optional[Any]:
    raw = store.get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        LOGGER.debug("Ignoring invalid JSON under cache key %s", key)
        return None


def set_json(store: CacheStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value))


# -- Timings -------------------------------------------------------------------
def build_timings_cache_key(
    date_key: str,
    latitude: float,
    longitude: float,
    method_id: int,
    provider: str = "aladhan",
) -> str:
    """Two decimals groups nearby GPS fixes onto one entry."""
    return (
        f"timings:{date_key}:{format_coordinate(latitude)}:{format_coordinate(longitude)}"
        f":p{provider}:m{method_id}"
    )


@dataclass
class CachedTimings:
    timings: Timings
    last_updated: str
    source: str
    lat_rounded: float
    lon_rounded: float
    provider: str
    method_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timings": self.timings.to_dict(),
            "lastUpdated": self.last_updated,
            "source": self.source,
            "latRounded": self.lat_rounded,
            "lonRounded": self.lon_rounded,
            "provider": self.provider,
            "methodId": self.method_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CachedTimings":
        return cls(
            timings=Timings.from_dict(payload.get("timings") or {}),
            last_updated=str(payload.get("lastUpdated", "")),
            source="cache" if payload.get("source") == "cache" else "api",
            lat_rounded=float(payload.get("latRounded", 0.0)),
            lon_rounded=float(payload.get("lonRounded", 0.0)),
            provider=str(payload.get("provider") or "aladhan"),
            method_id=int(payload.get("methodId", 0)),
        )


def _parse_cached_timings(payload: Any) -> Optional[CachedTimings]:
    if not isinstance(payload, dict):
        return None
    try:
        return CachedTimings.from_dict(payload)
    except (DataIntegrityError, TypeError, ValueError):
        LOGGER.debug("Ignoring malformed cached timings row", exc_info=True)
        return None


def get_cached_timings(store: CacheStore, key: str) -> Optional[CachedTimings]:
    return _parse_cached_timings(get_json(store, key))


def save_cached_timings(store: CacheStore, key: str, record: CachedTimings) -> None:
    """Write the per-day entry, then mirror it to the latest slot."""
    payload = record.to_dict()
    set_json(store, key, payload)
    set_json(store, LATEST_TIMINGS_KEY, payload)
    LOGGER.debug("Cached timings under %s", key)


def get_latest_cached_timings(store: CacheStore) -> Optional[CachedTimings]:
    return _parse_cached_timings(get_json(store, LATEST_TIMINGS_KEY))


def get_cached_timings_for_date(
    store: CacheStore,
    date_key: str,
    provider: str,
    method_id: int,
) -> Optional[CachedTimings]:
    """Return the newest entry for a day regardless of the coordinates it was cached under."""
    prefix = f"timings:{date_key}:"
    suffix = f":p{provider}:m{method_id}"
    newest: Optional[CachedTimings] = None
    newest_at: Optional[datetime] = None
    for key in store.keys():
        if not key.startswith(prefix) or not key.endswith(suffix):
            continue
        cached = get_cached_timings(store, key)
        if cached is None:
            continue
        if cached.timings.date_key != date_key or cached.method_id != method_id or cached.provider != provider:
            continue
        updated_at = parse_iso(cached.last_updated)
        if newest is None or (updated_at is not None and (newest_at is None or updated_at > newest_at)):
            newest = cached
            newest_at = updated_at
    return newest


# -- Location ------------------------------------------------------------------
@dataclass
class CachedLocation:
    latitude: float
    longitude: float
    label: str
    mode: str
    updated_at: str


def save_latest_location(store: CacheStore, location: CachedLocation) -> None:
    set_json(
        store,
        LATEST_LOCATION_KEY,
        {
            "lat": location.latitude,
            "lon": location.longitude,
            "label": location.label,
            "mode": location.mode,
            "updatedAt": location.updated_at,
        },
    )


def get_latest_location(store: CacheStore) -> Optional[CachedLocation]:
    payload = get_json(store, LATEST_LOCATION_KEY)
    if not isinstance(payload, dict):
        return None
    try:
        return CachedLocation(
            latitude=float(payload["lat"]),
            longitude=float(payload["lon"]),
            label=str(payload.get("label", "")),
            mode="manual" if payload.get("mode") == "manual" else "gps",
            updated_at=str(payload.get("updatedAt", "")),
        )
    except (KeyError, TypeError, ValueError):
        return None


# -- Qibla ---------------------------------------------------------------------
@dataclass
class CachedQibla:
    bearing: float
    location_name: str
    updated_at: str
    lat_rounded: float
    lon_rounded: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bearing": self.bearing,
            "locationName": self.location_name,
            "updatedAt": self.updated_at,
            "latRounded": self.lat_rounded,
            "lonRounded": self.lon_rounded,
        }


def build_qibla_cache_key(latitude: float, longitude: float) -> str:
    return f"{QIBLA_CACHE_PREFIX}:{format_coordinate(latitude)}:{format_coordinate(longitude)}"


def _parse_cached_qibla(payload: Any) -> Optional[CachedQibla]:
    if not isinstance(payload, dict):
        return None
    try:
        return CachedQibla(
            bearing=float(payload["bearing"]),
            location_name=str(payload.get("locationName", "")),
            updated_at=str(payload.get("updatedAt", "")),
            lat_rounded=float(payload.get("latRounded", 0.0)),
            lon_rounded=float(payload.get("lonRounded", 0.0)),
        )
    except (KeyError, TypeError, ValueError):
        return None


def get_cached_qibla(store: CacheStore, key: str) -> Optional[CachedQibla]:
    return _parse_cached_qibla(get_json(store, key))


def save_cached_qibla(store: CacheStore, key: str, value: CachedQibla) -> None:
    set_json(store, key, value.to_dict())
    set_json(store, LATEST_QIBLA_KEY, value.to_dict())


def get_latest_cached_qibla(store: CacheStore) -> Optional[CachedQibla]:
    return _parse_cached_qibla(get_json(store, LATEST_QIBLA_KEY))


# -- Mosques -------------------------------------------------------------------
def build_mosques_cache_key(latitude: float, longitude: float, radius_km: float) -> str:
    return (
        f"{MOSQUES_CACHE_PREFIX}:{format_coordinate(latitude)}:{format_coordinate(longitude)}"
        f":{_compact_number(radius_km)}"
    )


def _compact_number(value: float) -> str:
    rounded = round(float(value), 2)
    return str(int(rounded)) if rounded.is_integer() else str(rounded)
