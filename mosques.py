"""Nearby mosques from OpenStreetMap and whether each is reachable before the next prayer."""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from errors import ProviderUnavailable
from location_catalog import haversine_km
from prayer_times import NextPrayer, get_date_key, get_tomorrow, minutes_until, resolve_next_prayer
from settings import Settings
from storage import (
    CacheStore,
    build_mosques_cache_key,
    get_cached_timings_for_date,
    get_json,
    set_json,
)

LOGGER = logging.getLogger(__name__)

OVERPASS_URL = "https://overpass-api.de/api/interpreter"
MOSQUE_CACHE_TTL_SECONDS = 24 * 60 * 60
UNKNOWN_MOSQUE_NAME = "Mosque (unnamed)"
MOSQUES_SETTINGS_KEY = "mosques:settings:v1"

RADIUS_CHOICES_KM = (2, 5, 10, 20)
TRAVEL_SPEEDS_KMH = {"walk": 5.0, "drive": 30.0}
SAFETY_BUFFER_MINUTES = 10


@dataclass
class Mosque:
    id: str
    name: str
    latitude: float
    longitude: float
    distance_km: float
    last_updated: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lat": self.latitude,
            "lon": self.longitude,
            "distanceKm": self.distance_km,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Mosque":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or UNKNOWN_MOSQUE_NAME),
            latitude=float(payload["lat"]),
            longitude=float(payload["lon"]),
            distance_km=float(payload.get("distanceKm", 0.0)),
            last_updated=float(payload.get("lastUpdated", 0.0)),
        )


@dataclass
class MosqueEta:
    mosque: Mosque
    eta_minutes: int
    feasible: bool


@dataclass
class MosquesSettings:
    radius_km: int = 5
    travel_mode: str = "walk"


def load_mosques_settings(store: CacheStore) -> MosquesSettings:
    payload = get_json(store, MOSQUES_SETTINGS_KEY)
    defaults = MosquesSettings()
    if not isinstance(payload, dict):
        return defaults
    radius = payload.get("radiusKm")
    mode = payload.get("travelMode")
    return MosquesSettings(
        radius_km=radius if radius in RADIUS_CHOICES_KM and not isinstance(radius, bool) else defaults.radius_km,
        travel_mode=mode if mode in TRAVEL_SPEEDS_KMH else defaults.travel_mode,
    )


def save_mosques_settings(store: CacheStore, value: MosquesSettings) -> None:
    set_json(store, MOSQUES_SETTINGS_KEY, {"radiusKm": value.radius_km, "travelMode": value.travel_mode})


# -- feasibility ---------------------------------------------------------------
def estimate_eta_minutes(distance_km: float, travel_mode: str) -> int:
    """Whole minutes, rounded up, never below one."""
    speed = TRAVEL_SPEEDS_KMH[travel_mode]
    return max(1, int(math.ceil(distance_km * 60 / speed)))


def rank_mosques(
    mosques: List[Mosque],
    time_left_minutes: Optional[int],
    travel_mode: str,
    buffer_minutes: int = SAFETY_BUFFER_MINUTES,
) -> List[MosqueEta]:
    """Feasible first, then by ETA, then by distance.

    With no known time left nothing is marked feasible.
    """
    ranked = []
    for mosque in mosques:
        eta = estimate_eta_minutes(mosque.distance_km, travel_mode)
        feasible = time_left_minutes is not None and eta + buffer_minutes <= time_left_minutes
        ranked.append(MosqueEta(mosque=mosque, eta_minutes=eta, feasible=feasible))
    ranked.sort(key=lambda item: (not item.feasible, item.eta_minutes, item.mosque.distance_km))
    return ranked


def next_prayer_from_cache(store: CacheStore, settings: Settings, now: datetime) -> Optional[NextPrayer]:
    """Next prayer using whatever is cached for today and tomorrow, any coordinates."""
    today = get_cached_timings_for_date(
        store, get_date_key(now.date()), settings.timings_provider, settings.method_id
    )
    tomorrow = get_cached_timings_for_date(
        store, get_date_key(get_tomorrow(now.date())), settings.timings_provider, settings.method_id
    )
    return resolve_next_prayer(
        today.timings if today else None,
        tomorrow.timings if tomorrow else None,
        now,
    )


def time_left_until_next_prayer(store: CacheStore, settings: Settings, now: datetime) -> Optional[int]:
    upcoming = next_prayer_from_cache(store, settings, now)
    if upcoming is None:
        return None
    return minutes_until(upcoming.time, now)


# -- Overpass ------------------------------------------------------------------
def build_overpass_query(latitude: float, longitude: float, radius_meters: int) -> str:
    around = f"(around:{radius_meters},{latitude},{longitude})"
    selector = '["amenity"="place_of_worship"]["religion"="muslim"]'
    return (
        "[out:json][timeout:25];\n(\n"
        f"  node{selector}{around};\n"
        f"  way{selector}{around};\n"
        f"  relation{selector}{around};\n"
        ");\nout center;\n"
    )


def _element_coordinates(element: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    lat, lon = element.get("lat"), element.get("lon")
    if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
        return float(lat), float(lon)
    center = element.get("center")
    if isinstance(center, dict):
        lat, lon = center.get("lat"), center.get("lon")
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
            return float(lat), float(lon)
    return None


def parse_overpass_elements(
    elements: List[Dict[str, Any]],
    latitude: float,
    longitude: float,
    fetched_at: float,
) -> List[Mosque]:
    seen = set()
    mosques: List[Mosque] = []
    for element in elements:
        coords = _element_coordinates(element)
        if coords is None:
            continue
        mosque_id = f"{element.get('type')}/{element.get('id')}"
        if mosque_id in seen:
            continue
        seen.add(mosque_id)
        tags = element.get("tags") if isinstance(element.get("tags"), dict) else {}
        name = str(tags.get("name") or "").strip() or UNKNOWN_MOSQUE_NAME
        distance = haversine_km(latitude, longitude, coords[0], coords[1])
        mosques.append(
            Mosque(
                id=mosque_id,
                name=name,
                latitude=coords[0],
                longitude=coords[1],
                distance_km=round(distance, 3),
                last_updated=fetched_at,
            )
        )
    mosques.sort(key=lambda mosque: mosque.distance_km)
    return mosques


class MosqueService:
    """Overpass lookups cached per rounded location and radius for a day."""

    def __init__(
        self,
        store: CacheStore,
        timeout: int = 30,
        ttl_seconds: float = MOSQUE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def get_mosques(
        self,
        latitude: float,
        longitude: float,
        radius_km: float,
        force_refresh: bool = False,
    ) -> Tuple[List[Mosque], str]:
        """Return ``(mosques, source)`` where source is ``"cache"`` or ``"network"``."""
        cache_key = build_mosques_cache_key(latitude, longitude, radius_km)
        with self._lock:
            if not force_refresh:
                cached = self._read_cache(cache_key)
                if cached is not None:
                    LOGGER.debug("Mosque cache hit %s (%d)", cache_key, len(cached))
                    return cached, "cache"
                LOGGER.debug("Mosque cache miss %s", cache_key)

            mosques = self._fetch(latitude, longitude, radius_km)
            set_json(
                self.store,
                cache_key,
                {"fetchedAt": self._clock(), "mosques": [mosque.to_dict() for mosque in mosques]},
            )
            LOGGER.info("Fetched %d mosques within %s km", len(mosques), radius_km)
            return mosques, "network"

    def nearby_with_eta(
        self,
        latitude: float,
        longitude: float,
        settings: Settings,
        mosque_settings: MosquesSettings,
        now: datetime,
        force_refresh: bool = False,
    ) -> List[MosqueEta]:
        mosques, _ = self.get_mosques(latitude, longitude, mosque_settings.radius_km, force_refresh)
        time_left = time_left_until_next_prayer(self.store, settings, now)
        return rank_mosques(mosques, time_left, mosque_settings.travel_mode)

    def _read_cache(self, cache_key: str) -> Optional[List[Mosque]]:
        payload = get_json(self.store, cache_key)
        if not isinstance(payload, dict) or not isinstance(payload.get("mosques"), list):
            return None
        fetched_at = payload.get("fetchedAt")
        if not isinstance(fetched_at, (int, float)) or self._clock() - fetched_at > self.ttl_seconds:
            return None
        try:
            return [Mosque.from_dict(item) for item in payload["mosques"]]
        except (KeyError, TypeError, ValueError):
            return None

    def _fetch(self, latitude: float, longitude: float, radius_km: float) -> List[Mosque]:
        radius_meters = max(100, int(round(radius_km * 1000)))
        query = build_overpass_query(latitude, longitude, radius_meters)
        try:
            response = requests.post(OVERPASS_URL, data={"data": query}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"Overpass request failed: {exc}") from exc
        if not response.ok:
            raise ProviderUnavailable(f"Overpass request failed ({response.status_code})")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailable("Overpass returned invalid JSON") from exc
        elements = payload.get("elements") if isinstance(payload, dict) else None
        return parse_overpass_elements(elements if isinstance(elements, list) else [], latitude, longitude, self._clock())
