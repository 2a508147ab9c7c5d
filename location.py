"""Location detection and lookup: IP based auto location, city search and labels."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytz
import requests

from errors import PermissionDenied, PrayerTimesError, ProviderUnavailable
from prayer_times import local_timezone_name
from resolver import Coordinates
from settings import ManualLocation, Settings
from storage import CachedLocation, CacheStore, get_latest_location, save_latest_location, utc_now_iso

LOGGER = logging.getLogger(__name__)

IPINFO_URL = "https://ipinfo.io/json"
NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
USER_AGENT = "prayer-engine/1.0"
UNKNOWN_LOCATION = "Unknown location"


@dataclass
class LocationFix:
    latitude: float
    longitude: float
    label: str
    timezone: Optional[str] = None
    mode: str = "gps"

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(latitude=self.latitude, longitude=self.longitude)


def fallback_label(latitude: float, longitude: float) -> str:
    return f"{latitude:.2f}, {longitude:.2f}"


def _first_non_empty(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def detect_location_from_ip(timeout: int = 5) -> LocationFix:
    """Attempt to detect approximate location using the ipinfo.io service."""
    LOGGER.debug("Requesting IP-based location from ipinfo.io (timeout=%s)", timeout)
    try:
        response = requests.get(IPINFO_URL, timeout=timeout)
        LOGGER.debug("ipinfo.io response status: %s", response.status_code)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ProviderUnavailable(f"IP location lookup failed: {exc}") from exc

    try:
        latitude, longitude = map(float, str(payload.get("loc", "")).split(","))
    except ValueError as exc:
        raise ProviderUnavailable(f"IP location lookup returned no coordinates: {payload.get('loc')!r}") from exc
    LOGGER.debug("Parsed coordinates from ipinfo.io: lat=%s lon=%s", latitude, longitude)

    timezone = payload.get("timezone") or local_timezone_name()
    try:
        pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Falling back to UTC for unknown timezone %s", timezone)
        timezone = "UTC"

    parts = [part for part in (_first_non_empty(payload.get("city")), _first_non_empty(payload.get("country"))) if part]
    label = ", ".join(parts) if parts else fallback_label(latitude, longitude)
    return LocationFix(latitude=latitude, longitude=longitude, label=label, timezone=timezone)


def reverse_geocode_label(latitude: float, longitude: float, timeout: int = 10) -> str:
    """Human readable "City, Region, Country"; never raises."""
    params = {"format": "jsonv2", "lat": latitude, "lon": longitude, "zoom": 10, "addressdetails": 1}
    try:
        response = requests.get(
            NOMINATIM_REVERSE_URL, params=params, headers={"User-Agent": USER_AGENT}, timeout=timeout
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError):
        LOGGER.debug("Reverse geocoding failed for %s,%s", latitude, longitude, exc_info=True)
        return fallback_label(latitude, longitude)

    address = payload.get("address") if isinstance(payload, dict) else None
    if not isinstance(address, dict):
        return fallback_label(latitude, longitude)
    city = _first_non_empty(address.get("city"), address.get("town"), address.get("village"), address.get("county"))
    region = _first_non_empty(address.get("state"), address.get("region"))
    country = _first_non_empty(address.get("country"), (address.get("country_code") or "").upper())
    parts: List[str] = []
    for part in (city, region, country):
        if part and part not in parts:
            parts.append(part)
    return ", ".join(parts) if parts else fallback_label(latitude, longitude)


def search_city_suggestions(query: str, limit: int = 6, timeout: int = 10) -> List[ManualLocation]:
    trimmed = (query or "").strip()
    if len(trimmed) < 2:
        return []
    params = {"format": "jsonv2", "addressdetails": 1, "limit": limit, "q": trimmed}
    try:
        response = requests.get(
            NOMINATIM_SEARCH_URL, params=params, headers={"User-Agent": USER_AGENT}, timeout=timeout
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ProviderUnavailable(f"City search failed: {exc}") from exc

    suggestions: List[ManualLocation] = []
    seen = set()
    for entry in payload if isinstance(payload, list) else []:
        try:
            latitude, longitude = float(entry["lat"]), float(entry["lon"])
        except (KeyError, TypeError, ValueError):
            continue
        label = _suggestion_label(entry) or trimmed
        if label in seen:
            continue
        seen.add(label)
        suggestions.append(ManualLocation(query=trimmed, label=label, latitude=latitude, longitude=longitude))
    return suggestions


def _suggestion_label(entry: Dict[str, Any]) -> Optional[str]:
    address = entry.get("address") if isinstance(entry.get("address"), dict) else {}
    city = _first_non_empty(address.get("city"), address.get("town"), address.get("village"), entry.get("name"))
    country = _first_non_empty(address.get("country"))
    if city and country:
        return f"{city}, {country}"
    return city or country or _first_non_empty(entry.get("display_name"))


def geocode_city_query(query: str) -> ManualLocation:
    if not (query or "").strip():
        raise ValueError("Please enter a city name.")
    suggestions = search_city_suggestions(query, limit=1)
    if not suggestions:
        raise ProviderUnavailable(f"City not found: {query!r}")
    return suggestions[0]


class LocationService:
    """Resolve the location to use for timings based on the location mode in settings."""

    def __init__(
        self,
        store: CacheStore,
        auto_location: bool = True,
        detector: Callable[[], LocationFix] = detect_location_from_ip,
        labeler: Callable[[float, float], str] = reverse_geocode_label,
    ) -> None:
        self.store = store
        self.auto_location = auto_location
        self._detector = detector
        self._labeler = labeler

    def current_location(self) -> LocationFix:
        if not self.auto_location:
            raise PermissionDenied("Automatic location is disabled")
        fix = self._detector()
        if not fix.label or fix.label in (UNKNOWN_LOCATION, fallback_label(fix.latitude, fix.longitude)):
            fix.label = self._labeler(fix.latitude, fix.longitude) or fallback_label(fix.latitude, fix.longitude)
        return fix

    def resolve(self, settings: Settings) -> LocationFix:
        if settings.location_mode == "manual":
            manual = settings.manual_location
            if manual is None:
                raise PrayerTimesError("Manual location not configured")
            fix = LocationFix(
                latitude=manual.latitude,
                longitude=manual.longitude,
                label=manual.label,
                mode="manual",
            )
        else:
            fix = self.current_location()
        save_latest_location(
            self.store,
            CachedLocation(
                latitude=fix.latitude,
                longitude=fix.longitude,
                label=fix.label,
                mode=fix.mode,
                updated_at=utc_now_iso(),
            ),
        )
        LOGGER.debug("Resolved %s location %s (%s, %s)", fix.mode, fix.label, fix.latitude, fix.longitude)
        return fix

    def last_known(self) -> Optional[LocationFix]:
        cached = get_latest_location(self.store)
        if cached is None:
            return None
        return LocationFix(
            latitude=cached.latitude,
            longitude=cached.longitude,
            label=cached.label,
            mode=cached.mode,
        )
