"""Official (Diyanet) timings provider reached through a proxy."""
from __future__ import annotations

import logging
import os
import re
import threading
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from errors import DataIntegrityError, ProviderUnavailable
from location_catalog import LocationCatalog, collect_objects, match_cities, nearest_cities, normalize_text
from prayer_times import PRAYER_ORDER, Timings, build_timings, get_date_key, local_timezone_name, parse_hhmm

LOGGER = logging.getLogger(__name__)

PROXY_URL_ENV = "DIYANET_PROXY_URL"
FORCE_CITY_ID_ENV = "DIYANET_FORCE_CITY_ID"
OPEN_METEO_REVERSE_URL = "https://geocoding-api.open-meteo.com/v1/reverse"

CITIES_PATH = "/api/Place/Cities"
GEOCODE_PATH = "/api/AwqatSalah/CityIdByGeoCode"
DAILY_PATH = "/api/PrayerTime/Daily/{city_id}"
MONTHLY_PATH = "/api/PrayerTime/Monthly/{city_id}"

# Field names seen across the official API and its mirrors, matched accent- and case-insensitively.
ROW_KEY_VARIANTS: Dict[str, Tuple[str, ...]] = {
    "Fajr": ("imsakVakti", "imsak", "fajr"),
    "Sunrise": ("gunesVakti", "gunes", "sunrise"),
    "Dhuhr": ("ogleVakti", "ogle", "dhuhr", "zuhr"),
    "Asr": ("ikindiVakti", "ikindi", "asr"),
    "Maghrib": ("aksamVakti", "aksam", "maghrib"),
    "Isha": ("yatsiVakti", "yatsi", "isha"),
}
ROW_DATE_VARIANTS = (
    "gregorianDateShortIso8601",
    "gregorianDateLongIso8601",
    "gregorianDate",
    "date",
    "day",
    "miladiTarihUzunIso8601",
)
NEAREST_CITY_LIMIT = 30

_DMY_PATTERN = re.compile(r"^(\d{2})[./-](\d{2})[./-](\d{4})$")
_YMD_PATTERN = re.compile(r"^(\d{4})[./-](\d{2})[./-](\d{2})")


def _normalized_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {normalize_text(key): value for key, value in row.items()}


def map_row_timings(row: Any) -> Optional[Dict[str, str]]:
    """Map a provider row onto the six canonical prayers, or ``None`` if any is missing."""
    if not isinstance(row, dict):
        return None
    flat = _normalized_row(row)
    nested_raw = row.get("times")
    nested = _normalized_row(nested_raw) if isinstance(nested_raw, dict) else {}

    times: Dict[str, str] = {}
    for prayer in PRAYER_ORDER:
        value = None
        for variant in ROW_KEY_VARIANTS[prayer]:
            key = normalize_text(variant)
            value = parse_hhmm(flat.get(key)) or parse_hhmm(nested.get(key))
            if value:
                break
        if not value:
            return None
        times[prayer] = value
    return times


def has_timing_fields(row: Any) -> bool:
    if not isinstance(row, dict):
        return False
    flat = _normalized_row(row)
    return any(
        flat.get(normalize_text(variant)) for variants in ROW_KEY_VARIANTS.values() for variant in variants
    )


def normalize_row_date(raw: Any) -> Optional[str]:
    """Convert ``DD.MM.YYYY`` / ``YYYY-MM-DD...`` style values into a date key."""
    if not isinstance(raw, str):
        return None
    match = _DMY_PATTERN.match(raw.strip())
    if match:
        return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
    match = _YMD_PATTERN.match(raw.strip())
    if match:
        return f"{match.group(3)}-{match.group(2)}-{match.group(1)}"
    return None


def row_date_key(row: Dict[str, Any]) -> Optional[str]:
    flat = _normalized_row(row)
    for variant in ROW_DATE_VARIANTS:
        date_key = normalize_row_date(flat.get(normalize_text(variant)))
        if date_key:
            return date_key
    return None


def find_row_by_date(rows: Iterable[Dict[str, Any]], date_key: str) -> Optional[Dict[str, Any]]:
    for row in rows:
        if row_date_key(row) == date_key:
            return row
    return None


def extract_rows(payload: Any) -> List[Dict[str, Any]]:
    if not payload:
        return []
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []
    for key in ("data", "result", "items", "prayerTimeList"):
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    if has_timing_fields(payload):
        return [payload]
    data = payload.get("data")
    if isinstance(data, dict) and has_timing_fields(data):
        return [data]
    return []


def split_city_hint(city_hint: Optional[str]) -> Tuple[str, str]:
    """``"Amsterdam, North Holland, Netherlands"`` -> ``("Amsterdam", "Netherlands")``."""
    parts = [part.strip() for part in (city_hint or "").split(",") if part.strip()]
    if not parts:
        return "", ""
    return parts[0], parts[-1] if len(parts) > 1 else ""


class DiyanetProvider:
    """Resolves a point to an official city id, then reads that city's day or month rows."""

    name = "diyanet"

    def __init__(
        self,
        proxy_url: Optional[str] = None,
        forced_city_id: Optional[int] = None,
        timeout: int = 10,
        catalog: Optional[LocationCatalog] = None,
    ) -> None:
        self._proxy_url = proxy_url
        self._forced_city_id = forced_city_id
        self.timeout = timeout
        self.catalog = catalog or LocationCatalog(self._load_cities)
        self._resolved: Dict[Tuple[float, float, str], int] = {}
        self._lock = threading.Lock()

    # -- configuration ---------------------------------------------------------
    @property
    def proxy_url(self) -> str:
        raw = (self._proxy_url or os.environ.get(PROXY_URL_ENV) or "").strip()
        if not raw:
            raise ProviderUnavailable(f"Diyanet proxy missing. Set {PROXY_URL_ENV}.")
        return raw.rstrip("/")

    def forced_city_id(self) -> Optional[int]:
        if self._forced_city_id:
            return self._forced_city_id
        raw = os.environ.get(FORCE_CITY_ID_ENV, "").strip()
        try:
            value = int(float(raw)) if raw else 0
        except ValueError:
            LOGGER.warning("Ignoring invalid %s=%r", FORCE_CITY_ID_ENV, raw)
            return None
        return value if value > 0 else None

    # -- public API ------------------------------------------------------------
    def get_timings(
        self,
        day: date,
        latitude: float,
        longitude: float,
        *,
        method_id: int = 0,
        city_hint: Optional[str] = None,
    ) -> Timings:
        date_key = get_date_key(day)
        for city_id in self.city_candidates(latitude, longitude, city_hint):
            times = self._times_for_city(city_id, day)
            if times is None:
                continue
            self._remember(latitude, longitude, city_hint, city_id)
            LOGGER.debug("Diyanet city=%s date=%s times=%s", city_id, date_key, times)
            return build_timings(date_key, local_timezone_name(), times)
        raise ProviderUnavailable(f"No Diyanet timing rows returned for {date_key}")

    def get_monthly_timings(
        self,
        year: int,
        month: int,
        latitude: float,
        longitude: float,
        city_hint: Optional[str] = None,
    ) -> Dict[str, Timings]:
        """Return every day of the month the provider supplied, keyed by date key."""
        timezone_name = local_timezone_name()
        for city_id in self.city_candidates(latitude, longitude, city_hint):
            rows = self._fetch_rows(MONTHLY_PATH.format(city_id=city_id), {"startDate": f"{year:04d}-{month:02d}-01"})
            result: Dict[str, Timings] = {}
            for row in rows:
                date_key = row_date_key(row)
                times = map_row_timings(row)
                if not date_key or not times:
                    continue
                if date_key[3:] != f"{month:02d}-{year:04d}":
                    continue
                try:
                    result[date_key] = build_timings(date_key, timezone_name, times)
                except DataIntegrityError:
                    LOGGER.debug("Skipping malformed Diyanet row for %s", date_key)
            if result:
                self._remember(latitude, longitude, city_hint, city_id)
                LOGGER.debug("Diyanet monthly city=%s %04d-%02d rows=%d", city_id, year, month, len(result))
                return result
        raise ProviderUnavailable(f"No Diyanet monthly rows returned for {year:04d}-{month:02d}")

    def city_label(self, city_id: int) -> Optional[str]:
        return self.catalog.label_for(city_id)

    def city_candidates(self, latitude: float, longitude: float, city_hint: Optional[str] = None) -> List[int]:
        """Ordered, de-duplicated city ids to try for a point."""
        candidates: List[int] = []

        def add(city_id: Optional[int], source: str) -> None:
            if city_id and city_id > 0 and city_id not in candidates:
                LOGGER.debug("City candidate %s from %s", city_id, source)
                candidates.append(city_id)

        add(self.forced_city_id(), "forced")
        with self._lock:
            add(self._resolved.get(self._memo_key(latitude, longitude, city_hint)), "memo")
        if candidates:
            return candidates

        add(self._geocode_city_id(latitude, longitude), "proxy-geocode")

        city, country_name = split_city_hint(city_hint)
        country_code = ""
        if not city:
            reverse = self._reverse_geocode(latitude, longitude)
            city = reverse.get("city", "")
            country_name = country_name or reverse.get("country", "")
            country_code = reverse.get("countryCode", "")

        try:
            cities = self.catalog.cities()
        except ProviderUnavailable:
            LOGGER.warning("Diyanet city list unavailable", exc_info=True)
            cities = []
        for city_id in match_cities(cities, latitude, longitude, city, country_code, country_name):
            add(city_id, "cities-match")
        for record in nearest_cities(cities, latitude, longitude, NEAREST_CITY_LIMIT):
            add(record.id, "nearest")
        return candidates

    def invalidate(self) -> None:
        """Drop every memoised city id and the city list."""
        with self._lock:
            self._resolved.clear()
        self.catalog.invalidate()

    # -- internals -------------------------------------------------------------
    @staticmethod
    def _memo_key(latitude: float, longitude: float, city_hint: Optional[str]) -> Tuple[float, float, str]:
        return round(latitude, 2), round(longitude, 2), normalize_text(city_hint or "")

    def _remember(self, latitude: float, longitude: float, city_hint: Optional[str], city_id: int) -> None:
        with self._lock:
            self._resolved[self._memo_key(latitude, longitude, city_hint)] = city_id
        if city_hint and not self.catalog.label_for(city_id):
            self.catalog.remember_label(city_id, city_hint)

    def _times_for_city(self, city_id: int, day: date) -> Optional[Dict[str, str]]:
        date_key = get_date_key(day)
        rows = self._fetch_rows(DAILY_PATH.format(city_id=city_id), {"date": date_key})
        row = find_row_by_date(rows, date_key)
        times = map_row_timings(row) if row is not None else None
        if times is None:
            monthly = self._fetch_rows(MONTHLY_PATH.format(city_id=city_id), {"startDate": f"{day:%Y-%m}-01"})
            row = find_row_by_date(monthly, date_key)
            times = map_row_timings(row) if row is not None else None
            rows = rows + monthly
        if times is not None:
            return times

        # Only undated rows may stand in for the requested day.
        for candidate in rows:
            if row_date_key(candidate) is not None:
                continue
            times = map_row_timings(candidate)
            if times:
                LOGGER.warning("No Diyanet row dated %s for city %s; using first valid row", date_key, city_id)
                return times
        return None

    def _fetch_rows(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Rows for *path*; an unknown city yields no rows, outages raise."""
        return extract_rows(self._get_json(path, params, missing_ok=True))

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, missing_ok: bool = False) -> Any:
        url = f"{self.proxy_url}{path}"
        LOGGER.debug("Requesting Diyanet proxy %s params=%s", url, params)
        try:
            response = requests.get(url, params=params, headers={"Accept": "application/json"}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"Diyanet proxy request failed: {exc}") from exc
        if missing_ok and response.status_code == 404:
            return None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not response.ok:
            error = payload.get("error") if isinstance(payload, dict) else None
            raise ProviderUnavailable(f"Diyanet proxy error: {error or f'HTTP {response.status_code}'}")
        if payload is None:
            raise ProviderUnavailable("Diyanet proxy returned invalid JSON")
        return payload

    def _load_cities(self) -> Any:
        return self._get_json(CITIES_PATH)

    def _geocode_city_id(self, latitude: float, longitude: float) -> Optional[int]:
        try:
            payload = self._get_json(GEOCODE_PATH, {"lat": latitude, "lon": longitude})
        except ProviderUnavailable:
            LOGGER.debug("Diyanet geocode lookup failed", exc_info=True)
            return None
        for row in collect_objects(payload):
            for key in ("cityId", "cityID", "id"):
                try:
                    value = int(float(row.get(key)))
                except (TypeError, ValueError):
                    continue
                if value > 0:
                    return value
        return None

    def _reverse_geocode(self, latitude: float, longitude: float) -> Dict[str, str]:
        params = {"latitude": latitude, "longitude": longitude, "language": "en", "count": 1}
        try:
            response = requests.get(OPEN_METEO_REVERSE_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError):
            LOGGER.debug("Reverse geocoding failed for %s,%s", latitude, longitude, exc_info=True)
            return {}
        results = payload.get("results") if isinstance(payload, dict) else None
        first = results[0] if isinstance(results, list) and results else {}
        return {
            "city": str(first.get("city") or first.get("name") or first.get("admin2") or "").strip(),
            "country": str(first.get("country") or "").strip(),
            "countryCode": str(first.get("country_code") or "").strip().upper(),
        }
