"""Timings model, date-key helpers and the coordinate-based AlAdhan provider."""
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo as TzInfo
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import pytz
import requests
from tzlocal import get_localzone_name

from errors import DataIntegrityError, ProviderUnavailable

LOGGER = logging.getLogger(__name__)

ALADHAN_TIMINGS_URL = "https://api.aladhan.com/v1/timings"
PRAYER_ORDER = ["Fajr", "Sunrise", "Dhuhr", "Asr", "Maghrib", "Isha"]
DATE_KEY_FORMAT = "%d-%m-%Y"
HANAFI_SCHOOL = 1

_TIME_PATTERN = re.compile(r"(\d{1,2}):(\d{2})")
_DATE_KEY_PATTERN = re.compile(r"^\d{2}-\d{2}-\d{4}$")


def get_date_key(day: date) -> str:
    """Return the ``DD-MM-YYYY`` key for a calendar day."""
    return day.strftime(DATE_KEY_FORMAT)


def parse_date_key(date_key: str) -> date:
    if not isinstance(date_key, str) or not _DATE_KEY_PATTERN.match(date_key):
        raise ValueError(f"Invalid date key: {date_key!r}")
    return datetime.strptime(date_key, DATE_KEY_FORMAT).date()


def get_tomorrow(day: date) -> date:
    return day + timedelta(days=1)


def parse_hhmm(raw: Any) -> Optional[str]:
    """Extract a zero-padded 24h ``HH:MM`` from strings such as ``"5:10 (CET)"``."""
    if not isinstance(raw, str):
        return None
    match = _TIME_PATTERN.search(raw)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def local_timezone_name() -> str:
    try:
        name = get_localzone_name()
    except Exception:  # pragma: no cover - platform dependent
        name = None
    return name or "UTC"


@dataclass
class Timings:
    """One calendar day's prayer times in the user's local calendar."""

    date_key: str
    timezone: str
    times: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dateKey": self.date_key,
            "timezone": self.timezone,
            "times": {prayer: self.times[prayer] for prayer in PRAYER_ORDER},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Timings":
        if not isinstance(payload, Mapping):
            raise DataIntegrityError("Timings payload is not an object")
        return build_timings(
            str(payload.get("dateKey", "")),
            str(payload.get("timezone") or "UTC"),
            payload.get("times") or {},
        )


def build_timings(date_key: str, timezone: str, raw_times: Mapping[str, Any]) -> Timings:
    """Normalise raw provider output; every prayer in :data:`PRAYER_ORDER` is required."""
    if not _DATE_KEY_PATTERN.match(date_key or ""):
        raise DataIntegrityError(f"Invalid date key in timings: {date_key!r}")
    if not isinstance(raw_times, Mapping):
        raise DataIntegrityError("Prayer times are missing")
    times: Dict[str, str] = {}
    for prayer in PRAYER_ORDER:
        parsed = parse_hhmm(raw_times.get(prayer))
        if parsed is None:
            raise DataIntegrityError(f"Missing or invalid {prayer} time: {raw_times.get(prayer)!r}")
        times[prayer] = parsed
    return Timings(date_key=date_key, timezone=timezone, times=times)


def localize(naive: datetime, tzinfo: Optional[TzInfo]) -> datetime:
    if tzinfo is None:
        return naive
    if hasattr(tzinfo, "localize"):
        return tzinfo.localize(naive)
    return naive.replace(tzinfo=tzinfo)


def parse_prayer_time_for_date(day: date, time_hhmm: str, tzinfo: Optional[TzInfo] = None) -> datetime:
    hour, minute = map(int, time_hhmm.split(":"))
    naive = datetime(day.year, day.month, day.day, hour=hour, minute=minute)
    return localize(naive, tzinfo)


@dataclass
class NextPrayer:
    name: str
    time: datetime
    is_tomorrow: bool = False

    def remaining(self, now: datetime) -> timedelta:
        return self.time - now


def get_next_prayer(timings: Timings, now: datetime) -> Optional[NextPrayer]:
    """Return the first prayer of *timings* that is still ahead of *now* on now's date."""
    for prayer in PRAYER_ORDER:
        prayer_at = parse_prayer_time_for_date(now.date(), timings.times[prayer], now.tzinfo)
        if prayer_at > now:
            return NextPrayer(name=prayer, time=prayer_at)
    return None


def resolve_next_prayer(
    today: Optional[Timings],
    tomorrow: Optional[Timings],
    now: datetime,
) -> Optional[NextPrayer]:
    """Scan today's prayers, rolling over to tomorrow's Fajr once today is exhausted."""
    if today is not None:
        upcoming = get_next_prayer(today, now)
        if upcoming:
            return upcoming
    if tomorrow is None or "Fajr" not in tomorrow.times:
        return None
    next_day = get_tomorrow(now.date())
    fajr_at = parse_prayer_time_for_date(next_day, tomorrow.times["Fajr"], now.tzinfo)
    return NextPrayer(name="Fajr", time=fajr_at, is_tomorrow=True)


def minutes_until(target: datetime, now: datetime) -> int:
    """Whole minutes until *target*, rounded up and never negative."""
    seconds = (target - now).total_seconds()
    return max(0, int(math.ceil(seconds / 60.0)))


def format_countdown(delta: timedelta) -> str:
    total_seconds = max(0, int(delta.total_seconds()))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class TimingsProvider(Protocol):
    """Capability shared by every timings source."""

    name: str

    def get_timings(
        self,
        day: date,
        latitude: float,
        longitude: float,
        *,
        method_id: int,
        city_hint: Optional[str] = None,
    ) -> Timings:
        ...


class AladhanProvider:
    """Fetches prayer times by coordinates from the AlAdhan API."""

    name = "aladhan"

    def __init__(
        self,
        school: int = HANAFI_SCHOOL,
        timeout: int = 10,
        max_attempts: int = 3,
        backoff_seconds: float = 0.7,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.school = school
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def get_timings(
        self,
        day: date,
        latitude: float,
        longitude: float,
        *,
        method_id: int,
        city_hint: Optional[str] = None,
    ) -> Timings:
        date_key = get_date_key(day)
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "method": method_id,
            "school": self.school,
        }
        LOGGER.debug("Requesting AlAdhan timings for %s with params=%s", date_key, params)
        payload = self._request_json(f"{ALADHAN_TIMINGS_URL}/{date_key}", params)

        if payload.get("code") not in (None, 200):
            raise ProviderUnavailable(f"Invalid response from AlAdhan API: {payload.get('status')}")

        data = payload.get("data") or {}
        timings = data.get("timings") if isinstance(data, dict) else None
        if not isinstance(timings, dict):
            raise DataIntegrityError("AlAdhan response does not include timings")

        timezone_name = self._resolve_timezone(data)
        return build_timings(date_key, timezone_name, timings)

    def _request_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = requests.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                raise ProviderUnavailable(f"AlAdhan request failed: {exc}") from exc

            LOGGER.debug("AlAdhan response status: %s (attempt %d)", response.status_code, attempt)
            if response.status_code == 429 or response.status_code >= 500:
                last_error = ProviderUnavailable(f"AlAdhan API error: {response.status_code}")
                if attempt < self.max_attempts:
                    delay = self.backoff_seconds * attempt
                    LOGGER.debug("Retrying AlAdhan request in %.1fs", delay)
                    self._sleep(delay)
                continue
            if not response.ok:
                raise ProviderUnavailable(f"AlAdhan API error: {response.status_code}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise ProviderUnavailable(f"Invalid AlAdhan JSON response: {exc}") from exc
            if not isinstance(payload, dict):
                raise ProviderUnavailable("Invalid AlAdhan JSON response: not an object")
            return payload

        assert last_error is not None
        raise last_error

    @staticmethod
    def _resolve_timezone(data: Dict[str, Any]) -> str:
        meta = data.get("meta") or {}
        timezone_name = meta.get("timezone") if isinstance(meta, dict) else None
        if not timezone_name:
            return local_timezone_name()
        try:
            pytz.timezone(timezone_name)
        except pytz.UnknownTimeZoneError:
            LOGGER.warning("Unknown timezone '%s'; falling back to local zone", timezone_name)
            return local_timezone_name()
        return timezone_name
