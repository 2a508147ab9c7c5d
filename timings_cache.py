"""Range prefetching of timings into the cache store, plus monthly calendar views."""
from __future__ import annotations

import calendar
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from errors import ProviderUnavailable
from prayer_times import PRAYER_ORDER, Timings, get_date_key, get_tomorrow
from resolver import Coordinates, TimingsResolver
from settings import Settings
from storage import (
    CacheStore,
    CachedTimings,
    get_cached_timings,
    round_coordinate,
    save_cached_timings,
    utc_now_iso,
)

LOGGER = logging.getLogger(__name__)

RANGE_BATCH_SIZE = 4
MONTH_BATCH_SIZE = 3
ALADHAN_SAFETY_DAYS = 2
DIYANET_SAFETY_DAYS = 30
SUSPICIOUS_MIN_ROWS = 7
SUSPICIOUS_MAX_SIGNATURES = 2


@dataclass
class MonthDayRow:
    day: date
    date_key: str
    timings: Optional[Timings]
    source: str  # "cache", "api" or "missing"


@dataclass
class MonthlyTimings:
    year: int
    month: int
    rows: List[MonthDayRow] = field(default_factory=list)
    source: str = "cache"  # "cache", "network" or "mixed"
    missing_count: int = 0


def month_dates(year: int, month: int) -> List[date]:
    _, days = calendar.monthrange(year, month)
    return [date(year, month, day) for day in range(1, days + 1)]


def date_range(start: date, days: int) -> List[date]:
    return [start + timedelta(days=offset) for offset in range(max(0, days))]


def should_force_refresh_suspicious_cache(rows: Sequence[MonthDayRow]) -> bool:
    """Flag a month whose cached days almost all share the same six times.

    Real prayer times drift a minute or two every few days, so a long run of
    identical days points at a bad cache write rather than real data.
    """
    with_timings = [row.timings for row in rows if row.timings is not None]
    if len(with_timings) < SUSPICIOUS_MIN_ROWS:
        return False
    signatures = {"|".join(timings.times[prayer] for prayer in PRAYER_ORDER) for timings in with_timings}
    return len(signatures) <= SUSPICIOUS_MAX_SIGNATURES


class RangePrefetcher:
    """Fetch contiguous days through the resolver and persist each one as it arrives."""

    def __init__(
        self,
        store: CacheStore,
        resolver: TimingsResolver,
        batch_size: int = RANGE_BATCH_SIZE,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.batch_size = batch_size
        self._clock = clock

    # -- range fetch -----------------------------------------------------------
    def fetch_and_cache_range(
        self,
        start: date,
        days: int,
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str] = None,
    ) -> Dict[str, Timings]:
        """Best effort: dates whose fetch failed are simply absent from the result."""
        results, _ = self._fetch_dates(date_range(start, days), location, settings, city_hint, self.batch_size)
        return results

    def _fetch_dates(
        self,
        dates: Iterable[date],
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str],
        batch_size: int,
    ) -> Tuple[Dict[str, Timings], Dict[str, Exception]]:
        pending = list(dates)
        results: Dict[str, Timings] = {}
        failures: Dict[str, Exception] = {}
        for index in range(0, len(pending), batch_size):
            batch = pending[index : index + batch_size]
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = [
                    (day, executor.submit(self._fetch_and_save, day, location, settings, city_hint)) for day in batch
                ]
                for day, future in futures:
                    date_key = get_date_key(day)
                    try:
                        results[date_key] = future.result()
                    except Exception as exc:
                        LOGGER.warning("Failed to fetch timings for %s", date_key, exc_info=True)
                        failures[date_key] = exc
        LOGGER.debug("Fetched %d/%d days (%d failed)", len(results), len(pending), len(failures))
        return results, failures

    def _fetch_and_save(
        self,
        day: date,
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str],
    ) -> Timings:
        timings = self.resolver.get_timings_for_date(day, location, settings, city_hint)
        self._save(day, timings, location, settings)
        return timings

    def read_cached(self, day: date, location: Coordinates, settings: Settings) -> Optional[Timings]:
        cached = get_cached_timings(self.store, self.resolver.cache_key_for(day, location, settings))
        if cached is None or cached.timings.date_key != get_date_key(day):
            return None
        return cached.timings

    # -- today + tomorrow ------------------------------------------------------
    def get_today_tomorrow_timings(
        self,
        location: Coordinates,
        settings: Settings,
        today: Optional[date] = None,
        city_hint: Optional[str] = None,
    ) -> Tuple[Timings, Timings]:
        """Cache first; on a miss prefetch a safety window and read both days from it."""
        today = today or self._clock().date()
        tomorrow = get_tomorrow(today)
        cached_today = self.read_cached(today, location, settings)
        cached_tomorrow = self.read_cached(tomorrow, location, settings)
        if cached_today and cached_tomorrow:
            LOGGER.debug("Cache hit for %s and %s", cached_today.date_key, cached_tomorrow.date_key)
            return cached_today, cached_tomorrow

        days = DIYANET_SAFETY_DAYS if settings.timings_provider == "diyanet" else ALADHAN_SAFETY_DAYS
        window = date_range(today, days)
        LOGGER.debug("Cache miss; prefetching %d days from %s", days, get_date_key(today))
        fetched = self._fetch_months(window, location, settings, city_hint)
        remaining = [day for day in window if get_date_key(day) not in fetched]
        per_day, failures = self._fetch_dates(remaining, location, settings, city_hint, self.batch_size)
        fetched.update(per_day)

        result: List[Timings] = []
        for day, cached in ((today, cached_today), (tomorrow, cached_tomorrow)):
            date_key = get_date_key(day)
            timings = fetched.get(date_key) or cached
            if timings is None:
                error = failures.get(date_key)
                if error is not None:
                    raise error
                raise ProviderUnavailable(f"No timings available for {date_key}")
            result.append(timings)
        return result[0], result[1]

    # -- month views -----------------------------------------------------------
    def get_monthly_cache_snapshot(
        self,
        year: int,
        month: int,
        location: Coordinates,
        settings: Settings,
    ) -> List[MonthDayRow]:
        rows = []
        for day in month_dates(year, month):
            timings = self.read_cached(day, location, settings)
            rows.append(
                MonthDayRow(
                    day=day,
                    date_key=get_date_key(day),
                    timings=timings,
                    source="cache" if timings else "missing",
                )
            )
        return rows

    def prefetch_month_timings(
        self,
        year: int,
        month: int,
        location: Coordinates,
        settings: Settings,
        missing_dates: Optional[Iterable[date]] = None,
        city_hint: Optional[str] = None,
    ) -> Dict[str, Timings]:
        """Fill a month (or just *missing_dates*) into the cache."""
        dates = list(missing_dates) if missing_dates is not None else month_dates(year, month)
        if self._has_monthly(settings):
            saved = self._fetch_months(dates, location, settings, city_hint)
            LOGGER.info("Cached %d days of %04d-%02d from monthly rows", len(saved), year, month)
            return saved

        fetched, _ = self._fetch_dates(dates, location, settings, city_hint, MONTH_BATCH_SIZE)
        return fetched

    def _has_monthly(self, settings: Settings) -> bool:
        return callable(getattr(self.resolver.provider_for(settings), "get_monthly_timings", None))

    def _fetch_months(
        self,
        dates: Sequence[date],
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str],
    ) -> Dict[str, Timings]:
        """Save *dates* from the provider's monthly rows, one request per calendar month.

        Returns an empty mapping when the provider has no monthly endpoint. A
        month whose request fails is logged and left out.
        """
        if not self._has_monthly(settings):
            return {}
        provider = self.resolver.provider_for(settings)
        hint = self.resolver.city_hint_for(settings, city_hint)
        by_month: Dict[Tuple[int, int], List[date]] = {}
        for day in dates:
            by_month.setdefault((day.year, day.month), []).append(day)

        saved: Dict[str, Timings] = {}
        for (year, month), days in by_month.items():
            try:
                by_key = provider.get_monthly_timings(year, month, location.latitude, location.longitude, hint)
            except Exception:
                LOGGER.warning("Monthly fetch failed for %04d-%02d", year, month, exc_info=True)
                continue
            for day in days:
                date_key = get_date_key(day)
                timings = by_key.get(date_key)
                if timings is None:
                    continue
                self._save(day, timings, location, settings)
                saved[date_key] = timings
        return saved

    def get_monthly_timings(
        self,
        year: int,
        month: int,
        location: Coordinates,
        settings: Settings,
        force_refresh: bool = False,
        city_hint: Optional[str] = None,
    ) -> MonthlyTimings:
        """Return a month of rows, fetching whatever the cache lacks (or everything when forced)."""
        rows = self.get_monthly_cache_snapshot(year, month, location, settings)
        missing = [row.day for row in rows if row.timings is None]
        if not force_refresh and not missing:
            return MonthlyTimings(year=year, month=month, rows=rows, source="cache")

        if force_refresh:
            fetched = self.prefetch_month_timings(year, month, location, settings, city_hint=city_hint)
        else:
            fetched = self.prefetch_month_timings(year, month, location, settings, missing, city_hint)

        fetched_count = 0
        for row in rows:
            timings = fetched.get(row.date_key)
            if timings is not None:
                row.timings = timings
                row.source = "api"
                fetched_count += 1

        missing_count = sum(1 for row in rows if row.timings is None)
        if fetched_count and fetched_count == len(rows) - missing_count:
            source = "network"
        elif fetched_count:
            source = "mixed"
        else:
            source = "cache"
        return MonthlyTimings(year=year, month=month, rows=rows, source=source, missing_count=missing_count)

    def _save(self, day: date, timings: Timings, location: Coordinates, settings: Settings) -> None:
        record = CachedTimings(
            timings=timings,
            last_updated=utc_now_iso(),
            source="api",
            lat_rounded=round_coordinate(location.latitude),
            lon_rounded=round_coordinate(location.longitude),
            provider=settings.timings_provider,
            method_id=settings.method_id,
        )
        save_cached_timings(self.store, self.resolver.cache_key_for(day, location, settings), record)
