"""Headless entry point: keeps today's timings fresh and the prayer alerts scheduled."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, time as time_module
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytz

from diyanet import FORCE_CITY_ID_ENV, PROXY_URL_ENV, DiyanetProvider
from errors import PermissionDenied, PrayerTimesError
from location import LocationFix, LocationService, geocode_city_query
from mosques import MosqueEta, MosqueService, load_mosques_settings
from notifications import ReplanResult, Replanner
from prayer_times import (
    AladhanProvider,
    NextPrayer,
    Timings,
    format_countdown,
    get_date_key,
    get_tomorrow,
    local_timezone_name,
    resolve_next_prayer,
)
from qibla import QiblaService
from resolver import TimingsResolver
from scheduler import PrayerScheduler
from settings import ManualLocation, Settings, load_settings, save_settings
from storage import (
    CachedQibla,
    CacheStore,
    JsonFileCacheStore,
    get_cached_timings_for_date,
    get_latest_cached_timings,
)
from timings_cache import MonthlyTimings, RangePrefetcher, should_force_refresh_suspicious_cache

APP_ROOT = Path(__file__).parent
CONFIG_PATH = APP_ROOT / "config.json"
DEFAULT_CACHE_PATH = APP_ROOT / "cache.json"

LOGGER = logging.getLogger(__name__)


def load_config(path: Path = CONFIG_PATH) -> Dict[str, Any]:
    """Read the optional JSON config, then apply environment overrides."""
    config: Dict[str, Any] = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if isinstance(payload, dict):
            config = payload

    diyanet_cfg = dict(config.get("diyanet") or {})
    if os.environ.get(PROXY_URL_ENV):
        diyanet_cfg["proxy_url"] = os.environ[PROXY_URL_ENV]
    if os.environ.get(FORCE_CITY_ID_ENV):
        diyanet_cfg["force_city_id"] = os.environ[FORCE_CITY_ID_ENV]
    config["diyanet"] = diyanet_cfg
    return config


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring non-numeric config value %r", value)
        return None


class PrayerApp:
    """Coordinates location, timings, the alert scheduler and daily refreshes."""

    def __init__(self, config: Dict[str, Any], store: Optional[CacheStore] = None) -> None:
        self._config = config
        self.store = store or JsonFileCacheStore(Path(config.get("cache_path") or DEFAULT_CACHE_PATH))

        diyanet_cfg = config.get("diyanet") or {}
        proxy_url = diyanet_cfg.get("proxy_url") or None
        forced_city_id = _optional_int(diyanet_cfg.get("force_city_id"))
        self.resolver = TimingsResolver(
            {
                "aladhan": AladhanProvider,
                "diyanet": lambda: DiyanetProvider(proxy_url=proxy_url, forced_city_id=forced_city_id),
            }
        )
        self.prefetcher = RangePrefetcher(self.store, self.resolver, clock=self.now)
        self.location_service = LocationService(self.store, auto_location=bool(config.get("auto_location", True)))

        self.timezone_name = local_timezone_name()
        self.scheduler = PrayerScheduler(self.timezone_name)
        self.replanner = Replanner(self.scheduler, self.prefetcher, clock=self.now)
        self.qibla_service = QiblaService(self.store)
        self.mosque_service = MosqueService(self.store)

        self.current_location: Optional[LocationFix] = None
        self.current_timings: Optional[Timings] = None
        self.tomorrow_timings: Optional[Timings] = None
        self._refresh_lock = threading.Lock()

    def now(self) -> datetime:
        return datetime.now(pytz.timezone(self.timezone_name))

    @property
    def settings(self) -> Settings:
        return load_settings(self.store)

    # ------------------------------------------------------------------
    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.replanner.queue.shutdown(wait=False)

    def resolve_location(self, settings: Settings) -> LocationFix:
        try:
            location = self.location_service.resolve(settings)
        except (PermissionDenied, PrayerTimesError):
            fallback = self.location_service.last_known()
            if fallback is None:
                raise
            LOGGER.warning("Location unavailable; using last known %s", fallback.label, exc_info=True)
            location = fallback
        self.current_location = location
        return location

    def set_manual_location(self, query: str) -> ManualLocation:
        """Geocode *query* and switch the saved settings to manual location mode."""
        manual = geocode_city_query(query)
        save_settings(self.store, replace(self.settings, location_mode="manual", manual_location=manual))
        self.current_location = None
        LOGGER.info("Manual location set to %s", manual.label)
        return manual

    def load_today(self) -> Tuple[Timings, Optional[Timings], str]:
        """Today's and tomorrow's timings plus where they came from ("api", "cache" or "latest")."""
        settings = self.settings
        today = self.now().date()
        try:
            location = self.resolve_location(settings)
            hint = location.label if location.mode == "gps" else None
            today_timings, tomorrow_timings = self.prefetcher.get_today_tomorrow_timings(
                location.coordinates, settings, today=today, city_hint=hint
            )
            source = "api"
        except PrayerTimesError:
            LOGGER.warning("Live timings unavailable; falling back to cache", exc_info=True)
            today_timings, tomorrow_timings, source = self._load_from_cache(settings, today)

        self.current_timings = today_timings
        self.tomorrow_timings = tomorrow_timings
        return today_timings, tomorrow_timings, source

    def _load_from_cache(self, settings: Settings, today: date) -> Tuple[Timings, Optional[Timings], str]:
        cached_today = get_cached_timings_for_date(
            self.store, get_date_key(today), settings.timings_provider, settings.method_id
        )
        cached_tomorrow = get_cached_timings_for_date(
            self.store, get_date_key(get_tomorrow(today)), settings.timings_provider, settings.method_id
        )
        if cached_today is not None:
            return cached_today.timings, cached_tomorrow.timings if cached_tomorrow else None, "cache"
        latest = get_latest_cached_timings(self.store)
        if latest is None:
            raise PrayerTimesError("No timings available online or in cache")
        LOGGER.warning("Showing last known timings for %s", latest.timings.date_key)
        return latest.timings, None, "latest"

    def next_prayer(self) -> Optional[NextPrayer]:
        return resolve_next_prayer(self.current_timings, self.tomorrow_timings, self.now())

    def replan(self) -> ReplanResult:
        settings = self.settings
        location = self.current_location or self.resolve_location(settings)
        hint = location.label if location.mode == "gps" else None
        return self.replanner.replan(location.coordinates, settings, hint).result()

    def refresh(self) -> None:
        """Reload timings, reschedule alerts and book the next daily refresh."""
        with self._refresh_lock:
            try:
                timings, _, source = self.load_today()
                LOGGER.info("Timings for %s loaded (%s)", timings.date_key, source)
                result = self.replan()
                LOGGER.info("Replan %s: %d alerts", result.status, result.total)
            except PrayerTimesError:
                LOGGER.error("Failed to refresh prayer times", exc_info=True)
            finally:
                refresh_time = self._next_refresh_time(self.now())
                self.scheduler.schedule_refresh(refresh_time, self.refresh)

    def load_month(self, year: int, month: int, force_refresh: bool = False) -> MonthlyTimings:
        settings = self.settings
        location = self.current_location or self.resolve_location(settings)
        hint = location.label if location.mode == "gps" else None
        if not force_refresh:
            snapshot = self.prefetcher.get_monthly_cache_snapshot(year, month, location.coordinates, settings)
            if should_force_refresh_suspicious_cache(snapshot):
                LOGGER.warning("Cached %04d-%02d looks stale; refetching whole month", year, month)
                force_refresh = True
        return self.prefetcher.get_monthly_timings(
            year, month, location.coordinates, settings, force_refresh=force_refresh, city_hint=hint
        )

    def qibla(self) -> CachedQibla:
        location = self.current_location or self.resolve_location(self.settings)
        try:
            return self.qibla_service.get_bearing(location.latitude, location.longitude, location.label)
        except PrayerTimesError:
            cached = self.qibla_service.last_known()
            if cached is None:
                raise
            LOGGER.warning("Qibla lookup failed; using last known bearing", exc_info=True)
            return cached

    def nearby_mosques(self, force_refresh: bool = False) -> List[MosqueEta]:
        settings = self.settings
        location = self.current_location or self.resolve_location(settings)
        return self.mosque_service.nearby_with_eta(
            location.latitude,
            location.longitude,
            settings,
            load_mosques_settings(self.store),
            self.now(),
            force_refresh=force_refresh,
        )

    @staticmethod
    def _next_refresh_time(reference: datetime) -> datetime:
        tzinfo = reference.tzinfo or pytz.UTC
        next_day = reference.date() + timedelta(days=1)
        refresh_naive = datetime.combine(next_day, time_module(hour=0, minute=5))
        if hasattr(tzinfo, "localize"):
            return tzinfo.localize(refresh_naive)
        return refresh_naive.replace(tzinfo=tzinfo)


def _print_day(app: PrayerApp, timings: Timings) -> None:
    for prayer, value in timings.times.items():
        print(f"{prayer:<8} {value}")
    upcoming = app.next_prayer()
    if upcoming:
        print(f"Next: {upcoming.name} in {format_countdown(upcoming.remaining(app.now()))}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Keep prayer time alerts scheduled.")
    parser.add_argument("--config", type=Path, default=CONFIG_PATH)
    parser.add_argument("--once", action="store_true", help="print today's timings and exit")
    parser.add_argument("--month", metavar="YYYY-MM", help="print a month of timings and exit")
    parser.add_argument("--qibla", action="store_true", help="print the qibla bearing and exit")
    parser.add_argument("--mosques", action="store_true", help="print nearby mosques and exit")
    parser.add_argument("--city", metavar="QUERY", help="use this city as the manual location and exit")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logging.basicConfig(
        level=str(config.get("log_level", "INFO")).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = PrayerApp(config)

    if args.city:
        try:
            manual = app.set_manual_location(args.city)
        except (ValueError, PrayerTimesError) as exc:
            print(f"Unable to set location: {exc}", file=sys.stderr)
            return 1
        print(f"Location: {manual.label} ({manual.latitude:.4f}, {manual.longitude:.4f})")
        return 0

    if args.qibla:
        record = app.qibla()
        print(f"Qibla: {record.bearing:.1f} degrees ({record.location_name})")
        return 0

    if args.mosques:
        app.load_today()
        for item in app.nearby_mosques():
            flag = "ok" if item.feasible else "late"
            print(f"{item.mosque.name:<32} {item.mosque.distance_km:6.2f} km {item.eta_minutes:4d} min {flag}")
        return 0

    if args.month:
        year, month = (int(part) for part in args.month.split("-", 1))
        for row in app.load_month(year, month).rows:
            times = " ".join(row.timings.times.values()) if row.timings else "-"
            print(f"{row.date_key} {times}")
        return 0

    if args.once:
        try:
            timings, _, _ = app.load_today()
        except PrayerTimesError as exc:
            print(f"Unable to load prayer times: {exc}", file=sys.stderr)
            return 1
        _print_day(app, timings)
        return 0

    app.start()
    app.refresh()
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; shutting down")
    finally:
        app.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
