import json
from datetime import date, datetime

import pytest
import responses

from conftest import AMSTERDAM, FakeProvider, RecordingScheduler, make_timings
from errors import PrayerTimesError, ProviderUnavailable
from location import NOMINATIM_SEARCH_URL, LocationFix, LocationService
from main import PrayerApp, load_config
from notifications import Replanner
from resolver import TimingsResolver
from settings import Settings, load_settings, save_settings
from storage import CachedTimings, build_timings_cache_key, save_cached_timings


def test_load_config_applies_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"log_level": "DEBUG", "diyanet": {"proxy_url": "https://file.test"}}), encoding="utf-8")
    monkeypatch.setenv("DIYANET_PROXY_URL", "https://env.test")
    monkeypatch.setenv("DIYANET_FORCE_CITY_ID", "13980")

    config = load_config(path)

    assert config["log_level"] == "DEBUG"
    assert config["diyanet"] == {"proxy_url": "https://env.test", "force_city_id": "13980"}


def test_load_config_without_file(tmp_path, monkeypatch):
    monkeypatch.delenv("DIYANET_PROXY_URL", raising=False)
    monkeypatch.delenv("DIYANET_FORCE_CITY_ID", raising=False)

    assert load_config(tmp_path / "missing.json") == {"diyanet": {}}


@pytest.fixture
def app(store):
    app = PrayerApp({"auto_location": True}, store=store)
    app.timezone_name = "Europe/Amsterdam"
    app.now = lambda: AMSTERDAM.localize(datetime(2025, 3, 15, 19, 30))
    app.location_service = LocationService(
        store,
        detector=lambda: LocationFix(latitude=52.37, longitude=4.90, label="Amsterdam, NL"),
    )
    save_settings(store, Settings(timings_provider="aladhan", method_id=3))
    return app


def use_provider(app, provider):
    app.resolver = TimingsResolver({"aladhan": lambda: provider})
    app.prefetcher.resolver = app.resolver
    app.prefetcher._clock = app.now


def test_load_today_from_provider(app):
    use_provider(app, FakeProvider("aladhan"))

    today, tomorrow, source = app.load_today()

    assert source == "api"
    assert (today.date_key, tomorrow.date_key) == ("15-03-2025", "16-03-2025")
    upcoming = app.next_prayer()
    assert upcoming.name == "Isha"


def test_load_today_falls_back_to_cached_day(app, store):
    use_provider(app, FakeProvider("aladhan", error=ProviderUnavailable("offline")))
    record = CachedTimings(make_timings(date(2025, 3, 15)), "2025-03-15T00:00:00+00:00", "api", 51.92, 4.48, "aladhan", 3)
    save_cached_timings(store, build_timings_cache_key("15-03-2025", 51.92, 4.48, 3), record)

    today, tomorrow, source = app.load_today()

    assert source == "cache"
    assert today.date_key == "15-03-2025"
    assert tomorrow is None


def test_load_today_falls_back_to_latest_slot(app, store):
    use_provider(app, FakeProvider("aladhan", error=ProviderUnavailable("offline")))
    record = CachedTimings(make_timings(date(2025, 3, 10)), "2025-03-10T00:00:00+00:00", "api", 52.37, 4.9, "aladhan", 3)
    save_cached_timings(store, build_timings_cache_key("10-03-2025", 52.37, 4.9, 3), record)

    today, _, source = app.load_today()

    assert source == "latest"
    assert today.date_key == "10-03-2025"


def test_load_today_with_nothing_cached_raises(app):
    use_provider(app, FakeProvider("aladhan", error=ProviderUnavailable("offline")))

    with pytest.raises(PrayerTimesError):
        app.load_today()


def test_refresh_replans_and_books_next_refresh(app):
    use_provider(app, FakeProvider("aladhan"))
    scheduler = RecordingScheduler()
    booked = []
    app.replanner = Replanner(scheduler, app.prefetcher, clock=app.now)
    app.scheduler.schedule_refresh = lambda when, callback: booked.append(when)

    app.refresh()

    assert scheduler.calls.count("schedule_one_shot") == 6
    assert booked == [AMSTERDAM.localize(datetime(2025, 3, 16, 0, 5))]


def test_load_month_refetches_suspicious_cache(app, store):
    provider = FakeProvider("aladhan")
    use_provider(app, provider)
    frozen = {"Fajr": "05:00", "Sunrise": "06:30", "Dhuhr": "12:40", "Asr": "16:00", "Maghrib": "19:00", "Isha": "20:20"}
    for day in range(1, 9):
        record = CachedTimings(make_timings(date(2025, 3, day), frozen), "2025-03-15T00:00:00+00:00", "api", 52.37, 4.9, "aladhan", 3)
        save_cached_timings(store, build_timings_cache_key(record.timings.date_key, 52.37, 4.9, 3), record)

    month = app.load_month(2025, 3)

    assert len(provider.calls) == 31
    assert month.source == "network"


def test_set_manual_location_switches_mode(app, store):
    payload = [{"lat": "51.9225", "lon": "4.4792", "name": "Rotterdam", "address": {"city": "Rotterdam", "country": "Nederland"}}]
    with responses.RequestsMock() as mock:
        mock.add(responses.GET, NOMINATIM_SEARCH_URL, json=payload)
        manual = app.set_manual_location("rotterdam")

    settings = load_settings(store)
    assert settings.location_mode == "manual"
    assert settings.manual_location == manual
    assert settings.timings_provider == "aladhan"
    assert app.resolve_location(settings).label == "Rotterdam, Nederland"
