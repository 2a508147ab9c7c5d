from datetime import date, datetime

import pytest

from conftest import FakeProvider, make_timings
from errors import ProviderUnavailable
from prayer_times import get_date_key
from resolver import Coordinates, TimingsResolver
from settings import Settings
from storage import get_cached_timings, get_latest_cached_timings
from timings_cache import MonthDayRow, RangePrefetcher, month_dates, should_force_refresh_suspicious_cache

FIX = Coordinates(latitude=52.37, longitude=4.90)
ALADHAN = Settings(timings_provider="aladhan", method_id=3)


class MonthlyProvider(FakeProvider):
    def __init__(self, fail: bool = False, days=(1, 2, 3)) -> None:
        super().__init__("diyanet")
        self.fail = fail
        self.days = set(days)
        self.monthly_calls = []

    def get_monthly_timings(self, year, month, latitude, longitude, city_hint=None):
        self.monthly_calls.append((year, month, city_hint))
        if self.fail:
            raise ProviderUnavailable("proxy down")
        return {get_date_key(day): make_timings(day) for day in month_dates(year, month) if day.day in self.days}


def build(store, provider):
    resolver = TimingsResolver({provider.name: lambda: provider})
    return RangePrefetcher(store, resolver, clock=lambda: datetime(2025, 3, 15, 9, 0))


def test_range_returns_every_requested_day_and_caches_them(store):
    provider = FakeProvider("aladhan")
    prefetcher = build(store, provider)

    result = prefetcher.fetch_and_cache_range(date(2025, 3, 30), 5, FIX, ALADHAN)

    assert list(result) == ["30-03-2025", "31-03-2025", "01-04-2025", "02-04-2025", "03-04-2025"]
    cached = get_cached_timings(store, "timings:01-04-2025:52.37:4.90:paladhan:m3")
    assert cached is not None
    assert cached.source == "api"
    assert cached.provider == "aladhan"
    assert get_latest_cached_timings(store) is not None


def test_failed_day_is_absent_but_others_survive(store):
    provider = FakeProvider("aladhan", failing={date(2025, 3, 16), date(2025, 3, 20)})
    prefetcher = build(store, provider)

    result = prefetcher.fetch_and_cache_range(date(2025, 3, 15), 6, FIX, ALADHAN)

    assert set(result) == {"15-03-2025", "17-03-2025", "18-03-2025", "19-03-2025"}
    assert get_cached_timings(store, "timings:16-03-2025:52.37:4.90:paladhan:m3") is None


def test_today_tomorrow_cache_hit_skips_network(store):
    provider = FakeProvider("aladhan")
    prefetcher = build(store, provider)
    prefetcher.fetch_and_cache_range(date(2025, 3, 15), 2, FIX, ALADHAN)
    provider.calls.clear()

    today, tomorrow = prefetcher.get_today_tomorrow_timings(FIX, ALADHAN)

    assert (today.date_key, tomorrow.date_key) == ("15-03-2025", "16-03-2025")
    assert provider.calls == []


def test_today_tomorrow_miss_prefetches_safety_window(store):
    provider = FakeProvider("aladhan")
    prefetcher = build(store, provider)

    prefetcher.get_today_tomorrow_timings(FIX, ALADHAN)

    assert sorted(call[0] for call in provider.calls) == [date(2025, 3, 15), date(2025, 3, 16)]


def test_official_provider_without_monthly_rows_prefetches_per_day(store):
    provider = FakeProvider("diyanet")
    prefetcher = build(store, provider)

    prefetcher.get_today_tomorrow_timings(FIX, Settings(timings_provider="diyanet"))

    assert len(provider.calls) == 30


def test_official_fast_path_fills_window_from_monthly_rows(store):
    provider = MonthlyProvider(days=range(1, 32))
    prefetcher = build(store, provider)

    today, tomorrow = prefetcher.get_today_tomorrow_timings(FIX, Settings(timings_provider="diyanet"))

    assert (today.date_key, tomorrow.date_key) == ("15-03-2025", "16-03-2025")
    assert [call[:2] for call in provider.monthly_calls] == [(2025, 3), (2025, 4)]
    assert provider.calls == []
    assert get_cached_timings(store, "timings:13-04-2025:52.37:4.90:pdiyanet:m3") is not None


def test_official_fast_path_fetches_only_days_missing_from_monthly_rows(store):
    provider = MonthlyProvider(days=(15,))
    prefetcher = build(store, provider)

    prefetcher.get_today_tomorrow_timings(FIX, Settings(timings_provider="diyanet"))

    fetched_days = sorted(call[0] for call in provider.calls)
    assert len(fetched_days) == 29
    assert fetched_days[0] == date(2025, 3, 16)


def test_today_failure_propagates(store):
    error = ProviderUnavailable("offline")
    prefetcher = build(store, FakeProvider("aladhan", error=error))

    with pytest.raises(ProviderUnavailable) as excinfo:
        prefetcher.get_today_tomorrow_timings(FIX, ALADHAN)

    assert excinfo.value is error


def test_monthly_snapshot_marks_missing_days(store):
    prefetcher = build(store, FakeProvider("aladhan"))
    prefetcher.fetch_and_cache_range(date(2025, 2, 1), 3, FIX, ALADHAN)

    rows = prefetcher.get_monthly_cache_snapshot(2025, 2, FIX, ALADHAN)

    assert len(rows) == 28
    assert [row.source for row in rows[:4]] == ["cache", "cache", "cache", "missing"]


def test_monthly_fetch_fills_only_missing_days(store):
    provider = FakeProvider("aladhan")
    prefetcher = build(store, provider)
    prefetcher.fetch_and_cache_range(date(2025, 2, 1), 26, FIX, ALADHAN)
    provider.calls.clear()

    month = prefetcher.get_monthly_timings(2025, 2, FIX, ALADHAN)

    assert sorted(call[0] for call in provider.calls) == [date(2025, 2, 27), date(2025, 2, 28)]
    assert month.source == "mixed"
    assert month.missing_count == 0


def test_force_refresh_ignores_cache(store):
    provider = FakeProvider("aladhan")
    prefetcher = build(store, provider)
    prefetcher.fetch_and_cache_range(date(2025, 2, 1), 28, FIX, ALADHAN)
    provider.calls.clear()

    month = prefetcher.get_monthly_timings(2025, 2, FIX, ALADHAN, force_refresh=True)

    assert len(provider.calls) == 28
    assert month.source == "network"


def test_official_month_uses_monthly_rows(store):
    provider = MonthlyProvider()
    prefetcher = build(store, provider)

    saved = prefetcher.prefetch_month_timings(2025, 3, FIX, Settings(timings_provider="diyanet"), city_hint="Amsterdam")

    assert list(saved) == ["01-03-2025", "02-03-2025", "03-03-2025"]
    assert provider.monthly_calls == [(2025, 3, "Amsterdam")]
    assert provider.calls == []
    assert get_cached_timings(store, "timings:02-03-2025:52.37:4.90:pdiyanet:m3") is not None


def test_official_month_failure_returns_empty(store):
    provider = MonthlyProvider(fail=True)
    prefetcher = build(store, provider)

    assert prefetcher.prefetch_month_timings(2025, 3, FIX, Settings(timings_provider="diyanet")) == {}
    assert provider.calls == []


def _rows(times_per_day):
    rows = []
    for index, fajr in enumerate(times_per_day, start=1):
        day = date(2025, 3, index)
        timings = make_timings(day, {"Fajr": fajr, "Sunrise": "06:30", "Dhuhr": "12:40", "Asr": "16:00", "Maghrib": "19:00", "Isha": "20:20"}) if fajr else None
        rows.append(MonthDayRow(day=day, date_key=get_date_key(day), timings=timings, source="cache" if fajr else "missing"))
    return rows


def test_suspicious_cache_detection():
    assert should_force_refresh_suspicious_cache(_rows(["05:10"] * 7))
    assert should_force_refresh_suspicious_cache(_rows(["05:10"] * 5 + ["05:09"] * 5))
    assert not should_force_refresh_suspicious_cache(_rows(["05:10"] * 6 + [None] * 10))
    assert not should_force_refresh_suspicious_cache(_rows(["05:10", "05:08", "05:06", "05:04", "05:02", "05:00", "04:58"]))
