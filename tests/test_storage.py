import json
from datetime import date

from conftest import make_timings
from storage import (
    LATEST_TIMINGS_KEY,
    CachedTimings,
    JsonFileCacheStore,
    build_mosques_cache_key,
    build_timings_cache_key,
    get_cached_timings,
    get_cached_timings_for_date,
    get_latest_cached_timings,
    save_cached_timings,
)


def _record(day: date, updated: str = "2025-03-15T10:00:00+00:00", lat: float = 52.37) -> CachedTimings:
    return CachedTimings(
        timings=make_timings(day),
        last_updated=updated,
        source="api",
        lat_rounded=lat,
        lon_rounded=4.9,
        provider="aladhan",
        method_id=3,
    )


def test_timings_cache_key_rounds_to_two_decimals():
    key = build_timings_cache_key("15-03-2025", 52.3731, 4.8989, 3, "aladhan")
    assert key == "timings:15-03-2025:52.37:4.90:paladhan:m3"


def test_save_then_get_returns_equal_record(store):
    record = _record(date(2025, 3, 15))
    key = build_timings_cache_key("15-03-2025", 52.37, 4.9, 3)

    save_cached_timings(store, key, record)

    assert get_cached_timings(store, key) == record


def test_latest_slot_tracks_most_recent_save(store):
    first = _record(date(2025, 3, 15))
    second = _record(date(2025, 3, 16))
    save_cached_timings(store, build_timings_cache_key("15-03-2025", 52.37, 4.9, 3), first)
    save_cached_timings(store, build_timings_cache_key("16-03-2025", 52.37, 4.9, 3), second)

    assert get_latest_cached_timings(store) == second


def test_corrupt_entry_reads_as_miss(store):
    store.set("timings:15-03-2025:52.37:4.90:paladhan:m3", "{not json")
    store.set(LATEST_TIMINGS_KEY, json.dumps({"timings": {"dateKey": "bad"}}))

    assert get_cached_timings(store, "timings:15-03-2025:52.37:4.90:paladhan:m3") is None
    assert get_latest_cached_timings(store) is None


def test_cached_timings_for_date_picks_newest_any_location(store):
    older = _record(date(2025, 3, 15), updated="2025-03-15T08:00:00+00:00", lat=52.37)
    newer = _record(date(2025, 3, 15), updated="2025-03-15T09:00:00+00:00", lat=51.92)
    save_cached_timings(store, build_timings_cache_key("15-03-2025", 52.37, 4.9, 3), older)
    save_cached_timings(store, build_timings_cache_key("15-03-2025", 51.92, 4.9, 3), newer)

    found = get_cached_timings_for_date(store, "15-03-2025", "aladhan", 3)

    assert found == newer
    assert get_cached_timings_for_date(store, "15-03-2025", "diyanet", 3) is None


def test_json_file_store_persists_between_instances(tmp_path):
    path = tmp_path / "cache.json"
    JsonFileCacheStore(path).set("settings:v1", "{}")

    reopened = JsonFileCacheStore(path)

    assert reopened.get("settings:v1") == "{}"
    assert reopened.keys() == ["settings:v1"]


def test_mosques_cache_key_compacts_radius():
    assert build_mosques_cache_key(52.3731, 4.8989, 5) == "mosques:cache:v1:52.37:4.90:5"
    assert build_mosques_cache_key(52.3731, 4.8989, 2.5) == "mosques:cache:v1:52.37:4.90:2.5"
