import json
from datetime import date, datetime

import responses

from conftest import AMSTERDAM, make_timings
from mosques import (
    OVERPASS_URL,
    UNKNOWN_MOSQUE_NAME,
    Mosque,
    MosqueService,
    MosquesSettings,
    estimate_eta_minutes,
    load_mosques_settings,
    rank_mosques,
    save_mosques_settings,
    time_left_until_next_prayer,
)
from settings import Settings
from storage import CachedTimings, build_timings_cache_key, save_cached_timings

OVERPASS_PAYLOAD = {
    "elements": [
        {"type": "node", "id": 1, "lat": 52.3745, "lon": 4.8980, "tags": {"name": "Fatih Moskee"}},
        {"type": "way", "id": 2, "center": {"lat": 52.36, "lon": 4.91}, "tags": {}},
        {"type": "node", "id": 1, "lat": 52.3745, "lon": 4.8980},
        {"type": "relation", "id": 3, "tags": {"name": "No coordinates"}},
    ]
}


def _mosque(mosque_id: str, distance_km: float) -> Mosque:
    return Mosque(id=mosque_id, name=mosque_id, latitude=0.0, longitude=0.0, distance_km=distance_km, last_updated=0.0)


def test_eta_rounds_up_with_one_minute_floor():
    assert estimate_eta_minutes(1.0, "walk") == 12
    assert estimate_eta_minutes(1.01, "walk") == 13
    assert estimate_eta_minutes(0.01, "drive") == 1
    assert estimate_eta_minutes(10.0, "drive") == 20


def test_rank_feasible_first_then_eta_then_distance():
    mosques = [_mosque("far", 3.0), _mosque("near", 0.5), _mosque("mid", 1.5)]

    ranked = rank_mosques(mosques, time_left_minutes=30, travel_mode="walk")

    assert [(item.mosque.id, item.eta_minutes, item.feasible) for item in ranked] == [
        ("near", 6, True),
        ("mid", 18, True),
        ("far", 36, False),
    ]


def test_buffer_boundary_is_inclusive():
    ranked = rank_mosques([_mosque("edge", 1.0)], time_left_minutes=22, travel_mode="walk")
    assert ranked[0].feasible is True
    ranked = rank_mosques([_mosque("edge", 1.0)], time_left_minutes=21, travel_mode="walk")
    assert ranked[0].feasible is False


def test_unknown_time_left_is_never_feasible():
    ranked = rank_mosques([_mosque("a", 0.1)], time_left_minutes=None, travel_mode="drive")
    assert ranked[0].feasible is False


def test_time_left_rolls_into_tomorrows_fajr(store):
    settings = Settings(timings_provider="aladhan", method_id=3)
    for day in (date(2025, 3, 15), date(2025, 3, 16)):
        record = CachedTimings(make_timings(day), "2025-03-15T00:00:00+00:00", "api", 52.37, 4.9, "aladhan", 3)
        save_cached_timings(store, build_timings_cache_key(record.timings.date_key, 52.37, 4.9, 3), record)

    evening = AMSTERDAM.localize(datetime(2025, 3, 15, 19, 30))
    night = AMSTERDAM.localize(datetime(2025, 3, 15, 23, 10))

    assert time_left_until_next_prayer(store, settings, evening) == 50
    assert time_left_until_next_prayer(store, settings, night) == 360


def test_overpass_results_are_parsed_and_cached(store):
    service = MosqueService(store, clock=lambda: 1_000.0)

    with responses.RequestsMock() as mock:
        mock.add(responses.POST, OVERPASS_URL, json=OVERPASS_PAYLOAD)
        mosques, source = service.get_mosques(52.3731, 4.8989, 5)
        body = mock.calls[0].request.body

    assert source == "network"
    assert "religion" in str(body)
    assert [mosque.id for mosque in mosques] == ["node/1", "way/2"]
    assert mosques[1].name == UNKNOWN_MOSQUE_NAME

    cached, source = service.get_mosques(52.3731, 4.8989, 5)
    assert source == "cache"
    assert cached == mosques
    stored = json.loads(store.get("mosques:cache:v1:52.37:4.90:5"))
    assert stored["fetchedAt"] == 1_000.0


def test_stale_mosque_cache_is_refetched(store):
    now = [0.0]
    service = MosqueService(store, clock=lambda: now[0])

    with responses.RequestsMock() as mock:
        mock.add(responses.POST, OVERPASS_URL, json=OVERPASS_PAYLOAD)
        mock.add(responses.POST, OVERPASS_URL, json={"elements": []})
        service.get_mosques(52.3731, 4.8989, 5)
        now[0] = 24 * 60 * 60 + 1
        mosques, source = service.get_mosques(52.3731, 4.8989, 5)

    assert source == "network"
    assert mosques == []


def test_mosque_settings_sanitised(store):
    assert load_mosques_settings(store) == MosquesSettings(radius_km=5, travel_mode="walk")

    save_mosques_settings(store, MosquesSettings(radius_km=20, travel_mode="drive"))
    assert load_mosques_settings(store) == MosquesSettings(radius_km=20, travel_mode="drive")

    store.set("mosques:settings:v1", json.dumps({"radiusKm": 7, "travelMode": "bike"}))
    assert load_mosques_settings(store) == MosquesSettings()
