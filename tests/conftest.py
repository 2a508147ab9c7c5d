from datetime import date
from typing import Dict, List, Optional

import pytest
import pytz

from prayer_times import Timings, build_timings, get_date_key
from scheduler import NotificationRequest
from storage import MemoryCacheStore

AMSTERDAM = pytz.timezone("Europe/Amsterdam")

DEFAULT_TIMES = {
    "Fajr": "05:10",
    "Sunrise": "06:32",
    "Dhuhr": "12:40",
    "Asr": "16:05",
    "Maghrib": "19:02",
    "Isha": "20:20",
}


def make_timings(day: date, times: Optional[Dict[str, str]] = None, timezone: str = "Europe/Amsterdam") -> Timings:
    return build_timings(get_date_key(day), timezone, times or DEFAULT_TIMES)


class RecordingScheduler:
    """Notification scheduler that records calls instead of delivering alerts."""

    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.calls: List[str] = []
        self.scheduled: List[NotificationRequest] = []

    def request_permission(self) -> bool:
        self.calls.append("request_permission")
        return self.granted

    def schedule_one_shot(self, request: NotificationRequest) -> None:
        self.calls.append("schedule_one_shot")
        self.scheduled.append(request)

    def cancel_all(self) -> None:
        self.calls.append("cancel_all")
        self.scheduled.clear()


class FakeProvider:
    """Timings provider serving canned days; dates listed in ``failing`` raise."""

    def __init__(self, name: str = "aladhan", failing=None, error: Optional[Exception] = None) -> None:
        self.name = name
        self.failing = set(failing or ())
        self.error = error
        self.calls: List[tuple] = []

    def get_timings(self, day, latitude, longitude, *, method_id, city_hint=None):
        self.calls.append((day, latitude, longitude, method_id, city_hint))
        if day in self.failing or self.error is not None:
            from errors import ProviderUnavailable

            raise self.error or ProviderUnavailable(f"boom for {day}")
        return make_timings(day)


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def recording_scheduler():
    return RecordingScheduler()
