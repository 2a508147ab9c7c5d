"""Turn resolved timings and notification preferences into scheduled alerts.

A replan runs in a fixed order: check permission, compare the input signature
with the last applied one, cancel every existing alert, resolve today and
tomorrow, schedule the new alerts and finally remember the signature. Requests
are serialised through :class:`ReplanQueue` so cancel and schedule phases of
different replans never interleave.
"""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo as TzInfo
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import pytz

from errors import DataIntegrityError
from prayer_times import (
    PRAYER_ORDER,
    Timings,
    get_date_key,
    local_timezone_name,
    parse_date_key,
    parse_prayer_time_for_date,
)
from resolver import Coordinates
from scheduler import NotificationRequest, NotificationScheduler
from settings import PrayerNotificationSetting, Settings
from timings_cache import RangePrefetcher

LOGGER = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 10.0
ADHAN_SOUND = "adhan_short.wav"
DEFAULT_SOUND = "default"

INTENT_OFFSET = "offset"
INTENT_AT_TIME = "at_time"

STATUS_APPLIED = "applied"
STATUS_SKIPPED = "skipped"
STATUS_PERMISSION_DENIED = "permission_denied"


@dataclass(frozen=True)
class ScheduledAlert:
    prayer: str
    date_key: str
    intent: str
    minutes_before: int
    trigger_at: datetime
    prayer_at: datetime

    @property
    def epoch_ms(self) -> int:
        return int(self.trigger_at.timestamp() * 1000)

    @property
    def dedupe_key(self) -> str:
        return f"{self.date_key}:{self.prayer}:{self.intent}:{self.minutes_before}:{self.epoch_ms}"


@dataclass
class ReplanState:
    last_signature: Optional[str] = None
    last_applied_at: Optional[float] = None


@dataclass
class ReplanResult:
    status: str
    total: int = 0
    at_time: int = 0
    offset: int = 0
    signature: Optional[str] = None


def _round4(value: float) -> float:
    return round(float(value), 4)


def create_replan_signature(location: Coordinates, settings: Settings) -> str:
    """Canonical JSON of every input that changes the resulting alert set."""
    manual = settings.manual_location
    payload = {
        "lat": _round4(location.latitude),
        "lon": _round4(location.longitude),
        "provider": settings.timings_provider,
        "methodId": settings.method_id,
        "locationMode": settings.location_mode,
        "manualLocation": (
            {"label": manual.label, "lat": _round4(manual.latitude), "lon": _round4(manual.longitude)}
            if manual
            else None
        ),
        "prayers": {
            prayer: {
                "enabled": settings.notification_for(prayer).enabled,
                "minutesBefore": settings.notification_for(prayer).minutes_before,
            }
            for prayer in PRAYER_ORDER
        },
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def should_skip_replan(
    state: ReplanState,
    signature: str,
    now_ts: float,
    window_seconds: float = DEBOUNCE_SECONDS,
) -> bool:
    if state.last_signature != signature or state.last_applied_at is None:
        return False
    return 0 <= now_ts - state.last_applied_at < window_seconds


def build_alerts(
    days: Sequence[Timings],
    settings: Settings,
    now: datetime,
    tzinfo: Optional[TzInfo] = None,
) -> List[ScheduledAlert]:
    """Plan the alerts for *days*; past triggers and duplicate keys are dropped."""
    tzinfo = tzinfo if tzinfo is not None else now.tzinfo
    seen: Set[str] = set()
    alerts: List[ScheduledAlert] = []
    for timings in days:
        day = parse_date_key(timings.date_key)
        for prayer in PRAYER_ORDER:
            preference = settings.notification_for(prayer)
            if not preference.enabled:
                continue
            prayer_at = parse_prayer_time_for_date(day, timings.times[prayer], tzinfo)

            candidates = []
            if preference.minutes_before > 0:
                candidates.append(
                    (INTENT_OFFSET, preference.minutes_before, prayer_at - timedelta(minutes=preference.minutes_before))
                )
            candidates.append((INTENT_AT_TIME, preference.minutes_before, prayer_at))

            for intent, minutes_before, trigger_at in candidates:
                if trigger_at <= now:
                    continue
                alert = ScheduledAlert(
                    prayer=prayer,
                    date_key=timings.date_key,
                    intent=intent,
                    minutes_before=minutes_before,
                    trigger_at=trigger_at,
                    prayer_at=prayer_at,
                )
                if alert.dedupe_key in seen:
                    continue
                seen.add(alert.dedupe_key)
                alerts.append(alert)
    return alerts


def resolve_notification_sound(preference: PrayerNotificationSetting) -> Optional[str]:
    if not preference.play_sound:
        return None
    return ADHAN_SOUND if preference.tone == "Adhan" else DEFAULT_SOUND


def build_notification_request(alert: ScheduledAlert, preference: PrayerNotificationSetting) -> NotificationRequest:
    if alert.intent == INTENT_OFFSET:
        title = f"{alert.prayer} in {alert.minutes_before} minutes"
        body = f"{alert.prayer} starts at {alert.prayer_at:%H:%M}."
    else:
        title = f"{alert.prayer} prayer time"
        body = f"It is time for {alert.prayer}."
    data: Dict[str, Any] = {
        "prayer": alert.prayer,
        "dateKey": alert.date_key,
        "intent": alert.intent,
        "minutesBefore": alert.minutes_before,
        "playSound": preference.play_sound,
        "tone": preference.tone,
        "volume": preference.volume,
        "vibration": preference.vibration,
        "dedupeKey": alert.dedupe_key,
    }
    return NotificationRequest(
        title=title,
        body=body,
        trigger_at=alert.trigger_at,
        data=data,
        sound=resolve_notification_sound(preference),
    )


class ReplanQueue:
    """Run submitted jobs strictly one after another on a single worker thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="replan")

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _local_now() -> datetime:
    return datetime.now(pytz.timezone(local_timezone_name()))


class Replanner:
    def __init__(
        self,
        scheduler: NotificationScheduler,
        prefetcher: RangePrefetcher,
        state: Optional[ReplanState] = None,
        queue: Optional[ReplanQueue] = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.scheduler = scheduler
        self.prefetcher = prefetcher
        self.state = state or ReplanState()
        self.queue = queue or ReplanQueue()
        self._clock = clock
        self._state_lock = threading.Lock()

    def replan(
        self,
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str] = None,
        force: bool = False,
    ) -> Future:
        """Queue a replan behind any in-flight one; the future carries a :class:`ReplanResult`."""
        return self.queue.submit(self.replan_now, location, settings, city_hint, force)

    def replan_now(
        self,
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str] = None,
        force: bool = False,
    ) -> ReplanResult:
        if not self.scheduler.request_permission():
            LOGGER.info("Skipping replan: notifications not permitted")
            return ReplanResult(status=STATUS_PERMISSION_DENIED)

        signature = create_replan_signature(location, settings)
        now = self._clock()
        with self._state_lock:
            skip = not force and should_skip_replan(self.state, signature, now.timestamp())
        if skip:
            LOGGER.debug("Skipping replan: signature already applied")
            return ReplanResult(status=STATUS_SKIPPED, signature=signature)

        self.scheduler.cancel_all()

        today, tomorrow = self.prefetcher.get_today_tomorrow_timings(
            location, settings, today=now.date(), city_hint=city_hint
        )
        expected_key = get_date_key(now.date())
        if today.date_key != expected_key:
            raise DataIntegrityError(f"Resolved timings for {today.date_key}, expected {expected_key}")

        # Triggers that came due during the resolve must not be scheduled.
        alerts = build_alerts([today, tomorrow], settings, self._clock())
        for alert in alerts:
            request = build_notification_request(alert, settings.notification_for(alert.prayer))
            self.scheduler.schedule_one_shot(request)

        result = ReplanResult(
            status=STATUS_APPLIED,
            total=len(alerts),
            at_time=sum(1 for alert in alerts if alert.intent == INTENT_AT_TIME),
            offset=sum(1 for alert in alerts if alert.intent == INTENT_OFFSET),
            signature=signature,
        )
        with self._state_lock:
            self.state.last_signature = signature
            self.state.last_applied_at = self._clock().timestamp()
        LOGGER.info(
            "Scheduled %d alerts (%d at time, %d before)",
            result.total,
            result.at_time,
            result.offset,
        )
        return result
