"""User settings: provider/method selection, location mode and per-prayer notifications."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from prayer_times import PRAYER_ORDER
from storage import SETTINGS_KEY, CacheStore, get_json, set_json

LOGGER = logging.getLogger(__name__)

PROVIDERS = ("aladhan", "diyanet")
LOCATION_MODES = ("gps", "manual")
MINUTES_BEFORE_CHOICES = (0, 5, 10, 15, 30)
TONES = ("Adhan", "Beep")
LEGACY_ADHAN_TONES = ("Adhan - Makkah (Normal)", "Adhan - Madinah (Soft)")
DIYANET_METHOD_NAME = "Diyanet Official API"


@dataclass
class PrayerNotificationSetting:
    enabled: bool = True
    minutes_before: int = 0
    play_sound: bool = True
    tone: str = "Beep"
    volume: int = 75
    vibration: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "minutesBefore": self.minutes_before,
            "playSound": self.play_sound,
            "tone": self.tone,
            "volume": self.volume,
            "vibration": self.vibration,
        }


@dataclass
class ManualLocation:
    query: str
    label: str
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, Any]:
        return {"query": self.query, "label": self.label, "lat": self.latitude, "lon": self.longitude}


def _default_notifications() -> Dict[str, PrayerNotificationSetting]:
    return {prayer: PrayerNotificationSetting(enabled=prayer != "Sunrise") for prayer in PRAYER_ORDER}


@dataclass
class Settings:
    timings_provider: str = "diyanet"
    method_id: int = 3
    method_name: str = DIYANET_METHOD_NAME
    hanafi_only: bool = True
    location_mode: str = "gps"
    manual_location: Optional[ManualLocation] = None
    prayer_notifications: Dict[str, PrayerNotificationSetting] = field(default_factory=_default_notifications)

    def notification_for(self, prayer: str) -> PrayerNotificationSetting:
        return self.prayer_notifications[prayer]

    def with_notification(self, prayer: str, **changes: Any) -> "Settings":
        """Return a copy with one prayer's notification record updated."""
        notifications = dict(self.prayer_notifications)
        notifications[prayer] = replace(notifications[prayer], **changes)
        return replace(self, prayer_notifications=notifications)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timingsProvider": self.timings_provider,
            "methodId": self.method_id,
            "methodName": self.method_name,
            "hanafiOnly": self.hanafi_only,
            "locationMode": self.location_mode,
            "manualLocation": self.manual_location.to_dict() if self.manual_location else None,
            "prayerNotifications": {
                prayer: self.prayer_notifications[prayer].to_dict() for prayer in PRAYER_ORDER
            },
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "Settings":
        """Build settings from persisted data, substituting defaults field by field."""
        defaults = cls()
        if not isinstance(payload, dict):
            return defaults

        provider = payload.get("timingsProvider", payload.get("provider"))
        if provider not in PROVIDERS:
            provider = defaults.timings_provider

        method_id = payload.get("methodId", payload.get("method"))
        if not _is_number(method_id):
            method_id = defaults.method_id

        method_name = payload.get("methodName")
        if not isinstance(method_name, str):
            method_name = DIYANET_METHOD_NAME if provider == "diyanet" else defaults.method_name

        hanafi_only = payload.get("hanafiOnly")
        if not isinstance(hanafi_only, bool):
            hanafi_only = defaults.hanafi_only

        location_mode = payload.get("locationMode")
        if location_mode not in LOCATION_MODES:
            location_mode = defaults.location_mode

        raw_notifications = payload.get("prayerNotifications")
        if not isinstance(raw_notifications, dict):
            raw_notifications = {}

        return cls(
            timings_provider=provider,
            method_id=int(method_id),
            method_name=method_name,
            hanafi_only=hanafi_only,
            location_mode=location_mode,
            manual_location=_parse_manual_location(payload.get("manualLocation")),
            prayer_notifications={
                prayer: _parse_notification(raw_notifications.get(prayer), defaults.prayer_notifications[prayer])
                for prayer in PRAYER_ORDER
            },
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_manual_location(value: Any) -> Optional[ManualLocation]:
    if not isinstance(value, dict):
        return None
    query, label = value.get("query"), value.get("label")
    lat, lon = value.get("lat"), value.get("lon")
    if not isinstance(query, str) or not isinstance(label, str) or not _is_number(lat) or not _is_number(lon):
        return None
    return ManualLocation(query=query, label=label, latitude=float(lat), longitude=float(lon))


def _parse_notification(value: Any, default: PrayerNotificationSetting) -> PrayerNotificationSetting:
    if not isinstance(value, dict):
        return replace(default)

    enabled = value.get("enabled")
    minutes_before = value.get("minutesBefore")
    play_sound = value.get("playSound")
    volume = value.get("volume")
    vibration = value.get("vibration")

    tone = value.get("tone")
    if tone in LEGACY_ADHAN_TONES:
        tone = "Adhan"

    return PrayerNotificationSetting(
        enabled=enabled if isinstance(enabled, bool) else default.enabled,
        minutes_before=(
            int(minutes_before)
            if _is_number(minutes_before) and minutes_before in MINUTES_BEFORE_CHOICES
            else default.minutes_before
        ),
        play_sound=play_sound if isinstance(play_sound, bool) else default.play_sound,
        tone=tone if tone in TONES else default.tone,
        volume=volume if _is_number(volume) and 0 <= volume <= 100 else default.volume,
        vibration=vibration if isinstance(vibration, bool) else default.vibration,
    )


def load_settings(store: CacheStore) -> Settings:
    payload = get_json(store, SETTINGS_KEY)
    if payload is None:
        LOGGER.debug("No stored settings; using defaults")
    return Settings.from_dict(payload)


def save_settings(store: CacheStore, settings: Settings) -> None:
    set_json(store, SETTINGS_KEY, settings.to_dict())
    LOGGER.debug(
        "Saved settings provider=%s method=%s mode=%s",
        settings.timings_provider,
        settings.method_id,
        settings.location_mode,
    )
