"""Qibla bearing from the AlAdhan API, cached per rounded location."""
from __future__ import annotations

import logging
import math
from typing import Optional

import requests

from errors import DataIntegrityError, ProviderUnavailable
from storage import (
    CachedQibla,
    CacheStore,
    build_qibla_cache_key,
    get_cached_qibla,
    get_latest_cached_qibla,
    round_coordinate,
    save_cached_qibla,
    utc_now_iso,
)

LOGGER = logging.getLogger(__name__)

ALADHAN_QIBLA_URL = "https://api.aladhan.com/v1/qibla"


def fetch_qibla_direction(latitude: float, longitude: float, timeout: int = 10) -> float:
    url = f"{ALADHAN_QIBLA_URL}/{latitude}/{longitude}"
    LOGGER.debug("Requesting qibla direction %s", url)
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise ProviderUnavailable(f"Qibla request failed: {exc}") from exc
    if not response.ok:
        raise ProviderUnavailable(f"Could not fetch Qibla direction ({response.status_code})")
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderUnavailable("Received invalid Qibla response") from exc

    data = payload.get("data") if isinstance(payload, dict) else None
    try:
        direction = float(data.get("direction")) if isinstance(data, dict) else math.nan
    except (TypeError, ValueError):
        direction = math.nan
    if not math.isfinite(direction):
        raise DataIntegrityError("Qibla direction is unavailable for this location")
    return direction


def compass_image_url(latitude: float, longitude: float, size: int = 512) -> str:
    return f"{ALADHAN_QIBLA_URL}/{latitude}/{longitude}/compass/{size}"


class QiblaService:
    def __init__(self, store: CacheStore, timeout: int = 10) -> None:
        self.store = store
        self.timeout = timeout

    def get_bearing(self, latitude: float, longitude: float, location_name: str = "") -> CachedQibla:
        """Cached bearing for the rounded location, fetched once per location."""
        key = build_qibla_cache_key(latitude, longitude)
        cached = get_cached_qibla(self.store, key)
        if cached is not None:
            LOGGER.debug("Qibla cache hit %s", key)
            return cached

        bearing = fetch_qibla_direction(latitude, longitude, self.timeout)
        record = CachedQibla(
            bearing=bearing,
            location_name=location_name,
            updated_at=utc_now_iso(),
            lat_rounded=round_coordinate(latitude),
            lon_rounded=round_coordinate(longitude),
        )
        save_cached_qibla(self.store, key, record)
        return record

    def last_known(self) -> Optional[CachedQibla]:
        return get_latest_cached_qibla(self.store)
