"""Select a timings provider from the user's settings and build cache keys."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional

from diyanet import DiyanetProvider
from prayer_times import AladhanProvider, Timings, TimingsProvider, get_date_key
from settings import Settings
from storage import build_timings_cache_key

LOGGER = logging.getLogger(__name__)


@dataclass
class Coordinates:
    latitude: float
    longitude: float


def default_provider_factories() -> Dict[str, Callable[[], TimingsProvider]]:
    return {
        "aladhan": AladhanProvider,
        "diyanet": DiyanetProvider,
    }


class TimingsResolver:
    """Dispatches a day's lookup to the provider named in the settings.

    Provider errors are not caught here; falling back to cached data is up to
    the caller.
    """

    def __init__(self, factories: Optional[Dict[str, Callable[[], TimingsProvider]]] = None) -> None:
        self._factories = factories or default_provider_factories()
        self._providers: Dict[str, TimingsProvider] = {}

    def provider_for(self, settings: Settings) -> TimingsProvider:
        name = settings.timings_provider
        provider = self._providers.get(name)
        if provider is None:
            try:
                factory = self._factories[name]
            except KeyError:
                raise ValueError(f"Unknown timings provider: {name!r}") from None
            provider = factory()
            self._providers[name] = provider
        return provider

    def get_timings_for_date(
        self,
        day: date,
        location: Coordinates,
        settings: Settings,
        city_hint: Optional[str] = None,
    ) -> Timings:
        provider = self.provider_for(settings)
        hint = self.city_hint_for(settings, city_hint)
        LOGGER.debug(
            "Resolving %s via %s (method=%s hint=%s)",
            get_date_key(day),
            provider.name,
            settings.method_id,
            hint,
        )
        return provider.get_timings(
            day,
            location.latitude,
            location.longitude,
            method_id=settings.method_id,
            city_hint=hint,
        )

    @staticmethod
    def city_hint_for(settings: Settings, city_hint: Optional[str] = None) -> Optional[str]:
        """Only the official provider uses hints; manual mode always uses the saved label."""
        if settings.timings_provider != "diyanet":
            return None
        if settings.location_mode == "manual" and settings.manual_location:
            return settings.manual_location.label
        return city_hint

    @staticmethod
    def cache_key_for(day: date, location: Coordinates, settings: Settings) -> str:
        return build_timings_cache_key(
            get_date_key(day),
            location.latitude,
            location.longitude,
            settings.method_id,
            settings.timings_provider,
        )
