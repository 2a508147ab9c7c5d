"""Exception types shared by the timings, caching and notification modules."""
from __future__ import annotations


class PrayerTimesError(Exception):
    """Base class for all errors raised by this package."""


class PermissionDenied(PrayerTimesError):
    """Location or notification permission was refused."""


class ProviderUnavailable(PrayerTimesError):
    """A timings provider could not be reached or returned an unusable response."""


class DataIntegrityError(PrayerTimesError):
    """Resolved data is incomplete or inconsistent and must not be used."""
