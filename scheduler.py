"""Scheduling utilities for one-shot prayer alerts and daily refreshes."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

LOGGER = logging.getLogger(__name__)


@dataclass
class NotificationRequest:
    """A single platform alert: what to show and when to show it."""

    title: str
    body: str
    trigger_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    sound: Optional[str] = None


class NotificationScheduler(Protocol):
    """Boundary to whatever actually delivers alerts."""

    def request_permission(self) -> bool:
        ...

    def schedule_one_shot(self, request: NotificationRequest) -> None:
        ...

    def cancel_all(self) -> None:
        ...


class PrayerScheduler:
    """Wrap APScheduler to manage one-off alert jobs and the daily refresh job."""

    def __init__(
        self,
        timezone: str,
        on_fire: Optional[Callable[[NotificationRequest], None]] = None,
        permission: Callable[[], bool] = lambda: True,
    ) -> None:
        self._scheduler = BackgroundScheduler(timezone=timezone)
        self._on_fire = on_fire or self._log_alert
        self._permission = permission
        self._jobs: List[str] = []
        self._jobs_lock = threading.Lock()
        self._refresh_job_id: Optional[str] = None

    def start(self) -> None:
        if not self._scheduler.running:
            LOGGER.info("Starting background scheduler")
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            LOGGER.info("Stopping background scheduler")
            self._scheduler.shutdown(wait=False)

    @property
    def timezone(self) -> str:
        tzinfo = self._scheduler.timezone
        zone = getattr(tzinfo, "zone", None)
        return str(zone or tzinfo)

    @property
    def pending_job_ids(self) -> List[str]:
        with self._jobs_lock:
            return list(self._jobs)

    # -- NotificationScheduler -------------------------------------------------
    def request_permission(self) -> bool:
        granted = bool(self._permission())
        if not granted:
            LOGGER.info("Notification permission not granted")
        return granted

    def schedule_one_shot(self, request: NotificationRequest) -> None:
        trigger = DateTrigger(run_date=request.trigger_at)
        job = self._scheduler.add_job(self._on_fire, trigger=trigger, args=[request])
        with self._jobs_lock:
            self._jobs.append(job.id)
        LOGGER.debug("Scheduled alert job %s at %s (%s)", job.id, request.trigger_at, request.title)

    def cancel_all(self) -> None:
        with self._jobs_lock:
            job_ids = list(self._jobs)
            self._jobs.clear()
        for job_id in job_ids:
            with suppress_not_found():
                self._scheduler.remove_job(job_id)
        LOGGER.debug("Cancelled %d alert jobs", len(job_ids))

    # -- refresh ---------------------------------------------------------------
    def schedule_refresh(self, next_run: datetime, refresh_callback: Callable[[], None]) -> None:
        """Schedule a single refresh job, replacing any existing one."""
        if self._refresh_job_id:
            LOGGER.debug("Removing existing refresh job %s", self._refresh_job_id)
            with suppress_not_found():
                self._scheduler.remove_job(self._refresh_job_id)
            self._refresh_job_id = None

        trigger = DateTrigger(run_date=next_run)
        job = self._scheduler.add_job(refresh_callback, trigger=trigger)
        LOGGER.debug("Scheduled refresh job %s at %s", job.id, next_run)
        self._refresh_job_id = job.id

    @staticmethod
    def _log_alert(request: NotificationRequest) -> None:
        LOGGER.info("%s: %s", request.title, request.body)


class suppress_not_found:
    """Context manager that suppresses APScheduler job lookup errors."""

    def __enter__(self) -> None:  # pragma: no cover - trivial
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:  # pragma: no cover - trivial
        if exc_type is None:
            return False
        return isinstance(exc, JobLookupError)
