"""
Automatic backup scheduling.

A tick fires an automatic export at most once per rolling window
(24 hours by default), and only when an export key is set, automatic
backups are enabled and a destination has been granted. The window is
measured from the last *successful* backup, so a failed run is
retried on the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from ..errors import PermissionDenied
from ..secrets import BACKUP_KEY
from ..services import DirectoryGrant, KeyValueStore
from ..settings import Settings
from .exporter import BackupExporter

logger = logging.getLogger("bulliondesk.backup.scheduler")


def _as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment


class ScheduleOutcome(str, Enum):
    """Result of one scheduler tick."""

    NO_KEY = "no_key"
    DISABLED = "disabled"
    NO_DESTINATION = "no_destination"
    NOT_DUE = "not_due"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def ran(self) -> bool:
        return self in (ScheduleOutcome.SUCCEEDED, ScheduleOutcome.FAILED)


class AutoBackupScheduler:
    """Decides when to run automatic exports and runs them."""

    def __init__(self, exporter: BackupExporter, secrets: KeyValueStore, settings: Settings) -> None:
        self.exporter = exporter
        self.secrets = secrets
        self.settings = settings

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self.settings.config.auto_interval_hours)

    def gate(self) -> Optional[ScheduleOutcome]:
        """The first closed gate, or None when all are open."""
        if not self.secrets.get(BACKUP_KEY):
            return ScheduleOutcome.NO_KEY
        if not self.settings.config.auto_backup_enabled:
            return ScheduleOutcome.DISABLED
        if self.settings.destination is None:
            return ScheduleOutcome.NO_DESTINATION
        return None

    def is_due(self, now: datetime) -> bool:
        last = self.settings.state.last_backup_time
        if last is None:
            return True
        return _as_utc(now) - _as_utc(last) >= self.interval

    def next_due(self) -> Optional[datetime]:
        """When the next automatic backup becomes eligible (None = now)."""
        last = self.settings.state.last_backup_time
        return _as_utc(last) + self.interval if last else None

    async def tick(self, now: Optional[datetime] = None) -> ScheduleOutcome:
        """Run an automatic export if every gate is open and one is due.

        Closed gates and an ineligible clock are outcomes, not errors.
        """
        closed = self.gate()
        if closed is not None:
            logger.debug("Auto backup skipped: %s", closed.value)
            return closed
        now = now or datetime.now(timezone.utc)
        if not self.is_due(now):
            return ScheduleOutcome.NOT_DUE

        result = await self.exporter.export(kind="auto")
        if result.success:
            logger.info("Auto backup completed: %d records", result.record_count)
            return ScheduleOutcome.SUCCEEDED
        logger.warning("Auto backup failed: %s", result.message)
        return ScheduleOutcome.FAILED

    async def run(self, stop_event: asyncio.Event, poll_interval: float = 3600.0) -> None:
        """Tick until ``stop_event`` is set."""
        logger.info("Auto backup loop started (poll every %.0fs)", poll_interval)
        while not stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Auto backup loop stopped")

    async def enable(self, grant: Optional[DirectoryGrant] = None) -> None:
        """Turn automatic backups on, asking for a destination if none is granted.

        Raises:
            PermissionDenied: The destination grant was refused; automatic
                backups stay off.
        """
        if self.settings.destination is None:
            granted = await grant.request() if grant is not None else None
            if granted is None:
                self.settings.config.auto_backup_enabled = False
                self.settings.save_config()
                raise PermissionDenied("destination grant refused")
            self.settings.grant_destination(granted)
        self.settings.config.auto_backup_enabled = True
        self.settings.save_config()
        logger.info("Auto backup enabled -> %s", self.settings.destination)

    def disable(self) -> None:
        self.settings.config.auto_backup_enabled = False
        self.settings.save_config()
        logger.info("Auto backup disabled")
