"""Tests for automatic backup scheduling."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from bulliondesk.backup.scheduler import AutoBackupScheduler, ScheduleOutcome
from bulliondesk.errors import ErrorKind, PermissionDenied
from bulliondesk.grants import DeniedGrant, StaticDirectoryGrant
from bulliondesk.models import BackupResult


class FailingExporter:
    """Stands in for an exporter whose every run fails."""

    def __init__(self) -> None:
        self.calls = 0

    async def export(self, kind="manual", since=None) -> BackupResult:
        self.calls += 1
        return BackupResult(success=False, error_kind=ErrorKind.IO_FAILURE, message="disk full")


def _enabled(device) -> AutoBackupScheduler:
    device.settings.grant_destination(device.destination)
    device.destination.mkdir(parents=True, exist_ok=True)
    device.settings.config.auto_backup_enabled = True
    return AutoBackupScheduler(device.exporter(), device.secrets, device.settings)


class TestGates:
    """Closed gates are outcomes, not errors."""

    @pytest.mark.asyncio
    async def test_no_key(self, make_device) -> None:
        device = make_device("alpha", passphrase=None)
        assert await _enabled(device).tick() is ScheduleOutcome.NO_KEY

    @pytest.mark.asyncio
    async def test_disabled(self, make_device) -> None:
        device = make_device("alpha")
        scheduler = _enabled(device)
        device.settings.config.auto_backup_enabled = False
        assert await scheduler.tick() is ScheduleOutcome.DISABLED

    @pytest.mark.asyncio
    async def test_no_destination(self, make_device) -> None:
        device = make_device("alpha")
        device.settings.config.auto_backup_enabled = True
        scheduler = AutoBackupScheduler(device.exporter(), device.secrets, device.settings)
        assert await scheduler.tick() is ScheduleOutcome.NO_DESTINATION
        assert not device.destination.exists()


class TestWindow:
    """At most one backup per rolling window, measured from the last success."""

    @pytest.mark.asyncio
    async def test_runs_once_per_window(self, make_device) -> None:
        device = make_device("alpha")
        scheduler = _enabled(device)

        first = await scheduler.tick()
        assert first is ScheduleOutcome.SUCCEEDED and first.ran
        assert (device.destination / "autobackup.encrypted").exists()
        skipped = await scheduler.tick()
        assert skipped is ScheduleOutcome.NOT_DUE and not skipped.ran

        later = datetime.now(timezone.utc) + timedelta(hours=23)
        assert await scheduler.tick(later) is ScheduleOutcome.NOT_DUE
        later = datetime.now(timezone.utc) + timedelta(hours=25)
        assert await scheduler.tick(later) is ScheduleOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_failure_retries_next_tick(self, make_device) -> None:
        device = make_device("alpha")
        _enabled(device)
        exporter = FailingExporter()
        scheduler = AutoBackupScheduler(exporter, device.secrets, device.settings)

        assert await scheduler.tick() is ScheduleOutcome.FAILED
        assert await scheduler.tick() is ScheduleOutcome.FAILED
        assert exporter.calls == 2
        assert device.settings.state.last_backup_time is None

    @pytest.mark.asyncio
    async def test_naive_now_is_read_as_utc(self, make_device) -> None:
        device = make_device("alpha")
        scheduler = _enabled(device)
        await scheduler.tick()
        now = datetime.now(timezone.utc).replace(tzinfo=None)

        assert not scheduler.is_due(now + timedelta(hours=23))
        assert scheduler.is_due(now + timedelta(hours=25))
        assert await scheduler.tick(now + timedelta(hours=1)) is ScheduleOutcome.NOT_DUE

    @pytest.mark.asyncio
    async def test_custom_interval(self, make_device) -> None:
        device = make_device("alpha")
        device.settings.config.auto_interval_hours = 1
        scheduler = _enabled(device)
        await scheduler.tick()
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert scheduler.is_due(later)
        assert scheduler.next_due() is not None


class TestEnable:
    """Tests for enable/disable."""

    @pytest.mark.asyncio
    async def test_enable_grants_destination(self, make_device) -> None:
        device = make_device("alpha")
        scheduler = AutoBackupScheduler(device.exporter(), device.secrets, device.settings)

        await scheduler.enable(StaticDirectoryGrant(device.destination))

        assert device.settings.config.auto_backup_enabled
        assert device.settings.destination == device.destination
        assert scheduler.gate() is None

    @pytest.mark.asyncio
    async def test_denied_grant_keeps_auto_off(self, make_device) -> None:
        device = make_device("alpha")
        scheduler = AutoBackupScheduler(device.exporter(), device.secrets, device.settings)

        with pytest.raises(PermissionDenied):
            await scheduler.enable(DeniedGrant())
        assert not device.settings.config.auto_backup_enabled

    def test_disable(self, make_device) -> None:
        device = make_device("alpha")
        scheduler = _enabled(device)
        scheduler.disable()
        assert not device.settings.config.auto_backup_enabled
        assert scheduler.gate() is ScheduleOutcome.DISABLED


class TestRunLoop:
    """Tests for the polling loop."""

    @pytest.mark.asyncio
    async def test_stops_on_event(self, make_device) -> None:
        device = make_device("alpha")
        _enabled(device)
        exporter = FailingExporter()
        scheduler = AutoBackupScheduler(exporter, device.secrets, device.settings)
        stop = asyncio.Event()

        task = asyncio.create_task(scheduler.run(stop, poll_interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert exporter.calls >= 1
