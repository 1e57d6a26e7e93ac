"""
Encrypted export of the bookkeeping records.

An export collects every record collection, packs them into one
archive, encrypts it with the operator's export key and writes it to
the granted destination directory, replacing the previous export of
the same kind.

Destination layout:
    <destination>/
    ├── export_all_<YYYY-MM-DD>.encrypted   # full manual export
    ├── export_<YYYY-MM-DD>.encrypted       # manual export since a date
    ├── autobackup.encrypted                # rolling automatic backup
    └── backup-log.jsonl                    # action log
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional

import aiofiles

from ..crypto import encrypt_with_passphrase_async
from ..errors import BackupError, PermissionDenied, classify
from ..models import (
    BackupBundle,
    BackupRecords,
    BackupResult,
    InventoryPatch,
    parse_timestamp,
)
from ..secrets import get_device_id, get_export_key
from ..services import BookServices, DirectoryGrant, KeyValueStore
from ..settings import Settings
from .action_log import log_action
from .archive import pack
from .object_store import ObjectStore

logger = logging.getLogger("bulliondesk.backup.exporter")

EXPORT_SUFFIX = ".encrypted"
MANUAL_PREFIX = "export_"
AUTO_FILE_NAME = f"autobackup{EXPORT_SUFFIX}"

ExportKind = Literal["manual", "auto"]


def export_file_name(kind: ExportKind, since: Optional[date], today: date) -> str:
    """Name of the file an export of this kind writes."""
    if kind == "auto":
        return AUTO_FILE_NAME
    if since is not None:
        return f"{MANUAL_PREFIX}{today.isoformat()}{EXPORT_SUFFIX}"
    return f"{MANUAL_PREFIX}all_{today.isoformat()}{EXPORT_SUFFIX}"


def _on_or_after(value: str, since: date) -> bool:
    return parse_timestamp(value).date() >= since


class BackupExporter:
    """Writes encrypted export archives.

    Args:
        services: Record services to read from.
        secrets: Secure store holding the export key and device id.
        settings: Backup configuration and state.
        grant: Asked for a destination on the first export.
        object_store: When given, the full state is also saved into
            the content-addressed store after each export.
    """

    def __init__(
        self,
        services: BookServices,
        secrets: KeyValueStore,
        settings: Settings,
        grant: Optional[DirectoryGrant] = None,
        object_store: Optional[ObjectStore] = None,
    ) -> None:
        self.services = services
        self.secrets = secrets
        self.settings = settings
        self.grant = grant
        self.object_store = object_store

    async def ensure_destination(self) -> Path:
        """Return the granted destination, asking for it the first time.

        Raises:
            PermissionDenied: No grant is cached and the request was
                refused or cannot be made.
        """
        cached = self.settings.destination
        if cached is not None and self.settings.config.first_export_done:
            return cached
        if self.grant is None:
            raise PermissionDenied("no destination granted")
        granted = await self.grant.request()
        if granted is None:
            raise PermissionDenied("destination grant refused")
        self.settings.grant_destination(granted)
        logger.info("Export destination granted: %s", granted)
        return granted

    async def collect(self, since: Optional[date] = None) -> tuple[BackupRecords, dict[str, dict[str, Any]]]:
        """Read every collection concurrently.

        Returns:
            The records to export (filtered when ``since`` is given) and
            the full, unfiltered state keyed for the object store.
        """
        customers, transactions, ledger, inventory, stock = await asyncio.gather(
            self.services.customers.get_all_customers(),
            self.services.transactions.get_all_transactions(),
            self.services.ledger.get_all_ledger_entries(),
            self.services.inventory.get_base_inventory(),
            self.services.stock.get_all_stock(),
        )

        full_state = {
            "customers": {c.id: c for c in customers},
            "transactions": {f"{t.device_id or ''}:{t.id}": t for t in transactions},
            "ledger": {e.id: e for e in ledger},
            "baseInventory": {"base": inventory},
            "stock": {s.stock_id: s for s in stock},
        }

        if since is not None:
            # A partial-period export must never carry the base inventory.
            records = BackupRecords(
                customers=customers,
                transactions=[t for t in transactions if _on_or_after(t.date, since)],
                ledger=[e for e in ledger if _on_or_after(e.date, since)],
                stock=stock,
            )
        else:
            records = BackupRecords(
                customers=customers,
                transactions=transactions,
                ledger=ledger,
                base_inventory=InventoryPatch(**inventory.model_dump()),
                stock=stock,
            )
        return records, full_state

    async def _replace(self, destination: Path, kind: ExportKind, file_name: str, data: bytes) -> Path:
        """Delete the previous export of this kind, then write the new one."""
        if kind == "auto":
            stale = [destination / AUTO_FILE_NAME]
        else:
            stale = [p for p in destination.iterdir() if p.is_file() and p.name.startswith(MANUAL_PREFIX)]
        for path in stale:
            path.unlink(missing_ok=True)

        target = destination / file_name
        partial = destination / f"{file_name}.partial"
        async with aiofiles.open(partial, "wb") as f:
            await f.write(data)
        os.replace(partial, target)
        return target

    async def _save_to_store(self, full_state: dict[str, dict[str, Any]]) -> None:
        # Soft-fail: the export file is already durable at this point.
        try:
            await self.object_store.save_state(full_state)
            await self.object_store.collect_garbage()
        except Exception as exc:
            logger.warning("Object store update failed after export: %s", exc)

    async def export(self, kind: ExportKind = "manual", since: Optional[date] = None) -> BackupResult:
        """Run one export.

        Args:
            kind: ``manual`` or ``auto``. Automatic exports always carry
                the full state and write the rolling autobackup file.
            since: Only export transactions and ledger entries dated on
                or after this day (manual exports only). Base inventory
                is left out of such an export.

        Returns:
            BackupResult: Never raises; failures come back with an
            error kind and a short operator-facing message.
        """
        if kind == "auto":
            since = None
        action = "AUTO_EXPORT" if kind == "auto" else "EXPORT"
        destination: Optional[Path] = None

        try:
            passphrase = get_export_key(self.secrets)
            destination = await self.ensure_destination()
            device_id = get_device_id(self.secrets)

            records, full_state = await self.collect(since)
            bundle = BackupBundle(
                export_type=kind,
                timestamp=int(time.time() * 1000),
                record_count=records.record_count(),
                device_id=device_id,
                records=records,
            )
            encrypted = await encrypt_with_passphrase_async(
                pack(bundle), passphrase, self.settings.config.pbkdf2_iterations
            )

            file_name = export_file_name(kind, since, datetime.now(timezone.utc).date())
            path = await self._replace(destination, kind, file_name, encrypted)

            if self.object_store is not None and self.settings.config.object_store_enabled:
                await self._save_to_store(full_state)
        except Exception as exc:
            error = classify(exc)
            if isinstance(exc, BackupError):
                logger.error("Export failed (%s): %s", error.kind.value, exc)
            else:
                logger.exception("Export failed")
            log_action(destination, action, False, error.user_message, error.kind.value)
            self.settings.record_attempt(False, error.kind.value, auto=kind == "auto")
            return BackupResult(success=False, error_kind=error.kind, message=error.user_message)

        logger.info("Export completed: %d records -> %s", bundle.record_count, path)
        log_action(
            destination,
            action,
            True,
            f"{bundle.record_count} records, file: {file_name}",
            metadata={"since": since.isoformat() if since else None},
        )
        self.settings.record_attempt(True, auto=kind == "auto")
        return BackupResult(
            success=True,
            path=str(path),
            file_name=file_name,
            record_count=bundle.record_count,
            message=f"Exported {bundle.record_count} records",
        )

    def list_exports(self) -> list[dict[str, Any]]:
        """List export files in the destination, newest first."""
        destination = self.settings.destination
        if destination is None or not destination.exists():
            return []
        exports = []
        for f in destination.glob(f"*{EXPORT_SUFFIX}"):
            stat = f.stat()
            exports.append({
                "filepath": str(f),
                "filename": f.name,
                "size": stat.st_size,
                "created": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            })
        exports.sort(key=lambda e: e["created"], reverse=True)
        return exports
