"""
Import of an encrypted export file.

The run walks a fixed sequence of states. Reading, decryption and
parsing all complete before the first record is written, so a bad
file never damages the local book.

    IDLE -> READING -> DECRYPTING -> PARSING -> MERGING -> DONE

Any step can end in FAILED; the result records which one.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import aiofiles
from pydantic import BaseModel

from ..crypto import decrypt_with_passphrase_async
from ..errors import BackupError, ErrorKind, classify
from ..secrets import get_device_id, get_export_key
from ..services import BookServices, KeyValueStore
from ..settings import Settings
from .action_log import log_action
from .archive import unpack
from .merge import ConflictResolver, Merger, MergeReport

logger = logging.getLogger("bulliondesk.backup.importer")


class ImportState(str, Enum):
    """Progress of one import run."""

    IDLE = "idle"
    READING = "reading"
    DECRYPTING = "decrypting"
    PARSING = "parsing"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


class ImportResult(BaseModel):
    """Outcome of an import run, returned instead of raising.

    Attributes:
        failed_in: The state the run was in when it failed.
        report: Merge details; present once merging has finished.
    """

    success: bool
    state: ImportState
    failed_in: Optional[ImportState] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    source_device: Optional[str] = None
    record_count: int = 0
    report: Optional[MergeReport] = None


class BackupImporter:
    """Reads, decrypts, parses and merges an export file.

    Args:
        services: Record services the merge writes through.
        secrets: Secure store holding the export key and device id.
        settings: Backup configuration and state.
        resolver: Decides base inventory conflicts.
    """

    def __init__(
        self,
        services: BookServices,
        secrets: KeyValueStore,
        settings: Settings,
        resolver: Optional[ConflictResolver] = None,
    ) -> None:
        self.services = services
        self.secrets = secrets
        self.settings = settings
        self.resolver = resolver
        self.state = ImportState.IDLE

    def _enter(self, state: ImportState) -> None:
        logger.debug("Import state %s -> %s", self.state.value, state.value)
        self.state = state

    async def import_file(self, path: Path) -> ImportResult:
        """Import one export file into the local book.

        Args:
            path: The ``.encrypted`` export to import.

        Returns:
            ImportResult: Never raises.
        """
        self.state = ImportState.IDLE
        path = Path(path).expanduser()
        bundle = None
        try:
            passphrase = get_export_key(self.secrets)
            local_device = get_device_id(self.secrets)

            self._enter(ImportState.READING)
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()

            self._enter(ImportState.DECRYPTING)
            archive = await decrypt_with_passphrase_async(data, passphrase)

            self._enter(ImportState.PARSING)
            bundle = unpack(archive)

            self._enter(ImportState.MERGING)
            merger = Merger(self.services, local_device, self.resolver)
            report = await merger.merge(bundle)
        except Exception as exc:
            failed_in = self.state
            self._enter(ImportState.FAILED)
            error = classify(exc)
            if isinstance(exc, BackupError):
                logger.error("Import failed while %s (%s): %s", failed_in.value, error.kind.value, exc)
            else:
                logger.exception("Import failed while %s", failed_in.value)
            log_action(
                self.settings.destination,
                "IMPORT",
                False,
                f"{path.name}: {error.user_message}",
                error.kind.value,
            )
            return ImportResult(
                success=False,
                state=ImportState.FAILED,
                failed_in=failed_in,
                error_kind=error.kind,
                message=error.user_message,
                source_device=bundle.device_id if bundle else None,
            )

        self._enter(ImportState.DONE)
        self.settings.record_import()
        log_action(
            self.settings.destination,
            "IMPORT",
            True,
            f"{path.name}: {bundle.record_count} records from {bundle.device_id}",
            metadata={"renamed": len(report.renamed), "conflicts": len(report.conflicts)},
        )
        message = f"Imported {bundle.record_count} records"
        if report.conflicts:
            message += f" ({len(report.conflicts)} conflict(s) left unresolved)"
        return ImportResult(
            success=True,
            state=ImportState.DONE,
            message=message,
            source_device=bundle.device_id,
            record_count=bundle.record_count,
            report=report,
        )
