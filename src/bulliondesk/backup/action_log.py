"""
Append-only backup action log.

One JSON line per export, import or maintenance action, written into
the export destination so the history travels with the backup files.
Writing is best-effort: a log that cannot be written never fails the
action it describes.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("bulliondesk.backup.action_log")

ACTION_LOG_NAME = "backup-log.jsonl"


class ActionLogEntry(BaseModel):
    """A single backup action log line."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    action: str
    success: bool
    detail: str = ""
    host: str = Field(default_factory=socket.gethostname)
    error_kind: Optional[str] = None
    metadata: Optional[dict] = None


def log_action(
    destination: Optional[Path],
    action: str,
    success: bool,
    detail: str = "",
    error_kind: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[ActionLogEntry]:
    """Append an entry to ``<destination>/backup-log.jsonl``.

    Args:
        destination: Export directory; nothing is written when None.
        action: EXPORT, AUTO_EXPORT, IMPORT, GC, ...
        success: Outcome of the action.
        detail: Human-readable description.
        error_kind: Taxonomy kind on failure.
        metadata: Extra structured data.

    Returns:
        The entry written, or None when it could not be written.
    """
    if destination is None:
        return None
    entry = ActionLogEntry(
        action=action,
        success=success,
        detail=detail,
        error_kind=error_kind,
        metadata=metadata,
    )
    try:
        with (destination / ACTION_LOG_NAME).open("a") as f:
            f.write(entry.model_dump_json() + "\n")
    except OSError as exc:
        logger.warning("Could not write backup action log: %s", exc)
        return None
    return entry


def read_action_log(destination: Path, limit: int = 0) -> list[ActionLogEntry]:
    """Read the action log, newest first.

    Unparseable lines are skipped.

    Args:
        destination: Export directory.
        limit: Maximum entries to return (0 = all).
    """
    log_file = destination / ACTION_LOG_NAME
    if not log_file.exists():
        return []
    entries = []
    for line in log_file.read_text().splitlines():
        if not line.strip():
            continue
        try:
            entries.append(ActionLogEntry.model_validate_json(line))
        except ValidationError:
            logger.debug("Skipping unreadable action log line")
    entries.reverse()
    return entries[:limit] if limit else entries
