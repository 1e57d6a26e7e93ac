"""Directory grants for the export destination."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger("bulliondesk.grants")


class StaticDirectoryGrant:
    """Grant a fixed directory if it exists (or can be created) and is writable.

    Returns None from :meth:`request` when the directory is unusable,
    which the exporter treats as the operator refusing the grant.
    """

    def __init__(self, path: Path) -> None:
        self.path = path.expanduser()

    async def request(self) -> Optional[Path]:
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Cannot create export directory %s: %s", self.path, exc)
            return None
        if not os.access(self.path, os.W_OK):
            logger.warning("Export directory is not writable: %s", self.path)
            return None
        return self.path


class DeniedGrant:
    """A grant that always refuses."""

    async def request(self) -> Optional[Path]:
        return None
