"""
Backup configuration and persisted backup state.

Configuration is operator-editable YAML; state is machine-written
JSON. A missing or unreadable file falls back to defaults with a
warning rather than blocking backups.

Storage layout:
    <home>/
    ├── config/backup.yaml     # BackupConfig
    ├── backup/state.json      # BackupState
    ├── backup/store/          # ObjectStore root
    └── book.json              # LedgerBook records
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import BULLIONDESK_HOME
from .crypto import DEFAULT_ITERATIONS

logger = logging.getLogger("bulliondesk.settings")


class BackupConfig(BaseModel):
    """Operator settings for exports and automatic backups."""

    auto_backup_enabled: bool = False
    destination: Optional[str] = Field(
        default=None, description="Granted export directory"
    )
    first_export_done: bool = False
    pbkdf2_iterations: int = DEFAULT_ITERATIONS
    auto_interval_hours: float = 24.0
    object_store_enabled: bool = True


class BackupState(BaseModel):
    """Outcome history the scheduler and status commands read."""

    last_backup_time: Optional[datetime] = None
    last_attempt_time: Optional[datetime] = None
    last_error: Optional[str] = None
    exports_completed: int = 0
    imports_completed: int = 0


class Settings:
    """Loads and saves :class:`BackupConfig` and :class:`BackupState`.

    Args:
        home: Application home directory. Defaults to ``BULLIONDESK_HOME``.
    """

    def __init__(self, home: Optional[Path] = None) -> None:
        self.home = (home or Path(BULLIONDESK_HOME)).expanduser()
        self.config_file = self.home / "config" / "backup.yaml"
        self.state_file = self.home / "backup" / "state.json"
        self.config = self._load_config()
        self.state = self._load_state()

    @property
    def book_path(self) -> Path:
        return self.home / "book.json"

    @property
    def store_root(self) -> Path:
        return self.home / "backup" / "store"

    @property
    def destination(self) -> Optional[Path]:
        if not self.config.destination:
            return None
        return Path(self.config.destination).expanduser()

    def _load_config(self) -> BackupConfig:
        if self.config_file.exists():
            try:
                data = yaml.safe_load(self.config_file.read_text()) or {}
                return BackupConfig(**data)
            except (yaml.YAMLError, ValueError) as exc:
                logger.warning("Failed to load backup config: %s", exc)
        return BackupConfig()

    def _load_state(self) -> BackupState:
        if self.state_file.exists():
            try:
                data = json.loads(self.state_file.read_text())
                return BackupState(**data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load backup state: %s", exc)
        return BackupState()

    def save_config(self) -> None:
        """Persist the backup configuration."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        data = self.config.model_dump(mode="json")
        self.config_file.write_text(yaml.dump(data, default_flow_style=False))

    def save_state(self) -> None:
        """Persist the backup state."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state_file.write_text(self.state.model_dump_json(indent=2))

    def grant_destination(self, path: Path) -> None:
        """Cache a granted export directory."""
        self.config.destination = str(path)
        self.config.first_export_done = True
        self.save_config()

    def record_attempt(self, success: bool, error: Optional[str] = None, auto: bool = False) -> None:
        """Record an export outcome.

        Only a successful automatic export moves ``last_backup_time``;
        a failed one leaves it alone so the scheduler retries.
        """
        now = datetime.now(timezone.utc)
        self.state.last_attempt_time = now
        if success:
            self.state.exports_completed += 1
            self.state.last_error = None
            if auto:
                self.state.last_backup_time = now
        else:
            self.state.last_error = error
        self.save_state()

    def record_import(self) -> None:
        self.state.imports_completed += 1
        self.save_state()
