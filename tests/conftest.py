"""Shared test fixtures for bulliondesk."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest

from bulliondesk.backup.exporter import BackupExporter
from bulliondesk.backup.importer import BackupImporter
from bulliondesk.backup.object_store import ObjectStore
from bulliondesk.book import LedgerBook
from bulliondesk.crypto import generate_key
from bulliondesk.grants import StaticDirectoryGrant
from bulliondesk.secrets import DEVICE_ID_KEY, FileKeyValueStore, set_export_key
from bulliondesk.services import BookServices
from bulliondesk.settings import Settings

PASSPHRASE = "correct horse battery"
TEST_ITERATIONS = 1000


@dataclass
class Device:
    """One simulated installation with its own home, book and exports."""

    name: str
    home: Path
    destination: Path
    settings: Settings
    secrets: FileKeyValueStore
    book: LedgerBook
    services: BookServices
    store: ObjectStore

    @property
    def device_id(self) -> str:
        return self.book.device_id

    def exporter(self, grant=None, with_store: bool = False) -> BackupExporter:
        return BackupExporter(
            self.services,
            self.secrets,
            self.settings,
            grant if grant is not None else StaticDirectoryGrant(self.destination),
            self.store if with_store else None,
        )

    def importer(self, resolver=None) -> BackupImporter:
        return BackupImporter(self.services, self.secrets, self.settings, resolver)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary application home directory."""
    home = tmp_path / ".bulliondesk"
    home.mkdir()
    return home


@pytest.fixture
def make_device(tmp_path: Path):
    """Factory for independent installations sharing one tmp directory."""

    def factory(name: str, passphrase: Optional[str] = PASSPHRASE) -> Device:
        home = tmp_path / name
        secrets = FileKeyValueStore(home)
        device_id = f"{name}_test_1700000000000"
        secrets.set(DEVICE_ID_KEY, device_id)
        if passphrase:
            set_export_key(secrets, passphrase)
        settings = Settings(home)
        settings.config.pbkdf2_iterations = TEST_ITERATIONS
        book = LedgerBook(device_id)
        return Device(
            name=name,
            home=home,
            destination=tmp_path / f"{name}-exports",
            settings=settings,
            secrets=secrets,
            book=book,
            services=BookServices.from_book(book),
            store=ObjectStore(home / "backup" / "store", generate_key()),
        )

    return factory


@pytest.fixture
def store(tmp_path: Path) -> ObjectStore:
    """An empty object store with a fresh key."""
    return ObjectStore(tmp_path / "store", generate_key())
