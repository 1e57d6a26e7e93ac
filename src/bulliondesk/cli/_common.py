"""Shared utilities for all CLI command modules.

Provides the Rich console instance and the wiring that turns a home
directory into the book, settings and secure store the commands use.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from .. import BULLIONDESK_HOME
from ..backup.object_store import ObjectStore
from ..book import LedgerBook
from ..errors import ErrorKind
from ..secrets import FileKeyValueStore, get_device_id, get_object_store_key
from ..services import BookServices
from ..settings import Settings

console = Console()


@dataclass
class AppContext:
    """Everything a backup command needs, built from one home directory."""

    settings: Settings
    secrets: FileKeyValueStore
    book: LedgerBook
    services: BookServices
    object_store: ObjectStore


async def load_context(home: str | Path = BULLIONDESK_HOME) -> AppContext:
    """Open the book and stores under ``home``.

    Args:
        home: Application home directory.

    Returns:
        AppContext: Ready-to-use collaborators.
    """
    home_path = Path(home).expanduser()
    settings = Settings(home_path)
    secrets = FileKeyValueStore(home_path)
    book = await LedgerBook.open(get_device_id(secrets), settings.book_path)
    return AppContext(
        settings=settings,
        secrets=secrets,
        book=book,
        services=BookServices.from_book(book),
        object_store=ObjectStore(settings.store_root, get_object_store_key(secrets)),
    )


def error_style(kind: ErrorKind | None) -> str:
    """Map an error kind to a Rich style for the failure message.

    Args:
        kind: Taxonomy kind of the failure.

    Returns:
        str: Rich style name.
    """
    return {
        ErrorKind.KEY_MISSING: "yellow",
        ErrorKind.PERMISSION_DENIED: "yellow",
        ErrorKind.MERGE_CONFLICT: "yellow",
    }.get(kind, "red")
