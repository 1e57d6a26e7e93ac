"""
Device-local secure key-value store.

Holds the operator's export key, the device identity and the object
store key. Values are kept in one JSON file readable only by the owner.

Storage layout:
    <home>/security/secrets.json     # mode 0600
"""

from __future__ import annotations

import base64
import json
import logging
import os
import platform
import time
from pathlib import Path
from typing import Optional

from .crypto import generate_key, validate_passphrase
from .errors import KeyMissing

logger = logging.getLogger("bulliondesk.secrets")

BACKUP_KEY = "backup_encryption_key"
DEVICE_ID_KEY = "device_id"
OBJECT_STORE_KEY = "object_store_key"


class FileKeyValueStore:
    """JSON-file backed :class:`~bulliondesk.services.KeyValueStore`.

    Args:
        home: Application home directory.
    """

    def __init__(self, home: Path) -> None:
        self.path = home.expanduser() / "security" / "secrets.json"

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as exc:
            logger.warning("Failed to read secure store: %s", exc)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)


# ---------------------------------------------------------------------------
# Helpers over any KeyValueStore
# ---------------------------------------------------------------------------


def get_device_id(store) -> str:
    """Return this installation's id, generating it on first use.

    The id is ``<node>_<system>_<epoch ms>`` and never changes afterwards.
    """
    device_id = store.get(DEVICE_ID_KEY)
    if not device_id:
        node = (platform.node() or "device").replace("_", "-")
        system = (platform.system() or "unknown").lower()
        device_id = f"{node}_{system}_{int(time.time() * 1000)}"
        store.set(DEVICE_ID_KEY, device_id)
        logger.info("Generated device id %s", device_id)
    return device_id


def get_export_key(store) -> str:
    """The operator's export passphrase.

    Raises:
        KeyMissing: No export key has been set.
    """
    key = store.get(BACKUP_KEY)
    if not key:
        raise KeyMissing()
    return key


def set_export_key(store, passphrase: str) -> None:
    """Validate and store the operator's export passphrase.

    Raises:
        ValueError: The passphrase is too short.
    """
    valid, message = validate_passphrase(passphrase)
    if not valid:
        raise ValueError(message)
    store.set(BACKUP_KEY, passphrase)
    logger.info("Export key updated")


def get_object_store_key(store) -> bytes:
    """Device-local at-rest key for the object store, created on first use."""
    encoded = store.get(OBJECT_STORE_KEY)
    if encoded:
        return base64.b64decode(encoded)
    key = generate_key()
    store.set(OBJECT_STORE_KEY, base64.b64encode(key).decode("ascii"))
    return key
