"""
Content-addressed, encrypted object store.

Every record is canonicalized, hashed, and written once under its
hash. A manifest lists the hashes written by the last completed save,
a single mutable snapshot maps record keys to hashes, and garbage
collection removes blobs nothing references any more.

Storage layout:
    <root>/
    ├── objects/
    │   └── <sha256>.enc          # Fernet-encrypted canonical JSON
    ├── manifest.json             # hash -> "collection/key" of the last save
    └── internal_snapshot.enc     # encrypted {collection: {key: hash}}

Writes land in a ``.tmp`` sibling and are renamed into place, so an
interrupted write leaves at most one stray temp file and never a
truncated blob under a real hash.

The store holds no locks. Saving, loading and garbage collection must
be serialized by the caller; a collection racing a save can delete
objects the save is about to reference.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import aiofiles
from pydantic import BaseModel

from ..crypto import decrypt_async, encrypt_async
from ..errors import IntegrityError, ObjectNotFound
from .canonical import stringify
from .hashing import digest, is_digest

logger = logging.getLogger("bulliondesk.backup.object_store")

OBJECT_SUFFIX = ".enc"
SNAPSHOT_VERSION = 1


class StoreCommit(BaseModel):
    """Summary of one :meth:`ObjectStore.save_state` run."""

    object_count: int = 0
    written: int = 0
    deduplicated: int = 0
    committed_at: datetime


class ObjectStore:
    """Hash-addressed blob storage with a manifest and one snapshot slot.

    Args:
        root: Directory that holds the store.
        key: Device-local key material for at-rest encryption.
    """

    def __init__(self, root: Path, key: bytes) -> None:
        self.root = root.expanduser()
        self.objects_dir = self.root / "objects"
        self.manifest_file = self.root / "manifest.json"
        self.snapshot_file = self.root / "internal_snapshot.enc"
        self._key = key

    def _ensure_dirs(self) -> None:
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    def object_path(self, hash_: str) -> Path:
        return self.objects_dir / f"{hash_}{OBJECT_SUFFIX}"

    async def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    async def get_manifest(self) -> dict[str, str]:
        """Load the manifest (hash -> label). Missing manifest is empty."""
        self._ensure_dirs()
        if not self.manifest_file.exists():
            return {}
        async with aiofiles.open(self.manifest_file, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise IntegrityError("manifest is not valid JSON") from exc
        if not isinstance(data, dict):
            raise IntegrityError("manifest is not a mapping")
        return {str(k): str(v) for k, v in data.items()}

    async def commit_manifest(self, manifest: Mapping[str, str]) -> None:
        """Replace the manifest with ``manifest``."""
        self._ensure_dirs()
        payload = json.dumps(dict(manifest), indent=2, sort_keys=True).encode("utf-8")
        await self._write_atomic(self.manifest_file, payload)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def _persist(self, canonical: bytes, hash_: str) -> bool:
        """Write a blob unless one already exists. Returns True if written."""
        self._ensure_dirs()
        path = self.object_path(hash_)
        if path.exists():
            return False
        encrypted = await encrypt_async(canonical, self._key)
        await self._write_atomic(path, encrypted)
        return True

    async def save_object(self, value: Any) -> str:
        """Store a value under the hash of its canonical form.

        Identical content is written once; later saves are no-ops that
        still return the hash.

        Args:
            value: JSON-compatible value or pydantic model.

        Returns:
            str: The content hash.
        """
        canonical = stringify(value)
        hash_ = digest(canonical)
        await self._persist(canonical, hash_)
        return hash_

    async def has_object(self, hash_: str) -> bool:
        return self.object_path(hash_).exists()

    async def get_object(self, hash_: str) -> Any:
        """Load and decrypt the value stored under ``hash_``.

        Raises:
            ObjectNotFound: No blob for this hash.
            IntegrityError: The blob fails decryption or parsing.
        """
        path = self.object_path(hash_)
        if not path.exists():
            logger.error("Object not found: %s", hash_)
            raise ObjectNotFound(hash_)
        async with aiofiles.open(path, "rb") as f:
            encrypted = await f.read()
        canonical = await decrypt_async(encrypted, self._key)
        try:
            return json.loads(canonical)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise IntegrityError(f"object {hash_} is not valid JSON") from exc

    def list_hashes(self) -> set[str]:
        """Hashes of every blob currently on disk."""
        if not self.objects_dir.exists():
            return set()
        hashes = set()
        for entry in self.objects_dir.iterdir():
            if entry.name.endswith(OBJECT_SUFFIX):
                stem = entry.name[: -len(OBJECT_SUFFIX)]
                if is_digest(stem):
                    hashes.add(stem)
        return hashes

    # ------------------------------------------------------------------
    # Snapshot slot
    # ------------------------------------------------------------------

    async def save_snapshot(self, value: Any) -> None:
        """Overwrite the single mutable snapshot."""
        self._ensure_dirs()
        encrypted = await encrypt_async(stringify(value), self._key)
        await self._write_atomic(self.snapshot_file, encrypted)

    async def get_snapshot(self) -> Optional[Any]:
        """Read the snapshot, or None when none has been saved.

        Raises:
            IntegrityError: The snapshot exists but cannot be decrypted
                or parsed.
        """
        if not self.snapshot_file.exists():
            return None
        async with aiofiles.open(self.snapshot_file, "rb") as f:
            encrypted = await f.read()
        canonical = await decrypt_async(encrypted, self._key)
        try:
            return json.loads(canonical)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise IntegrityError("snapshot is not valid JSON") from exc

    # ------------------------------------------------------------------
    # Full-state save / load
    # ------------------------------------------------------------------

    async def save_state(self, collections: Mapping[str, Mapping[str, Any]]) -> StoreCommit:
        """Save every record as an object and commit a new snapshot.

        Order matters for crash safety: blobs first, then the snapshot
        that references them, then the manifest. An interruption at
        any point leaves every referenced blob on disk.

        Args:
            collections: collection name -> record key -> record.

        Returns:
            StoreCommit: Counts of objects written and deduplicated.
        """
        index: dict[str, dict[str, str]] = {}
        manifest: dict[str, str] = {}
        written = 0
        total = 0

        for name, records in collections.items():
            refs: dict[str, str] = {}
            for key, record in records.items():
                canonical = stringify(record)
                hash_ = digest(canonical)
                if await self._persist(canonical, hash_):
                    written += 1
                refs[key] = hash_
                manifest[hash_] = f"{name}/{key}"
                total += 1
            index[name] = refs

        committed_at = datetime.now(timezone.utc)
        await self.save_snapshot({
            "version": SNAPSHOT_VERSION,
            "savedAt": committed_at.isoformat(),
            "collections": index,
        })
        await self.commit_manifest(manifest)

        logger.info(
            "Object store commit: %d objects (%d new, %d deduplicated)",
            total, written, total - written,
        )
        return StoreCommit(
            object_count=total,
            written=written,
            deduplicated=total - written,
            committed_at=committed_at,
        )

    async def load_state(self) -> dict[str, dict[str, Any]]:
        """Rebuild the collections referenced by the current snapshot.

        Returns:
            collection name -> record key -> record; empty if no
            snapshot has been saved.
        """
        snapshot = await self.get_snapshot()
        if not snapshot:
            return {}
        state: dict[str, dict[str, Any]] = {}
        for name, refs in snapshot.get("collections", {}).items():
            state[name] = {key: await self.get_object(hash_) for key, hash_ in refs.items()}
        return state

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    async def active_hashes(self) -> set[str]:
        """Every hash that must survive garbage collection.

        The union of the manifest and everything the snapshot refers to.
        A save interrupted between writing the snapshot and committing
        the manifest leaves the two out of step; the union covers both.

        Raises:
            IntegrityError: The manifest or snapshot cannot be read; the
                active set would be incomplete.
        """
        active = set(await self.get_manifest())
        snapshot = await self.get_snapshot()
        if snapshot:
            for refs in snapshot.get("collections", {}).values():
                active.update(refs.values())
        return active

    async def cleanup_orphaned_objects(self, active_hashes: Iterable[str]) -> int:
        """Delete every blob whose hash is not in ``active_hashes``.

        ``active_hashes`` must be complete and current or live data is
        lost; use :meth:`collect_garbage` unless you own that set.

        Soft-fail: any error is logged and reported as zero deleted so
        maintenance never aborts an export or import.

        Returns:
            int: Number of blobs deleted.
        """
        try:
            active = set(active_hashes)
            logger.info("Starting garbage collection: %d active objects", len(active))
            self._ensure_dirs()
            deleted = 0
            for entry in list(self.objects_dir.iterdir()):
                if entry.name.endswith(".tmp"):
                    entry.unlink(missing_ok=True)
                    continue
                if not entry.name.endswith(OBJECT_SUFFIX):
                    continue
                hash_ = entry.name[: -len(OBJECT_SUFFIX)]
                if hash_ not in active:
                    entry.unlink(missing_ok=True)
                    deleted += 1
            logger.info("Garbage collection completed: %d orphaned objects deleted", deleted)
            return deleted
        except Exception as exc:
            logger.error("Garbage collection error: %s", exc)
            return 0

    async def collect_garbage(self) -> int:
        """Derive the active set and clean up around it.

        If the manifest or snapshot cannot be read, nothing is deleted.
        """
        try:
            active = await self.active_hashes()
        except Exception as exc:
            logger.warning("Skipping garbage collection, active set unavailable: %s", exc)
            return 0
        return await self.cleanup_orphaned_objects(active)

    async def clear(self) -> None:
        """Remove the whole store and recreate an empty one."""
        if self.root.exists():
            shutil.rmtree(self.root)
        self._ensure_dirs()
