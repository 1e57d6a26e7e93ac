"""
Export archive codec.

An archive is a gzip-compressed tar holding a single member,
``backup.json``, the serialized :class:`~bulliondesk.models.BackupBundle`.
Encryption happens outside this module, over the archive bytes.
"""

from __future__ import annotations

import json
import tarfile
import time
from io import BytesIO

from pydantic import ValidationError

from ..errors import MalformedArchive
from ..models import BackupBundle

BUNDLE_MEMBER = "backup.json"


def pack(bundle: BackupBundle) -> bytes:
    """Serialize a bundle into tar.gz bytes.

    Args:
        bundle: The bundle to archive.

    Returns:
        bytes: The compressed archive.
    """
    payload = json.dumps(bundle.to_wire(), indent=2, ensure_ascii=False).encode("utf-8")
    buffer = BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        info = tarfile.TarInfo(name=BUNDLE_MEMBER)
        info.size = len(payload)
        info.mtime = int(time.time())
        tar.addfile(info, BytesIO(payload))
    return buffer.getvalue()


def unpack(data: bytes) -> BackupBundle:
    """Read a bundle back out of archive bytes.

    Raises:
        MalformedArchive: Not a tar.gz, no ``backup.json`` member, or
            the member is not a valid bundle.
    """
    try:
        with tarfile.open(fileobj=BytesIO(data), mode="r:gz") as tar:
            try:
                member = tar.getmember(BUNDLE_MEMBER)
            except KeyError as exc:
                raise MalformedArchive(f"archive has no {BUNDLE_MEMBER}") from exc
            f = tar.extractfile(member)
            if f is None:
                raise MalformedArchive(f"{BUNDLE_MEMBER} is not a regular file")
            payload = f.read()
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise MalformedArchive("not a tar.gz archive") from exc

    try:
        return BackupBundle.model_validate_json(payload)
    except ValidationError as exc:
        raise MalformedArchive(f"invalid bundle: {exc.error_count()} error(s)") from exc
