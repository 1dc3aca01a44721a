"""
Object Storage Staging
=======================
Copies an image held in object storage into a local staging directory
before the numeric stages read it.

Only the small ``ObjectStorage`` interface is required from a storage
backend; ``LocalObjectStorage`` implements it over a directory tree.
"""

import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Protocol

from ..errors import InvalidInputError, StagingIOError

logger = logging.getLogger("scan3d.modules.storage")

OBJECT_PREFIX = "/objects/"


@dataclass
class ObjectInfo:
    """Metadata reported by a storage backend."""

    key: str
    size: int
    content_type: Optional[str] = None


class ObjectStorage(Protocol):
    """Minimal read interface of an object store."""

    def stat(self, key: str) -> ObjectInfo:
        ...

    def open(self, key: str) -> BinaryIO:
        ...


class LocalObjectStorage:
    """
    Object storage backed by a local directory.

    Keys may carry the ``/objects/`` prefix used by the web layer.
    """

    CONTENT_TYPES = {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".dcm": "image/dicom",
    }

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        relative = key[len(OBJECT_PREFIX):] if key.startswith(OBJECT_PREFIX) else key.lstrip("/")
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise StagingIOError(f"Object key escapes storage root: {key}")
        return path

    def stat(self, key: str) -> ObjectInfo:
        path = self._path(key)
        if not path.is_file():
            raise StagingIOError(f"Object not found: {key}")
        return ObjectInfo(
            key=key,
            size=path.stat().st_size,
            content_type=self.CONTENT_TYPES.get(path.suffix.lower())
        )

    def open(self, key: str) -> BinaryIO:
        return open(self._path(key), "rb")


def download_to_staging(
    storage: ObjectStorage,
    key: str,
    staging_dir: str | Path,
    job_id: str
) -> tuple[Path, ObjectInfo]:
    """
    Stream an object into ``staging_dir``.

    Args:
        storage: Backend holding the object
        key: Object key
        staging_dir: Directory owned by the job; the caller removes it
        job_id: Used to name the staged file

    Returns:
        Tuple of (staged file path, object metadata)

    Raises:
        InvalidInputError: If the object is empty
        StagingIOError: If the object cannot be read or written locally
    """
    staging_dir = Path(staging_dir)
    try:
        info = storage.stat(key)
    except StagingIOError:
        raise
    except Exception as e:
        raise StagingIOError(f"Failed to stat object {key}: {e}") from e

    if not info.size:
        raise InvalidInputError("Medical image file is empty")

    temp_path = staging_dir / f"{job_id}_temp_{uuid.uuid4().hex}.tmp"
    try:
        staging_dir.mkdir(parents=True, exist_ok=True)
        with storage.open(key) as source, open(temp_path, "wb") as target:
            shutil.copyfileobj(source, target)
    except OSError as e:
        raise StagingIOError(f"Failed to download object storage file: {e}") from e

    logger.info(f"Downloaded {key} to {temp_path}")
    return temp_path, info
