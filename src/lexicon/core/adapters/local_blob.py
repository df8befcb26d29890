"""Local-filesystem blob store.

Objects are written to ``<assets_dir>/<bucket>/<object_path>`` and served by
the HTTP layer's static mount at ``<assets_url_prefix>/<bucket>/<object_path>``.
Local URLs do not expire, so the ``ttl_s`` argument of :meth:`signed_url` is
accepted and ignored.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath

from lexicon.core.collaborators import BlobStore, adapter_registry
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import StorageError

logger = logging.getLogger(__name__)


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory under ``config.assets_dir``."""

    name = "local"

    def __init__(self, config: LexiconConfig, *, bucket: str = "assets") -> None:
        self.bucket = bucket
        self._root = Path(config.assets_dir) / bucket
        self._url_prefix = config.assets_url_prefix.rstrip("/")

    def _resolve(self, object_path: str) -> Path:
        parts = PurePosixPath(object_path).parts
        if not parts or object_path.startswith("/") or ".." in parts:
            raise StorageError(f"Invalid object path: {object_path!r}")
        return self._root.joinpath(*parts)

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def upload(self, data: bytes, object_path: str, content_type: str) -> str:
        target = self._resolve(object_path)
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise StorageError(f"Failed to write {object_path}: {exc}") from exc

        logger.info(
            "Stored %s (%d bytes, %s) in local bucket %s",
            object_path,
            len(data),
            content_type,
            self.bucket,
        )
        return f"local://{self.bucket}/{object_path}"

    async def signed_url(self, object_path: str, ttl_s: int) -> str:
        target = self._resolve(object_path)
        if not target.exists():
            raise StorageError(f"No such object: {object_path}")
        return f"{self._url_prefix}/{self.bucket}/{object_path}"


adapter_registry.register("blob", "local", LocalBlobStore)
