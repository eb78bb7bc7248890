from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, Optional

import aiofiles
import aiofiles.os

from cranlike.domain.errors import ChecksumMismatch, NotFoundError, RegistryError, TransportError
from cranlike.domain.models import BlobObject
from cranlike.storage.digest import DigestTee, normalize_key, tee_stream

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """
    Abstract base class for content-addressed artifact storage.

    The store never checks whether records still reference a blob; callers
    count references before calling delete().
    """

    @abstractmethod
    async def stat(self, key: str) -> Optional[BlobObject]:
        """Return the stored object for a key, or None when absent."""
        pass

    @abstractmethod
    async def put(
        self,
        key: str,
        stream: AsyncIterable[bytes],
        filename: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> BlobObject:
        """
        Store a stream under its content key.

        If the key already exists the stream is not consumed and the existing
        object is returned. Otherwise the written bytes must hash to the key.
        """
        pass

    @abstractmethod
    def get(self, key: str) -> AsyncIterator[bytes]:
        """Stream the bytes stored under a key."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a blob. Return True when something was removed."""
        pass


class FileBlobStore(BlobStore):
    """
    Blob store on the local filesystem.

    Layout: <root>/<kk>/<key> holds the bytes and <root>/<kk>/<key>.json the
    BlobObject. Writes land in <root>/tmp first and are moved into place only
    after the checksum matched, so a partial blob is never visible.
    """

    def __init__(self, root: Path, chunk_size: int = 64 * 1024):
        self._root = root
        self._tmp_dir = root / "tmp"
        self._chunk_size = chunk_size
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def _blob_path(self, key: str) -> Path:
        return self._root / key[:2] / key

    def _meta_path(self, key: str) -> Path:
        return self._root / key[:2] / f"{key}.json"

    async def stat(self, key: str) -> Optional[BlobObject]:
        key = normalize_key(key)
        meta_path = self._meta_path(key)
        if not self._blob_path(key).is_file() or not meta_path.is_file():
            return None
        async with aiofiles.open(meta_path, "r", encoding="utf-8") as f:
            raw = json.loads(await f.read())
        return BlobObject(**raw)

    async def put(
        self,
        key: str,
        stream: AsyncIterable[bytes],
        filename: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> BlobObject:
        key = normalize_key(key)

        existing = await self.stat(key)
        if existing is not None:
            logger.debug(f"Already have blob {key} ({existing.filename}); skipping transfer")
            return existing

        tmp_path = self._tmp_dir / f"{key}.{uuid.uuid4().hex}.part"
        blob_path = self._blob_path(key)
        tee = DigestTee()
        completed = False
        try:
            try:
                async with aiofiles.open(tmp_path, "wb") as f:
                    async for chunk in tee_stream(stream, tee):
                        await f.write(chunk)
            except RegistryError:
                raise
            except Exception as e:
                raise TransportError(f"Upload of {filename} failed: {e}") from e

            actual = tee.digest_for_key(key)
            if actual != key:
                logger.warning(f"Checksum mismatch for {filename}: key {key}, computed {actual}")
                raise ChecksumMismatch(key, actual)

            blob = BlobObject(
                key=key,
                length=tee.length,
                filename=filename,
                secondary_digest=actual,
                sha256=tee.hexdigest("sha256"),
                metadata=metadata or {},
            )
            blob_path.parent.mkdir(parents=True, exist_ok=True)
            await aiofiles.os.replace(tmp_path, blob_path)
            async with aiofiles.open(self._meta_path(key), "w", encoding="utf-8") as f:
                await f.write(blob.model_dump_json(indent=2))
            completed = True
        finally:
            if not completed:
                tmp_path.unlink(missing_ok=True)

        logger.info(f"Stored blob {key} ({filename}, {blob.length} bytes)")
        return blob

    async def get(self, key: str) -> AsyncIterator[bytes]:
        key = normalize_key(key)
        path = self._blob_path(key)
        if not path.is_file():
            raise NotFoundError(f"Blob not found: {key}")
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk

    async def delete(self, key: str) -> bool:
        key = normalize_key(key)
        deleted = False
        for path in (self._blob_path(key), self._meta_path(key)):
            if path.exists():
                await aiofiles.os.remove(path)
                deleted = True
        if deleted:
            logger.info(f"Deleted blob {key}")
        return deleted
