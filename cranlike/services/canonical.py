"""
Canonical-record replacement and reference-counted blob collection.

At most one record exists per canonical key. Replacing it removes every
record matching the key, releases blobs no record references anymore, and
only then inserts the new record.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Hashable, List, Mapping, Optional

from cranlike.domain.errors import ConsistencyError
from cranlike.domain.models import ArtifactType, CanonicalKey, PackageRecord, RegistryConfig
from cranlike.storage.blob_store import BlobStore
from cranlike.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class CanonicalResolver:
    def __init__(self, store: MetadataStore, blobs: BlobStore, config: RegistryConfig):
        self.store = store
        self.blobs = blobs
        self.config = config
        self._locks = KeyedLock()
        self._pins: Dict[str, int] = {}

    def lock(self, key: CanonicalKey):
        """Serialize replace operations competing for the same canonical key."""
        return self._locks.acquire(key.lock_key())

    @asynccontextmanager
    async def pin_blob(self, file_id: str) -> AsyncIterator[None]:
        """Keep a blob alive while an upload that will reference it is in flight."""
        self._pins[file_id] = self._pins.get(file_id, 0) + 1
        try:
            yield
        finally:
            self._pins[file_id] -= 1
            if self._pins[file_id] == 0:
                del self._pins[file_id]

    async def replace(self, record: PackageRecord) -> List[PackageRecord]:
        """
        Make `record` the only record under its canonical key.

        previous_version is carried over from the single record it displaces.
        Returns the records that were removed. Callers hold lock(key).
        """
        key = CanonicalKey.for_record(record)
        existing = await self.store.find(key.as_query())

        if len(existing) > self.config.max_canonical_matches:
            raise ConsistencyError(
                f"Found {len(existing)} existing records for {record.user}/{record.package} "
                f"({record.type.value}); refusing to replace"
            )

        if len(existing) == 1:
            old = existing[0]
            if old.version != record.version:
                record.previous_version = old.version
            else:
                record.previous_version = old.previous_version
        elif len(existing) > 1:
            logger.warning(
                f"{len(existing)} records share the canonical key of {record.user}/{record.package} "
                f"({record.type.value}); removing all of them"
            )

        for old in existing:
            await self.store.delete(old.id)
            if old.file_id and old.file_id != record.file_id:
                await self.release_blob(old.file_id)

        await self.store.insert(record)
        logger.info(
            f"Stored {record.type.value} record {record.user}/{record.package} {record.version}"
            + (f" (previous: {record.previous_version})" if record.previous_version else "")
        )
        return existing

    async def release_blob(self, file_id: Optional[str]) -> bool:
        """Delete a blob unless a record or an in-flight upload still references it."""
        if not file_id:
            return False
        if self._pins.get(file_id):
            logger.debug(f"Keeping blob {file_id}: pinned by an upload in progress")
            return False
        refs = await self.store.count({"file_id": file_id})
        if refs > 0:
            logger.debug(f"Keeping blob {file_id}: still referenced by {refs} record(s)")
            return False
        return await self.blobs.delete(file_id)

    async def delete_record(self, record: PackageRecord) -> Optional[PackageRecord]:
        removed = await self.store.delete(record.id)
        if removed is not None and removed.type is not ArtifactType.FAILURE:
            await self.release_blob(removed.file_id)
        return removed

    async def delete_matching(self, query: Mapping[str, Any]) -> List[PackageRecord]:
        deleted: List[PackageRecord] = []
        for record in await self.store.find(query):
            removed = await self.delete_record(record)
            if removed is not None:
                deleted.append(removed)
        return deleted
