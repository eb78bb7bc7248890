import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import aiofiles
import aiofiles.os
from pydantic import ValidationError as SchemaError

from cranlike.domain.errors import NotFoundError, ValidationError
from cranlike.domain.models import PackageRecord, RegistryConfig
from cranlike.domain.query_utils import get_path, matches_query
from cranlike.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _unset_path(document: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        target = target.get(part) if isinstance(target, dict) else None
        if target is None:
            return
    if isinstance(target, dict):
        target.pop(parts[-1], None)


class JsonMetadataStore(MetadataStore):
    """
    Record store keeping every record in memory and one JSON file per record
    on disk under <data_dir>/records.

    Mutations hold a lock across the in-memory change and the file write, so
    each single-document operation is atomic with respect to other tasks.
    """

    def __init__(self, data_dir: Path):
        self._data_dir = data_dir
        self._records_dir = data_dir / "records"
        self._records: Dict[str, PackageRecord] = {}
        self._registry_config: Optional[RegistryConfig] = None
        self._lock = asyncio.Lock()

        # Ensure data directory exists
        self._records_dir.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> None:
        self._load_registry_config()
        self._build_index_from_disk()

    def get_registry_config(self) -> RegistryConfig:
        if self._registry_config is None:
            return self._load_registry_config()
        return self._registry_config

    def save_registry_config(self, config: RegistryConfig) -> None:
        self._registry_config = config
        config_path = self._data_dir / "registry.json"
        config_path.write_text(config.model_dump_json(indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> Optional[PackageRecord]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def find(
        self,
        query: Mapping[str, Any],
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[PackageRecord]:
        matches = self._match(query)
        matches.sort(key=lambda r: (r.created, r.id), reverse=newest_first)
        if limit is not None:
            matches = matches[:limit]
        return [r.model_copy(deep=True) for r in matches]

    async def find_one(self, query: Mapping[str, Any]) -> Optional[PackageRecord]:
        found = await self.find(query, limit=1)
        return found[0] if found else None

    async def count(self, query: Mapping[str, Any]) -> int:
        return len(self._match(query))

    async def distinct(self, field: str, query: Mapping[str, Any]) -> List[Any]:
        values: List[Any] = []
        for record in self._match(query):
            value = get_path(record.model_dump(), field, default=None)
            items = value if isinstance(value, list) else [value]
            for item in items:
                if item is not None and not isinstance(item, dict) and item not in values:
                    values.append(item)
        return values

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert(self, record: PackageRecord) -> PackageRecord:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"Record {record.id} already exists")
            await self._write(record)
            self._records[record.id] = record.model_copy(deep=True)
        return record

    async def delete(self, record_id: str) -> Optional[PackageRecord]:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            await self._remove_file(record_id)
            del self._records[record_id]
        return record

    async def delete_many(self, query: Mapping[str, Any]) -> List[PackageRecord]:
        deleted: List[PackageRecord] = []
        for record in await self.find(query):
            removed = await self.delete(record.id)
            if removed is not None:
                deleted.append(removed)
        return deleted

    async def find_one_and_replace(
        self,
        query: Mapping[str, Any],
        record: PackageRecord,
        upsert: bool = False,
    ) -> Optional[PackageRecord]:
        async with self._lock:
            matches = self._match(query)
            original = min(matches, key=lambda r: (r.created, r.id)) if matches else None
            if original is None and not upsert:
                return None
            if original is not None:
                record = record.model_copy(update={"id": original.id})
            await self._write(record)
            self._records[record.id] = record.model_copy(deep=True)
        return original

    async def update(
        self,
        record_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[Iterable[str]] = None,
    ) -> PackageRecord:
        async with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise NotFoundError(f"Record {record_id} not found")

            document = copy.deepcopy(current.model_dump())
            for path, value in (set_fields or {}).items():
                if path.split(".")[0] == "id":
                    raise ValidationError("Field 'id' cannot be modified")
                _set_path(document, path, value)
            for path in unset_fields or []:
                if path.split(".")[0] == "id":
                    raise ValidationError("Field 'id' cannot be modified")
                _unset_path(document, path)

            try:
                updated = PackageRecord.model_validate(document)
            except SchemaError as e:
                raise ValidationError(f"Update produces an invalid record: {e}") from e

            await self._write(updated)
            self._records[record_id] = updated
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _match(self, query: Mapping[str, Any]) -> List[PackageRecord]:
        return [r for r in self._records.values() if matches_query(r.model_dump(), query)]

    def _record_path(self, record_id: str) -> Path:
        return self._records_dir / f"{record_id}.json"

    async def _write(self, record: PackageRecord) -> None:
        path = self._record_path(record.id)
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(record.model_dump_json(indent=2))
        await aiofiles.os.replace(tmp_path, path)

    async def _remove_file(self, record_id: str) -> None:
        path = self._record_path(record_id)
        if path.exists():
            await aiofiles.os.remove(path)

    def _load_registry_config(self) -> RegistryConfig:
        path = self._data_dir / "registry.json"
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                config = RegistryConfig(**raw)
            except Exception as e:
                logger.warning(f"Ignoring unreadable registry.json, using defaults: {e}")
                config = RegistryConfig()
        else:
            config = RegistryConfig()

        # Persist with all fields populated (including any new defaults).
        path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
        self._registry_config = config
        return config

    def _build_index_from_disk(self) -> None:
        records: Dict[str, PackageRecord] = {}
        for record_json in self._records_dir.glob("*.json"):
            try:
                raw = json.loads(record_json.read_text(encoding="utf-8"))
                record = PackageRecord(**raw)
            except Exception as e:
                logger.warning(f"Skipping unreadable record file {record_json.name}: {e}")
                continue
            records[record.id] = record

        self._records = records
        logger.info(f"Loaded {len(records)} package records from {self._records_dir}")
