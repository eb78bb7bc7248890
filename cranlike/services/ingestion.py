"""
Ingestion coordinator.

Drives one upload from the incoming byte stream to a stored canonical record:

    1. store the blob under its content key (verified while streaming)
    2. extract and parse the manifest from the stored blob
    3. build the record and run the per-type validation rules
    4. compute derived fields
    5. replace the canonical record, collecting orphaned blobs
    6. for sources, retire failure records and de-index mirror copies

Any error releases the new blob again unless a record or another upload
in flight still references it.
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import aiofiles
import aiofiles.tempfile

from cranlike.domain.builder import parse_builder_fields
from cranlike.domain.derived import get_created, get_filename, get_repo_owner, parse_archs
from cranlike.domain.errors import NotFoundError, ValidationError
from cranlike.domain.manifest import merge_dependencies
from cranlike.domain.models import (
    ArtifactType,
    BlobObject,
    BuilderMetadata,
    CanonicalKey,
    PackageRecord,
    RecordUpdate,
    RegistryConfig,
    utc_now,
)
from cranlike.domain.validation import check_artifact_type, validate_record
from cranlike.services.canonical import CanonicalResolver
from cranlike.services.enrichment import DerivedMetadataComputer
from cranlike.services.extractor import ManifestExtractor
from cranlike.storage.blob_store import BlobStore
from cranlike.storage.digest import DigestTee, normalize_key
from cranlike.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

ANY_VERSION = "any"


def _pop_str(fields: Dict[str, Any], name: str) -> Optional[str]:
    value = fields.pop(name, None)
    return value if isinstance(value, str) else None


def _listing_query(
    user: str,
    package: str,
    version: Optional[str],
    type: Optional[str],
    built: Optional[str] = None,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user": user, "package": package}
    if version and version != ANY_VERSION:
        query["version"] = version
    if type:
        try:
            query["type"] = ArtifactType(type)
        except ValueError as e:
            raise ValidationError(f"Unknown artifact type: {type}") from e
    if built:
        query["built.R"] = re.compile("^" + re.escape(built))
    return query


def _r_version(record: PackageRecord) -> Tuple[int, ...]:
    value = (record.built or {}).get("R") or ""
    return tuple(int(part) if part.isdigit() else 0 for part in re.split(r"[.-]", value) if part)


class IngestionCoordinator:
    def __init__(self, store: MetadataStore, blobs: BlobStore, config: RegistryConfig):
        self.store = store
        self.blobs = blobs
        self.config = config
        self.extractor = ManifestExtractor()
        self.derived = DerivedMetadataComputer(store, config)
        self.resolver = CanonicalResolver(store, blobs, config)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload(
        self,
        user: str,
        package: str,
        version: str,
        type: str,
        key: str,
        stream: AsyncIterable[bytes],
        fields: Mapping[str, Any],
    ) -> PackageRecord:
        """
        Ingest one artifact.

        `fields` carries the builder metadata, either request headers or form
        fields; only names starting with the configured prefix are read.
        """
        artifact_type = check_artifact_type(type)
        builder = parse_builder_fields(fields, self.config.builder_field_prefix)
        filename = get_filename(package, version, artifact_type, builder.distro)
        key = normalize_key(key)

        # The pin keeps failed uploads of the same bytes from collecting the
        # blob before this upload's record exists.
        try:
            async with self.resolver.pin_blob(key):
                blob = await self.blobs.put(
                    key,
                    stream,
                    filename,
                    metadata={"user": user, "commit": builder.commit.id or ""},
                )
                record = await self._build_record(
                    user, package, version, artifact_type, blob, builder, filename
                )
                async with self.resolver.lock(CanonicalKey.for_record(record)):
                    await self.resolver.replace(record)
        except (Exception, asyncio.CancelledError):
            if await self.resolver.release_blob(key):
                logger.info(f"Released blob {key} after failed upload of {filename}")
            raise

        if artifact_type is ArtifactType.SRC:
            await self._retire_failures(user, package)
            await self.derived.deindex_mirror_copies(record)
        return record

    async def upload_file(
        self,
        user: str,
        package: str,
        version: str,
        type: str,
        stream: AsyncIterable[bytes],
        fields: Mapping[str, Any],
    ) -> PackageRecord:
        """
        Ingest an artifact posted without a content key.

        The bytes are spooled to a temporary file first so the MD5 key is
        known before the blob store sees them.
        """
        async with aiofiles.tempfile.TemporaryDirectory() as tmpdirname:
            path = Path(tmpdirname) / "upload"
            tee = DigestTee(("md5",))
            async with aiofiles.open(path, "wb") as f:
                async for chunk in stream:
                    tee.update(chunk)
                    await f.write(chunk)
            key = tee.hexdigest("md5")
            logger.debug(f"Spooled {tee.length} bytes for {package} {version}, key {key}")
            return await self.upload(user, package, version, type, key, self._read_file(path), fields)

    async def _read_file(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(self.config.upload_chunk_size)
                if not chunk:
                    break
                yield chunk

    async def _build_record(
        self,
        user: str,
        package: str,
        version: str,
        artifact_type: ArtifactType,
        blob: BlobObject,
        builder: BuilderMetadata,
        filename: str,
    ) -> PackageRecord:
        is_source = artifact_type is ArtifactType.SRC
        archive = await self.extractor.extract(
            self.blobs.get(blob.key), package=package, include_contents=is_source
        )

        fields = dict(archive.manifest)
        dependencies = merge_dependencies(fields)
        built = fields.pop("Built", None)

        record = PackageRecord(
            id=uuid.uuid4().hex,
            user=user,
            package=_pop_str(fields, "Package") or "",
            version=_pop_str(fields, "Version"),
            type=artifact_type,
            nocasepkg=package.lower(),
            title=_pop_str(fields, "Title"),
            description=_pop_str(fields, "Description"),
            author=_pop_str(fields, "Author"),
            maintainer=_pop_str(fields, "Maintainer"),
            url=_pop_str(fields, "URL"),
            license=_pop_str(fields, "License"),
            built=built if isinstance(built, dict) else None,
            manifest=fields,
            dependencies=dependencies,
            file_id=blob.key,
            filename=filename,
            filesize=blob.length,
            sha256=blob.sha256,
            builder=builder,
            registered=builder.is_registered,
            archs=parse_archs(fields.get("Archs")),
            contents=archive.contents or {},
            created=get_created(built if isinstance(built, dict) else None, fields.get("Packaged")),
            published=utc_now(),
        )

        validate_record(record, package, version)
        await self.derived.apply(record)
        return record

    async def _retire_failures(self, user: str, package: str) -> None:
        retired = await self.resolver.delete_matching(
            {"type": ArtifactType.FAILURE, "user": user, "package": package}
        )
        if retired:
            logger.info(f"Removed {len(retired)} failure record(s) for {user}/{package}")

    # ------------------------------------------------------------------
    # Failures and in-place updates
    # ------------------------------------------------------------------

    async def submit_failure(
        self,
        user: str,
        package: str,
        version: str,
        fields: Mapping[str, Any],
    ) -> PackageRecord:
        """Record a failed build; replaces any earlier failure for the package."""
        builder = parse_builder_fields(fields, self.config.builder_field_prefix)
        maintainer = builder.maintainer
        now = utc_now()
        record = PackageRecord(
            id=uuid.uuid4().hex,
            user=user,
            package=package,
            version=version,
            type=ArtifactType.FAILURE,
            nocasepkg=package.lower(),
            maintainer=f"{maintainer.name} <{maintainer.email}>" if maintainer.email else maintainer.name,
            builder=builder,
            registered=builder.is_registered,
            owner=get_repo_owner(builder.upstream, self.config),
            universes=[user],
            created=now,
            published=now,
        )
        record.selfowned = record.owner == user

        key = CanonicalKey.for_record(record)
        async with self.resolver.lock(key):
            original = await self.store.find_one_and_replace(key.as_query(), record, upsert=True)
        if original is not None:
            record = record.model_copy(update={"id": original.id})
        logger.info(f"Recorded build failure for {user}/{package} {version}")
        return record

    async def update_record(
        self,
        user: str,
        package: str,
        version: str,
        update: RecordUpdate,
    ) -> PackageRecord:
        if update.set_fields is None and update.unset_fields is None:
            raise ValidationError("Object must contain either $set or $unset operation")
        record = await self.store.find_one(
            {"type": ArtifactType.SRC, "user": user, "package": package, "version": version}
        )
        if record is None:
            raise NotFoundError(f"No source package {user}/{package} {version}")
        updated = await self.store.update(
            record.id, update.set_fields, list((update.unset_fields or {}).keys())
        )
        logger.info(f"Updated {user}/{package} {version}")
        return updated

    # ------------------------------------------------------------------
    # Listing, deletion and downloads
    # ------------------------------------------------------------------

    async def list_records(
        self,
        user: str,
        package: str,
        version: Optional[str] = None,
        type: Optional[str] = None,
        built: Optional[str] = None,
    ) -> List[PackageRecord]:
        """Matching records, highest R version first and newest first within one."""
        query = _listing_query(user, package, version, type, built)
        records = await self.store.find(query, newest_first=True)
        records.sort(key=_r_version, reverse=True)
        if not records:
            raise NotFoundError(f"No records found for {user}/{package}")
        return records

    async def delete_records(
        self,
        user: str,
        package: str,
        version: Optional[str] = None,
        type: Optional[str] = None,
        built: Optional[str] = None,
    ) -> List[PackageRecord]:
        deleted = await self.resolver.delete_matching(_listing_query(user, package, version, type, built))
        logger.info(f"Deleted {len(deleted)} record(s) for {user}/{package}")
        return deleted

    async def open_blob(self, key: str) -> Tuple[BlobObject, AsyncIterator[bytes]]:
        blob = await self.blobs.stat(key)
        if blob is None:
            raise NotFoundError(f"Blob not found: {key}")
        return blob, self.blobs.get(blob.key)
