"""
Pydantic models for the package registry.

This module defines all data models used throughout the application, including:
- Registry configuration
- Blob objects stored in the content-addressed store
- Builder metadata carried next to an upload
- Canonical package records and the keys that identify them
- API request models

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ArtifactType(str, Enum):
    """Kind of artifact a record describes."""

    SRC = "src"
    WIN = "win"
    MAC = "mac"
    LINUX = "linux"
    WASM = "wasm"
    FAILURE = "failure"


# Types that can be uploaded as an archive.
UPLOAD_TYPES = (
    ArtifactType.SRC,
    ArtifactType.WIN,
    ArtifactType.MAC,
    ArtifactType.LINUX,
    ArtifactType.WASM,
)

BINARY_TYPES = (
    ArtifactType.WIN,
    ArtifactType.MAC,
    ArtifactType.LINUX,
    ArtifactType.WASM,
)


class RegisteredFlag(str, Enum):
    """
    Tri-state registration marker sent by the builder.

    UNSET means the builder did not say; only an explicit FALSE opts a
    package out of indexing.
    """

    UNSET = "unset"
    TRUE = "true"
    FALSE = "false"


# ---------------------------------------------------------------------------
# Registry Configuration
# ---------------------------------------------------------------------------


class RegistryConfig(BaseModel):
    """
    Top-level configuration for the registry.

    Persisted at: <DATA_DIR>/registry.json
    """

    universe_domain: str = Field(
        default="r-universe.dev",
        description="Domain under which every publisher gets a '<publisher>.<domain>' universe.",
    )
    mirror_publisher: str = Field(
        default="cran",
        description="Publisher that only mirrors packages; its records are never self-owned.",
    )
    trusted_organizations: List[str] = Field(
        default_factory=lambda: ["ropensci"],
        description="Publishers whose uploads always count as self-owned.",
    )
    builder_field_prefix: str = Field(
        default="builder-",
        description="Name prefix marking builder metadata in request headers or form fields.",
    )
    max_canonical_matches: int = Field(
        default=3,
        ge=1,
        description="More existing records than this under one canonical key aborts the upload.",
    )
    mentions_cap: int = Field(
        default=300,
        ge=1,
        description="Upper bound applied to the mention count before scoring.",
    )
    bioconductor_mirror_host: str = Field(
        default="git.bioconductor.org",
        description="Host of the Bioconductor git mirror, rewritten to its GitHub equivalent.",
    )
    bioconductor_github_org: str = Field(
        default="bioc",
        description="GitHub organization that mirrors Bioconductor packages.",
    )
    upload_chunk_size: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Chunk size in bytes used when streaming blobs to and from disk.",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        description="Timestamp when this configuration was first created.",
    )


# ---------------------------------------------------------------------------
# Blob Models
# ---------------------------------------------------------------------------


class BlobObject(BaseModel):
    """
    Immutable artifact bytes identified by their content key.

    Persisted next to the blob data at: <DATA_DIR>/blobs/<kk>/<key>.json
    """

    key: str = Field(
        description="Content key (32 hex characters for MD5, 64 for SHA-256).",
    )
    length: int = Field(
        description="Number of stored bytes.",
    )
    filename: str = Field(
        description="Filename the artifact is served under.",
    )
    secondary_digest: str = Field(
        description="Digest computed while writing, using the algorithm implied by the key length.",
    )
    sha256: str = Field(
        description="SHA-256 of the stored bytes, independent of the key algorithm.",
    )
    metadata: Dict[str, str] = Field(
        default_factory=dict,
        description="Free-form metadata such as the uploader and commit id.",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
    )


# ---------------------------------------------------------------------------
# Builder Metadata Models
# ---------------------------------------------------------------------------


class CommitInfo(BaseModel):
    """Commit that produced a build. Unknown keys from the builder are kept."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    author: Optional[str] = None
    committer: Optional[str] = None
    message: Optional[str] = None
    time: Optional[int] = None


class MaintainerInfo(BaseModel):
    """Maintainer contact as resolved by the builder."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    login: Optional[str] = None


class BuildJob(BaseModel):
    """Result of one CI job that took part in the build."""

    model_config = ConfigDict(extra="allow")

    config: Optional[str] = None
    check: Optional[str] = None


class BuilderMetadata(BaseModel):
    """
    Out-of-band build context supplied next to an artifact.

    Populated by the named decode steps in cranlike.domain.builder; fields the
    builder did not send keep their empty defaults.
    """

    upstream: Optional[str] = Field(
        default=None,
        description="Upstream git repository URL of the package.",
    )
    devurl: Optional[str] = Field(
        default=None,
        description="Secondary development URL, used to add its owner's universe.",
    )
    distro: Optional[str] = Field(
        default=None,
        description="Linux distribution codename the binary was built for.",
    )
    status: Optional[str] = Field(
        default=None,
        description="Overall build status reported by the builder.",
    )
    buildurl: Optional[str] = Field(
        default=None,
        description="URL of the CI run that produced the artifact.",
    )
    commit: CommitInfo = Field(default_factory=CommitInfo)
    maintainer: MaintainerInfo = Field(default_factory=MaintainerInfo)
    jobs: List[BuildJob] = Field(default_factory=list)
    registered: RegisteredFlag = Field(default=RegisteredFlag.UNSET)

    @property
    def is_registered(self) -> bool:
        return self.registered is not RegisteredFlag.FALSE


# ---------------------------------------------------------------------------
# Package Record Models
# ---------------------------------------------------------------------------


class DependencyEdge(BaseModel):
    """One dependency of a package, tagged with the manifest field it came from."""

    package: str
    version: Optional[str] = None
    role: str


class PackageRecord(BaseModel):
    """
    The canonical metadata row for one (publisher, package, version, slice).

    Persisted in: <DATA_DIR>/records/<id>.json
    """

    id: str = Field(
        description="Opaque record identifier assigned on insert.",
    )

    # Identification
    user: str = Field(description="Publisher (universe) the record belongs to.")
    package: str
    version: Optional[str] = None
    type: ArtifactType
    nocasepkg: str = Field(description="Lower-cased package name for case-insensitive lookup.")

    # Parsed manifest fields
    title: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    maintainer: Optional[str] = None
    url: Optional[str] = None
    license: Optional[str] = None
    built: Optional[Dict[str, str]] = Field(
        default=None,
        description="Nested Built field (R, Platform, Date, OStype) of binary packages.",
    )
    manifest: Dict[str, Any] = Field(
        default_factory=dict,
        description="All remaining manifest fields.",
    )
    dependencies: List[DependencyEdge] = Field(default_factory=list)

    # Blob reference
    file_id: Optional[str] = Field(
        default=None,
        description="Content key of the artifact blob; None for failure records.",
    )
    filename: Optional[str] = None
    filesize: Optional[int] = None
    sha256: Optional[str] = None

    # Builder metadata
    builder: BuilderMetadata = Field(default_factory=BuilderMetadata)
    registered: bool = True

    # Derived fields
    owner: Optional[str] = None
    selfowned: bool = False
    indexed: bool = False
    index_url: Optional[str] = Field(
        default=None,
        description="Canonical location of a package whose mirror copy was de-indexed.",
    )
    universes: List[str] = Field(default_factory=list)
    score: Optional[float] = None
    usedby: int = 0
    contents: Dict[str, Any] = Field(
        default_factory=dict,
        description="Package-content metadata shipped inside source archives.",
    )
    previous_version: Optional[str] = None
    archs: List[str] = Field(default_factory=list)
    architecture: Optional[str] = None
    platform_major_version: Optional[str] = None
    distro: Optional[str] = None

    # Timestamps
    created: datetime = Field(default_factory=utc_now)
    published: datetime = Field(default_factory=utc_now)


class CanonicalKey(BaseModel):
    """
    Field tuple identifying the record a new upload competes with.

    Fields that do not take part in the key for a given type stay None and
    are left out of the query.
    """

    model_config = ConfigDict(frozen=True)

    user: str
    type: ArtifactType
    package: str
    platform_major_version: Optional[str] = None
    architecture: Optional[str] = None
    distro: Optional[str] = None
    match_architecture: bool = False
    match_distro: bool = False

    @classmethod
    def for_record(cls, record: PackageRecord) -> "CanonicalKey":
        if record.type in (ArtifactType.SRC, ArtifactType.FAILURE):
            return cls(user=record.user, type=record.type, package=record.package)
        if record.type is ArtifactType.LINUX:
            return cls(
                user=record.user,
                type=record.type,
                package=record.package,
                platform_major_version=record.platform_major_version,
                architecture=record.architecture,
                distro=record.distro,
                match_architecture=True,
                match_distro=True,
            )
        return cls(
            user=record.user,
            type=record.type,
            package=record.package,
            platform_major_version=record.platform_major_version,
            architecture=record.architecture,
            match_architecture=record.architecture is not None,
        )

    def as_query(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "user": self.user,
            "type": self.type,
            "package": self.package,
        }
        if self.type in BINARY_TYPES:
            query["platform_major_version"] = self.platform_major_version
        if self.match_architecture:
            query["architecture"] = self.architecture
        if self.match_distro:
            query["distro"] = self.distro
        return query

    def lock_key(self) -> Tuple[Any, ...]:
        """
        Scope for serializing replacements.

        Architecture and distro are left out: a key without an architecture
        matches the records of every architecture in its slice.
        """
        return (self.user, self.type, self.package, self.platform_major_version)


# ---------------------------------------------------------------------------
# API Request Models
# ---------------------------------------------------------------------------


class RecordUpdate(BaseModel):
    """
    In-place update of a source record, mirroring document-store operators.

    Example body: {"$set": {"builder.status": "success"}, "$unset": {"index_url": ""}}
    """

    model_config = ConfigDict(populate_by_name=True)

    set_fields: Optional[Dict[str, Any]] = Field(default=None, alias="$set")
    unset_fields: Optional[Dict[str, Any]] = Field(default=None, alias="$unset")
