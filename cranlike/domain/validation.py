"""
Structural validation of uploaded records.

Rules are evaluated in table order and the first failing rule aborts the
upload with its message. Each rule applies to a subset of artifact types.
"""

from __future__ import annotations

from typing import Callable, List, Tuple

from cranlike.domain.errors import ValidationError
from cranlike.domain.models import BINARY_TYPES, UPLOAD_TYPES, ArtifactType, PackageRecord

Rule = Callable[[PackageRecord, str, str], None]

SUPPORTED_LINUX_ARCHITECTURES = ("x86_64", "aarch64")


def check_artifact_type(value: str) -> ArtifactType:
    """Resolve a requested type, accepting only the uploadable kinds."""
    try:
        artifact_type = ArtifactType(value)
    except ValueError:
        artifact_type = None
    if artifact_type not in UPLOAD_TYPES:
        allowed = ", ".join(t.value for t in UPLOAD_TYPES)
        raise ValidationError(f"Parameter 'type' must be one of {allowed}")
    return artifact_type


def _platform(record: PackageRecord) -> str:
    return (record.built or {}).get("Platform", "")


def _ostype(record: PackageRecord) -> str:
    return (record.built or {}).get("OStype", "")


def _check_name_and_version(record: PackageRecord, package: str, version: str) -> None:
    if record.package != package or record.version != version:
        raise ValidationError("Package name or version does not match upload")


def _check_source_not_built(record: PackageRecord, package: str, version: str) -> None:
    if record.built:
        raise ValidationError('Source package has a "Built" field (binary package?)')


def _check_source_jobs(record: PackageRecord, package: str, version: str) -> None:
    jobs = record.builder.jobs
    if not jobs:
        raise ValidationError("Source package has no build jobs in builder metadata")
    for job in jobs:
        if not job.config or not job.check:
            raise ValidationError("Build job is missing its 'config' or 'check' field")
    if not any(job.config == "source" for job in jobs):
        raise ValidationError("Build jobs do not include a 'source' job")


def _check_binary_built(record: PackageRecord, package: str, version: str) -> None:
    if not record.built:
        raise ValidationError("Binary package does not have a valid Built field")


def _check_windows(record: PackageRecord, package: str, version: str) -> None:
    if _ostype(record) != "windows":
        raise ValidationError(f"Windows binary package has unexpected OStype: {_ostype(record)}")


def _check_unix(record: PackageRecord, package: str, version: str) -> None:
    if _ostype(record) != "unix":
        label = "MacOS" if record.type is ArtifactType.MAC else "WASM"
        raise ValidationError(f"{label} binary package has unexpected OStype: {_ostype(record)}")


def _check_mac_platform(record: PackageRecord, package: str, version: str) -> None:
    platform = _platform(record)
    if platform and "apple" not in platform:
        raise ValidationError(f"MacOS binary package has unexpected Platform: {platform}")


def _check_linux_platform(record: PackageRecord, package: str, version: str) -> None:
    platform = _platform(record)
    if not platform:
        return
    if "linux" not in platform or not any(arch in platform for arch in SUPPORTED_LINUX_ARCHITECTURES):
        raise ValidationError(f"Linux binary package has unexpected Platform: {platform}")


def _check_linux_distro(record: PackageRecord, package: str, version: str) -> None:
    if not record.builder.distro:
        raise ValidationError("Linux binary package has no distro in builder metadata")


def _check_status(record: PackageRecord, package: str, version: str) -> None:
    if record.builder.status is None:
        raise ValidationError('Submission does not have a "status" field')


def _check_commit(record: PackageRecord, package: str, version: str) -> None:
    if not record.builder.commit.id:
        raise ValidationError("No commit data found in builder metadata")


def _check_maintainer(record: PackageRecord, package: str, version: str) -> None:
    if not record.builder.maintainer.email:
        raise ValidationError("No maintainer data found in builder metadata")


_RULES: List[Tuple[Tuple[ArtifactType, ...], Rule]] = [
    (UPLOAD_TYPES, _check_name_and_version),
    ((ArtifactType.SRC,), _check_source_not_built),
    ((ArtifactType.SRC,), _check_source_jobs),
    (BINARY_TYPES, _check_binary_built),
    ((ArtifactType.WIN,), _check_windows),
    ((ArtifactType.MAC, ArtifactType.WASM), _check_unix),
    ((ArtifactType.MAC,), _check_mac_platform),
    ((ArtifactType.LINUX,), _check_linux_platform),
    ((ArtifactType.LINUX,), _check_linux_distro),
    (UPLOAD_TYPES, _check_status),
    (UPLOAD_TYPES, _check_commit),
    (UPLOAD_TYPES, _check_maintainer),
]


def validate_record(record: PackageRecord, package: str, version: str) -> PackageRecord:
    """
    Run every rule that applies to the record's type; raise on the first failure.

    WASM binaries are cross-compiled and carry the build host's platform, so
    a present platform is rewritten to "emscripten" once the rules pass.
    """
    for types, rule in _RULES:
        if record.type in types:
            rule(record, package, version)

    if record.type is ArtifactType.WASM and _platform(record):
        record.built = {**record.built, "Platform": "emscripten"}
    return record
