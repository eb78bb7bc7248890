"""
Pure helpers computing derived record fields: ownership, indexing,
universes, popularity score, platform slice and artifact filename.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from cranlike.domain.errors import ValidationError
from cranlike.domain.models import ArtifactType, PackageRecord, RegistryConfig, utc_now

_MAJOR_VERSION_RE = re.compile(r"^\d+\.\d+")
_ARCH_ALIASES = {"arm64": "aarch64", "amd64": "x86_64"}
_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S UTC", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d")

_FILE_EXTENSIONS = {
    ArtifactType.SRC: ".tar.gz",
    ArtifactType.MAC: ".tgz",
    ArtifactType.WIN: ".zip",
    ArtifactType.WASM: ".tgz",
}


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


def rewrite_mirror_url(url: str, config: RegistryConfig) -> str:
    """Map a Bioconductor git mirror URL onto its GitHub equivalent."""
    parsed = urlparse(url)
    if parsed.hostname != config.bioconductor_mirror_host:
        return url
    name = parsed.path.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return f"https://github.com/{config.bioconductor_github_org}/{name}"


def get_repo_owner(url: Optional[str], config: RegistryConfig) -> Optional[str]:
    """
    Resolve the owner of a repository URL.

    GitHub URLs yield the organization itself; other hosts yield
    "<host-shorthand>-<org>", e.g. "gitlab-foo".
    """
    if not url:
        return None
    parsed = urlparse(rewrite_mirror_url(url.strip(), config).lower())
    host = parsed.hostname or ""
    if host.startswith("www."):
        host = host[4:]
    segments = [s for s in parsed.path.split("/") if s]
    if not host or len(segments) < 2:
        return None
    shorthand = host.split(".")[0]
    org = segments[0]
    return org if shorthand == "github" else f"{shorthand}-{org}"


def universe_marker(user: str, config: RegistryConfig) -> str:
    return f"{user}.{config.universe_domain}".lower()


def is_self_owned(record: PackageRecord, config: RegistryConfig) -> bool:
    user = record.user
    if user == config.mirror_publisher:
        return False
    if record.owner == user or record.builder.maintainer.login == user:
        return True
    if user in config.trusted_organizations:
        return True
    return universe_marker(user, config) in (record.url or "").lower()


def is_indexed(record: PackageRecord, config: RegistryConfig) -> bool:
    if not record.builder.is_registered:
        return False
    if universe_marker(record.user, config) in (record.url or "").lower():
        return True
    return record.owner is not None and record.owner == record.user


def compute_universes(record: PackageRecord, config: RegistryConfig) -> List[str]:
    universes = [record.user]
    if record.indexed:
        if record.builder.maintainer.login:
            universes.append(record.builder.maintainer.login)
        dev_owner = get_repo_owner(record.builder.devurl, config)
        if dev_owner:
            universes.append(dev_owner)
    return list(dict.fromkeys(universes))


# ---------------------------------------------------------------------------
# Popularity score
# ---------------------------------------------------------------------------


def _count(value: Any) -> float:
    if isinstance(value, (list, tuple, dict, set)):
        return float(len(value))
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def popularity_signals(record: PackageRecord, config: RegistryConfig) -> Dict[str, float]:
    """Collect the weighted signals that feed the score of a source record."""
    contents = record.contents
    downloads = contents.get("downloads")
    if isinstance(downloads, dict):
        downloads = downloads.get("count")

    return {
        "stars": _count(contents.get("stars")),
        "usedby": 3 * float(record.usedby),
        "searchresults": _count(contents.get("searchresults")) / 10,
        "vignettes": 10 * _count(contents.get("vignettes")),
        "datasets": 5 * _count(contents.get("datasets")),
        "updates": _count(contents.get("updates")),
        "contributors": _count(contents.get("contributions")) - 1,
        "archive": 10.0 if contents.get("cranurl") else 0.0,
        "readme": 5.0 if contents.get("readme") else 0.0,
        "downloads": _count(downloads) / 1000,
        "mentions": min(float(config.mentions_cap), _count(contents.get("mentions"))),
    }


def score_from_signals(signals: Mapping[str, float]) -> float:
    """1 plus the sum of log10 of each signal, with signals below 1 contributing nothing."""
    return 1.0 + sum(math.log10(max(1.0, value)) for value in signals.values())


# ---------------------------------------------------------------------------
# Platform slice
# ---------------------------------------------------------------------------


def parse_major_version(built: Optional[Mapping[str, str]]) -> str:
    if not built or not built.get("R"):
        raise ValidationError("Package is missing Built.R field. Cannot determine binary version")
    match = _MAJOR_VERSION_RE.match(built["R"])
    if not match:
        raise ValidationError(f"Failed to find R version from Built.R field: {built['R']}")
    return match.group(0)


def parse_architecture(platform: Optional[str]) -> Optional[str]:
    """First component of a platform triplet, e.g. 'aarch64-apple-darwin20' -> 'aarch64'."""
    if not platform:
        return None
    arch = platform.split("-", 1)[0].lower()
    return _ARCH_ALIASES.get(arch, arch) or None


def parse_archs(value: Any) -> List[str]:
    if not isinstance(value, str):
        return []
    return [a.strip() for a in value.split(",") if a.strip()]


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def get_created(built: Optional[Mapping[str, str]], packaged: Any) -> datetime:
    """Build date for binaries, packaging date for sources, otherwise now."""
    if built and _parse_date(built.get("Date")):
        return _parse_date(built.get("Date"))
    if isinstance(packaged, dict) and _parse_date(packaged.get("Date")):
        return _parse_date(packaged.get("Date"))
    return utc_now()


def get_filename(package: str, version: str, artifact_type: ArtifactType, distro: Optional[str] = None) -> str:
    if artifact_type is ArtifactType.LINUX:
        return f"{package}_{version}-{distro or 'linux'}.tar.gz"
    return f"{package}_{version}{_FILE_EXTENSIONS[artifact_type]}"
