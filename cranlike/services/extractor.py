"""
Extraction of the manifest (and, for source packages, the package-content
metadata) from an uploaded archive.

The archive stream is spooled to a request-scoped temporary directory and
scanned in a worker thread, so large artifacts neither sit in memory nor
block the event loop. Gzipped tarballs and zip files are both accepted.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import tarfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterable, Dict, Optional

import aiofiles
import aiofiles.tempfile

from cranlike.domain.errors import ManifestMissing, ManifestParseError
from cranlike.domain.manifest import parse_manifest

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"
MANIFEST_PATTERN = re.compile(r"^[^/]+/DESCRIPTION$")


@dataclass
class ExtractedArchive:
    manifest: Dict[str, Any]
    contents: Optional[Dict[str, Any]] = None


def contents_path(package: str) -> str:
    return f"{package}/extra/contents.json"


def _normalize_member(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


def _read_members(archive_path: Path, contents_name: Optional[str]) -> Dict[str, bytes]:
    """
    Scan an archive once and return the manifest under "manifest" and, when
    requested and present, the contents file under "contents".
    """
    found: Dict[str, bytes] = {}

    def wanted(name: str) -> Optional[str]:
        if "manifest" not in found and MANIFEST_PATTERN.match(name):
            return "manifest"
        if contents_name and "contents" not in found and name == contents_name:
            return "contents"
        return None

    def done() -> bool:
        return "manifest" in found and (contents_name is None or "contents" in found)

    with archive_path.open("rb") as f:
        is_zip = f.read(len(ZIP_MAGIC)) == ZIP_MAGIC

    try:
        if is_zip:
            with zipfile.ZipFile(archive_path) as zf:
                for info in zf.infolist():
                    slot = wanted(_normalize_member(info.filename))
                    if slot and not info.is_dir():
                        found[slot] = zf.read(info)
                        if done():
                            break
        else:
            with tarfile.open(archive_path, mode="r:*") as tf:
                for member in tf:
                    slot = wanted(_normalize_member(member.name))
                    if slot and member.isfile():
                        found[slot] = tf.extractfile(member).read()
                        if done():
                            break
    except (tarfile.TarError, zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
        raise ManifestParseError(f"Cannot read archive: {e}") from e

    return found


def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _parse_contents(raw: Optional[bytes], name: str) -> Optional[Dict[str, Any]]:
    if raw is None:
        logger.warning(f"Source package did not contain {name}")
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Ignoring unreadable {name}: {e}")
        return None
    if not isinstance(data, dict) or "assets" not in data:
        logger.warning(f"Ignoring {name}: it seems invalid")
        return None
    return data


class ManifestExtractor:
    """Pulls the manifest out of an archive stream and parses it."""

    async def extract(
        self,
        stream: AsyncIterable[bytes],
        package: Optional[str] = None,
        include_contents: bool = False,
    ) -> ExtractedArchive:
        contents_name = contents_path(package) if include_contents and package else None

        async with aiofiles.tempfile.TemporaryDirectory() as tmpdirname:
            archive_path = Path(tmpdirname) / "artifact"
            async with aiofiles.open(archive_path, "wb") as f:
                async for chunk in stream:
                    await f.write(chunk)
            members = await asyncio.to_thread(_read_members, archive_path, contents_name)

        if "manifest" not in members:
            raise ManifestMissing("No DESCRIPTION file found in archive")

        manifest = parse_manifest(_decode_text(members["manifest"]))
        contents = _parse_contents(members.get("contents"), contents_name) if contents_name else None
        return ExtractedArchive(manifest=manifest, contents=contents)
