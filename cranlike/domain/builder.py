"""
Decoding of builder metadata sent next to an upload.

Builder fields travel as request headers (raw uploads) or form fields
(multipart uploads) whose names start with a reserved prefix. Structured
fields are base64-encoded, compressed JSON. A field that is absent or fails
to decode yields an empty value, never an error.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import zlib
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError as SchemaError

from cranlike.domain.models import (
    BuilderMetadata,
    BuildJob,
    CommitInfo,
    MaintainerInfo,
    RegisteredFlag,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "builder-"

# zlib auto-detects gzip and zlib headers with this window setting.
_AUTO_WBITS = 32 + zlib.MAX_WBITS


def collect_prefixed(fields: Mapping[str, Any], prefix: str = DEFAULT_PREFIX) -> Dict[str, str]:
    """Return prefixed fields lower-cased and with the prefix removed."""
    prefix = prefix.lower()
    out: Dict[str, str] = {}
    for key, value in fields.items():
        name = key.lower()
        if name.startswith(prefix) and isinstance(value, str):
            out[name[len(prefix):]] = value
    return out


def decode_compressed_json(value: Optional[str]) -> Any:
    """
    Decode base64 (standard or URL-safe alphabet), decompress and parse JSON.

    Returns None when the value is empty or cannot be decoded.
    """
    if not value or not value.strip():
        return None
    text = value.strip().replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        raw = base64.b64decode(text)
        return json.loads(zlib.decompress(raw, _AUTO_WBITS).decode("utf-8"))
    except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Ignoring undecodable builder field: {e}")
        return None


def decode_commit(value: Optional[str]) -> CommitInfo:
    data = decode_compressed_json(value)
    if isinstance(data, dict):
        try:
            return CommitInfo.model_validate(data)
        except SchemaError as e:
            logger.warning(f"Ignoring malformed builder commit: {e}")
    return CommitInfo()


def decode_maintainer(value: Optional[str]) -> MaintainerInfo:
    data = decode_compressed_json(value)
    if isinstance(data, dict):
        try:
            return MaintainerInfo.model_validate(data)
        except SchemaError as e:
            logger.warning(f"Ignoring malformed builder maintainer: {e}")
    return MaintainerInfo()


def decode_jobs(value: Optional[str]) -> List[BuildJob]:
    data = decode_compressed_json(value)
    if not isinstance(data, list):
        return []
    try:
        return [BuildJob.model_validate(job) for job in data]
    except SchemaError as e:
        logger.warning(f"Ignoring malformed builder jobs: {e}")
        return []


def decode_registered(value: Optional[str]) -> RegisteredFlag:
    if value is None:
        return RegisteredFlag.UNSET
    if value.strip() == "false":
        return RegisteredFlag.FALSE
    return RegisteredFlag.TRUE


def parse_builder_fields(fields: Mapping[str, Any], prefix: str = DEFAULT_PREFIX) -> BuilderMetadata:
    """Build typed builder metadata from request headers or form fields."""
    raw = collect_prefixed(fields, prefix)
    return BuilderMetadata(
        upstream=raw.get("upstream") or None,
        devurl=raw.get("devurl") or None,
        distro=raw.get("distro") or None,
        status=raw.get("status"),
        buildurl=raw.get("buildurl") or None,
        commit=decode_commit(raw.get("commit")),
        maintainer=decode_maintainer(raw.get("maintainer")),
        jobs=decode_jobs(raw.get("jobs")),
        registered=decode_registered(raw.get("registered")),
    )
