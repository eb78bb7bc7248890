import base64
import hashlib
import io
import json
import tarfile
import time
import zipfile
import zlib
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

MAC_BUILT = "R 4.3.1; aarch64-apple-darwin20; 2023-10-01 12:00:00 UTC; unix"
WIN_BUILT = "R 4.3.1; x86_64-w64-mingw32; 2023-10-01 12:00:00 UTC; windows"
LINUX_BUILT = "R 4.3.1; x86_64-pc-linux-gnu; 2023-10-01 12:00:00 UTC; unix"
WASM_BUILT = "R 4.3.1; x86_64-pc-linux-gnu; 2023-10-01 12:00:00 UTC; unix"


def encode_compressed_json(data: Any) -> str:
    """Pack a builder field the way build servers send it: zlib JSON, base64."""
    payload = zlib.compress(json.dumps(data).encode("utf-8"))
    return base64.b64encode(payload).decode("ascii")


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_description(package: str = "mypkg", version: str = "1.0", **extra: str) -> str:
    fields = {
        "Package": package,
        "Version": version,
        "Title": f"Tools for {package}",
        "Description": "Does useful things\n    across two lines.",
        "Maintainer": "Jane Doe <jane@example.org>",
        "License": "MIT",
        "Imports": "jsonlite (>= 1.0), curl",
        "Suggests": "testthat",
        "Packaged": "2023-09-30 08:00:00 UTC; jane",
    }
    fields.update(extra)
    return "".join(f"{k}: {v}\n" for k, v in fields.items() if v is not None)


def make_tarball(
    package: str = "mypkg",
    description: Optional[str] = None,
    contents: Optional[Dict[str, Any]] = None,
    extra_files: Optional[Dict[str, bytes]] = None,
) -> bytes:
    """Gzipped tarball laid out like a built package: <package>/DESCRIPTION, ..."""
    files: Dict[str, bytes] = {}
    if description is not None:
        files[f"{package}/DESCRIPTION"] = description.encode("utf-8")
    if contents is not None:
        files[f"{package}/extra/contents.json"] = json.dumps(contents).encode("utf-8")
    files.update(extra_files or {})

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = int(time.time())
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def make_zip(package: str, description: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(f"{package}/DESCRIPTION", description)
        zf.writestr(f"{package}/R/{package}", "")
    return buf.getvalue()


def builder_fields(
    jobs: Optional[List[Dict[str, Any]]] = None,
    commit_id: str = "3f2a9c1",
    upstream: str = "https://github.com/jane/mypkg",
    distro: Optional[str] = None,
    registered: Optional[str] = None,
    status: str = "success",
    login: str = "jane",
) -> Dict[str, str]:
    if jobs is None:
        jobs = [
            {"config": "source", "check": "OK"},
            {"config": "linux-release", "check": "OK"},
        ]
    fields = {
        "Builder-Status": status,
        "Builder-Upstream": upstream,
        "Builder-Commit": encode_compressed_json({"id": commit_id, "message": "Bump version"}),
        "Builder-Maintainer": encode_compressed_json(
            {"name": "Jane Doe", "email": "jane@example.org", "login": login}
        ),
        "Builder-Jobs": encode_compressed_json(jobs),
    }
    if distro is not None:
        fields["Builder-Distro"] = distro
    if registered is not None:
        fields["Builder-Registered"] = registered
    return fields


async def stream_bytes(data: bytes, chunk_size: int = 1024) -> AsyncIterator[bytes]:
    for i in range(0, len(data), chunk_size):
        yield data[i:i + chunk_size]


async def read_all(stream: AsyncIterator[bytes]) -> bytes:
    return b"".join([chunk async for chunk in stream])


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    return d
