"""
Streaming digest computation, kept apart from any store so it can be
composed with writes through tee_stream and tested on its own.
"""

from __future__ import annotations

import hashlib
import re
from typing import AsyncIterable, AsyncIterator, Iterable

from cranlike.domain.errors import ValidationError

_KEY_RE = re.compile(r"^(?:[0-9a-f]{32}|[0-9a-f]{64})$")

# Content keys are hex digests; their length selects the algorithm.
KEY_ALGORITHMS = {32: "md5", 64: "sha256"}


def normalize_key(key: str) -> str:
    """Lower-case a content key and check it is a 32 or 64 character hex digest."""
    normalized = (key or "").strip().lower()
    if not _KEY_RE.match(normalized):
        raise ValidationError(f"Invalid content key: {key!r} (expected 32 or 64 hex characters)")
    return normalized


def algorithm_for_key(key: str) -> str:
    return KEY_ALGORITHMS[len(key)]


class DigestTee:
    """Feeds every chunk to several hash algorithms at once and counts bytes."""

    def __init__(self, algorithms: Iterable[str] = ("md5", "sha256")):
        self._hashers = {name: hashlib.new(name) for name in algorithms}
        self.length = 0

    def update(self, chunk: bytes) -> None:
        for hasher in self._hashers.values():
            hasher.update(chunk)
        self.length += len(chunk)

    def hexdigest(self, algorithm: str) -> str:
        return self._hashers[algorithm].hexdigest()

    def digest_for_key(self, key: str) -> str:
        """Digest computed with the algorithm the key length implies."""
        return self.hexdigest(algorithm_for_key(key))


async def tee_stream(stream: AsyncIterable[bytes], tee: DigestTee) -> AsyncIterator[bytes]:
    """Pass chunks through unchanged while feeding them to the tee."""
    async for chunk in stream:
        if chunk:
            tee.update(chunk)
            yield chunk
