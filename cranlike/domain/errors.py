"""
Typed errors raised by the ingestion engine.

Every failure surfaced to uploaders derives from RegistryError so the HTTP
layer can map the whole family onto client-facing responses in one place.
"""


class RegistryError(Exception):
    """Base exception for all registry errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TransportError(RegistryError):
    """Raised when the upload stream fails or is interrupted."""


class ChecksumMismatch(RegistryError):
    """Raised when stored bytes do not hash to the declared content key."""

    def __init__(self, key: str, actual: str) -> None:
        self.key = key
        self.actual = actual
        super().__init__(f"Checksum mismatch: content key {key} does not match computed digest {actual}")


class ManifestMissing(RegistryError):
    """Raised when an archive has no manifest at the expected location."""


class ManifestParseError(RegistryError):
    """Raised when the manifest text is malformed."""


class ValidationError(RegistryError):
    """Raised when an upload violates one of the per-type rules."""


class ConsistencyError(RegistryError):
    """Raised when stored records for one canonical key look corrupted."""


class NotFoundError(RegistryError):
    """Raised when a referenced publisher, package or version does not exist."""
