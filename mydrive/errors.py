from typing import Dict, Optional


class VaultError(Exception):
    """Base class for every failure the storage layer reports to callers."""

    kind = "vault_error"
    status_code = 500
    message = "Storage operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class ValidationError(VaultError):
    kind = "validation_error"
    status_code = 400
    message = "No files uploaded"


class Unauthorized(VaultError):
    kind = "unauthorized"
    status_code = 401
    message = "Unauthorized"


class NotFoundError(VaultError):
    kind = "not_found"
    status_code = 404
    message = "Not found"


class RecordNotFound(NotFoundError):
    """Raised when no metadata row exists for an id."""

    message = "File not found"


class BlobNotFound(NotFoundError):
    """Raised by the blob store when a stored name has no file on disk."""

    kind = "blob_not_found"
    message = "Blob not found"


class ConflictError(VaultError):
    """Raised when an id or stored name is already taken."""

    kind = "conflict"
    status_code = 409
    message = "Identifier collision"


class BlobMissing(VaultError):
    """The index has a record but the bytes are gone from disk.

    This is an integrity-drift signal and is kept distinct from
    :class:`RecordNotFound` so clients can tell "never existed" apart from
    "registered but missing".
    """

    kind = "blob_missing"
    status_code = 410
    message = "File missing on disk"


class WriteError(VaultError):
    kind = "write_error"
    status_code = 500
    message = "Failed to write file"


class MetadataError(VaultError):
    kind = "index_error"
    status_code = 500
    message = "Metadata index failure"


class GenerationError(VaultError):
    kind = "generation_error"
    status_code = 503
    message = "Could not generate identifier"
