"""Exception taxonomy for the CMS backend and its HTTP status mapping."""

from __future__ import annotations


class CmsError(Exception):
    """Base for all CMS backend errors."""

    status_code = 500
    public_message: str | None = "Internal server error"

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)

    def client_message(self) -> str:
        """Message safe to show to API clients."""
        return self.public_message or self.message


class DatastoreError(CmsError):
    """Any failure talking to or executing against the relational datastore."""

    public_message = "Database error"


class ReferentialError(DatastoreError):
    """A foreign-key constraint rejected the write (e.g. unknown user id)."""


class SerializationError(CmsError):
    """Stored JSON could not be decoded."""

    public_message = "JSON processing error"


class AuditError(CmsError):
    """Audit log store failures not coming from the datastore itself."""


class AuditPayloadTooLargeError(AuditError):
    """A single audit action serializes larger than the row size limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Audit action is {size} bytes, limit is {limit}")


class AuditCleanupError(AuditError):
    """One or more shards could not be dropped during retention cleanup."""

    def __init__(self, failures: dict[str, Exception]):
        self.failures = failures
        names = ", ".join(sorted(failures))
        super().__init__(f"Failed to clean up audit shards: {names}")


class AuthError(CmsError):
    """Authentication failed."""

    status_code = 401
    public_message = None


class PermissionDeniedError(CmsError):
    """Authenticated user lacks the required role."""

    status_code = 403
    public_message = None


class RequestValidationFailed(CmsError):
    """Client input failed domain validation."""

    status_code = 400
    public_message = None


class NotFoundError(CmsError):
    status_code = 404
    public_message = None


class ConflictError(CmsError):
    status_code = 409
    public_message = None


class StorageError(CmsError):
    """Object or key-value storage failure."""

    public_message = "Storage error"


class BackupError(CmsError):
    public_message = None
