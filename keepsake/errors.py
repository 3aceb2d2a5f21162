"""
Exceptions shared by the storage layer, lifecycle managers and routes.

Each error carries the HTTP status the API reports it with; the handlers in
``keepsake.app`` turn them into ``{"success": false, "message": ...}`` bodies.
"""

from __future__ import annotations


class KeepsakeError(Exception):
    """Base class for errors the API knows how to report."""

    status_code = 500

    def __init__(self, message: str, *, cause: Exception | None = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class ValidationError(KeepsakeError):
    """Missing or invalid input."""

    status_code = 400


class UnsupportedMediaType(ValidationError):
    """Raised when an upload is neither an image nor a video."""

    def __init__(self, content_type: str | None):
        self.content_type = content_type
        super().__init__("Unsupported content type for media")


class NotFound(KeepsakeError):
    """A record or stored object does not exist."""

    status_code = 404


class ObjectNotFound(NotFound):
    """Raised when a bucket holds no object with the given id."""

    def __init__(self, bucket: str, object_id: str):
        self.bucket = bucket
        self.object_id = object_id
        super().__init__(f"Object '{object_id}' not found in bucket '{bucket}'")


class BlobStoreError(KeepsakeError):
    """Raised when the blob backend fails underneath an operation."""


class StorageWriteError(BlobStoreError):
    """Raised when an upload cannot be written to the blob store."""

    def __init__(self, bucket: str, filename: str | None, cause: Exception | None = None):
        self.bucket = bucket
        self.filename = filename
        super().__init__(
            f"Failed to write '{filename or 'unnamed'}' to bucket '{bucket}'",
            cause=cause,
        )


class ReadError(BlobStoreError):
    """Raised when stored chunks are missing or damaged during a read."""

    def __init__(self, bucket: str, object_id: str, detail: str):
        self.bucket = bucket
        self.object_id = object_id
        super().__init__(f"Cannot read object '{object_id}' in '{bucket}': {detail}")


class RecordStoreError(KeepsakeError):
    """Raised when the record database rejects a read or write."""


class StoreUnavailable(KeepsakeError):
    """Raised when a store is used before its connection exists."""

    status_code = 503
