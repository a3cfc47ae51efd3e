class BlobStoreError(Exception):
    """Base class for errors raised by the blob store."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailure(BlobStoreError):
    """Malformed identifier, file name, or missing upload payload."""


class NotFound(BlobStoreError):
    """No blob record matches the identifier."""


class WriteFailure(BlobStoreError):
    """Storage became unavailable while a blob was being written."""


class StreamFailure(BlobStoreError):
    """Stored chunks could not be read back while streaming a blob."""
