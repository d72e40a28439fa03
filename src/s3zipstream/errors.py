class S3ZipStreamError(Exception):
    """Base class for all errors raised by s3zipstream."""


class ConfigurationError(S3ZipStreamError, ValueError):
    """Missing or invalid bucket, region, credentials or archive options."""


class ListingError(S3ZipStreamError):
    """Wraps a failed bucket listing call."""


class FetchError(S3ZipStreamError):
    """Wraps a failed object retrieval."""

    def __init__(self, message, key=None):
        super().__init__(message)
        self.key = key


class InvalidStateError(S3ZipStreamError):
    """A zip writer operation was called out of sequence."""


class ArchiveLimitError(S3ZipStreamError):
    """The archive outgrew the classic zip format and zip64 is disabled."""


class ArchiveCancelled(S3ZipStreamError):
    """The caller signalled that the archive is no longer wanted."""
