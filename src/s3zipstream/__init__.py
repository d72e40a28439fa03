from s3zipstream.errors import ArchiveCancelled
from s3zipstream.errors import ArchiveLimitError
from s3zipstream.errors import ConfigurationError
from s3zipstream.errors import FetchError
from s3zipstream.errors import InvalidStateError
from s3zipstream.errors import ListingError
from s3zipstream.errors import S3ZipStreamError
from s3zipstream.fetcher import PresignedObjectFetcher
from s3zipstream.fetcher import S3ObjectFetcher
from s3zipstream.pipeline import archive_headers
from s3zipstream.pipeline import BucketZipStreamer
from s3zipstream.s3client import BucketQuery
from s3zipstream.s3client import ObjectDescriptor
from s3zipstream.s3client import S3Client
from s3zipstream.zipwriter import StreamingZipWriter


__all__ = [
    "ArchiveCancelled",
    "ArchiveLimitError",
    "BucketQuery",
    "BucketZipStreamer",
    "ConfigurationError",
    "FetchError",
    "InvalidStateError",
    "ListingError",
    "ObjectDescriptor",
    "PresignedObjectFetcher",
    "S3Client",
    "S3ObjectFetcher",
    "S3ZipStreamError",
    "StreamingZipWriter",
    "archive_headers",
]
