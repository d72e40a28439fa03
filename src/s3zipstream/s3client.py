from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from dataclasses import dataclass
from s3zipstream.errors import ConfigurationError
from s3zipstream.errors import FetchError
from s3zipstream.errors import ListingError
from s3zipstream.interfaces import IObjectLister
from zope.interface import implementer

import boto3
import datetime
import logging
import posixpath


logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000
MAX_PRESIGN_EXPIRATION = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class BucketQuery:
    """Which bucket to archive and how to filter its listing."""

    bucket: str
    region: str
    prefix: str = ""
    delimiter: str = ""
    marker: str = ""

    def __post_init__(self):
        if not self.bucket:
            raise ConfigurationError("BucketQuery requires a bucket name")
        if not self.region:
            raise ConfigurationError("BucketQuery requires a region")

    def list_params(self):
        params = {"Bucket": self.bucket}
        if self.prefix:
            params["Prefix"] = self.prefix
        if self.delimiter:
            params["Delimiter"] = self.delimiter
        if self.marker:
            params["Marker"] = self.marker
        return params


@dataclass(frozen=True)
class ObjectDescriptor:
    """One listed object. ``size`` is None when the listing did not report it."""

    bucket: str
    key: str
    size: int | None = None
    last_modified: datetime.datetime | None = None
    etag: str = ""

    @property
    def marker(self):
        # ListObjects resumes strictly after the given marker key
        return self.key

    @property
    def entry_name(self):
        return posixpath.basename(self.key)


def _error_code(e):
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "Unknown")
    return type(e).__name__


@implementer(IObjectLister)
class S3Client:
    """Thin boto3 wrapper providing bucket listings and object reads."""

    def __init__(
        self,
        region_name,
        endpoint_url=None,
        aws_access_key_id=None,
        aws_secret_access_key=None,
        use_ssl=True,
        addressing_style="auto",
        connect_timeout=60,
        read_timeout=60,
        page_size=DEFAULT_PAGE_SIZE,
    ):
        if not region_name:
            raise ConfigurationError("S3Client requires a region")
        if bool(aws_access_key_id) != bool(aws_secret_access_key):
            raise ConfigurationError(
                "aws_access_key_id and aws_secret_access_key must be given together"
            )
        if addressing_style not in ("auto", "path", "virtual"):
            raise ConfigurationError(
                f"Unknown addressing style {addressing_style!r}, "
                "expected 'auto', 'path' or 'virtual'"
            )
        if page_size < 1:
            raise ConfigurationError(f"page_size must be positive, got {page_size}")

        self.region_name = region_name
        self.page_size = page_size

        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

        kwargs = {"config": config, "region_name": region_name}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if aws_access_key_id:
            kwargs["aws_access_key_id"] = aws_access_key_id
            kwargs["aws_secret_access_key"] = aws_secret_access_key
        kwargs["use_ssl"] = use_ssl
        if not use_ssl:
            logger.warning(
                "S3 SSL is disabled: data and credentials are transmitted in cleartext"
            )

        self._client = boto3.client("s3", **kwargs)

    def list_all(self, query):
        if query.region != self.region_name:
            raise ConfigurationError(
                f"Query region {query.region!r} does not match "
                f"client region {self.region_name!r}"
            )
        paginator = self._client.get_paginator("list_objects")
        pages = paginator.paginate(
            **query.list_params(),
            PaginationConfig={"PageSize": self.page_size},
        )
        try:
            for page in pages:
                for obj in page.get("Contents", []):
                    yield ObjectDescriptor(
                        bucket=query.bucket,
                        key=obj["Key"],
                        size=obj.get("Size"),
                        last_modified=obj.get("LastModified"),
                        etag=obj.get("ETag", "").strip('"'),
                    )
        except (ClientError, BotoCoreError) as e:
            logger.debug("S3 list failed for bucket=%s: %s", query.bucket, e)
            raise ListingError(
                f"S3 list failed for bucket={query.bucket}: {_error_code(e)}"
            ) from e

    def get_object(self, descriptor):
        """Return the streaming body of a direct authenticated GET."""
        try:
            response = self._client.get_object(
                Bucket=descriptor.bucket, Key=descriptor.key
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_fetch_error(e, "get", descriptor.key)
        return response["Body"]

    def presign(self, descriptor, expires_in=3600):
        """Return a time-limited GET URL for the object."""
        expires_in = max(1, min(int(expires_in), MAX_PRESIGN_EXPIRATION))
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": descriptor.bucket, "Key": descriptor.key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_fetch_error(e, "presign", descriptor.key)

    def _wrap_fetch_error(self, e, operation, key):
        """Wrap a botocore error in FetchError, logging the original at DEBUG."""
        logger.debug("S3 %s failed for key=%s: %s", operation, key, e)
        raise FetchError(
            f"S3 {operation} failed for key={key}: {_error_code(e)}", key=key
        ) from e
