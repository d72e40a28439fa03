from dotenv import dotenv_values
from dotenv import find_dotenv
from s3zipstream.errors import ConfigurationError
from zipfile import ZIP_DEFLATED
from zipfile import ZIP_STORED

import os
import ZConfig.datatypes


ENV_PREFIX = "S3ZIPSTREAM_"

_COMPRESSION = {"stored": ZIP_STORED, "deflated": ZIP_DEFLATED}
_FETCH_MODES = ("direct", "presigned")
_FETCH_ERROR_POLICIES = ("abort", "skip")
_datatypes = ZConfig.datatypes.Registry()


def _convert(key, value, datatype, minimum=None):
    """Convert a setting with a stock ZConfig datatype."""
    try:
        converted = _datatypes.get(datatype)(str(value).strip())
    except ValueError as e:
        raise ConfigurationError(f"{key}: invalid {datatype} {value!r}: {e}") from e
    if minimum is not None and converted < minimum:
        raise ConfigurationError(f"{key}: must be at least {minimum}, got {converted}")
    return converted


def _choice(key, value, choices):
    text = str(value).strip().lower()
    if text not in choices:
        raise ConfigurationError(
            f"{key}: expected one of {', '.join(choices)}, got {value!r}"
        )
    return text


class S3ZipStreamFactory:
    """Builds a BucketZipStreamer from flat key/value settings.

    Keys use the dashed names below. All values are validated when the
    factory is created, so bad settings fail before any network activity.
    """

    def __init__(self, settings):
        settings = {k: v for k, v in settings.items() if v not in (None, "")}
        self.settings = settings

        def get(key, default=None):
            return settings.get(key, default)

        for key in ("bucket-name", "s3-region"):
            if key not in settings:
                raise ConfigurationError(f"Missing required setting {key!r}")

        self.bucket_name = get("bucket-name")
        self.s3_region = get("s3-region")
        self.s3_prefix = get("s3-prefix", "")
        self.s3_delimiter = get("s3-delimiter", "")
        self.s3_marker = get("s3-marker", "")
        self.s3_endpoint_url = get("s3-endpoint-url")
        self.s3_access_key = get("s3-access-key")
        self.s3_secret_key = get("s3-secret-key")
        if bool(self.s3_access_key) != bool(self.s3_secret_key):
            raise ConfigurationError(
                "s3-access-key and s3-secret-key must be given together"
            )
        self.s3_use_ssl = _convert("s3-use-ssl", get("s3-use-ssl", True), "boolean")
        self.s3_addressing_style = _choice(
            "s3-addressing-style",
            get("s3-addressing-style", "auto"),
            ("auto", "path", "virtual"),
        )
        self.s3_connect_timeout = _convert(
            "s3-connect-timeout", get("s3-connect-timeout", 60), "integer", minimum=1
        )
        self.s3_read_timeout = _convert(
            "s3-read-timeout", get("s3-read-timeout", 60), "integer", minimum=1
        )
        self.page_size = _convert(
            "page-size", get("page-size", 1000), "integer", minimum=1
        )
        self.fetch_mode = _choice(
            "fetch-mode", get("fetch-mode", "direct"), _FETCH_MODES
        )
        self.presign_expiration = int(
            _convert(
                "presign-expiration",
                get("presign-expiration", "1h"),
                "time-interval",
                minimum=1,
            )
        )
        self.request_timeout = int(
            _convert(
                "request-timeout", get("request-timeout", "2m"), "time-interval", minimum=1
            )
        )
        self.compression = _COMPRESSION[
            _choice("compression", get("compression", "deflated"), tuple(_COMPRESSION))
        ]
        self.compress_level = get("compress-level")
        if self.compress_level is not None:
            self.compress_level = _convert("compress-level", self.compress_level, "integer")
            if not -1 <= self.compress_level <= 9:
                raise ConfigurationError(
                    f"compress-level: must be between -1 and 9, got {self.compress_level}"
                )
        self.zip64 = _convert("zip64", get("zip64", True), "boolean")
        self.chunk_size = _convert(
            "chunk-size", get("chunk-size", "64KB"), "byte-size", minimum=1
        )
        self.on_fetch_error = _choice(
            "on-fetch-error", get("on-fetch-error", "abort"), _FETCH_ERROR_POLICIES
        )

    def query(self):
        from s3zipstream.s3client import BucketQuery

        return BucketQuery(
            bucket=self.bucket_name,
            region=self.s3_region,
            prefix=self.s3_prefix,
            delimiter=self.s3_delimiter,
            marker=self.s3_marker,
        )

    def open(self):
        from s3zipstream.fetcher import PresignedObjectFetcher
        from s3zipstream.fetcher import S3ObjectFetcher
        from s3zipstream.pipeline import BucketZipStreamer
        from s3zipstream.s3client import S3Client

        s3_client = S3Client(
            region_name=self.s3_region,
            endpoint_url=self.s3_endpoint_url,
            aws_access_key_id=self.s3_access_key,
            aws_secret_access_key=self.s3_secret_key,
            use_ssl=self.s3_use_ssl,
            addressing_style=self.s3_addressing_style,
            connect_timeout=self.s3_connect_timeout,
            read_timeout=self.s3_read_timeout,
            page_size=self.page_size,
        )
        if self.fetch_mode == "presigned":
            fetcher = PresignedObjectFetcher(
                s3_client,
                expires_in=self.presign_expiration,
                timeout=self.request_timeout,
                chunk_size=self.chunk_size,
            )
        else:
            fetcher = S3ObjectFetcher(s3_client, chunk_size=self.chunk_size)
        return BucketZipStreamer(
            s3_client,
            fetcher,
            compression=self.compression,
            compresslevel=self.compress_level,
            zip64=self.zip64,
            chunk_size=self.chunk_size,
            on_fetch_error=self.on_fetch_error,
        )


def _settings_from_variables(variables):
    settings = {}
    for name, value in variables.items():
        if name.startswith(ENV_PREFIX):
            key = name[len(ENV_PREFIX) :].lower().replace("_", "-")
            settings[key] = value
    return settings


def from_env(environ=None, dotenv_path=None):
    """Create a factory from S3ZIPSTREAM_* variables.

    Values from a ``.env`` file (``dotenv_path``, or one found from the
    current directory) are overridden by the process environment.
    """
    if environ is None:
        environ = os.environ
    path = dotenv_path or find_dotenv(usecwd=True)
    variables = {}
    if path and os.path.exists(path):
        variables.update(dotenv_values(path))
    variables.update(environ)
    return S3ZipStreamFactory(_settings_from_variables(variables))
