from botocore.exceptions import BotoCoreError
from s3zipstream.errors import FetchError
from s3zipstream.interfaces import IObjectFetcher
from zope.interface import implementer

import contextlib
import logging
import requests
import urllib3


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class ObjectStream:
    """Sequential, read-only byte stream over a chunk iterator.

    Transport errors raised while reading are reported as FetchError.
    ``close`` releases the underlying transfer resource and is idempotent.
    """

    def __init__(self, key, chunks, release, transport_errors=()):
        self.key = key
        self._chunks = iter(chunks)
        self._release = release
        self._transport_errors = (OSError,) + tuple(transport_errors)
        self._pending = b""
        self._exhausted = False
        self.closed = False

    def _next_chunk(self):
        if self.closed:
            raise ValueError(f"read from closed stream for key={self.key}")
        if self._exhausted:
            return b""
        try:
            while True:
                chunk = next(self._chunks, None)
                if chunk is None:
                    self._exhausted = True
                    return b""
                if chunk:
                    return chunk
        except self._transport_errors as e:
            logger.debug("Read failed for key=%s: %s", self.key, e)
            raise FetchError(
                f"Read failed for key={self.key}: {type(e).__name__}", key=self.key
            ) from e

    def read(self, size=-1):
        if size is None or size < 0:
            parts = [self._pending]
            self._pending = b""
            while chunk := self._next_chunk():
                parts.append(chunk)
            return b"".join(parts)
        while len(self._pending) < size:
            chunk = self._next_chunk()
            if not chunk:
                break
            self._pending += chunk
        data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def __iter__(self):
        if self._pending:
            data, self._pending = self._pending, b""
            yield data
        while chunk := self._next_chunk():
            yield chunk

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._release()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@implementer(IObjectFetcher)
class S3ObjectFetcher:
    """Streams objects with direct authenticated GetObject calls."""

    def __init__(self, s3_client, chunk_size=DEFAULT_CHUNK_SIZE):
        self._s3_client = s3_client
        self.chunk_size = chunk_size

    @contextlib.contextmanager
    def open(self, descriptor):
        body = self._s3_client.get_object(descriptor)
        stream = ObjectStream(
            descriptor.key,
            body.iter_chunks(self.chunk_size),
            body.close,
            transport_errors=(BotoCoreError,),
        )
        with stream:
            yield stream


@implementer(IObjectFetcher)
class PresignedObjectFetcher:
    """Streams objects through short-lived pre-signed URLs.

    The transfer itself is a plain HTTP GET made with a requests session, so
    it does not need the storage credentials.
    """

    def __init__(
        self,
        s3_client,
        session=None,
        expires_in=3600,
        timeout=120,
        chunk_size=DEFAULT_CHUNK_SIZE,
    ):
        self._s3_client = s3_client
        self._owns_session = session is None
        self._session = requests.Session() if session is None else session
        self.expires_in = expires_in
        self.timeout = timeout
        self.chunk_size = chunk_size

    @contextlib.contextmanager
    def open(self, descriptor):
        url = self._s3_client.presign(descriptor, self.expires_in)
        try:
            response = self._session.get(
                url, stream=True, timeout=self.timeout, allow_redirects=True
            )
        except requests.RequestException as e:
            logger.debug("GET failed for key=%s: %s", descriptor.key, e)
            raise FetchError(
                f"GET failed for key={descriptor.key}: {type(e).__name__}",
                key=descriptor.key,
            ) from e
        stream = ObjectStream(
            descriptor.key,
            # raw bytes: a stored Content-Encoding is part of the object
            response.raw.stream(self.chunk_size, decode_content=False),
            response.close,
            transport_errors=(requests.RequestException, urllib3.exceptions.HTTPError),
        )
        with stream:
            if response.status_code >= 400:
                raise FetchError(
                    f"GET failed for key={descriptor.key}: "
                    f"HTTP {response.status_code}",
                    key=descriptor.key,
                )
            yield stream

    def close(self):
        """Close the HTTP session if this fetcher created it."""
        if self._owns_session:
            self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
