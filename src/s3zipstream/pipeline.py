from s3zipstream.errors import ArchiveCancelled
from s3zipstream.errors import ConfigurationError
from s3zipstream.errors import FetchError
from s3zipstream.fetcher import DEFAULT_CHUNK_SIZE
from s3zipstream.interfaces import IArchiveStreamer
from s3zipstream.zipwriter import StreamingZipWriter
from urllib.parse import quote
from zipfile import ZIP_DEFLATED
from zope.interface import implementer

import contextlib
import logging


logger = logging.getLogger(__name__)

ABORT = "abort"
SKIP = "skip"


def archive_headers(filename):
    """HTTP response headers announcing a streamed zip download."""
    safe = "".join(
        "_" if c in '\\"' or ord(c) < 0x20 or ord(c) == 0x7F else c
        for c in filename
    )
    try:
        safe.encode("latin-1")
        disposition = f'attachment; filename="{safe}"'
    except UnicodeEncodeError:
        fallback = safe.encode("ascii", "replace").decode("ascii").replace("?", "_")
        disposition = (
            f'attachment; filename="{fallback}"; '
            f"filename*=UTF-8''{quote(filename, safe='')}"
        )
    return [
        ("Content-Type", "application/zip"),
        ("Content-Disposition", disposition),
        ("Pragma", "public"),
        ("Cache-Control", "public, must-revalidate"),
        ("Content-Transfer-Encoding", "binary"),
    ]


class _ChunkBuffer:
    """Write sink collecting bytes until drained."""

    def __init__(self):
        self._parts = []

    def write(self, data):
        self._parts.append(bytes(data))

    def drain(self):
        data = b"".join(self._parts)
        self._parts = []
        return data


@implementer(IArchiveStreamer)
class BucketZipStreamer:
    """Lists a bucket and streams every object into one zip archive.

    Objects are fetched and written one at a time, in listing order.
    ``on_fetch_error`` decides what happens when an object cannot be opened:
    ``"abort"`` (default) propagates the FetchError and leaves the archive
    unfinished, ``"skip"`` logs it and moves on to the next object. A
    failure after an entry has started is always fatal.
    """

    def __init__(
        self,
        lister,
        fetcher,
        compression=ZIP_DEFLATED,
        compresslevel=None,
        zip64=True,
        chunk_size=DEFAULT_CHUNK_SIZE,
        on_fetch_error=ABORT,
    ):
        if on_fetch_error not in (ABORT, SKIP):
            raise ConfigurationError(
                f"on_fetch_error must be {ABORT!r} or {SKIP!r}, got {on_fetch_error!r}"
            )
        if chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
        self._lister = lister
        self._fetcher = fetcher
        self.compression = compression
        self.compresslevel = compresslevel
        self.zip64 = zip64
        self.chunk_size = chunk_size
        self.on_fetch_error = on_fetch_error

    def close(self):
        close_fetcher = getattr(self._fetcher, "close", None)
        if close_fetcher is not None:
            close_fetcher()

    def _make_writer(self, sink):
        return StreamingZipWriter(
            sink,
            compression=self.compression,
            compresslevel=self.compresslevel,
            zip64=self.zip64,
        )

    def stream(self, query, sink, cancel_event=None):
        writer = self._make_writer(sink)
        for _ in self._assemble(query, writer, cancel_event):
            pass

    def iter_archive(self, query, cancel_event=None):
        buffer = _ChunkBuffer()
        writer = self._make_writer(buffer)
        # an early close() releases the open fetch stream
        with contextlib.closing(self._assemble(query, writer, cancel_event)) as steps:
            for _ in steps:
                data = buffer.drain()
                if data:
                    yield data

    def _assemble(self, query, writer, cancel_event):
        """Drive lister, fetcher and writer; yields after every write step."""
        written = skipped = 0
        descriptors = iter(self._lister.list_all(query))
        while True:
            # checked before each pull so a cancelled run lists no further pages
            _check_cancelled(cancel_event)
            descriptor = next(descriptors, None)
            if descriptor is None:
                break
            name = descriptor.entry_name
            if not name:
                logger.debug("Skipping folder placeholder %s", descriptor.key)
                continue
            with contextlib.ExitStack() as stack:
                try:
                    stream = stack.enter_context(self._fetcher.open(descriptor))
                except FetchError as e:
                    if self.on_fetch_error == ABORT:
                        raise
                    logger.warning("Skipping %s: %s", descriptor.key, e)
                    skipped += 1
                    continue
                writer.begin_entry(name, modified=descriptor.last_modified)
                yield
                while chunk := stream.read(self.chunk_size):
                    writer.write_chunk(chunk)
                    yield
                    _check_cancelled(cancel_event)
                writer.end_entry()
            written += 1
            yield
        _check_cancelled(cancel_event)
        writer.finish()
        logger.info(
            "Streamed %d objects from bucket %s (%d skipped, %d bytes)",
            written,
            query.bucket,
            skipped,
            writer.offset,
        )
        yield


def _check_cancelled(cancel_event):
    if cancel_event is not None and cancel_event.is_set():
        raise ArchiveCancelled("Archive streaming was cancelled")
