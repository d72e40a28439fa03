from s3zipstream.errors import ArchiveCancelled
from s3zipstream.errors import ConfigurationError
from s3zipstream.errors import FetchError
from s3zipstream.errors import ListingError
from s3zipstream.fetcher import ObjectStream
from s3zipstream.interfaces import IArchiveStreamer
from s3zipstream.pipeline import archive_headers
from s3zipstream.pipeline import BucketZipStreamer
from s3zipstream.s3client import BucketQuery
from s3zipstream.s3client import ObjectDescriptor
from unittest import mock
from zipfile import ZIP_STORED

import contextlib
import io
import pytest
import threading
import zipfile


QUERY = BucketQuery(bucket="docs", region="us-east-1")


class FakeLister:
    def __init__(self, objects, fail_after=None):
        self.objects = objects
        self.fail_after = fail_after

    def list_all(self, query):
        for i, key in enumerate(self.objects):
            if self.fail_after is not None and i == self.fail_after:
                raise ListingError(f"S3 list failed for bucket={query.bucket}")
            yield ObjectDescriptor(
                bucket=query.bucket, key=key, size=len(self.objects[key])
            )


class FakeFetcher:
    """Serves in-memory content, recording open/close events."""

    def __init__(self, objects, fail_open=(), fail_read=(), chunk_size=3):
        self.objects = objects
        self.fail_open = set(fail_open)
        self.fail_read = set(fail_read)
        self.chunk_size = chunk_size
        self.events = []
        self.streams = []

    def _chunks(self, key):
        data = self.objects[key]
        for i in range(0, len(data), self.chunk_size):
            yield data[i : i + self.chunk_size]
            if key in self.fail_read:
                raise ConnectionResetError("connection reset")

    @contextlib.contextmanager
    def open(self, descriptor):
        key = descriptor.key
        if key in self.fail_open:
            self.events.append(("fail", key))
            raise FetchError(f"GET failed for key={key}: HTTP 404", key=key)
        self.events.append(("open", key))
        stream = ObjectStream(
            key, self._chunks(key), lambda: self.events.append(("close", key))
        )
        self.streams.append(stream)
        with stream:
            yield stream


def _streamer(objects, **kwargs):
    lister_kwargs = {}
    if "fail_listing_after" in kwargs:
        lister_kwargs["fail_after"] = kwargs.pop("fail_listing_after")
    fetcher_kwargs = {
        k: kwargs.pop(k) for k in ("fail_open", "fail_read") if k in kwargs
    }
    fetcher = FakeFetcher(objects, **fetcher_kwargs)
    streamer = BucketZipStreamer(FakeLister(objects, **lister_kwargs), fetcher, **kwargs)
    return streamer, fetcher


def _zip(data):
    return zipfile.ZipFile(io.BytesIO(data))


class TestStream:
    def test_interface_provided(self):
        streamer, _ = _streamer({})
        assert IArchiveStreamer.providedBy(streamer)

    def test_docs_bucket_scenario(self):
        objects = {"a/1.txt": b"hello", "b/2.txt": b"world"}
        streamer, _ = _streamer(objects)
        sink = io.BytesIO()

        streamer.stream(QUERY, sink)

        with _zip(sink.getvalue()) as zf:
            assert zf.namelist() == ["1.txt", "2.txt"]
            assert zf.read("1.txt") == b"hello"
            assert zf.read("2.txt") == b"world"

    def test_objects_processed_one_at_a_time(self):
        objects = {"a": b"1", "b": b"22", "c": b"333"}
        streamer, fetcher = _streamer(objects)
        streamer.stream(QUERY, io.BytesIO())
        assert fetcher.events == [
            ("open", "a"),
            ("close", "a"),
            ("open", "b"),
            ("close", "b"),
            ("open", "c"),
            ("close", "c"),
        ]

    def test_empty_listing_produces_empty_archive(self):
        streamer, _ = _streamer({})
        sink = io.BytesIO()
        streamer.stream(QUERY, sink)
        with _zip(sink.getvalue()) as zf:
            assert zf.namelist() == []

    def test_folder_placeholders_are_skipped(self):
        objects = {"photos/": b"", "photos/cat.jpg": b"meow"}
        streamer, fetcher = _streamer(objects)
        sink = io.BytesIO()
        streamer.stream(QUERY, sink)
        with _zip(sink.getvalue()) as zf:
            assert zf.namelist() == ["cat.jpg"]
        assert ("open", "photos/") not in fetcher.events

    def test_stored_compression(self):
        streamer, _ = _streamer({"k": b"abc" * 100}, compression=ZIP_STORED)
        sink = io.BytesIO()
        streamer.stream(QUERY, sink)
        with _zip(sink.getvalue()) as zf:
            info = zf.getinfo("k")
            assert info.compress_type == ZIP_STORED
            assert info.compress_size == info.file_size == 300

    def test_sink_receives_bytes_before_listing_ends(self):
        sizes_seen = []
        sink = io.BytesIO()

        class WatchingLister(FakeLister):
            def list_all(self, query):
                for descriptor in super().list_all(query):
                    sizes_seen.append(len(sink.getvalue()))
                    yield descriptor

        objects = {"a": b"first", "b": b"second"}
        streamer = BucketZipStreamer(WatchingLister(objects), FakeFetcher(objects))
        streamer.stream(QUERY, sink)
        assert sizes_seen[0] == 0
        assert sizes_seen[1] > 0


class TestFailures:
    def test_fetch_failure_aborts_by_default(self):
        objects = {"a/1.txt": b"one", "b/2.txt": b"two", "c/3.txt": b"three"}
        streamer, fetcher = _streamer(objects, fail_open={"b/2.txt"})
        sink = io.BytesIO()

        with pytest.raises(FetchError) as exc_info:
            streamer.stream(QUERY, sink)

        assert exc_info.value.key == "b/2.txt"
        data = sink.getvalue()
        assert data.startswith(b"PK\x03\x04")
        assert b"1.txt" in data
        assert b"PK\x05\x06" not in data
        assert b"PK\x01\x02" not in data
        assert ("open", "c/3.txt") not in fetcher.events

    def test_skip_policy_continues_after_unopenable_object(self, caplog):
        objects = {"a/1.txt": b"one", "b/2.txt": b"two", "c/3.txt": b"three"}
        streamer, _ = _streamer(objects, fail_open={"b/2.txt"}, on_fetch_error="skip")
        sink = io.BytesIO()

        with caplog.at_level("WARNING", logger="s3zipstream.pipeline"):
            streamer.stream(QUERY, sink)

        assert "b/2.txt" in caplog.text
        with _zip(sink.getvalue()) as zf:
            assert zf.namelist() == ["1.txt", "3.txt"]
            assert zf.read("3.txt") == b"three"

    @pytest.mark.parametrize("policy", ["abort", "skip"])
    def test_failure_mid_entry_is_always_fatal(self, policy):
        objects = {"a": b"good", "b": b"truncated content"}
        streamer, fetcher = _streamer(objects, fail_read={"b"}, on_fetch_error=policy)
        sink = io.BytesIO()

        with pytest.raises(FetchError):
            streamer.stream(QUERY, sink)

        assert b"PK\x05\x06" not in sink.getvalue()
        assert fetcher.events[-1] == ("close", "b")

    def test_listing_failure_before_any_entry_writes_nothing(self):
        streamer, _ = _streamer({"a": b"x"}, fail_listing_after=0)
        sink = io.BytesIO()
        with pytest.raises(ListingError):
            streamer.stream(QUERY, sink)
        assert sink.getvalue() == b""

    def test_listing_failure_midway_does_not_finish(self):
        streamer, _ = _streamer({"a": b"x", "b": b"y"}, fail_listing_after=1)
        sink = io.BytesIO()
        with pytest.raises(ListingError):
            streamer.stream(QUERY, sink)
        assert b"PK\x05\x06" not in sink.getvalue()

    def test_sink_failure_releases_stream(self):
        class BrokenSink:
            def write(self, data):
                raise BrokenPipeError("client went away")

        streamer, fetcher = _streamer({"a": b"x"})
        with pytest.raises(BrokenPipeError):
            streamer.stream(QUERY, BrokenSink())
        assert fetcher.events == [("open", "a"), ("close", "a")]

    def test_invalid_policy(self):
        with pytest.raises(ConfigurationError):
            _streamer({}, on_fetch_error="retry")

    def test_invalid_chunk_size(self):
        with pytest.raises(ConfigurationError):
            _streamer({}, chunk_size=0)


class TestCancellation:
    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        streamer, fetcher = _streamer({"a": b"x"})
        sink = io.BytesIO()
        with pytest.raises(ArchiveCancelled):
            streamer.stream(QUERY, sink, cancel_event=cancel)
        assert fetcher.events == []
        assert sink.getvalue() == b""

    def test_cancelled_mid_entry(self):
        cancel = threading.Event()

        class CancellingSink(io.BytesIO):
            def write(self, data):
                if len(self.getvalue()) > 40:
                    cancel.set()
                return super().write(data)

        objects = {"a": b"abcdefghijkl" * 10, "b": b"never fetched"}
        streamer, fetcher = _streamer(objects, chunk_size=4, compression=ZIP_STORED)
        sink = CancellingSink()

        with pytest.raises(ArchiveCancelled):
            streamer.stream(QUERY, sink, cancel_event=cancel)

        assert fetcher.events == [("open", "a"), ("close", "a")]
        assert b"PK\x05\x06" not in sink.getvalue()

    def test_cancelled_between_objects_stops_listing(self):
        cancel = threading.Event()
        pulled = []

        class RecordingLister(FakeLister):
            def list_all(self, query):
                for descriptor in super().list_all(query):
                    pulled.append(descriptor.key)
                    yield descriptor

        class CancellingFetcher(FakeFetcher):
            @contextlib.contextmanager
            def open(self, descriptor):
                with super().open(descriptor) as stream:
                    yield stream
                cancel.set()

        objects = {"a": b"first", "b": b"second"}
        streamer = BucketZipStreamer(RecordingLister(objects), CancellingFetcher(objects))

        with pytest.raises(ArchiveCancelled):
            streamer.stream(QUERY, io.BytesIO(), cancel_event=cancel)

        assert pulled == ["a"]


class TestClose:
    def test_close_delegates_to_fetcher(self):
        streamer, fetcher = _streamer({})
        fetcher.close = mock.Mock()
        streamer.close()
        fetcher.close.assert_called_once_with()

    def test_close_without_fetcher_close(self):
        streamer, _ = _streamer({})
        streamer.close()


class TestIterArchive:
    def test_chunks_form_valid_archive(self):
        objects = {"a/1.txt": b"hello", "b/2.txt": b"world"}
        streamer, _ = _streamer(objects, chunk_size=2)

        chunks = list(streamer.iter_archive(QUERY))

        assert len(chunks) > 2
        assert all(chunks)
        with _zip(b"".join(chunks)) as zf:
            assert zf.namelist() == ["1.txt", "2.txt"]
            assert zf.read("2.txt") == b"world"

    def test_matches_stream_output_structure(self):
        objects = {"x": b"same"}
        streamer, _ = _streamer(objects)
        sink = io.BytesIO()
        streamer.stream(QUERY, sink)
        iterated = b"".join(streamer.iter_archive(QUERY))
        assert len(iterated) == len(sink.getvalue())

    def test_closing_generator_releases_stream(self):
        objects = {"a": b"0123456789" * 10, "b": b"later"}
        streamer, fetcher = _streamer(objects, chunk_size=4, compression=ZIP_STORED)

        archive = streamer.iter_archive(QUERY)
        next(archive)
        next(archive)
        archive.close()

        assert fetcher.events == [("open", "a"), ("close", "a")]
        assert all(s.closed for s in fetcher.streams)


class TestArchiveHeaders:
    def test_ascii_filename(self):
        headers = dict(archive_headers("docs.zip"))
        assert headers["Content-Type"] == "application/zip"
        assert headers["Content-Disposition"] == 'attachment; filename="docs.zip"'
        assert headers["Content-Transfer-Encoding"] == "binary"
        assert headers["Cache-Control"] == "public, must-revalidate"
        assert headers["Pragma"] == "public"

    def test_quotes_are_neutralised(self):
        headers = dict(archive_headers('my"file.zip'))
        assert headers["Content-Disposition"] == 'attachment; filename="my_file.zip"'

    def test_non_latin_filename(self):
        headers = dict(archive_headers("отчёт.zip"))
        disposition = headers["Content-Disposition"]
        assert 'filename="_____.zip"' in disposition
        assert "filename*=UTF-8''%D0%BE" in disposition

    def test_control_characters_are_neutralised(self):
        headers = archive_headers("x.zip\r\nSet-Cookie: a=b")
        assert all("\r" not in v and "\n" not in v for _, v in headers)
        assert dict(headers)["Content-Disposition"] == (
            'attachment; filename="x.zip__Set-Cookie: a=b"'
        )

    def test_control_characters_in_non_latin_name(self):
        disposition = dict(archive_headers("отчёт\n.zip"))["Content-Disposition"]
        assert "\n" not in disposition
        assert "%0A" in disposition
