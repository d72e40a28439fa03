"""Write-only zip encoder for entries of unknown length.

Each entry is written as a local file header with general purpose bit 3
set, followed by the entry data as it arrives, followed by a data
descriptor carrying the CRC-32 and sizes. Nothing is ever seeked back to,
so the output can go straight to a socket or an HTTP response body. The
central directory is kept in memory (one small record per entry) and
written by ``finish()``.
"""

from dataclasses import dataclass
from dataclasses import field
from s3zipstream.errors import ArchiveLimitError
from s3zipstream.errors import ConfigurationError
from s3zipstream.errors import InvalidStateError
from s3zipstream.interfaces import IZipWriter
from zipfile import ZIP_DEFLATED
from zipfile import ZIP_STORED
from zope.interface import implementer

import datetime
import logging
import struct
import zlib


logger = logging.getLogger(__name__)

IDLE = "idle"
ENTRY_OPEN = "entry_open"
FINALIZED = "finalized"

FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8 = 0x0800

VERSION_DEFAULT = 20
VERSION_ZIP64 = 45
SYSTEM_UNIX = 3
EXTERNAL_ATTR_FILE = 0o100644 << 16

ZIP64_LIMIT = 0xFFFFFFFF
ZIP_FILECOUNT_LIMIT = 0xFFFF
ZIP64_EXTRA_ID = 0x0001

LOCAL_FILE_HEADER = struct.Struct("<4sHHHHHIIIHH")
LOCAL_FILE_HEADER_SIG = b"PK\x03\x04"
ZIP64_LOCAL_EXTRA = struct.Struct("<HHQQ")
DATA_DESCRIPTOR = struct.Struct("<4sIII")
DATA_DESCRIPTOR64 = struct.Struct("<4sIQQ")
DATA_DESCRIPTOR_SIG = b"PK\x07\x08"
CENTRAL_DIRECTORY_HEADER = struct.Struct("<4sBBHHHHHIIIHHHHHII")
CENTRAL_DIRECTORY_SIG = b"PK\x01\x02"
ZIP64_END_OF_CENTRAL_DIRECTORY = struct.Struct("<4sQHHIIQQQQ")
ZIP64_END_OF_CENTRAL_DIRECTORY_SIG = b"PK\x06\x06"
ZIP64_END_LOCATOR = struct.Struct("<4sIQI")
ZIP64_END_LOCATOR_SIG = b"PK\x06\x07"
END_OF_CENTRAL_DIRECTORY = struct.Struct("<4sHHHHIIH")
END_OF_CENTRAL_DIRECTORY_SIG = b"PK\x05\x06"


class ZipEntry:
    """Bookkeeping for one archive member."""

    __slots__ = (
        "name",
        "flags",
        "extract_version",
        "dos_time",
        "dos_date",
        "header_offset",
        "crc",
        "compressed_size",
        "uncompressed_size",
    )

    def __init__(self, name, flags, extract_version, dos_time, dos_date, header_offset):
        self.name = name
        self.flags = flags
        self.extract_version = extract_version
        self.dos_time = dos_time
        self.dos_date = dos_date
        self.header_offset = header_offset
        self.crc = 0
        self.compressed_size = 0
        self.uncompressed_size = 0

    def __repr__(self):
        return (
            f"<ZipEntry {self.name!r} offset={self.header_offset} "
            f"size={self.uncompressed_size} crc={self.crc:08x}>"
        )


@dataclass
class ArchiveState:
    offset: int = 0
    entries: list = field(default_factory=list)
    finalized: bool = False


def _encode_name(name):
    """Return the encoded entry name and the flag bits it needs."""
    try:
        return name.encode("ascii"), 0
    except UnicodeEncodeError:
        return name.encode("utf-8"), FLAG_UTF8


def _dos_timestamp(modified=None):
    """Return (dos_time, dos_date) for a datetime, default now."""
    if modified is None:
        modified = datetime.datetime.now()
    elif modified.tzinfo is not None:
        modified = modified.astimezone()
    if modified.year < 1980:
        return 0, (1 << 5) | 1
    if modified.year > 2107:
        return (23 << 11) | (59 << 5) | 29, (127 << 9) | (12 << 5) | 31
    dos_time = (modified.hour << 11) | (modified.minute << 5) | (modified.second // 2)
    dos_date = ((modified.year - 1980) << 9) | (modified.month << 5) | modified.day
    return dos_time, dos_date


@implementer(IZipWriter)
class StreamingZipWriter:
    """Incremental zip writer emitting bytes to ``sink`` as they are produced.

    ``sink`` is anything with a ``write(bytes)`` method. ``compression`` is
    ``zipfile.ZIP_STORED`` or ``zipfile.ZIP_DEFLATED`` and applies to every
    entry. With ``zip64`` enabled every local header announces zip64 sizes,
    so entries and archives may exceed 4 GiB; with it disabled, outgrowing
    the classic limits raises ArchiveLimitError.

    Not thread-safe: one entry is open at a time.
    """

    def __init__(
        self,
        sink,
        compression=ZIP_DEFLATED,
        compresslevel=None,
        zip64=True,
        comment=b"",
    ):
        if compression not in (ZIP_STORED, ZIP_DEFLATED):
            raise ConfigurationError(
                f"Unsupported compression method {compression!r}, "
                "expected ZIP_STORED or ZIP_DEFLATED"
            )
        if compresslevel is not None and not -1 <= compresslevel <= 9:
            raise ConfigurationError(
                f"compresslevel must be between -1 and 9, got {compresslevel}"
            )
        if isinstance(comment, str):
            comment = comment.encode("utf-8")
        if len(comment) > 0xFFFF:
            raise ConfigurationError("Archive comment is longer than 65535 bytes")

        self._sink = sink
        self.compression = compression
        self.compresslevel = compresslevel
        self.zip64 = zip64
        self.comment = comment
        self._archive = ArchiveState()
        self._entry = None
        self._compressor = None

    @property
    def state(self):
        if self._archive.finalized:
            return FINALIZED
        if self._entry is not None:
            return ENTRY_OPEN
        return IDLE

    @property
    def offset(self):
        """Number of bytes written to the sink so far."""
        return self._archive.offset

    @property
    def entries(self):
        """Completed entries, in archive order."""
        return tuple(self._archive.entries)

    def _require(self, state, operation):
        current = self.state
        if current != state:
            raise InvalidStateError(f"{operation}() is not allowed while {current}")

    def _write(self, data):
        if data:
            self._sink.write(data)
            self._archive.offset += len(data)

    def begin_entry(self, name, modified=None):
        self._require(IDLE, "begin_entry")
        if not name:
            raise ValueError("Entry name must not be empty")
        encoded, flags = _encode_name(name)
        if len(encoded) > 0xFFFF:
            raise ValueError(f"Entry name is longer than 65535 bytes: {name[:40]!r}...")
        header_offset = self._archive.offset
        if not self.zip64 and header_offset >= ZIP64_LIMIT:
            raise ArchiveLimitError(
                f"Entry {name!r} would start beyond 4 GiB and zip64 is disabled"
            )

        dos_time, dos_date = _dos_timestamp(modified)
        if self.zip64:
            extract_version = VERSION_ZIP64
            extra = ZIP64_LOCAL_EXTRA.pack(ZIP64_EXTRA_ID, 16, 0, 0)
            # sizes live in the zip64 extra and the data descriptor
            placeholder_size = ZIP64_LIMIT
        else:
            extract_version = VERSION_DEFAULT
            extra = b""
            placeholder_size = 0

        entry = ZipEntry(
            encoded,
            flags | FLAG_DATA_DESCRIPTOR,
            extract_version,
            dos_time,
            dos_date,
            header_offset,
        )
        header = LOCAL_FILE_HEADER.pack(
            LOCAL_FILE_HEADER_SIG,
            entry.extract_version,
            entry.flags,
            self.compression,
            dos_time,
            dos_date,
            0,
            placeholder_size,
            placeholder_size,
            len(encoded),
            len(extra),
        )
        self._write(header + encoded + extra)
        self._entry = entry
        if self.compression == ZIP_DEFLATED:
            level = (
                zlib.Z_DEFAULT_COMPRESSION
                if self.compresslevel is None
                else self.compresslevel
            )
            self._compressor = zlib.compressobj(level, zlib.DEFLATED, -15)
        logger.debug("Began entry %r at offset %d", name, header_offset)

    def write_chunk(self, data):
        self._require(ENTRY_OPEN, "write_chunk")
        if not data:
            return
        entry = self._entry
        entry.crc = zlib.crc32(data, entry.crc)
        entry.uncompressed_size += len(data)
        if self._compressor is not None:
            data = self._compressor.compress(data)
        entry.compressed_size += len(data)
        self._write(data)

    def end_entry(self):
        self._require(ENTRY_OPEN, "end_entry")
        entry = self._entry
        if self._compressor is not None:
            tail = self._compressor.flush()
            entry.compressed_size += len(tail)
            self._write(tail)
            self._compressor = None

        if self.zip64:
            descriptor = DATA_DESCRIPTOR64.pack(
                DATA_DESCRIPTOR_SIG,
                entry.crc,
                entry.compressed_size,
                entry.uncompressed_size,
            )
        else:
            if (
                entry.compressed_size >= ZIP64_LIMIT
                or entry.uncompressed_size >= ZIP64_LIMIT
            ):
                raise ArchiveLimitError(
                    f"Entry {entry.name!r} is larger than 4 GiB and zip64 is disabled"
                )
            descriptor = DATA_DESCRIPTOR.pack(
                DATA_DESCRIPTOR_SIG,
                entry.crc,
                entry.compressed_size,
                entry.uncompressed_size,
            )
        self._write(descriptor)
        self._archive.entries.append(entry)
        self._entry = None
        logger.debug(
            "Ended entry %r: %d bytes, %d compressed",
            entry.name,
            entry.uncompressed_size,
            entry.compressed_size,
        )

    def _central_directory_record(self, entry):
        uncompressed_size = entry.uncompressed_size
        compressed_size = entry.compressed_size
        header_offset = entry.header_offset
        zip64_fields = []
        if uncompressed_size >= ZIP64_LIMIT:
            zip64_fields.append(uncompressed_size)
            uncompressed_size = ZIP64_LIMIT
        if compressed_size >= ZIP64_LIMIT:
            zip64_fields.append(compressed_size)
            compressed_size = ZIP64_LIMIT
        if header_offset >= ZIP64_LIMIT:
            zip64_fields.append(header_offset)
            header_offset = ZIP64_LIMIT
        extra = b""
        if zip64_fields:
            extra = struct.pack(
                f"<HH{len(zip64_fields)}Q",
                ZIP64_EXTRA_ID,
                8 * len(zip64_fields),
                *zip64_fields,
            )

        record = CENTRAL_DIRECTORY_HEADER.pack(
            CENTRAL_DIRECTORY_SIG,
            entry.extract_version,
            SYSTEM_UNIX,
            entry.extract_version,
            entry.flags,
            self.compression,
            entry.dos_time,
            entry.dos_date,
            entry.crc,
            compressed_size,
            uncompressed_size,
            len(entry.name),
            len(extra),
            0,
            0,
            0,
            EXTERNAL_ATTR_FILE,
            header_offset,
        )
        return record + entry.name + extra

    def finish(self):
        self._require(IDLE, "finish")
        entries = self._archive.entries
        cd_offset = self._archive.offset
        for entry in entries:
            self._write(self._central_directory_record(entry))
        cd_size = self._archive.offset - cd_offset
        count = len(entries)

        if (
            count > ZIP_FILECOUNT_LIMIT
            or cd_offset >= ZIP64_LIMIT
            or cd_size >= ZIP64_LIMIT
        ):
            if not self.zip64:
                raise ArchiveLimitError(
                    f"Archive with {count} entries and a central directory at "
                    f"offset {cd_offset} needs zip64, which is disabled"
                )
            zip64_end_offset = self._archive.offset
            self._write(
                ZIP64_END_OF_CENTRAL_DIRECTORY.pack(
                    ZIP64_END_OF_CENTRAL_DIRECTORY_SIG,
                    ZIP64_END_OF_CENTRAL_DIRECTORY.size - 12,
                    (SYSTEM_UNIX << 8) | VERSION_ZIP64,
                    VERSION_ZIP64,
                    0,
                    0,
                    count,
                    count,
                    cd_size,
                    cd_offset,
                )
            )
            self._write(
                ZIP64_END_LOCATOR.pack(ZIP64_END_LOCATOR_SIG, 0, zip64_end_offset, 1)
            )

        self._write(
            END_OF_CENTRAL_DIRECTORY.pack(
                END_OF_CENTRAL_DIRECTORY_SIG,
                0,
                0,
                min(count, ZIP_FILECOUNT_LIMIT),
                min(count, ZIP_FILECOUNT_LIMIT),
                min(cd_size, ZIP64_LIMIT),
                min(cd_offset, ZIP64_LIMIT),
                len(self.comment),
            )
            + self.comment
        )
        self._archive.finalized = True
        logger.debug("Finished archive: %d entries, %d bytes", count, self.offset)
