"""Bounded extraction of module zip archives.

This module reads module zip entries into memory while defending against
decompression bombs: an entry whose declared uncompressed size exceeds the
limit is rejected before any decompression, and an entry that produces
more bytes than it declared is rejected while streaming.

Entries are inflated from their raw compressed bytes with a bounded
``zlib`` decompressor, so data running past the size recorded in the
headers is reported as SizeExceededError.
"""

from __future__ import annotations

import io
import logging
import struct
import zipfile
import zlib
from typing import IO, Dict, Optional

from ..core.errors import DecodeError, EntryOpenError, SizeExceededError

# Maximum uncompressed size of a single entry, in bytes
DEFAULT_MAX_FILE_SIZE = 30_000_000

# Maximum number of entries read from one archive
DEFAULT_MAX_ENTRIES = 50_000

READ_CHUNK_SIZE = 64 * 1024

# Magic bytes for zip detection
ZIP_MAGIC = [
    b"PK\x03\x04",  # Standard ZIP
    b"PK\x05\x06",  # Empty ZIP
]

# Local file header: signature, versions, flags, method, time, date, CRC,
# sizes, then the name and extra field lengths
LOCAL_HEADER = struct.Struct("<4s5H3I2H")
LOCAL_HEADER_SIGNATURE = b"PK\x03\x04"

SUPPORTED_METHODS = (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED)

# Errors raised for damaged or unreadable entries
_ZIP_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError)


def is_zip_archive(data: bytes) -> bool:
    """Check whether a payload starts with a zip signature.

    Args:
        data: Raw payload bytes.

    Returns:
        True if the payload looks like a zip archive.
    """
    return any(data.startswith(magic) for magic in ZIP_MAGIC)


def open_entry(archive: zipfile.ZipFile, entry: zipfile.ZipInfo) -> IO[bytes]:
    """Open a reader over one entry's raw compressed bytes.

    Args:
        archive: Open zip archive containing the entry.
        entry: Entry to open.

    Returns:
        Binary file object producing the entry's compressed bytes.

    Raises:
        EntryOpenError: If the entry is encrypted, uses an unsupported
            compression method, or its local header or data is missing.
    """
    name = entry.filename
    if entry.flag_bits & 0x1:
        raise EntryOpenError(f"open {name!r}: encrypted entries are not supported")
    if entry.compress_type not in SUPPORTED_METHODS:
        raise EntryOpenError(f"open {name!r}: unsupported compression method {entry.compress_type}")

    try:
        fp = archive.fp
        fp.seek(entry.header_offset)
        header = fp.read(LOCAL_HEADER.size)
        if len(header) != LOCAL_HEADER.size:
            raise EntryOpenError(f"open {name!r}: truncated local file header")
        fields = LOCAL_HEADER.unpack(header)
        if fields[0] != LOCAL_HEADER_SIGNATURE:
            raise EntryOpenError(f"open {name!r}: bad local file header signature")
        name_length, extra_length = fields[-2], fields[-1]
        fp.seek(name_length + extra_length, io.SEEK_CUR)
        raw = fp.read(entry.compress_size)
    except _ZIP_READ_ERRORS as e:
        raise EntryOpenError(f"open {name!r}: {e}") from e

    if len(raw) != entry.compress_size:
        raise EntryOpenError(
            f"open {name!r}: expected {entry.compress_size} compressed bytes, found {len(raw)}"
        )
    return io.BytesIO(raw)


def _read_bounded(stream: IO[bytes], entry: zipfile.ZipInfo) -> bytes:
    name = entry.filename
    declared = entry.file_size
    inflater = None
    if entry.compress_type == zipfile.ZIP_DEFLATED:
        inflater = zlib.decompressobj(-zlib.MAX_WBITS)

    buf = bytearray()
    while True:
        try:
            chunk = stream.read(READ_CHUNK_SIZE)
        except _ZIP_READ_ERRORS as e:
            raise DecodeError(f"read {name!r}: {e}") from e
        if not chunk:
            break

        if inflater is None:
            buf.extend(chunk)
            if len(buf) > declared:
                raise SizeExceededError(name, len(buf), declared)
            continue

        while chunk and not inflater.eof:
            try:
                # Never inflate more than one byte past the declared size
                buf.extend(inflater.decompress(chunk, declared + 1 - len(buf)))
            except zlib.error as e:
                raise DecodeError(f"read {name!r}: {e}") from e
            if len(buf) > declared:
                raise SizeExceededError(name, len(buf), declared)
            chunk = inflater.unconsumed_tail

    if inflater is not None and not inflater.eof:
        raise DecodeError(f"read {name!r}: unexpected end of compressed data")
    if len(buf) != declared:
        raise DecodeError(f"read {name!r}: expected {declared} bytes, got {len(buf)}")
    if zlib.crc32(buf) != entry.CRC:
        raise DecodeError(f"read {name!r}: bad CRC-32")
    return bytes(buf)


def read_entry(
    archive: zipfile.ZipFile,
    entry: zipfile.ZipInfo,
    max_size: int = DEFAULT_MAX_FILE_SIZE,
    logger: Optional[logging.Logger] = None,
) -> bytes:
    """Read one archive entry fully into memory.

    The declared uncompressed size is checked against ``max_size`` before
    the entry is opened. While reading, producing more bytes than declared
    aborts the read. The entry stream is closed on every path.

    Args:
        archive: Open zip archive containing the entry.
        entry: Entry to read.
        max_size: Largest allowed uncompressed size in bytes.
        logger: Optional logger for diagnostics.

    Returns:
        The decompressed entry contents.

    Raises:
        SizeExceededError: If the declared size exceeds max_size, or the
            entry expands beyond its declared size.
        EntryOpenError: If the entry cannot be opened.
        DecodeError: If the compressed data is corrupt or truncated.
    """
    log = logger or logging.getLogger(__name__)

    if entry.file_size > max_size:
        raise SizeExceededError(entry.filename, entry.file_size, max_size)

    stream = open_entry(archive, entry)
    try:
        data = _read_bounded(stream, entry)
    except Exception:
        try:
            stream.close()
        except OSError as close_error:
            log.warning(f"Closing {entry.filename!r} after failed read: {close_error}")
        raise

    try:
        stream.close()
    except OSError as e:
        raise DecodeError(f"close {entry.filename!r}: {e}") from e

    return data


def read_module_zip(
    data: bytes,
    max_size: int = DEFAULT_MAX_FILE_SIZE,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, bytes]:
    """Read every file entry of an in-memory module zip.

    Args:
        data: Zip payload.
        max_size: Largest allowed uncompressed size per entry.
        max_entries: Largest allowed number of entries in the archive.
        logger: Optional logger for progress messages.

    Returns:
        Mapping of entry name to decompressed contents. Directory entries
        are skipped.

    Raises:
        DecodeError: If the payload is not a readable zip archive.
        SizeExceededError: If an entry is too large or the archive has too
            many entries.
    """
    log = logger or logging.getLogger(__name__)

    if not is_zip_archive(data):
        raise DecodeError("payload is not a zip archive")

    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except _ZIP_READ_ERRORS as e:
        raise DecodeError(f"invalid or corrupted zip archive: {e}") from e

    contents: Dict[str, bytes] = {}
    with archive:
        entries = archive.infolist()
        if len(entries) > max_entries:
            raise SizeExceededError("<archive entries>", len(entries), max_entries)

        log.debug(f"ZIP contains {len(entries)} entries")
        for entry in entries:
            if entry.is_dir():
                continue
            contents[entry.filename] = read_entry(archive, entry, max_size, log)

    log.debug(f"Read {len(contents)} files ({sum(map(len, contents.values())):,} bytes)")
    return contents
