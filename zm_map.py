#!/usr/bin/env python3
"""Name-indexed access to ZIP archive entries.

A ZipMap maps each entry name of an archive to a ZipEntry handle. Handles can
be read, copied verbatim into another archive, or rewritten with new content
while keeping their header. New uncompressed entries can be appended to any
open writer.

All archive parsing, compression and CRC checking is done by ``zipfile``.
Writers are plain ``zipfile.ZipFile`` objects opened for writing and owned by
the caller, who also finalizes them with ``close()``.

Duplicate entry names collapse: the last record in central directory order
wins.
"""

from __future__ import annotations

import io
import os
import shutil
import struct
import time
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Union

# =============================================================================
# Constants
# =============================================================================

# Extra field header ID of the ZIP64 extended information record
ZIP64_EXTRA_ID = 0x0001

# Permissions given to entries created from a bare name (same as writestr)
DEFAULT_ENTRY_MODE = 0o600

_READ_ERRORS = (OSError, EOFError, ValueError, RuntimeError, zipfile.BadZipFile, zlib.error)
_WRITE_ERRORS = (OSError, ValueError, RuntimeError, zipfile.LargeZipFile)

BytesLike = Union[bytes, bytearray, memoryview]


# =============================================================================
# Errors
# =============================================================================


class ZipMapError(Exception):
    """Base class for all zipmap errors."""

    pass


class ArchiveIOError(ZipMapError, OSError):
    """Raised when the underlying byte source or sink fails."""

    pass


class ArchiveFormatError(ZipMapError, ValueError):
    """Raised when bytes do not parse as a ZIP archive."""

    pass


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class ZipEntry:
    """One entry of an open archive: its header plus the reader to open it with."""

    archive: zipfile.ZipFile
    info: zipfile.ZipInfo

    @property
    def name(self) -> str:
        return self.info.filename

    @property
    def compress_type(self) -> int:
        return self.info.compress_type

    @property
    def file_size(self) -> int:
        return self.info.file_size

    def is_dir(self) -> bool:
        return self.info.is_dir()

    def open(self) -> io.BufferedIOBase:
        """Open a decompressing read stream for this exact entry."""
        return self.archive.open(self.info)


class ZipMap(Dict[str, ZipEntry]):
    """Entry name -> ZipEntry for one archive.

    The map keeps the reader it was built from alive. Use it as a context
    manager, or call close(), to release the reader once done.
    """

    def __init__(self, archive: zipfile.ZipFile) -> None:
        super().__init__()
        self.archive = archive

    @property
    def record_count(self) -> int:
        """Number of central directory records, duplicates included."""
        return len(self.archive.infolist())

    def close(self) -> None:
        self.archive.close()

    def __enter__(self) -> "ZipMap":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# =============================================================================
# Index Construction
# =============================================================================


def zip_map_from_path(path: Union[str, os.PathLike]) -> ZipMap:
    """
    Build a ZipMap from the archive stored at ``path``.

    The whole file is read into memory first.

    Raises:
        ArchiveIOError: If the file cannot be read
        ArchiveFormatError: If the file is not a ZIP archive
    """
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ArchiveIOError(f"Failed to read archive {path}: {exc}") from exc

    return zip_map_from_bytes(data)


def zip_map_from_bytes(data: BytesLike) -> ZipMap:
    """
    Build a ZipMap from an in-memory archive.

    Raises:
        ArchiveFormatError: If ``data`` is not a ZIP archive
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data), "r")
    except (zipfile.BadZipFile, ValueError, EOFError, NotImplementedError) as exc:
        raise ArchiveFormatError(f"Failed to open zip archive: {exc}") from exc

    zip_map = ZipMap(archive)
    for info in archive.infolist():
        zip_map[info.filename] = ZipEntry(archive, info)

    return zip_map


# =============================================================================
# Entry Operations
# =============================================================================


def copy_entry(writer: zipfile.ZipFile, entry: ZipEntry) -> None:
    """
    Copy ``entry`` into ``writer`` keeping its name and compression method.

    Content is decompressed from the source and recompressed by the writer.
    No other header field is carried over.

    Raises:
        ArchiveIOError: If reading the source or writing the copy fails
    """
    header = zipfile.ZipInfo(entry.name)
    header.compress_type = entry.compress_type
    force_zip64 = entry.file_size > zipfile.ZIP64_LIMIT

    try:
        with entry.open() as src:
            with writer.open(header, "w", force_zip64=force_zip64) as dst:
                shutil.copyfileobj(src, dst)
    except _READ_ERRORS + _WRITE_ERRORS as exc:
        raise ArchiveIOError(f"Failed to copy entry {entry.name!r}: {exc}") from exc


def read_entry_content(entry: ZipEntry) -> bytes:
    """
    Read the full decompressed content of ``entry``.

    The content is held in memory; callers bound the size themselves.

    Raises:
        ArchiveIOError: If the entry cannot be opened, read or fails its CRC check
    """
    try:
        with entry.open() as src:
            return src.read()
    except _READ_ERRORS as exc:
        raise ArchiveIOError(f"Failed to read entry {entry.name!r}: {exc}") from exc


def rewrite_entry(writer: zipfile.ZipFile, entry: ZipEntry, content: BytesLike) -> None:
    """
    Write ``content`` into ``writer`` under ``entry``'s header.

    Name, compression method, timestamp, attributes, comment and extra fields
    are kept. Sizes and CRC are recomputed by the writer.

    Raises:
        ArchiveIOError: If the writer rejects the header or the write fails
    """
    header = _clone_header(entry.info)
    header.file_size = len(content)
    header.compress_size = 0

    try:
        writer.writestr(header, bytes(content))
    except _WRITE_ERRORS as exc:
        raise ArchiveIOError(f"Failed to rewrite entry {entry.name!r}: {exc}") from exc


def write_new_entry(writer: zipfile.ZipFile, name: str, content: BytesLike) -> None:
    """
    Append a new stored (uncompressed) entry called ``name``.

    Raises:
        ArchiveIOError: If the writer is closed or rejects the entry
    """
    header = zipfile.ZipInfo(name, date_time=time.localtime(time.time())[:6])
    header.compress_type = zipfile.ZIP_STORED
    header.file_size = len(content)
    if name.endswith("/"):
        header.external_attr = (0o40775 << 16) | 0x10
    else:
        header.external_attr = DEFAULT_ENTRY_MODE << 16

    try:
        writer.writestr(header, bytes(content))
    except _WRITE_ERRORS as exc:
        raise ArchiveIOError(f"Failed to write entry {name!r}: {exc}") from exc


# =============================================================================
# Header Helpers
# =============================================================================


def _clone_header(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    header = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    header.compress_type = info.compress_type
    header.comment = info.comment
    header.extra = strip_zip64_extra(info.extra)
    header.create_system = info.create_system
    header.create_version = info.create_version
    header.extract_version = info.extract_version
    header.volume = info.volume
    header.internal_attr = info.internal_attr
    header.external_attr = info.external_attr
    return header


def strip_zip64_extra(extra: bytes) -> bytes:
    """
    Drop ZIP64 extended information records from an extra field.

    Other records are kept byte for byte. A truncated trailing record is
    dropped.
    """
    kept = []
    offset = 0
    while offset + 4 <= len(extra):
        header_id, size = struct.unpack("<HH", extra[offset : offset + 4])
        end = offset + 4 + size
        if end > len(extra):
            break
        if header_id != ZIP64_EXTRA_ID:
            kept.append(extra[offset:end])
        offset = end
    return b"".join(kept)
