"""Upload sources: anything we can upload, coerced to a seekable file.

Uploads read each byte range twice (once to digest it, once to send it) and
several parts may read the same file concurrently, so every source is turned
into a seekable binary file with a known size. Streams that cannot seek are
spooled into a temporary file first.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from b2client.errors import SourceChanged
from b2client.models import ByteRange

logger = logging.getLogger(__name__)

# Read buffer: 64 KB
BLOCK_SIZE = 64 * 1024


@dataclass
class UploadSource:
    """A seekable binary file plus what we know about it.

    Attributes:
        fileobj: The file to read from. Shared by concurrent part uploads, so
            read it only through :func:`read_at`.
        size: Total bytes available.
        name: Base name of the file on disk, if it came from a path.
        mtime_millis: Modification time of the file on disk, if known.
    """

    fileobj: BinaryIO
    size: int
    name: str | None = None
    mtime_millis: int | None = None

    def full_range(self) -> ByteRange:
        return ByteRange(0, self.size)


def _size_of(fileobj: BinaryIO) -> int:
    fileobj.seek(0, io.SEEK_END)
    size = fileobj.tell()
    fileobj.seek(0)
    return size


def _is_seekable(obj: object) -> bool:
    seekable = getattr(obj, "seekable", None)
    return bool(seekable and seekable())


@contextmanager
def open_source(
    obj: bytes | bytearray | memoryview | str | os.PathLike | BinaryIO,
) -> Iterator[UploadSource]:
    """Coerce ``obj`` into an :class:`UploadSource` for the duration of a block.

    Accepted inputs:
        bytes-like: uploaded as-is.
        str: encoded as UTF-8 and uploaded as data (not treated as a path).
        os.PathLike: opened in binary mode and closed on exit.
        seekable binary file: used from offset 0; left open on exit.
        any other object with ``read()``: copied into a temporary file first.

    Raises:
        TypeError: If ``obj`` is none of the above.
    """
    if isinstance(obj, (bytes, bytearray, memoryview)):
        data = bytes(obj)
        yield UploadSource(io.BytesIO(data), len(data))
    elif isinstance(obj, str):
        data = obj.encode("utf-8")
        yield UploadSource(io.BytesIO(data), len(data))
    elif isinstance(obj, os.PathLike):
        path = Path(obj)
        stat = path.stat()
        with open(path, "rb") as fh:
            yield UploadSource(
                fh,
                stat.st_size,
                name=path.name,
                mtime_millis=int(stat.st_mtime * 1000),
            )
    elif _is_seekable(obj):
        yield UploadSource(obj, _size_of(obj))
    elif hasattr(obj, "read"):
        with tempfile.TemporaryFile() as tmp:
            shutil.copyfileobj(obj, tmp, BLOCK_SIZE)
            logger.debug("Spooled non-seekable stream to a temporary file (%d bytes)", tmp.tell())
            yield UploadSource(tmp, _size_of(tmp))
    else:
        raise TypeError(f"Cannot upload object of type {type(obj).__name__}; it has no read()")


def read_at(fileobj: BinaryIO, offset: int, size: int) -> bytes:
    """Read up to ``size`` bytes at ``offset``.

    The seek and the read happen without yielding to the event loop, so
    concurrent readers sharing ``fileobj`` never see each other's position.
    """
    fileobj.seek(offset)
    return fileobj.read(size)


def iter_range(
    fileobj: BinaryIO, byte_range: ByteRange, block_size: int = BLOCK_SIZE
) -> Iterator[bytes]:
    """Yield the bytes of ``byte_range`` in blocks of at most ``block_size``.

    Raises:
        SourceChanged: If the file ends before the range does.
    """
    position = byte_range.offset
    while position < byte_range.end:
        chunk = read_at(fileobj, position, min(block_size, byte_range.end - position))
        if not chunk:
            raise SourceChanged(
                f"Source ended at byte {position}, expected {byte_range.end} bytes"
            )
        position += len(chunk)
        yield chunk


def sha1_of_range(fileobj: BinaryIO, byte_range: ByteRange, block_size: int = BLOCK_SIZE) -> str:
    """Hex SHA-1 of exactly the bytes in ``byte_range``."""
    digest = hashlib.sha1()
    for chunk in iter_range(fileobj, byte_range, block_size):
        digest.update(chunk)
    return digest.hexdigest()
