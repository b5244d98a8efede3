"""File backend for the virtio block request executor."""

from __future__ import annotations

import io
import os
from typing import BinaryIO

_ZERO_CHUNK = 64 * 1024


def _check_range(offset: int, length: int) -> None:
    if offset < 0:
        raise ValueError(f"negative offset {offset}")
    if length < 0:
        raise ValueError(f"negative length {length}")


class FileBackend:
    """A seekable binary file that a block device reads from and writes to.

    Besides plain reads, writes and seeks it can sync its contents to
    storage, punch holes and write zeroes at an offset. The last two do not
    move the file position.
    """

    def __init__(self, file: BinaryIO) -> None:
        self._file = file

    @classmethod
    def open(cls, path: str | os.PathLike) -> "FileBackend":
        """Open an existing file for reading and writing."""
        return cls(open(path, "r+b"))

    @property
    def file(self) -> BinaryIO:
        return self._file

    def __enter__(self) -> "FileBackend":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._file.close()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        """Move the file position and return the new absolute position."""
        return self._file.seek(offset, whence)

    def tell(self) -> int:
        return self._file.tell()

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes from the current position."""
        data = self._file.read(size)
        return b"" if data is None else bytes(data)

    def write(self, data: bytes) -> int:
        """Write `data` at the current position and return the bytes written."""
        written = self._file.write(data)
        return len(data) if written is None else written

    def flush(self) -> None:
        self._file.flush()

    def fsync(self) -> None:
        """Flush buffered data and sync it to the underlying storage."""
        self._file.flush()
        try:
            fd = self._file.fileno()
        except io.UnsupportedOperation:
            # In-memory files have nothing further to sync.
            return
        os.fsync(fd)

    def size(self) -> int:
        """Return the current file size without moving the file position."""
        pos = self._file.tell()
        try:
            return self._file.seek(0, os.SEEK_END)
        finally:
            self._file.seek(pos)

    def _zero_range(self, offset: int, length: int) -> None:
        pos = self._file.tell()
        try:
            self._file.seek(offset)
            remaining = length
            zeroes = bytes(min(remaining, _ZERO_CHUNK))
            while remaining:
                take = min(remaining, len(zeroes))
                view = memoryview(zeroes)[:take]
                while view:
                    written = self._file.write(view)
                    if written is None:
                        break
                    view = view[written:]
                remaining -= take
        finally:
            self._file.seek(pos)

    def punch_hole(self, offset: int, length: int) -> None:
        """Deallocate a byte range so that it reads back as zeroes.

        The file size never changes; the part of the range beyond the end of
        the file is ignored.
        """
        _check_range(offset, length)
        end = min(offset + length, self.size())
        if end > offset:
            self._zero_range(offset, end - offset)

    def write_zeroes_at(self, offset: int, length: int) -> None:
        """Write `length` zero bytes at `offset`, extending the file if needed."""
        _check_range(offset, length)
        if length:
            self._zero_range(offset, length)