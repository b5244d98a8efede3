"""Errors and wire structures used when executing virtio block requests."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from virtiokit.memory import GuestMemoryError

VIRTIO_BLK_S_OK = 0
VIRTIO_BLK_S_IOERR = 1
VIRTIO_BLK_S_UNSUPP = 2

VIRTIO_BLK_F_RO = 5
VIRTIO_BLK_F_FLUSH = 9
VIRTIO_BLK_F_DISCARD = 13
VIRTIO_BLK_F_WRITE_ZEROES = 14

VIRTIO_BLK_ID_BYTES = 20

_SEGMENT_FORMAT = struct.Struct("<QII")


class ExecuteError(Exception):
    """Base class for errors raised while executing a block request."""

    message = "block request execution failed"
    _status = VIRTIO_BLK_S_IOERR

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    def status(self) -> int:
        """Return the virtio status byte that reports this error to the driver."""
        return self._status


class DiscardWriteZeroesError(ExecuteError):
    """The backend failed while discarding or zeroing a range."""

    def __init__(self, error: OSError) -> None:
        super().__init__(f"discard/write zeroes execution failed: {error}")
        self.error = error


class FlushError(ExecuteError):
    """The backend failed to flush."""

    def __init__(self, error: OSError) -> None:
        super().__init__(f"flush execution failed: {error}")
        self.error = error


class ExecuteGuestMemoryError(ExecuteError):
    """Guest memory could not be accessed."""

    def __init__(self, error: GuestMemoryError) -> None:
        super().__init__(f"error accessing guest memory: {error}")
        self.error = error


class InvalidAccess(ExecuteError):
    message = "invalid file access"


class InvalidFlags(ExecuteError):
    message = "invalid flags for discard/write zeroes request"
    _status = VIRTIO_BLK_S_UNSUPP


class InvalidDataLength(ExecuteError):
    message = "invalid data length of request"


class ExecuteOverflow(ExecuteError):
    message = "overflow when computing memory address"


class ReadError(ExecuteError):
    """A read request failed after `bytes_to_mem` bytes reached guest memory."""

    def __init__(self, error: GuestMemoryError, bytes_to_mem: int) -> None:
        super().__init__(f"error during read request execution: {error}")
        self.error = error
        self.bytes_to_mem = bytes_to_mem


class ReadOnlyError(ExecuteError):
    message = "can't execute an operation other than `read` on a read-only device"


class WriteError(ExecuteError):
    """A write request failed while copying guest memory to the backend."""

    def __init__(self, error: GuestMemoryError) -> None:
        super().__init__(f"error during write request execution: {error}")
        self.error = error


class SeekError(ExecuteError):
    """The backend could not seek."""

    def __init__(self, error: OSError) -> None:
        super().__init__(f"file seek execution failed: {error}")
        self.error = error


class UnsupportedRequest(ExecuteError):
    """The request type is unknown or its feature was not negotiated."""

    _status = VIRTIO_BLK_S_UNSUPP

    def __init__(self, request_type: int) -> None:
        super().__init__(f"can't execute unsupported request {request_type}")
        self.request_type = request_type


class ProcessRequestError(Exception):
    """Failure while reporting a request's result back to the driver.

    With a guest memory error it means the status could not be written;
    without one it means the used length overflowed.
    """

    def __init__(self, error: GuestMemoryError | None = None) -> None:
        if error is None:
            text = "overflow when computing number of bytes written to memory"
        else:
            text = f"error accessing guest memory: {error}"
        super().__init__(text)
        self.error = error

    @property
    def is_overflow(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DiscardWriteZeroes:
    """One segment of a discard or write zeroes request."""

    sector: int
    num_sectors: int
    flags: int = 0

    UNMAP = 1
    LEN = _SEGMENT_FORMAT.size

    def pack(self) -> bytes:
        try:
            return _SEGMENT_FORMAT.pack(self.sector, self.num_sectors, self.flags)
        except struct.error as err:
            raise ValueError(f"segment field out of range: {err}") from err


def unpack_segment(data: bytes) -> DiscardWriteZeroes:
    """Decode a discard/write zeroes segment from its wire bytes."""
    if len(data) != DiscardWriteZeroes.LEN:
        raise ValueError(
            f"segment must be {DiscardWriteZeroes.LEN} bytes, got {len(data)}"
        )
    sector, num_sectors, flags = _SEGMENT_FORMAT.unpack(data)
    return DiscardWriteZeroes(sector, num_sectors, flags)