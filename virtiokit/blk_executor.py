"""Execution of virtio block requests against a seekable file backend."""

from __future__ import annotations

import io
import logging
import os
from typing import Any

from virtiokit.blk_errors import (
    VIRTIO_BLK_F_DISCARD,
    VIRTIO_BLK_F_FLUSH,
    VIRTIO_BLK_F_RO,
    VIRTIO_BLK_F_WRITE_ZEROES,
    VIRTIO_BLK_ID_BYTES,
    VIRTIO_BLK_S_OK,
    DiscardWriteZeroes,
    DiscardWriteZeroesError,
    ExecuteError,
    ExecuteGuestMemoryError,
    ExecuteOverflow,
    FlushError,
    InvalidAccess,
    InvalidDataLength,
    InvalidFlags,
    ProcessRequestError,
    ReadError,
    ReadOnlyError,
    SeekError,
    UnsupportedRequest,
    WriteError,
    unpack_segment,
)
from virtiokit.blk_request import (
    SECTOR_SHIFT,
    SECTOR_SIZE,
    VIRTIO_BLK_T_DISCARD,
    VIRTIO_BLK_T_FLUSH,
    VIRTIO_BLK_T_GET_ID,
    VIRTIO_BLK_T_WRITE_ZEROES,
    Request,
    RequestType,
)
from virtiokit.memory import GuestMemory, GuestMemoryError, PartialBuffer

logger = logging.getLogger(__name__)

_U32_MAX = (1 << 32) - 1
_U64_MAX = (1 << 64) - 1


def _sector_to_offset(sector: int) -> int:
    # Shifting a 64-bit value by the sector shift never fails; high bits drop.
    return (sector << SECTOR_SHIFT) & _U64_MAX


class StdIoBackend:
    """Wraps a block device backend and executes block requests on it.

    `inner` needs seek, read, write, fsync, punch_hole and write_zeroes_at,
    as offered by FileBackend. `features` holds the negotiated feature bits.
    """

    def __init__(self, inner: Any, features: int) -> None:
        try:
            disk_size = inner.seek(0, os.SEEK_END)
        except (OSError, OverflowError, ValueError) as err:
            raise SeekError(err) from err
        if disk_size % SECTOR_SIZE:
            logger.warning(
                "Disk size %d is not a multiple of sector size %d; "
                "the remainder will not be visible to the guest.",
                disk_size,
                SECTOR_SIZE,
            )
        self.inner = inner
        self.features = features
        self._num_sectors = disk_size >> SECTOR_SHIFT
        self.device_id: bytes | None = None

    @property
    def num_sectors(self) -> int:
        return self._num_sectors

    def with_device_id(self, device_id: bytes) -> "StdIoBackend":
        """Set the device id (exactly 20 bytes, NUL padded) and return self."""
        device_id = bytes(device_id)
        if len(device_id) != VIRTIO_BLK_ID_BYTES:
            raise ValueError(
                f"device id must be {VIRTIO_BLK_ID_BYTES} bytes, got {len(device_id)}"
            )
        self.device_id = device_id
        return self

    def has_feature(self, feature_pos: int) -> bool:
        """Tell whether the feature bit at `feature_pos` was negotiated."""
        return bool(self.features & (1 << feature_pos))

    def process_request(self, mem: GuestMemory, request: Request) -> int:
        """Execute `request`, write its status byte and return the used length.

        The used length counts the bytes written to guest memory plus the
        status byte.
        """
        try:
            length = self.execute(mem, request)
            status = VIRTIO_BLK_S_OK
        except ExecuteError as err:
            logger.error("failed executing block request: %s", err)
            status = err.status()
            length = err.bytes_to_mem if isinstance(err, ReadError) else 0
        try:
            mem.write(request.status_addr, bytes([status]))
        except GuestMemoryError as err:
            raise ProcessRequestError(err) from err
        if length + 1 > _U32_MAX:
            raise ProcessRequestError()
        return length + 1

    def _check_access(self, sectors_count: int, sector: int) -> None:
        end = sectors_count + sector
        if end > _U64_MAX or end > self._num_sectors:
            raise InvalidAccess()

    def _check_request(self, request_type: RequestType) -> None:
        if self.has_feature(VIRTIO_BLK_F_RO) and request_type is not RequestType.IN:
            raise ReadOnlyError()
        if request_type is RequestType.FLUSH and not self.has_feature(VIRTIO_BLK_F_FLUSH):
            raise UnsupportedRequest(VIRTIO_BLK_T_FLUSH)
        if request_type is RequestType.DISCARD and not self.has_feature(VIRTIO_BLK_F_DISCARD):
            raise UnsupportedRequest(VIRTIO_BLK_T_DISCARD)
        if (request_type is RequestType.WRITE_ZEROES
                and not self.has_feature(VIRTIO_BLK_F_WRITE_ZEROES)):
            raise UnsupportedRequest(VIRTIO_BLK_T_WRITE_ZEROES)

    def execute(self, mem: GuestMemory, request: Request) -> int:
        """Execute `request` and return the bytes written to guest memory.

        The status byte is not included in the returned count.
        """
        offset = _sector_to_offset(request.sector)
        try:
            self.inner.seek(offset)
        except (OSError, OverflowError, ValueError) as err:
            raise SeekError(err) from err

        request_type = request.request_type
        self._check_request(request_type)
        total_len = request.total_data_len()

        if request_type in (RequestType.IN, RequestType.OUT) and total_len % SECTOR_SIZE:
            raise InvalidDataLength()

        if request_type is RequestType.IN:
            self._check_access(total_len // SECTOR_SIZE, request.sector)
            if total_len > _U32_MAX:
                raise InvalidDataLength()
            return self._read_into_memory(mem, request.data, lambda _done: self.inner)

        if request_type is RequestType.OUT:
            self._check_access(total_len // SECTOR_SIZE, request.sector)
            for addr, length in request.data:
                try:
                    mem.write_all_to(addr, self.inner, length)
                except GuestMemoryError as err:
                    raise WriteError(err) from err
            return 0

        if request_type is RequestType.FLUSH:
            try:
                self.inner.fsync()
            except OSError as err:
                raise FlushError(err) from err
            return 0

        if request_type is RequestType.GET_DEVICE_ID:
            device_id = self.device_id
            if device_id is None:
                raise UnsupportedRequest(VIRTIO_BLK_T_GET_ID)
            if total_len != VIRTIO_BLK_ID_BYTES:
                raise InvalidDataLength()
            return self._read_into_memory(
                mem, request.data, lambda done: io.BytesIO(device_id[done:])
            )

        if request_type in (RequestType.DISCARD, RequestType.WRITE_ZEROES):
            for addr, length in request.data:
                self._discard_write_zeroes_buffer(mem, addr, length, request_type)
            return 0

        raise UnsupportedRequest(request.type_code)

    def _read_into_memory(self, mem: GuestMemory, data, source_for) -> int:
        bytes_to_mem = 0
        for addr, length in data:
            try:
                mem.read_exact_from(addr, source_for(bytes_to_mem), length)
            except GuestMemoryError as err:
                if isinstance(err, PartialBuffer):
                    bytes_to_mem += err.completed
                raise ReadError(err, bytes_to_mem) from err
            bytes_to_mem += length
        return bytes_to_mem

    def _discard_write_zeroes_buffer(self, mem: GuestMemory, addr: int, length: int,
                                     request_type: RequestType) -> None:
        # Each descriptor must hold whole segments; the specification only
        # requires this of the total length.
        if length % DiscardWriteZeroes.LEN:
            raise InvalidDataLength()
        if addr + length > _U64_MAX:
            raise ExecuteOverflow()
        for crt_addr in range(addr, addr + length, DiscardWriteZeroes.LEN):
            try:
                raw = mem.read(crt_addr, DiscardWriteZeroes.LEN)
            except GuestMemoryError as err:
                raise ExecuteGuestMemoryError(err) from err
            self._handle_segment(unpack_segment(raw), request_type)

    def _handle_segment(self, segment: DiscardWriteZeroes,
                        request_type: RequestType) -> None:
        # Discard must have the unmap bit clear; write zeroes may set it.
        # All other bits are reserved.
        valid_flags = DiscardWriteZeroes.UNMAP if request_type is RequestType.WRITE_ZEROES else 0
        if segment.flags & ~valid_flags:
            raise InvalidFlags()

        offset = _sector_to_offset(segment.sector)
        length = segment.num_sectors << SECTOR_SHIFT
        self._check_access(segment.num_sectors, segment.sector)

        if request_type is RequestType.DISCARD:
            # Discard is only a hint; a failed hole punch is not an error.
            try:
                self.inner.punch_hole(offset, length)
            except OSError:
                pass
            return

        if segment.flags & DiscardWriteZeroes.UNMAP:
            try:
                self.inner.punch_hole(offset, length)
                return
            except OSError:
                pass
        try:
            self.inner.write_zeroes_at(offset, length)
        except OSError as err:
            raise DiscardWriteZeroesError(err) from err