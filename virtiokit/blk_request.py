"""Parsing of virtio block requests from descriptor chains."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum

from virtiokit.memory import (
    DescriptorChain,
    Descriptor,
    GuestMemory,
    GuestMemoryError,
    InvalidGuestAddress,
)

SECTOR_SHIFT = 9
SECTOR_SIZE = 1 << SECTOR_SHIFT

VIRTIO_BLK_T_IN = 0
VIRTIO_BLK_T_OUT = 1
VIRTIO_BLK_T_FLUSH = 4
VIRTIO_BLK_T_GET_ID = 8
VIRTIO_BLK_T_DISCARD = 11
VIRTIO_BLK_T_WRITE_ZEROES = 13

_HEADER_FORMAT = struct.Struct("<IIQ")
HEADER_SIZE = _HEADER_FORMAT.size


class RequestError(Exception):
    """Base class for block request parsing errors."""

    message = "block request error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class DescriptorChainTooShort(RequestError):
    message = "descriptor chain too short"


class DescriptorLengthTooSmall(RequestError):
    message = "descriptor length too small"


class RequestGuestMemoryError(RequestError):
    """Guest memory could not be accessed while parsing."""

    def __init__(self, error: GuestMemoryError) -> None:
        super().__init__(f"error accessing guest memory: {error}")
        self.error = error


class InvalidFlushSector(RequestError):
    message = "invalid sector in flush request, it should be 0"


class UnexpectedReadOnlyDescriptor(RequestError):
    message = "unexpected read only descriptor"


class UnexpectedWriteOnlyDescriptor(RequestError):
    message = "unexpected write only descriptor"


class RequestType(Enum):
    """Type of request from driver to device."""

    IN = VIRTIO_BLK_T_IN
    OUT = VIRTIO_BLK_T_OUT
    FLUSH = VIRTIO_BLK_T_FLUSH
    GET_DEVICE_ID = VIRTIO_BLK_T_GET_ID
    DISCARD = VIRTIO_BLK_T_DISCARD
    WRITE_ZEROES = VIRTIO_BLK_T_WRITE_ZEROES
    UNSUPPORTED = None


def request_type_from(value: int) -> RequestType:
    """Map a wire request type code to a RequestType."""
    if value is None:
        return RequestType.UNSUPPORTED
    try:
        return RequestType(value)
    except ValueError:
        return RequestType.UNSUPPORTED


@dataclass(frozen=True)
class RequestHeader:
    """The header that starts every block request."""

    request_type: int
    sector: int

    def pack(self) -> bytes:
        return _HEADER_FORMAT.pack(self.request_type, 0, self.sector)


def unpack_header(data: bytes) -> RequestHeader:
    """Decode a request header from its 16 wire bytes."""
    if len(data) != HEADER_SIZE:
        raise ValueError(f"request header must be {HEADER_SIZE} bytes, got {len(data)}")
    request_type, _reserved, sector = _HEADER_FORMAT.unpack(data)
    return RequestHeader(request_type, sector)


@dataclass(frozen=True)
class Request:
    """What is needed to execute a parsed block request.

    `data` holds (guest address, length) pairs of the data buffers and
    `type_code` the raw request type read from the header.
    """

    request_type: RequestType
    data: tuple = ()
    sector: int = 0
    status_addr: int = 0
    type_code: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "data", tuple((int(addr), int(length)) for addr, length in self.data)
        )
        if self.type_code is None:
            if self.request_type is RequestType.UNSUPPORTED:
                raise ValueError("an unsupported request needs its type code")
            object.__setattr__(self, "type_code", self.request_type.value)
        elif request_type_from(self.type_code) is not self.request_type:
            raise ValueError("type code does not match the request type")

    def total_data_len(self) -> int:
        """Return the summed length of all data buffers."""
        return sum(length for _, length in self.data)


def _next_descriptor(chain: DescriptorChain) -> Descriptor:
    desc = next(chain, None)
    if desc is None:
        raise DescriptorChainTooShort()
    return desc


def _check_status_descriptor(memory: GuestMemory, desc: Descriptor) -> None:
    if not desc.is_write_only():
        raise UnexpectedReadOnlyDescriptor()
    if desc.length < 1:
        raise DescriptorLengthTooSmall()
    if not memory.check_address(desc.addr):
        raise RequestGuestMemoryError(InvalidGuestAddress(desc.addr))


def parse_request(chain: DescriptorChain) -> Request:
    """Parse a block request: a readable header, data buffers, a writable status."""
    memory = chain.memory
    head = _next_descriptor(chain)
    if head.is_write_only():
        raise UnexpectedWriteOnlyDescriptor()

    try:
        raw = memory.read(head.addr, HEADER_SIZE)
    except GuestMemoryError as err:
        raise RequestGuestMemoryError(err) from err
    header = unpack_header(raw)

    if header.request_type == VIRTIO_BLK_T_FLUSH and header.sector != 0:
        raise InvalidFlushSector()

    request_type = request_type_from(header.request_type)
    data = []
    desc = _next_descriptor(chain)
    while desc.has_next():
        # Only device-readable buffers are rejected for reads; the device may
        # read device-writable ones.
        if not desc.is_write_only() and request_type is RequestType.IN:
            raise UnexpectedReadOnlyDescriptor()
        data.append((desc.addr, desc.length))
        desc = _next_descriptor(chain)

    _check_status_descriptor(memory, desc)
    return Request(
        request_type,
        tuple(data),
        header.sector,
        desc.addr,
        type_code=header.request_type,
    )