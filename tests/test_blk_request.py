import struct

import pytest

from virtiokit.blk_request import (
    HEADER_SIZE,
    SECTOR_SIZE,
    VIRTIO_BLK_T_FLUSH,
    VIRTIO_BLK_T_IN,
    VIRTIO_BLK_T_OUT,
    DescriptorLengthTooSmall,
    DescriptorChainTooShort,
    InvalidFlushSector,
    Request,
    RequestGuestMemoryError,
    RequestHeader,
    RequestType,
    UnexpectedReadOnlyDescriptor,
    UnexpectedWriteOnlyDescriptor,
    parse_request,
    request_type_from,
    unpack_header,
)
from virtiokit.memory import (
    VRING_DESC_F_WRITE,
    Descriptor,
    DescriptorChain,
    GuestMemory,
    InvalidGuestAddress,
    build_desc_chain,
)

W = VRING_DESC_F_WRITE


@pytest.fixture
def mem():
    return GuestMemory([(0, 0x1000_0000)])


def write_header(mem, request_type, sector):
    mem.write(0x10_0000, RequestHeader(request_type, sector).pack())


def test_total_data_len_in_sectors():
    request = Request(
        RequestType.IN,
        [(0x100, SECTOR_SIZE), (0x600, SECTOR_SIZE)],
        0,
        0x900,
    )
    assert request.total_data_len() == 1024


def test_header_round_trip():
    header = RequestHeader(VIRTIO_BLK_T_OUT, 2)
    raw = header.pack()
    assert len(raw) == HEADER_SIZE
    assert unpack_header(raw) == header


def test_unpack_header_wrong_size():
    with pytest.raises(ValueError):
        unpack_header(b"\x00" * 15)


def test_request_type_from():
    assert request_type_from(VIRTIO_BLK_T_IN) is RequestType.IN
    assert request_type_from(VIRTIO_BLK_T_FLUSH) is RequestType.FLUSH
    assert request_type_from(2) is RequestType.UNSUPPORTED


def test_header_descriptor_must_be_readable(mem):
    write_header(mem, VIRTIO_BLK_T_IN, 2)
    chain = build_desc_chain(mem, [
        Descriptor(0x10_0000, 0x100, W),
        Descriptor(0x20_0000, 0x100, W),
        Descriptor(0x30_0000, 0x100, W),
    ])
    with pytest.raises(UnexpectedWriteOnlyDescriptor):
        parse_request(chain)


def test_status_descriptor_must_be_writable(mem):
    write_header(mem, VIRTIO_BLK_T_IN, 2)
    chain = build_desc_chain(mem, [
        Descriptor(0x10_0000, 0x100, 0),
        Descriptor(0x20_0000, 0x100, W),
        Descriptor(0x30_0000, 0x100, 0),
    ])
    with pytest.raises(UnexpectedReadOnlyDescriptor):
        parse_request(chain)


def test_status_descriptor_zero_length(mem):
    write_header(mem, VIRTIO_BLK_T_IN, 2)
    chain = build_desc_chain(mem, [
        Descriptor(0x10_0000, 0x100, 0),
        Descriptor(0x20_0000, 0x100, W),
        Descriptor(0x30_0000, 0x0, W),
    ])
    with pytest.raises(DescriptorLengthTooSmall):
        parse_request(chain)


READABLE_DATA = [
    Descriptor(0x10_0000, 0x100, 0),
    Descriptor(0x20_0000, 0x100, 0),
    Descriptor(0x30_0000, 0x100, W),
]


def test_flush_with_nonzero_sector(mem):
    write_header(mem, VIRTIO_BLK_T_FLUSH, 1)
    with pytest.raises(InvalidFlushSector):
        parse_request(build_desc_chain(mem, READABLE_DATA))


def test_in_request_with_readable_data(mem):
    write_header(mem, VIRTIO_BLK_T_FLUSH, 1)
    mem.write(0x10_0000, struct.pack("<I", VIRTIO_BLK_T_IN))
    with pytest.raises(UnexpectedReadOnlyDescriptor):
        parse_request(build_desc_chain(mem, READABLE_DATA))


def test_invalid_status_address(mem):
    write_header(mem, VIRTIO_BLK_T_OUT, 2)
    chain = build_desc_chain(mem, [
        Descriptor(0x10_0000, 0x100, 0),
        Descriptor(0x20_0000, 0x100, W),
        Descriptor(0x30_0000, 0x200, W),
        Descriptor(0x1100_0000, 0x100, W),
    ])
    with pytest.raises(RequestGuestMemoryError) as info:
        parse_request(chain)
    assert isinstance(info.value.error, InvalidGuestAddress)
    assert info.value.error.addr == 0x1100_0000


VALID_OUT = [
    Descriptor(0x10_0000, 0x100, 0),
    Descriptor(0x20_0000, 0x100, W),
    Descriptor(0x30_0000, 0x200, W),
    Descriptor(0x40_0000, 0x100, W),
]


def test_valid_out_request(mem):
    write_header(mem, VIRTIO_BLK_T_OUT, 2)
    request = parse_request(build_desc_chain(mem, VALID_OUT))
    expected = Request(
        RequestType.OUT,
        ((0x20_0000, 0x100), (0x30_0000, 0x200)),
        2,
        0x40_0000,
    )
    assert request == expected
    assert request.status_addr == 0x40_0000
    assert request.total_data_len() == 0x100 + 0x200


def test_unsupported_request_type(mem):
    write_header(mem, 2, 2)
    request = parse_request(build_desc_chain(mem, VALID_OUT))
    assert request.request_type is RequestType.UNSUPPORTED
    assert request.type_code == 2


def test_valid_flush_request(mem):
    write_header(mem, VIRTIO_BLK_T_FLUSH, 0)
    chain = build_desc_chain(mem, [
        Descriptor(0x10_0000, 0x100, 0),
        Descriptor(0x40_0000, 0x100, W),
    ])
    request = parse_request(chain)
    assert request.request_type is RequestType.FLUSH
    assert request.data == ()
    assert request.status_addr == 0x40_0000


def test_empty_chain(mem):
    with pytest.raises(DescriptorChainTooShort):
        parse_request(DescriptorChain(mem, []))


def test_header_only_chain(mem):
    write_header(mem, VIRTIO_BLK_T_FLUSH, 0)
    chain = build_desc_chain(mem, [Descriptor(0x10_0000, 0x100, 0)])
    with pytest.raises(DescriptorChainTooShort):
        parse_request(chain)


def test_unsupported_request_needs_code():
    with pytest.raises(ValueError):
        Request(RequestType.UNSUPPORTED, (), 0, 0)


def test_request_type_code_defaults_from_type():
    request = Request(RequestType.IN, [(0x100, 0x200)], 0, 0x900)
    assert request.type_code == VIRTIO_BLK_T_IN
    assert request.data == ((0x100, 0x200),)