import io

import pytest

from virtiokit.memory import (
    VRING_DESC_F_WRITE,
    Descriptor,
    GuestMemory,
    InvalidGuestAddress,
    PartialBuffer,
    build_desc_chain,
)


@pytest.fixture
def mem():
    return GuestMemory([(0, 0x1000_0000)])


def test_write_read_round_trip(mem):
    mem.write(0x1234, b"hello world")
    assert mem.read(0x1234, 11) == b"hello world"


def test_untouched_memory_reads_zero(mem):
    assert mem.read(0x20_0000, 64) == bytes(64)


def test_check_address_bounds():
    small = GuestMemory([(0, 0x1000)])
    assert small.check_address(0xFFF) is True
    assert small.check_address(0x1000) is False


def test_read_invalid_address(mem):
    with pytest.raises(InvalidGuestAddress) as info:
        mem.read(0x1100_0000, 4)
    assert info.value.addr == 0x1100_0000


def test_write_invalid_address(mem):
    with pytest.raises(InvalidGuestAddress) as info:
        mem.write(0x1000_0001, b"\x00")
    assert info.value.addr == 0x1000_0001


def test_overlapping_ranges_rejected():
    with pytest.raises(ValueError):
        GuestMemory([(0, 0x2000), (0x1000, 0x1000)])


def test_read_across_contiguous_regions():
    two = GuestMemory([(0, 0x1000), (0x1000, 0x1000)])
    payload = bytes(range(32))
    two.write(0xFF0, payload)
    assert two.read(0xFF0, 32) == payload


def test_read_exact_from_partial_at_end(mem):
    src = io.BytesIO(b"\xAA" * 0x200)
    with pytest.raises(PartialBuffer) as info:
        mem.read_exact_from(0xFFF_FFF0, src, 0x200)
    assert info.value.expected == 512
    assert info.value.completed == 16
    assert mem.read(0xFFF_FFF0, 16) == b"\xAA" * 16


def test_read_exact_from_round_trip(mem):
    src = io.BytesIO(b"abcdefgh")
    mem.read_exact_from(0x500, src, 8)
    assert mem.read(0x500, 8) == b"abcdefgh"


def test_read_exact_from_short_source(mem):
    with pytest.raises(PartialBuffer) as info:
        mem.read_exact_from(0x500, io.BytesIO(b"abc"), 8)
    assert info.value.completed == len(b"abc")
    assert info.value.expected == 8


def test_write_all_to_round_trip(mem):
    mem.write(0x800, b"\x55" * 0x100)
    out = io.BytesIO()
    mem.write_all_to(0x800, out, 0x100)
    assert out.getvalue() == b"\x55" * 0x100


def test_write_all_to_partial(mem):
    out = io.BytesIO()
    with pytest.raises(PartialBuffer) as info:
        mem.write_all_to(0xFFF_FFF0, out, 0x200)
    assert (info.value.expected, info.value.completed) == (512, 16)
    assert len(out.getvalue()) == info.value.completed


def test_write_to_returns_count(mem):
    mem.write(0x3000, b"xyz")
    out = io.BytesIO()
    assert mem.write_to(0x3000, out, 3) == 3
    assert out.getvalue() == b"xyz"


def test_write_to_invalid_start(mem):
    with pytest.raises(InvalidGuestAddress):
        mem.write_to(0x1000_0000, io.BytesIO(), 16)


def test_build_desc_chain_links(mem):
    descs = [
        Descriptor(0x10_0000, 0x100, 0),
        Descriptor(0x20_0000, 0x100, VRING_DESC_F_WRITE),
        Descriptor(0x30_0000, 0x100, VRING_DESC_F_WRITE),
    ]
    chain = build_desc_chain(mem, descs)
    assert chain.memory is mem
    got = list(chain)
    assert [d.addr for d in got] == [0x10_0000, 0x20_0000, 0x30_0000]
    assert [d.has_next() for d in got] == [True, True, False]
    assert [d.is_write_only() for d in got] == [False, True, True]
    assert next(chain, None) is None


def test_single_descriptor_chain(mem):
    chain = build_desc_chain(mem, [Descriptor(0x40_0000, 0x10, VRING_DESC_F_WRITE)])
    desc = next(chain)
    assert desc.has_next() is False
    assert desc.length == 0x10
    with pytest.raises(StopIteration):
        next(chain)