"""Guest memory model and virtqueue descriptor chains."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, replace
from typing import BinaryIO, Iterable, Iterator, Sequence

VRING_DESC_F_NEXT = 1
VRING_DESC_F_WRITE = 2

_PAGE_SIZE = 4096


class GuestMemoryError(Exception):
    """Base class for guest memory access failures."""


class InvalidGuestAddress(GuestMemoryError):
    """The address is not backed by any memory region."""

    def __init__(self, addr: int) -> None:
        super().__init__(f"invalid guest address {addr:#x}")
        self.addr = addr


class InvalidBackendAddress(GuestMemoryError):
    """The host-side backing of an address range is not usable."""

    def __init__(self) -> None:
        super().__init__("invalid backend address")


class PartialBuffer(GuestMemoryError):
    """Only part of a buffer could be transferred."""

    def __init__(self, expected: int, completed: int) -> None:
        super().__init__(
            f"only used {completed} bytes in {expected} long buffer"
        )
        self.expected = expected
        self.completed = completed


class _Region:
    """A contiguous range of guest memory backed by lazily allocated pages."""

    def __init__(self, start: int, size: int) -> None:
        self.start = start
        self.size = size
        self._pages: dict[int, bytearray] = {}

    @property
    def end(self) -> int:
        return self.start + self.size

    def read(self, offset: int, count: int) -> bytes:
        out = bytearray()
        while count:
            page, page_offset = divmod(offset, _PAGE_SIZE)
            take = min(count, _PAGE_SIZE - page_offset)
            buf = self._pages.get(page)
            if buf is None:
                out += bytes(take)
            else:
                out += buf[page_offset:page_offset + take]
            offset += take
            count -= take
        return bytes(out)

    def write(self, offset: int, data: bytes) -> None:
        view = memoryview(data)
        pos = 0
        while pos < len(view):
            page, page_offset = divmod(offset + pos, _PAGE_SIZE)
            take = min(len(view) - pos, _PAGE_SIZE - page_offset)
            buf = self._pages.get(page)
            if buf is None:
                buf = self._pages[page] = bytearray(_PAGE_SIZE)
            buf[page_offset:page_offset + take] = view[pos:pos + take]
            pos += take


def _read_full(src: BinaryIO, count: int) -> bytes:
    parts = []
    remaining = count
    while remaining:
        chunk = src.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def _write_full(dst: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = dst.write(view)
        if written is None or written >= len(view):
            return
        view = view[written:]


class GuestMemory:
    """Guest physical memory made of one or more non-overlapping regions."""

    def __init__(self, ranges: Iterable[tuple[int, int]]) -> None:
        regions = sorted((_Region(start, size) for start, size in ranges),
                         key=lambda r: r.start)
        for region in regions:
            if region.size <= 0 or region.start < 0:
                raise ValueError("memory regions need a positive size")
        for prev, cur in zip(regions, regions[1:]):
            if cur.start < prev.end:
                raise ValueError("memory regions overlap")
        self._regions = regions
        self._starts = [r.start for r in regions]

    def _find(self, addr: int) -> _Region | None:
        pos = bisect.bisect_right(self._starts, addr) - 1
        if pos < 0:
            return None
        region = self._regions[pos]
        return region if addr < region.end else None

    def _spans(self, addr: int, count: int) -> Iterator[tuple[_Region, int, int]]:
        while count > 0:
            region = self._find(addr)
            if region is None:
                return
            offset = addr - region.start
            take = min(count, region.size - offset)
            yield region, offset, take
            addr += take
            count -= take

    def _require(self, addr: int, count: int) -> None:
        if count > 0 and self._find(addr) is None:
            raise InvalidGuestAddress(addr)

    def check_address(self, addr: int) -> bool:
        """Tell whether `addr` lies inside guest memory."""
        return self._find(addr) is not None

    def read(self, addr: int, length: int) -> bytes:
        """Read exactly `length` bytes starting at `addr`."""
        self._require(addr, length)
        data = b"".join(region.read(offset, take)
                        for region, offset, take in self._spans(addr, length))
        if len(data) < length:
            raise PartialBuffer(length, len(data))
        return data

    def write(self, addr: int, data: bytes) -> None:
        """Write all of `data` starting at `addr`."""
        self._require(addr, len(data))
        done = 0
        for region, offset, take in self._spans(addr, len(data)):
            region.write(offset, data[done:done + take])
            done += take
        if done < len(data):
            raise PartialBuffer(len(data), done)

    def read_exact_from(self, addr: int, src: BinaryIO, count: int) -> None:
        """Fill `count` bytes of guest memory at `addr` from the stream `src`."""
        self._require(addr, count)
        done = 0
        for region, offset, take in self._spans(addr, count):
            chunk = _read_full(src, take)
            region.write(offset, chunk)
            done += len(chunk)
            if len(chunk) < take:
                break
        if done < count:
            raise PartialBuffer(count, done)

    def write_all_to(self, addr: int, dst: BinaryIO, count: int) -> None:
        """Copy exactly `count` bytes from guest memory at `addr` to `dst`."""
        done = self.write_to(addr, dst, count)
        if done < count:
            raise PartialBuffer(count, done)

    def write_to(self, addr: int, dst: BinaryIO, count: int) -> int:
        """Copy up to `count` bytes from `addr` to `dst`; return bytes copied."""
        self._require(addr, count)
        done = 0
        for region, offset, take in self._spans(addr, count):
            _write_full(dst, region.read(offset, take))
            done += take
        return done


@dataclass(frozen=True)
class Descriptor:
    """A split virtqueue descriptor."""

    addr: int
    length: int
    flags: int = 0
    next_index: int = 0

    def is_write_only(self) -> bool:
        return bool(self.flags & VRING_DESC_F_WRITE)

    def has_next(self) -> bool:
        return bool(self.flags & VRING_DESC_F_NEXT)


class DescriptorChain:
    """Iterator over the descriptors of one chain in a descriptor table."""

    def __init__(self, memory: GuestMemory, table: Sequence[Descriptor],
                 head_index: int = 0) -> None:
        self.memory = memory
        self._table = tuple(table)
        self._index: int | None = head_index
        self._ttl = len(self._table)

    def __iter__(self) -> "DescriptorChain":
        return self

    def __next__(self) -> Descriptor:
        if self._index is None or self._ttl == 0 or self._index >= len(self._table):
            self._index = None
            raise StopIteration
        desc = self._table[self._index]
        self._ttl -= 1
        self._index = desc.next_index if desc.has_next() else None
        return desc


def build_desc_chain(memory: GuestMemory,
                     descriptors: Sequence[Descriptor]) -> DescriptorChain:
    """Link `descriptors` in order into a chain that starts at the first one."""
    last = len(descriptors) - 1
    table = [
        desc if i == last else replace(
            desc, flags=desc.flags | VRING_DESC_F_NEXT, next_index=i + 1)
        for i, desc in enumerate(descriptors)
    ]
    if table:
        table[last] = replace(table[last],
                              flags=table[last].flags & ~VRING_DESC_F_NEXT)
    return DescriptorChain(memory, table)