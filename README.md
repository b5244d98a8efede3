# virtiokit

Device-side building blocks for virtio block and console devices. They work
against an in-process model of guest memory and split-virtqueue descriptor
chains, so requests can be parsed and executed without a real guest.

## Modules

- `virtiokit.memory`
  - `GuestMemory(ranges)` – guest physical memory made of non-overlapping
    `(start, size)` regions. Pages are allocated lazily and read back as
    zeroes until written. It offers `check_address`, `read`, `write`,
    `read_exact_from` (fill memory from a binary stream), `write_all_to` and
    `write_to` (copy memory to a binary stream).
  - `GuestMemoryError` and its subclasses `InvalidGuestAddress`,
    `InvalidBackendAddress` and `PartialBuffer` (with `expected` and
    `completed` byte counts).
  - `Descriptor(addr, length, flags=0, next_index=0)` with `is_write_only()`
    and `has_next()`; the flag values `VRING_DESC_F_NEXT` and
    `VRING_DESC_F_WRITE`.
  - `DescriptorChain`, an iterator over the descriptors of one chain, and
    `build_desc_chain(memory, descriptors)`, which links a list of
    descriptors into a chain in the given order.
- `virtiokit.blk_request`
  - `parse_request(chain)` reads the request header from the chain head and
    returns a `Request` (`request_type`, `data` as `(address, length)`
    pairs, `sector`, `status_addr`, `type_code`). It checks that the head
    is device-readable, that the status descriptor is device-writable,
    non-empty and inside guest memory, that a flush request targets sector
    0, and that a read request has no device-readable data buffers.
  - `RequestType`, `request_type_from(value)`, `RequestHeader` with `pack()`,
    and `unpack_header(data)`.
  - Errors derive from `RequestError`: `DescriptorChainTooShort`,
    `DescriptorLengthTooSmall`, `RequestGuestMemoryError`,
    `InvalidFlushSector`, `UnexpectedReadOnlyDescriptor`,
    `UnexpectedWriteOnlyDescriptor`.
- `virtiokit.blk_errors`
  - Errors derived from `ExecuteError`, each with `status()` giving the
    virtio status byte reported to the driver: `InvalidFlags` and
    `UnsupportedRequest` map to `VIRTIO_BLK_S_UNSUPP`, all others to
    `VIRTIO_BLK_S_IOERR`. `ReadError` also carries `bytes_to_mem`.
  - `ProcessRequestError`, raised when the status byte cannot be written or
    the used length overflows.
  - `DiscardWriteZeroes(sector, num_sectors, flags=0)`, the 16-byte segment
    of discard and write-zeroes requests, with `pack()` and
    `unpack_segment(data)`.
- `virtiokit.blk_backend`
  - `FileBackend(file)` (or `FileBackend.open(path)`) wraps a seekable binary
    file and adds `fsync`, `punch_hole` and `write_zeroes_at`. Hole punching
    is done by writing zeroes over the range inside the file and never
    changes the file size.
- `virtiokit.blk_executor`
  - `StdIoBackend(inner, features)` executes read, write, flush, get-id,
    discard and write-zeroes requests, honouring the negotiated feature bits
    (read-only, flush, discard, write zeroes) and the disk size in sectors.
    `with_device_id(device_id)` sets the 20-byte id returned by get-id
    requests. `execute(mem, request)` returns the bytes written to guest
    memory; `process_request(mem, request)` also writes the status byte and
    returns the used length, status byte included.
- `virtiokit.console`
  - `Console(output=None, capacity=DEFAULT_CAPACITY)` keeps a bounded,
    thread-safe input buffer (`enqueue_data`, `available_capacity`,
    `clear_input_buffer`, `is_input_buffer_empty`).
    `process_receiveq_chain(chain)` moves queued input into device-writable
    buffers and returns the byte count; `process_transmitq_chain(chain)`
    copies device-readable buffers to the output sink (standard output by
    default). Errors derive from `ConsoleError`.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Examples

Parsing a block request:

```python
from virtiokit.memory import GuestMemory, Descriptor, VRING_DESC_F_WRITE, build_desc_chain
from virtiokit.blk_request import parse_request

mem = GuestMemory([(0, 0x1000_0000)])
chain = build_desc_chain(mem, [
    Descriptor(0x10_0000, 0x100),                       # header (all zero: a read)
    Descriptor(0x20_0000, 0x200, VRING_DESC_F_WRITE),   # data buffer
    Descriptor(0x40_0000, 0x1, VRING_DESC_F_WRITE),     # status byte
])
request = parse_request(chain)
print(request.request_type, request.total_data_len())  # RequestType.IN 512
```

Executing a write against an in-memory disk:

```python
import io

from virtiokit.memory import GuestMemory
from virtiokit.blk_backend import FileBackend
from virtiokit.blk_executor import StdIoBackend
from virtiokit.blk_request import Request, RequestType

mem = GuestMemory([(0, 0x10_0000)])
mem.write(0x1000, b"\x55" * 512)

disk = StdIoBackend(FileBackend(io.BytesIO(bytes(4096))), 0)
request = Request(RequestType.OUT, [(0x1000, 512)], sector=1, status_addr=0x2000)
print(disk.process_request(mem, request))   # 1: only the status byte
print(mem.read(0x2000, 1))                   # b'\x00' (VIRTIO_BLK_S_OK)
```

Sending console input to the driver:

```python
import io

from virtiokit.console import Console
from virtiokit.memory import GuestMemory, Descriptor, VRING_DESC_F_WRITE, build_desc_chain

mem = GuestMemory([(0, 0x1_0000)])
console = Console(output=io.BytesIO())
console.enqueue_data(b"hello")
chain = build_desc_chain(mem, [Descriptor(0x3000, 256, VRING_DESC_F_WRITE)])
print(console.process_receiveq_chain(chain))  # 5
```

## What it does not do

The package handles single descriptor chains handed to it. It has no
virtqueue rings (available and used rings, notifications), no device
transport such as MMIO or PCI, no device configuration space, no
asynchronous request execution and no command-line program. Guest memory is
a Python model, not memory shared with a running virtual machine.