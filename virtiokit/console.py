"""Virtio console handling of receive and transmit queue descriptor chains.

The transmit queue carries data from the driver to the device; its buffers
are read-only for the device. The receive queue carries data from the device
to the driver; its buffers are write-only for the device.
"""

from __future__ import annotations

import sys
import threading
from typing import BinaryIO

from virtiokit.memory import DescriptorChain, GuestMemoryError

MAX_CAPACITY = 16384
"""Maximum capacity of the input buffer."""

DEFAULT_CAPACITY = 4096
"""Default capacity of the input buffer, the size of one guest page."""


class ConsoleError(Exception):
    """Base class for console device errors."""

    message = "console error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class WriteToGuestFailed(ConsoleError):
    """Data could not be written to guest memory."""

    def __init__(self, error: GuestMemoryError) -> None:
        super().__init__(f"Console failed to write slice to guest memory: {error}")
        self.error = error


class WriteToOutputFailed(ConsoleError):
    """Guest data could not be copied to the output sink."""

    def __init__(self, error: GuestMemoryError) -> None:
        super().__init__(f"Console failed to write data to output sink: {error}")
        self.error = error


class BufferCapacityExceeded(ConsoleError):
    message = "Console input buffer maximum capacity has been exceeded."


class UnexpectedReadOnlyDescriptor(ConsoleError):
    message = "Unexpected read-only descriptor."


class UnexpectedWriteOnlyDescriptor(ConsoleError):
    message = "Unexpected write-only descriptor."


class InvalidBufferCapacity(ConsoleError):
    message = "The capacity should not be 0 or higher than MAX_CAPACITY."


class OutputSinkFlushFailed(ConsoleError):
    """The output sink could not be flushed."""

    def __init__(self, error: OSError) -> None:
        super().__init__(f"Output sink flush has not written all bytes: {error}")
        self.error = error


def _default_output() -> BinaryIO:
    return getattr(sys.stdout, "buffer", sys.stdout)


class Console:
    """Moves console data between guest descriptor chains and the host.

    Data bound for the driver is queued in a bounded input buffer; data
    from the driver is written to `output`, a binary sink with `write` and
    `flush` (standard output by default).
    """

    def __init__(self, output: BinaryIO | None = None,
                 capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0 or capacity > MAX_CAPACITY:
            raise InvalidBufferCapacity()
        self._capacity = capacity
        self._input = bytearray()
        self._lock = threading.Lock()
        self.output = _default_output() if output is None else output

    @property
    def capacity(self) -> int:
        return self._capacity

    def enqueue_data(self, data: bytes) -> None:
        """Queue `data` for the driver; fail if the buffer would overflow."""
        with self._lock:
            if len(self._input) + len(data) > self._capacity:
                raise BufferCapacityExceeded()
            self._input += data

    def available_capacity(self) -> int:
        """Return how many more bytes the input buffer can take."""
        with self._lock:
            return self._capacity - len(self._input)

    def clear_input_buffer(self) -> None:
        """Drop all queued input."""
        with self._lock:
            self._input.clear()

    def is_input_buffer_empty(self) -> bool:
        with self._lock:
            return not self._input

    def process_transmitq_chain(self, chain: DescriptorChain) -> None:
        """Copy every buffer of a transmit queue chain to the output sink."""
        memory = chain.memory
        for desc in chain:
            if desc.is_write_only():
                raise UnexpectedWriteOnlyDescriptor()
            try:
                memory.write_to(desc.addr, self.output, desc.length)
            except GuestMemoryError as err:
                raise WriteToOutputFailed(err) from err
            try:
                self.output.flush()
            except OSError as err:
                raise OutputSinkFlushFailed(err) from err

    def process_receiveq_chain(self, chain: DescriptorChain) -> int:
        """Fill the buffers of a receive queue chain from the input buffer.

        Stops when the input is exhausted or the chain ends, and returns the
        number of bytes written to guest memory.
        """
        memory = chain.memory
        with self._lock:
            if not self._input:
                return 0
            sent = 0
            for desc in chain:
                if not desc.is_write_only():
                    raise UnexpectedReadOnlyDescriptor()
                take = min(desc.length, len(self._input))
                chunk = bytes(self._input[:take])
                del self._input[:take]
                try:
                    memory.write(desc.addr, chunk)
                except GuestMemoryError as err:
                    raise WriteToGuestFailed(err) from err
                sent += take
                if not self._input:
                    break
            return sent