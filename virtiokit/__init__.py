"""Virtio block and console device components over a simulated guest memory."""

__version__ = "0.1.0"