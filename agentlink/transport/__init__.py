"""Transport abstraction between the control engine and the agent CLI.

A transport moves newline-delimited JSON in both directions and knows nothing
about the control protocol. The engine builds request correlation and message
routing on top of it, so any implementation honoring this contract (the real
subprocess, a scripted test double) is interchangeable.
"""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator
from typing import Any

from ..errors import CLIJSONDecodeError


class Transport(abc.ABC):
    """Line-oriented duplex channel to the agent CLI."""

    @abc.abstractmethod
    async def connect(self) -> None:
        """Start the process (or open the channel) and prepare for I/O."""

    @abc.abstractmethod
    async def write(self, data: str) -> None:
        """Write one line of text (JSON plus trailing newline).

        Callers must serialize writes; the engine holds a single writer lock.
        """

    @abc.abstractmethod
    def read_messages(self) -> AsyncIterator[Any | CLIJSONDecodeError]:
        """Iterate decoded JSON values in arrival order.

        A line that cannot be decoded yields a ``CLIJSONDecodeError`` instance
        in its place instead of ending the iteration.
        """

    @abc.abstractmethod
    async def end_input(self) -> None:
        """Half-close the input side so the process sees end-of-input."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Forcefully stop the process and release its pipes. Idempotent."""

    @abc.abstractmethod
    def is_ready(self) -> bool:
        """Return True while connected."""

    async def wait_for_exit(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the peer to exit on its own.

        Returns True if it exited. Transports without a process never exit by
        themselves, so the default answers False immediately.
        """
        del timeout
        return False


__all__ = ["Transport"]
