"""Device protocol for time-tagging hardware.

A time-tagger only needs to implement the methods below to be driven by a
master or slave node. Devices don't need to inherit from the protocol: the
node checks compliance at runtime with `isinstance(device, TimeTaggerProtocol)`.

See Also
--------
tagsync.device.time_controller : Hardware implementation
tagsync.device.mock : Mock implementation for testing
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

import numpy as np


@runtime_checkable
class TimeTaggerProtocol(Protocol):
    """Protocol for time-tagging devices."""

    def open(self) -> tuple[bool, str]: ...

    def close(self) -> None: ...

    def is_connected(self) -> bool: ...

    def send_command(self, text: str) -> str:
        """Synchronous request/reply with the device, no pipelining."""
        ...

    def identify(self) -> str: ...

    def arm(self, channels: Sequence[int], sub_duration: float) -> None:
        """Configure recording for `channels` (does not start it)."""
        ...

    def play(self) -> None:
        """Begin recording."""
        ...

    def stop(self, channels: Sequence[int]) -> None:
        """Stop recording and stop sending on `channels`."""
        ...

    def collect(
        self, channels: Sequence[int], start_ns: int, duration: float
    ) -> np.ndarray:
        """Return the records acquired since the last play()."""
        ...
