# -*- coding: utf-8 -*-
"""
Time-tagger device implementations for tagsync.

- `TimeController`: ZeroMQ command bridge to the hardware, with per-channel
  raw timestamp stream clients.
- `MockTimeController`: in-process stand-in that synthesises timestamps.
- `MockTimeControllerServer`: ZeroMQ stand-in for the hardware itself.

Each device implements `tagsync.types.TimeTaggerProtocol`.

Examples
--------
```python
from tagsync.device import TimeController
tc = TimeController(address="192.168.0.10")
tc.open()
tc.send_command("*IDN?")
```

See Also
--------
tagsync.types.protocols : Device protocol
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from tagsync.types import TimeTaggerProtocol

from .device import Device
from .mock import MockTimeController, MockTimeControllerServer
from .stream import BufferStreamClient
from .time_controller import TimeController

DEVICE_TYPES: dict[str, type[Device]] = {
    "TimeController": TimeController,
    "MockTimeController": MockTimeController,
}


def make_device(
    device_type: str, address: str, port: int, options: dict[str, Any]
) -> Device:
    """Build a device from node configuration and check it implements the protocol."""
    try:
        cls = DEVICE_TYPES[device_type]
    except KeyError:
        logger.error("Unknown device type: {}", device_type)
        raise ValueError(
            f"Unknown device type {device_type}, valid: {list(DEVICE_TYPES)}"
        )
    if cls is TimeController:
        device = cls(address=address, port=port, **options)
    else:
        device = cls(**options)
    if not isinstance(device, TimeTaggerProtocol):
        raise ValueError(f"{device_type} does not implement TimeTaggerProtocol")
    return device


__all__ = [
    "BufferStreamClient",
    "DEVICE_TYPES",
    "Device",
    "MockTimeController",
    "MockTimeControllerServer",
    "TimeController",
    "make_device",
]
