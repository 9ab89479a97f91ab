"""
Message, configuration, protocol and error types.

The tagsync.types package provides:

1. Wire messages
    - JSON envelopes (mashumaro) with a `type` discriminator, one class per
      message kind: triggers, commands and responses, heartbeats, file
      transfer frames and sync reports.

2. Configuration
    - `NodeConfig`, the immutable per-process configuration.
    - `OffsetReport`, the write-once correlation result.

3. Device protocol
    - `TimeTaggerProtocol` defines what a device must implement.

4. Errors
    - `SyncError` and its kinds, rebuildable from the `kind` string carried in
      replies and heartbeats.

Examples
--------
Decoding any frame received on a channel:
```python
from tagsync.types import Envelope, Heartbeat
msg = Envelope.from_bytes(frame)
if isinstance(msg, Heartbeat):
    print(msg.state, msg.progress)
```

See Also
--------
tagsync.node : Master/slave protocol implementation
"""

from __future__ import annotations

from .commands import CONSTS
from .config import NodeConfig, OffsetReport
from .errors import (
    ERROR_KINDS,
    Aborted,
    Busy,
    DeviceError,
    DeviceTimeout,
    InsufficientData,
    InvalidInput,
    LateTrigger,
    PeerNotReady,
    PeerUnresponsive,
    StaleSequence,
    SyncError,
    TransferFailed,
    error_from_kind,
    error_kind,
)
from .messages import (
    Command,
    CommandResponse,
    Envelope,
    FileFooter,
    FileHeader,
    FilePart,
    Heartbeat,
    SyncReport,
    TriggerMessage,
)
from .protocols import TimeTaggerProtocol

__all__ = [
    "CONSTS",
    "ERROR_KINDS",
    "Aborted",
    "Busy",
    "Command",
    "CommandResponse",
    "DeviceError",
    "DeviceTimeout",
    "Envelope",
    "FileFooter",
    "FileHeader",
    "FilePart",
    "Heartbeat",
    "InsufficientData",
    "InvalidInput",
    "LateTrigger",
    "NodeConfig",
    "OffsetReport",
    "PeerNotReady",
    "PeerUnresponsive",
    "StaleSequence",
    "SyncError",
    "SyncReport",
    "TimeTaggerProtocol",
    "TransferFailed",
    "TriggerMessage",
    "error_from_kind",
    "error_kind",
]
