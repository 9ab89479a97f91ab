"""
Master/slave acquisition synchronization.

- `MasterController`: trigger coordination, heartbeat monitoring, file
  collection and per-chunk offset correlation.
- `SlaveAgent`: trigger listener, command handlers, heartbeats and the
  acquisition worker that streams chunk files back to the master.
- `AcquisitionSession`: the lock-protected state machine each node owns.

See Also
--------
tagsync.node.transport : Channels, ports and bind/connect rules
tagsync.analysis : Offset correlation
"""

from .acquisition import Chunk, ChunkedAcquisition, num_chunks, plan_chunks
from .heartbeat import HeartbeatEmitter, HeartbeatMonitor
from .master import CommandClient, MasterController, SyncMonitor
from .session import (
    ACTIVE_STATES,
    SESSION_STATE,
    AcquisitionSession,
    is_session_label,
    session_label,
)
from .slave import COMMAND_HANDLERS, SlaveAgent, handler
from .transfer import FileReceiver, FileSender, build_messages, results_filename
from .transport import CHANNELS, open_channel, resolve_endpoint

__all__ = [
    "ACTIVE_STATES",
    "CHANNELS",
    "COMMAND_HANDLERS",
    "SESSION_STATE",
    "AcquisitionSession",
    "Chunk",
    "ChunkedAcquisition",
    "CommandClient",
    "FileReceiver",
    "FileSender",
    "HeartbeatEmitter",
    "HeartbeatMonitor",
    "MasterController",
    "SlaveAgent",
    "SyncMonitor",
    "build_messages",
    "handler",
    "is_session_label",
    "num_chunks",
    "open_channel",
    "plan_chunks",
    "resolve_endpoint",
    "results_filename",
    "session_label",
]
