"""Channels between master and slave, and where each side binds or connects.

| channel | master | slave | binds  |
|---------|--------|-------|--------|
| trigger | PUSH   | PULL  | master |
| status  | PULL   | PUSH  | master |
| file    | PULL   | PUSH  | master |
| sync    | PULL   | PUSH  | master |
| command | REQ    | REP   | slave  |

In local mode both nodes run on one machine and everything goes over the
loopback interface.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import zmq
from loguru import logger

from tagsync.types import CONSTS, NodeConfig

LOOPBACK = "127.0.0.1"


@dataclass(frozen=True)
class ChannelSpec:
    port_attr: str
    master_type: int
    slave_type: int
    master_binds: bool


CHANNELS = {
    "trigger": ChannelSpec("trigger_port", zmq.PUSH, zmq.PULL, True),
    "status": ChannelSpec("status_port", zmq.PULL, zmq.PUSH, True),
    "file": ChannelSpec("file_port", zmq.PULL, zmq.PUSH, True),
    "sync": ChannelSpec("sync_port", zmq.PULL, zmq.PUSH, True),
    "command": ChannelSpec("command_port", zmq.REQ, zmq.REP, False),
}


def resolve_endpoint(config: NodeConfig, channel: str) -> tuple[str, bool]:
    """Return `(endpoint, bind)` for this node's end of `channel`."""
    spec = CHANNELS[channel]
    port = getattr(config, spec.port_attr)
    is_master = config.role == CONSTS.ROLE.MASTER
    bind = spec.master_binds == is_master
    if bind:
        host = LOOPBACK if config.local_mode else "*"
    else:
        host = LOOPBACK if config.local_mode else config.peer_address
    return f"tcp://{host}:{port}", bind


def socket_type(config: NodeConfig, channel: str) -> int:
    spec = CHANNELS[channel]
    if config.role == CONSTS.ROLE.MASTER:
        return spec.master_type
    return spec.slave_type


def open_channel(context: zmq.Context, config: NodeConfig, channel: str) -> zmq.Socket:
    """Create, configure and bind/connect this node's socket for `channel`."""
    endpoint, bind = resolve_endpoint(config, channel)
    sock = context.socket(socket_type(config, channel))
    sock.setsockopt(zmq.LINGER, 0)
    if bind:
        sock.bind(endpoint)
    else:
        sock.connect(endpoint)
    logger.debug(
        "{} {} channel {} {}",
        config.role,
        channel,
        "bound to" if bind else "connected to",
        endpoint,
    )
    return sock


def recv_nowait(sock: zmq.Socket) -> Optional[list[bytes]]:
    """Non-blocking multipart receive, None if nothing is waiting."""
    try:
        return sock.recv_multipart(zmq.NOBLOCK)
    except zmq.Again:
        return None


def send_nowait(sock: zmq.Socket, frames: list[bytes]) -> bool:
    """Non-blocking multipart send, False if no peer can take it right now."""
    try:
        sock.send_multipart(frames, zmq.NOBLOCK)
        return True
    except zmq.Again:
        return False
