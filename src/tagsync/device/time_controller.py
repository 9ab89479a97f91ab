"""Time Controller device.

The controller is reached over a ZeroMQ REQ socket speaking a textual
request/reply protocol (`*IDN?`, `REC:...`, `RAW...` -> `OK` or an error
string). Raw timestamps are collected from the per-channel stream sockets.
"""

from __future__ import annotations

import threading
import time
from typing import Sequence

import numpy as np
import zmq
from loguru import logger

from tagsync.device.device import Device
from tagsync.device.stream import BufferStreamClient
from tagsync.types import CONSTS, DeviceError, DeviceTimeout
from tagsync.util.defaults import DEVICE_TIMEOUT, STREAM_BASE_PORT
from tagsync.util.timestamp_io import RECORD_DTYPE, make_records

STREAM_END_TIMEOUT = 2.0  # seconds to wait for end-of-stream after stop


def arm_commands(channels: Sequence[int], sub_duration: float) -> list[str]:
    """Command sequence that prepares a recording (before REC:PLAY)."""
    pwid_ps = int(1e12 * sub_duration)
    pper_ps = int(1e12 * (sub_duration + 40e-9))
    cmds = [f"RAW{ch}:REF:LINK NONE" for ch in channels]
    cmds += [
        "REC:TRIG:ARM:MODE MANUal",
        "REC:ENABle ON",
        "REC:STOP",
        "REC:NUM INF",
        f"REC:PWID {pwid_ps};PPER {pper_ps}",
    ]
    for ch in channels:
        cmds += [f"RAW{ch}:ERRORS:CLEAR", f"RAW{ch}:SEND ON"]
    return cmds


def stop_commands(channels: Sequence[int]) -> list[str]:
    return ["REC:STOP"] + [f"RAW{ch}:SEND OFF" for ch in channels]


class TimeController(Device):
    """ZeroMQ command bridge to a hardware Time Controller.

    `send_command` is synchronous and single-flight. A call that gets no reply
    within `timeout` seconds raises DeviceTimeout and is never retried here:
    the REQ socket is closed and reopened so the next call starts clean.
    """

    address: str
    port: int
    required_config = {"address": str, "port": int}

    def __init__(
        self,
        address: str = "127.0.0.1",
        port: int = 5555,
        timeout: float = DEVICE_TIMEOUT,
        stream_base_port: int = STREAM_BASE_PORT,
    ):
        super().__init__(address=address, port=port)
        self.timeout = timeout
        self.stream_base_port = stream_base_port
        self._context: zmq.Context | None = None
        self._socket: zmq.Socket | None = None
        self._lock = threading.Lock()
        self._streams: dict[int, BufferStreamClient] = {}
        self._idn = ""

    def open(self) -> tuple[bool, str]:
        self._context = zmq.Context()
        self._connect()
        self._idn = self.identify()
        logger.info("Time Controller at {}:{} identified: {}", self.address, self.port, self._idn)
        return True, self._idn

    def _connect(self):
        self._socket = self._context.socket(zmq.REQ)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.connect(f"tcp://{self.address}:{self.port}")

    def close(self):
        self._join_streams()
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._context is not None:
            self._context.term()
            self._context = None

    def is_connected(self) -> bool:
        return self._socket is not None

    # ------------------------------------------------------------------

    def send_command(self, text: str) -> str:
        if self._socket is None:
            raise DeviceError("Time Controller not connected.")
        with self._lock:
            logger.trace("*DEVICE* (->): {}", text)
            self._socket.send_string(text)
            if self._socket.poll(int(1000 * self.timeout), zmq.POLLIN):
                reply = self._socket.recv_string()
                logger.trace("*DEVICE* (<-): {}", reply)
                return reply
            # Socket is confused. Close and reopen it, leave retrying to the caller.
            logger.error("No reply from Time Controller to {!r}", text)
            self._socket.close()
            self._connect()
            raise DeviceTimeout(
                f"No reply from Time Controller within {self.timeout}s to {text!r}"
            )

    def command_ok(self, text: str) -> None:
        reply = self.send_command(text)
        if reply != CONSTS.DEVICE.OK:
            raise DeviceError(f"Time Controller rejected {text!r}: {reply}")

    def identify(self) -> str:
        return self.send_command(CONSTS.DEVICE.IDN)

    # ------------------------------------------------------------------

    def arm(self, channels: Sequence[int], sub_duration: float) -> None:
        self._join_streams()
        for ch in channels:
            client = BufferStreamClient(
                self._context, ch, host=self.address, base_port=self.stream_base_port
            )
            client.start()
            self._streams[ch] = client
        for cmd in arm_commands(channels, sub_duration):
            self.command_ok(cmd)

    def play(self) -> None:
        self.command_ok("REC:PLAY")

    def stop(self, channels: Sequence[int]) -> None:
        for cmd in stop_commands(channels):
            self.command_ok(cmd)

    def collect(
        self, channels: Sequence[int], start_ns: int, duration: float
    ) -> np.ndarray:
        deadline = time.monotonic() + STREAM_END_TIMEOUT
        parts_ch = []
        parts_ts = []
        for ch in channels:
            client = self._streams.get(ch)
            if client is None:
                logger.warning("No stream client for channel {}", ch)
                continue
            if not client.wait_finished(max(0.0, deadline - time.monotonic())):
                logger.warning("Channel {} stream did not end in time", ch)
            ts = client.timestamps()
            parts_ts.append(ts)
            parts_ch.append(np.full(ts.shape[0], ch, dtype=np.uint32))
        self._join_streams()
        if not parts_ts:
            return np.empty(0, dtype=RECORD_DTYPE)
        return make_records(np.concatenate(parts_ch), np.concatenate(parts_ts))

    def _join_streams(self):
        for client in self._streams.values():
            client.join()
        self._streams.clear()
