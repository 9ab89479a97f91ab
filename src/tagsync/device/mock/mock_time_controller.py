from __future__ import annotations

import threading
import time
from typing import Sequence

import numpy as np
import zmq
from loguru import logger

from tagsync.device.device import Device
from tagsync.device.time_controller import arm_commands, stop_commands
from tagsync.types import CONSTS, DeviceError, DeviceTimeout
from tagsync.util.defaults import POLL_INTERVAL, STREAM_BASE_PORT
from tagsync.util.timestamp_io import make_records

MOCK_IDN = "MOCK,TimeController,1.0,12345"


def reply_for(cmd: str) -> str:
    """Reply of the mock controller's text interface."""
    if cmd == CONSTS.DEVICE.IDN:
        return MOCK_IDN
    if cmd.startswith(CONSTS.DEVICE.REC_PREFIX) or cmd.startswith(
        CONSTS.DEVICE.RAW_PREFIX
    ):
        return CONSTS.DEVICE.OK
    return "ERROR: Unknown command"


def synthetic_events(
    channel: int,
    channels: Sequence[int],
    start_ns: int,
    stop_ns: int,
    period_ns: int,
    clock_offset_ns: int = 0,
    jitter_ns: float = 0.0,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Device-clock timestamps of periodic 'physical' events on one channel.

    Events happen at absolute wall-clock instants on a grid of `period_ns`,
    staggered per channel, so two mock devices recording the same window see
    the same events, each through its own clock offset and jitter.
    """
    idx = sorted(channels).index(channel) if channel in channels else 0
    phase = (idx + 1) * period_ns // (len(channels) + 1)
    first = ((start_ns - phase) // period_ns + 1) * period_ns + phase
    times = np.arange(first, stop_ns, period_ns, dtype=np.int64)
    times = times + np.int64(clock_offset_ns)
    if jitter_ns and rng is not None and times.size:
        times = times + np.round(rng.normal(0.0, jitter_ns, times.size)).astype(
            np.int64
        )
        times.sort()
    return times.astype(np.uint64)


class MockTimeController(Device):
    """In-process stand-in for a Time Controller.

    Accepts the same text commands as the hardware and synthesises timestamps
    for the recorded window. `fail_prefixes` makes matching commands return an
    error reply, and `hang_prefixes` makes them time out, for exercising the
    error paths.
    """

    def __init__(
        self,
        clock_offset_ns: int = 0,
        jitter_ns: float = 0.0,
        event_period_ns: int = 1_000_000,
        seed: int = 0,
        fail_prefixes: Sequence[str] = (),
        hang_prefixes: Sequence[str] = (),
        **config,
    ):
        super().__init__(**config)
        self._connected = False
        self._clock_offset_ns = int(clock_offset_ns)
        self._jitter_ns = float(jitter_ns)
        self._event_period_ns = int(event_period_ns)
        self._seed = int(seed)
        self._recording = False
        self._collect_count = 0
        self.fail_prefixes = list(fail_prefixes)
        self.hang_prefixes = list(hang_prefixes)
        self.commands: list[str] = []

    def open(self):
        self._connected = True
        return True, MOCK_IDN

    def close(self):
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def send_command(self, text: str) -> str:
        if not self._connected:
            raise DeviceError("MockTimeController not connected.")
        self.commands.append(text)
        if any(text.startswith(p) for p in self.hang_prefixes):
            raise DeviceTimeout(f"No reply from MockTimeController to {text!r}")
        if any(text.startswith(p) for p in self.fail_prefixes):
            return f"ERROR: {text} failed"
        if text == "REC:PLAY":
            self._recording = True
        elif text == "REC:STOP":
            self._recording = False
        return reply_for(text)

    def command_ok(self, text: str) -> None:
        reply = self.send_command(text)
        if reply != CONSTS.DEVICE.OK:
            raise DeviceError(f"MockTimeController rejected {text!r}: {reply}")

    def identify(self) -> str:
        return self.send_command(CONSTS.DEVICE.IDN)

    def arm(self, channels: Sequence[int], sub_duration: float) -> None:
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
        rng = np.random.default_rng([self._seed, self._collect_count])
        self._collect_count += 1
        stop_ns = start_ns + int(duration * 1e9)
        parts_ch = []
        parts_ts = []
        for ch in channels:
            ts = synthetic_events(
                ch,
                channels,
                start_ns,
                stop_ns,
                self._event_period_ns,
                self._clock_offset_ns,
                self._jitter_ns,
                rng,
            )
            parts_ts.append(ts)
            parts_ch.append(np.full(ts.shape[0], ch, dtype=np.uint32))
        return make_records(np.concatenate(parts_ch), np.concatenate(parts_ts))


class MockTimeControllerServer:
    """ZeroMQ REP stand-in for the hardware, for use with `TimeController`.

    Between `REC:PLAY` and `REC:STOP` the enabled channels "record"; on stop
    each channel's synthetic timestamps are pushed on its stream socket followed
    by a zero-length end-of-stream frame.
    """

    def __init__(
        self,
        port: int = 5555,
        host: str = "127.0.0.1",
        stream_base_port: int = STREAM_BASE_PORT,
        event_period_ns: int = 1_000_000,
        clock_offset_ns: int = 0,
    ):
        self.port = port
        self.host = host
        self.stream_base_port = stream_base_port
        self.event_period_ns = event_period_ns
        self.clock_offset_ns = clock_offset_ns
        self.received: list[str] = []
        self._context = zmq.Context()
        self._socket = self._context.socket(zmq.REP)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.bind(f"tcp://{host}:{port}")
        self._streams: dict[int, zmq.Socket] = {}
        self._enabled: list[int] = []
        self._play_ns = 0
        self._running = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="mock-tc", daemon=True)
        self._thread.start()
        logger.info("Mock Time Controller started on {}:{}", self.host, self.port)

    def stop(self):
        self._running.clear()
        if self._thread is not None:
            self._thread.join()
        self._socket.close()
        for sock in self._streams.values():
            sock.close()
        self._context.term()
        logger.info("Mock Time Controller stopped")

    def _run(self):
        while self._running.is_set():
            try:
                cmd = self._socket.recv_string(zmq.NOBLOCK)
            except zmq.Again:
                time.sleep(POLL_INTERVAL)
                continue
            logger.debug("Mock Time Controller received: {}", cmd)
            self.received.append(cmd)
            self._socket.send_string(reply_for(cmd))
            self._track(cmd)

    def _track(self, cmd: str):
        if cmd.startswith("RAW") and cmd.endswith(":SEND ON"):
            ch = int(cmd[3 : cmd.index(":")])
            if ch not in self._streams:
                sock = self._context.socket(zmq.PAIR)
                sock.setsockopt(zmq.LINGER, 0)
                sock.bind(f"tcp://{self.host}:{self.stream_base_port + ch}")
                self._streams[ch] = sock
            if ch not in self._enabled:
                self._enabled.append(ch)
        elif cmd == "REC:PLAY":
            self._play_ns = time.time_ns()
        elif cmd == "REC:STOP" and self._play_ns:
            self._flush(time.time_ns())
            self._play_ns = 0

    def _flush(self, stop_ns: int):
        for ch in self._enabled:
            ts = synthetic_events(
                ch,
                self._enabled,
                self._play_ns,
                stop_ns,
                self.event_period_ns,
                self.clock_offset_ns,
            )
            sock = self._streams[ch]
            try:
                if ts.size:
                    sock.send(ts.astype("<u8").tobytes(), zmq.NOBLOCK)
                sock.send(b"", zmq.NOBLOCK)
            except zmq.Again:
                logger.warning("No stream client on channel {}, dropping data", ch)
        self._enabled = []
