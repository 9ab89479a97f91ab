"""Per-channel raw timestamp stream client.

The time controller publishes each channel's timestamps on its own PAIR socket
(port `STREAM_BASE_PORT + channel`) as frames of little-endian uint64 values.
A zero-length frame marks the end of the stream.
"""

from __future__ import annotations

import threading

import numpy as np
import zmq
from loguru import logger

from tagsync.util.defaults import STREAM_BASE_PORT


class BufferStreamClient:
    def __init__(
        self,
        context: zmq.Context,
        channel: int,
        host: str = "127.0.0.1",
        base_port: int = STREAM_BASE_PORT,
    ):
        self.channel = channel
        self.port = base_port + channel
        self._socket = context.socket(zmq.PAIR)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.connect(f"tcp://{host}:{self.port}")
        self._buffer: list[np.ndarray] = []
        self._running = threading.Event()
        self._finished = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        self._running.set()
        self._thread = threading.Thread(
            target=self._run, name=f"stream-ch{self.channel}", daemon=True
        )
        self._thread.start()

    def _run(self):
        while self._running.is_set():
            if not self._socket.poll(100, zmq.POLLIN):
                continue
            frame = self._socket.recv()
            if len(frame) == 0:
                logger.debug("End of stream on channel {}", self.channel)
                break
            if len(frame) % 8:
                logger.warning(
                    "Channel {} frame of {} bytes is not a whole number of "
                    "timestamps, dropping tail",
                    self.channel,
                    len(frame),
                )
                frame = frame[: len(frame) - len(frame) % 8]
            self._buffer.append(np.frombuffer(frame, dtype="<u8").copy())
            logger.trace(
                "Channel {}: buffered {} timestamps", self.channel, len(frame) // 8
            )
        self._finished.set()

    def wait_finished(self, timeout: float) -> bool:
        return self._finished.wait(timeout)

    def join(self):
        self._running.clear()
        if self._thread is not None:
            self._thread.join()
        self._socket.close()

    def timestamps(self) -> np.ndarray:
        if not self._buffer:
            return np.empty(0, dtype=np.uint64)
        return np.concatenate(self._buffer).astype(np.uint64)
