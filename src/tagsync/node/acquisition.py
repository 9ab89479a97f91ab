"""Chunked acquisition shared by master and slave.

Both nodes run the same loop against their own device, starting from the
same trigger instant: chunk `k` starts at `trigger + k * sub_duration`.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from loguru import logger

from tagsync.node.session import SESSION_STATE, AcquisitionSession
from tagsync.types import (
    Aborted,
    DeviceError,
    NodeConfig,
    TimeTaggerProtocol,
    error_from_kind,
)
from tagsync.util.defaults import CHUNK_RETRY_MARGIN_NS, POLL_INTERVAL


@dataclass(frozen=True)
class Chunk:
    index: int
    offset_ns: int  # from the trigger instant
    duration: float  # seconds


def num_chunks(duration: float, sub_duration: float, max_files: int) -> int:
    # the epsilon keeps e.g. 1.0 / 0.2 from rounding up to 6
    return max(1, min(max_files, math.ceil(duration / sub_duration - 1e-9)))


def plan_chunks(
    duration: float, sub_duration: float, max_files: int, streaming: bool
) -> list[Chunk]:
    """Chunks of one acquisition. Non-streaming is a single chunk of `duration`."""
    if not streaming:
        return [Chunk(0, 0, duration)]
    chunks = []
    for k in range(num_chunks(duration, sub_duration, max_files)):
        offset = k * sub_duration
        chunks.append(
            Chunk(k, int(round(offset * 1e9)), min(sub_duration, duration - offset))
        )
    return chunks


def plan_from_config(config: NodeConfig, duration: float) -> list[Chunk]:
    return plan_chunks(
        duration, config.sub_duration, config.max_files, config.streaming_mode
    )


def raise_if_aborted(session: AcquisitionSession, abort: threading.Event) -> None:
    """Raise the session's own error if it failed, else Aborted."""
    if not abort.is_set():
        return
    kind, message = session.error
    if session.state == SESSION_STATE.ERROR and kind:
        raise error_from_kind(kind, message)
    raise Aborted(f"{session.role} acquisition aborted")


def wait_until_ns(
    target_ns: int, session: AcquisitionSession, abort: threading.Event
) -> int:
    """Sleep until wall-clock `target_ns`, returns how late we woke (ns)."""
    while True:
        raise_if_aborted(session, abort)
        remaining = target_ns - time.time_ns()
        if remaining <= 0:
            return -remaining
        time.sleep(min(remaining / 1e9, POLL_INTERVAL))


ChunkCallback = Callable[[Chunk, np.ndarray, int], None]


class ChunkedAcquisition:
    """Runs the chunks of one acquisition on a local device.

    `on_chunk(chunk, records, started_ns)` is called in the finishing state
    with the chunk's timestamp record and the wall-clock instant recording
    started. A chunk whose device commands fail is retried up to `retries`
    times before the DeviceError propagates. A retry whose planned window has
    already begun records a fresh full-length window instead, and the chunks
    after it move by the same amount.
    """

    def __init__(
        self,
        device: TimeTaggerProtocol,
        session: AcquisitionSession,
        channels: Sequence[int],
        trigger_ns: int,
        chunks: list[Chunk],
        abort: threading.Event,
        on_chunk: ChunkCallback,
        retries: int = 0,
    ):
        self.device = device
        self.session = session
        self.channels = list(channels)
        self.trigger_ns = trigger_ns
        self.chunks = chunks
        self.abort = abort
        self.on_chunk = on_chunk
        self.retries = retries
        self.shift_ns = 0  # added to every planned start after a retried chunk

    def arm(self, chunk: Chunk) -> None:
        self.device.arm(self.channels, chunk.duration)

    def planned_start_ns(self, chunk: Chunk) -> int:
        return self.trigger_ns + chunk.offset_ns + self.shift_ns

    def record(self, chunk: Chunk, start_ns: int) -> tuple[np.ndarray, int]:
        """Record `chunk.duration` from wall-clock `start_ns`."""
        late = wait_until_ns(start_ns, self.session, self.abort)
        if late > 1_000_000:
            logger.debug("Chunk {} started {:.2f} ms late", chunk.index, late / 1e6)
        self.device.play()
        started_ns = time.time_ns()
        self.session.transition(SESSION_STATE.ACQUIRING)
        wait_until_ns(
            start_ns + int(chunk.duration * 1e9), self.session, self.abort
        )
        self.device.stop(self.channels)
        records = self.device.collect(self.channels, start_ns, chunk.duration)
        return records, started_ns

    def retry_start_ns(self, chunk: Chunk) -> int:
        """Start of a retried chunk: its planned window, or a fresh one if that began.

        Later chunks move by the same amount so every chunk keeps its length.
        """
        planned = self.planned_start_ns(chunk)
        fresh = time.time_ns() + CHUNK_RETRY_MARGIN_NS
        if fresh > planned:
            self.shift_ns += fresh - planned
            logger.info(
                "Chunk {} moved to a new window {:.1f} ms after its planned start",
                chunk.index,
                (fresh - planned) / 1e6,
            )
            return fresh
        return planned

    def run(self, armed: bool = False) -> None:
        """Run every chunk. With `armed` the device is already armed for chunk 0."""
        total = len(self.chunks)
        for chunk in self.chunks:
            attempt = 0
            while True:
                try:
                    if not armed:
                        self.session.transition(SESSION_STATE.ARMED)
                        self.arm(chunk)
                    armed = False
                    if attempt:
                        start_ns = self.retry_start_ns(chunk)
                    else:
                        start_ns = self.planned_start_ns(chunk)
                    records, started_ns = self.record(chunk, start_ns)
                    break
                except DeviceError as exc:
                    attempt += 1
                    if attempt > self.retries:
                        raise
                    logger.warning(
                        "Chunk {} failed ({}), retry {}/{}",
                        chunk.index,
                        exc,
                        attempt,
                        self.retries,
                    )
                    self.stop_device()
            self.session.transition(SESSION_STATE.FINISHING)
            logger.info(
                "{} chunk {}/{}: {} records",
                self.session.role,
                chunk.index + 1,
                total,
                records.shape[0],
            )
            self.on_chunk(chunk, records, started_ns)
            self.session.set_progress((chunk.index + 1) / total)

    def stop_device(self) -> None:
        """Stop recording after a failure or abort; errors here are only logged."""
        try:
            self.device.stop(self.channels)
        except DeviceError as exc:
            logger.warning("Could not stop device: {}", exc)
