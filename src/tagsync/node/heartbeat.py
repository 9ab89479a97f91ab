"""Heartbeats: slave liveness and status, pushed to the master every interval."""

from __future__ import annotations

import threading
import time
from typing import Optional

import zmq
from loguru import logger

from tagsync.node.session import ACTIVE_STATES, SESSION_STATE, AcquisitionSession
from tagsync.node.transport import recv_nowait, send_nowait
from tagsync.types import Envelope, Heartbeat, PeerUnresponsive
from tagsync.util.defaults import POLL_INTERVAL


class HeartbeatEmitter:
    """Slave side. Sends a Heartbeat built from the session every interval.

    A state change wakes the emitter early so the master sees transitions
    without waiting a full interval.
    """

    def __init__(
        self,
        session: AcquisitionSession,
        sock: zmq.Socket,
        interval: float,
        running: threading.Event,
    ):
        self.session = session
        self.sock = sock
        self.interval = interval
        self.running = running
        self.thread = threading.Thread(
            target=self._run, name="heartbeat-emitter", daemon=True
        )

    def start(self):
        self.thread.start()

    def join(self):
        self.thread.join()

    def beat(self) -> Heartbeat:
        snap = self.session.snapshot()
        hb = Heartbeat(
            sequence=self.session.next_status_seq(),
            state=snap["state"],
            progress=snap["progress"],
            error=snap["error"],
            error_kind=snap["error_kind"],
            trigger_timestamp_ns=snap["trigger_timestamp_ns"],
            timestamp_ms=time.time_ns() // 1_000_000,
        )
        if send_nowait(self.sock, [hb.to_bytes()]):
            logger.trace("*HEARTBEAT* (slave->): {}", hb)
        else:
            logger.trace("Heartbeat {} not sent, no master connected", hb.sequence)
        return hb

    def _run(self):
        while self.running.is_set():
            self.session.changed.clear()
            self.beat()
            # wake early on state change, check running at least every poll
            deadline = time.monotonic() + self.interval
            while self.running.is_set() and time.monotonic() < deadline:
                if self.session.changed.wait(POLL_INTERVAL):
                    break


class HeartbeatMonitor:
    """Master side. Tracks the last accepted heartbeat and detects timeouts.

    Armed from start-up. If no heartbeat arrives for `timeout` seconds the
    peer is marked down; during an acquisition the session also goes to error
    with PeerUnresponsive and `abort` is set so any wait in progress ends.
    Heartbeats not newer than the last accepted one are dropped.
    """

    def __init__(
        self,
        session: AcquisitionSession,
        sock: zmq.Socket,
        timeout: float,
        running: threading.Event,
        abort: threading.Event,
    ):
        self.session = session
        self.sock = sock
        self.timeout = timeout
        self.running = running
        self.abort = abort
        self._lock = threading.Lock()
        self._last_seen = time.monotonic()
        self._last: Optional[Heartbeat] = None
        self._timed_out = False
        self.thread = threading.Thread(
            target=self._run, name="heartbeat-monitor", daemon=True
        )

    def start(self):
        with self._lock:
            self._last_seen = time.monotonic()
        self.thread.start()

    def join(self):
        self.thread.join()

    @property
    def last(self) -> Optional[Heartbeat]:
        with self._lock:
            return self._last

    def rearm(self):
        """Restart the timeout window, e.g. after the session was reset."""
        with self._lock:
            self._last_seen = time.monotonic()
            self._timed_out = False

    def peer_alive(self) -> bool:
        with self._lock:
            return self._last is not None and not self._timed_out

    def peer_error(self) -> Optional[tuple[str, str]]:
        """(kind, message) if the last heartbeat reports the slave in error."""
        with self._lock:
            if self._last is not None and self._last.state == SESSION_STATE.ERROR:
                return self._last.error_kind, self._last.error
        return None

    def handle(self, frame: bytes) -> bool:
        """Accept one heartbeat frame. Returns False if it was dropped."""
        try:
            msg = Envelope.from_bytes(frame)
        except Exception:
            logger.exception("Undecodable heartbeat frame")
            return False
        if not isinstance(msg, Heartbeat):
            logger.warning("Unexpected message on status channel: {}", msg)
            return False
        if not self.session.accept_seq("status", msg.sequence):
            logger.debug("Dropping stale heartbeat {}", msg.sequence)
            return False
        logger.trace("*HEARTBEAT* (master<-): {}", msg)
        with self._lock:
            if self._timed_out:
                logger.info("Slave heartbeat resumed")
            self._last = msg
            self._last_seen = time.monotonic()
            self._timed_out = False
        return True

    def check(self) -> bool:
        """Handle a due timeout. Returns True when it failed the session.

        Outside an acquisition a timeout only marks the peer as down; the
        readiness probe reports it as PeerNotReady on the next start.
        """
        with self._lock:
            elapsed = time.monotonic() - self._last_seen
            if self._timed_out or elapsed <= self.timeout:
                return False
            self._timed_out = True
        if self.session.state not in ACTIVE_STATES:
            logger.warning(
                "No heartbeat from slave for {:.2f}s, peer marked down", elapsed
            )
            return False
        err = PeerUnresponsive(
            f"No heartbeat from slave for {elapsed:.2f}s (timeout {self.timeout:.2f}s)"
        )
        self.session.fail(err)
        self.abort.set()
        return True

    def _run(self):
        while self.running.is_set():
            frames = recv_nowait(self.sock)
            if frames is None:
                self.check()
                time.sleep(POLL_INTERVAL)
                continue
            self.handle(frames[0])
