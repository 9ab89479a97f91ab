"""Acquisition state shared by all threads of a node.

A node owns exactly one `AcquisitionSession`. Every read and write goes through
its lock, so the trigger listener, command handler, heartbeat threads and
acquisition worker always see a consistent state.
"""

from __future__ import annotations

import re
import threading
import time
import types
from datetime import datetime
from typing import Sequence

from loguru import logger

from tagsync.types import Busy, error_kind

# ----------------
# Available States
# ----------------

SESSION_STATE = types.SimpleNamespace()
SESSION_STATE.IDLE = "idle"
SESSION_STATE.ARMED = "armed"
SESSION_STATE.ACQUIRING = "acquiring"
SESSION_STATE.FINISHING = "finishing"
SESSION_STATE.ERROR = "error"

# error is reachable from every state and only left through reset
TRANSITIONS = {
    SESSION_STATE.IDLE: {SESSION_STATE.ARMED},
    SESSION_STATE.ARMED: {SESSION_STATE.ACQUIRING, SESSION_STATE.IDLE},
    SESSION_STATE.ACQUIRING: {
        SESSION_STATE.FINISHING,
        SESSION_STATE.ARMED,
        SESSION_STATE.IDLE,
    },
    SESSION_STATE.FINISHING: {SESSION_STATE.ARMED, SESSION_STATE.IDLE},
    SESSION_STATE.ERROR: {SESSION_STATE.IDLE},
}

ACTIVE_STATES = (
    SESSION_STATE.ARMED,
    SESSION_STATE.ACQUIRING,
    SESSION_STATE.FINISHING,
)

_COUNTERS = ("command", "status", "file")
_LABEL_RE = re.compile(r"[0-9]{8}_[0-9]{6}_[0-9]{3}")


def session_label(trigger_timestamp_ns: int) -> str:
    """Label shared by both nodes for one acquisition, from its trigger instant."""
    stamp = datetime.fromtimestamp(trigger_timestamp_ns // 1_000_000_000)
    ms = (trigger_timestamp_ns // 1_000_000) % 1000
    return f"{stamp.strftime('%Y%m%d_%H%M%S')}_{ms:03d}"


def is_session_label(label: str) -> bool:
    """True for labels made by `session_label`, e.g. `20250101_120000_000`."""
    return _LABEL_RE.fullmatch(label) is not None


class AcquisitionSession:
    """Lock-protected acquisition state of one node.

    Besides the state itself the session holds three outgoing sequence
    counters (`command`, `status`, `file`) that only ever increase for the
    lifetime of the node, and the last accepted sequence of each incoming
    message stream, used to discard stale or duplicate messages.
    """

    def __init__(self, role: str):
        self.role = role
        self._lock = threading.Lock()
        self.changed = threading.Event()  # set on every state change
        self._state = SESSION_STATE.IDLE
        self._progress = 0.0
        self._error = ""
        self._error_kind = ""
        self._active_channels: tuple[int, ...] = ()
        self._trigger_timestamp_ns = 0
        self._started = 0.0
        self._label = ""
        # seeded from the clock so a restarted node still sends newer sequences
        seed = time.time_ns() // 1_000_000
        self._counters = {name: seed for name in _COUNTERS}
        self._last_accepted: dict[str, int] = {}

    # ------------------------------------------------------------------
    # read access

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def label(self) -> str:
        with self._lock:
            return self._label

    @property
    def trigger_timestamp_ns(self) -> int:
        with self._lock:
            return self._trigger_timestamp_ns

    @property
    def active_channels(self) -> tuple[int, ...]:
        with self._lock:
            return self._active_channels

    @property
    def error(self) -> tuple[str, str]:
        """(kind, message) of the last error, empty strings if none."""
        with self._lock:
            return self._error_kind, self._error

    def is_idle(self) -> bool:
        return self.state == SESSION_STATE.IDLE

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "role": self.role,
                "state": self._state,
                "progress": self._progress,
                "error": self._error,
                "error_kind": self._error_kind,
                "active_channels": list(self._active_channels),
                "trigger_timestamp_ns": self._trigger_timestamp_ns,
                "session_label": self._label,
                "elapsed": (time.monotonic() - self._started) if self._started else 0.0,
            }

    # ------------------------------------------------------------------
    # sequence counters

    def next_seq(self, counter: str) -> int:
        with self._lock:
            self._counters[counter] += 1
            return self._counters[counter]

    def next_command_seq(self) -> int:
        return self.next_seq("command")

    def next_status_seq(self) -> int:
        return self.next_seq("status")

    def next_file_seq(self) -> int:
        return self.next_seq("file")

    def accept_seq(self, stream: str, sequence: int) -> bool:
        """Accept `sequence` on an incoming stream if it is newer than the last one."""
        with self._lock:
            last = self._last_accepted.get(stream, 0)
            if sequence <= last:
                return False
            self._last_accepted[stream] = sequence
            return True

    def last_accepted(self, stream: str) -> int:
        with self._lock:
            return self._last_accepted.get(stream, 0)

    # ------------------------------------------------------------------
    # transitions

    def _set_state(self, new_state: str):
        # lock must be held
        logger.debug("{} session: {} -> {}", self.role, self._state, new_state)
        self._state = new_state
        if new_state not in ACTIVE_STATES:
            self._active_channels = ()
        self.changed.set()

    def begin(
        self, channels: Sequence[int], trigger_timestamp_ns: int, label: str = ""
    ) -> None:
        """idle -> armed for a new acquisition. Raises Busy if not idle."""
        with self._lock:
            if self._state != SESSION_STATE.IDLE:
                raise Busy(f"{self.role} session is {self._state}, not idle")
            self._active_channels = tuple(channels)
            self._trigger_timestamp_ns = trigger_timestamp_ns
            self._label = label or session_label(trigger_timestamp_ns)
            self._progress = 0.0
            self._error = ""
            self._error_kind = ""
            self._started = time.monotonic()
            self._set_state(SESSION_STATE.ARMED)

    def transition(self, new_state: str) -> None:
        with self._lock:
            if new_state == self._state:
                return
            if new_state not in TRANSITIONS[self._state]:
                raise RuntimeError(
                    f"Invalid {self.role} session transition {self._state} -> {new_state}"
                )
            self._set_state(new_state)

    def set_progress(self, progress: float) -> None:
        with self._lock:
            self._progress = min(1.0, max(0.0, progress))
        self.changed.set()

    def finish(self) -> None:
        """Back to idle after a completed (or stopped) acquisition."""
        with self._lock:
            if self._state in (SESSION_STATE.ERROR, SESSION_STATE.IDLE):
                return
            self._set_state(SESSION_STATE.IDLE)

    def fail(self, exc: BaseException) -> None:
        """Move to error from any state, keeping the error for status reports.

        The first error wins: later failures while already in error (usually
        consequences of the first) are only logged.
        """
        with self._lock:
            if self._state == SESSION_STATE.ERROR:
                logger.debug("{} session already in error, ignoring: {}", self.role, exc)
                return
            self._error_kind = error_kind(exc)
            self._error = str(exc)
            self._set_state(SESSION_STATE.ERROR)
        logger.error("{} session error ({}): {}", self.role, error_kind(exc), exc)

    def note_error(self, exc: BaseException) -> None:
        """Record an error without leaving the current state (e.g. a rejected trigger)."""
        with self._lock:
            self._error_kind = error_kind(exc)
            self._error = str(exc)
        self.changed.set()

    def reset(self) -> None:
        """Clear any error and return to idle."""
        with self._lock:
            self._error = ""
            self._error_kind = ""
            self._progress = 0.0
            if self._state != SESSION_STATE.IDLE:
                self._set_state(SESSION_STATE.IDLE)
