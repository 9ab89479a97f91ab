# -*- coding: utf-8 -*-
"""
Master node: trigger coordination, liveness monitoring and offset analysis.

The master

1. probes the slave (`prepare`) and pushes a trigger set `TRIGGER_LOOKAHEAD_NS`
   in the future,
2. waits for the slave to report the trigger accepted, arms its own device
   and starts recording at the trigger instant,
3. runs the same chunk plan as the slave, writing its own chunk files,
4. collects the slave's chunk files from the file channel and correlates each
   chunk pair into an `OffsetReport`.

Threads: heartbeat monitor (status PULL), file receiver (file PULL), sync
monitor (sync PULL) and the command client (command REQ). The caller's thread
runs `start_acquisition` and owns the trigger socket and the device.

Examples
--------
```python
from tagsync.node import MasterController
from tagsync.system import load_node_config

config = load_node_config("tagsync.ini", "master")
with MasterController(config) as master:
    reports = master.start_acquisition(duration=1.0)
```
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Optional, Sequence

import zmq
from loguru import logger

from tagsync.analysis.correlation import correlate_files
from tagsync.device import make_device
from tagsync.node.acquisition import Chunk, ChunkedAcquisition, plan_from_config
from tagsync.node.heartbeat import HeartbeatMonitor
from tagsync.node.session import (
    ACTIVE_STATES,
    SESSION_STATE,
    AcquisitionSession,
    session_label,
)
from tagsync.node.transfer import FileReceiver, results_filename
from tagsync.node.transport import open_channel, recv_nowait
from tagsync.types import (
    CONSTS,
    Aborted,
    Busy,
    Command,
    CommandResponse,
    Envelope,
    NodeConfig,
    OffsetReport,
    PeerNotReady,
    SyncError,
    SyncReport,
    TimeTaggerProtocol,
    TriggerMessage,
    error_from_kind,
)
from tagsync.util.defaults import (
    COMMAND_TIMEOUT,
    FILE_WAIT_TIMEOUT,
    POLL_INTERVAL,
    PROBE_TIMEOUT,
    SYNC_WAIT_TIMEOUT,
    TRIGGER_CONFIRM_TIMEOUT,
    TRIGGER_LOOKAHEAD_NS,
)
from tagsync.util.timestamp_io import bin_to_txt, write_bin, write_txt

# ============================================================================


class CommandClient:
    """Owns the command REQ socket; other threads submit requests through a queue.

    Each request gets a `Future` resolved with the slave's `CommandResponse`,
    or with PeerNotReady if no reply arrives in time. A timed-out REQ socket
    is closed and reopened (lazy pirate) so the next request starts clean.
    """

    def __init__(
        self,
        context: zmq.Context,
        config: NodeConfig,
        session: AcquisitionSession,
        running: threading.Event,
    ):
        self.context = context
        self.config = config
        self.session = session
        self.running = running
        self.sock = open_channel(context, config, "command")
        self._queue: queue.Queue[tuple[str, dict, float, Future]] = queue.Queue()
        self.thread = threading.Thread(
            target=self._run, name="command-client", daemon=True
        )

    def start(self):
        self.thread.start()

    def join(self):
        self.thread.join()
        # fail anything still queued so no caller blocks forever
        while True:
            try:
                command, _, _, fut = self._queue.get_nowait()
            except queue.Empty:
                break
            fut.set_exception(PeerNotReady(f"Master stopped before {command}"))

    def close(self):
        self.sock.close()

    def submit(
        self,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout: float = COMMAND_TIMEOUT,
    ) -> Future:
        fut: Future = Future()
        self._queue.put((command, params or {}, timeout, fut))
        return fut

    def call(
        self,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout: float = COMMAND_TIMEOUT,
    ) -> CommandResponse:
        """Send a command and wait for its reply; failed replies are raised."""
        fut = self.submit(command, params, timeout)
        resp: CommandResponse = fut.result()
        if not resp.success:
            raise error_from_kind(resp.error_kind, resp.error)
        return resp

    def _run(self):
        while self.running.is_set():
            try:
                command, params, timeout, fut = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if not fut.set_running_or_notify_cancel():
                continue
            # numbered here, in send order, whichever thread submitted it
            msg = Command(
                command=command,
                sequence=self.session.next_command_seq(),
                params=params,
            )
            try:
                fut.set_result(self._exchange(msg, timeout))
            except Exception as exc:
                fut.set_exception(exc)

    def _exchange(self, msg: Command, timeout: float) -> CommandResponse:
        logger.debug("*COMMAND* (master->): {}", msg)
        self.sock.send(msg.to_bytes())
        if self.sock.poll(int(1000 * timeout), zmq.POLLIN):
            resp = Envelope.from_bytes(self.sock.recv())
            logger.debug("*RESPONSE* (master<-): {}", resp)
            if not isinstance(resp, CommandResponse):
                raise SyncError(f"Unexpected reply to {msg.command}: {resp}")
            return resp
        # Socket is confused. Close and reopen it.
        logger.warning("No response from slave to {}", msg.command)
        self.sock.close()
        self.sock = open_channel(self.context, self.config, "command")
        raise PeerNotReady(f"No reply from slave to {msg.command} within {timeout}s")


# ============================================================================


class SyncMonitor:
    """Collects the slave's per-chunk recording start instants (sync channel)."""

    def __init__(
        self, session: AcquisitionSession, sock: zmq.Socket, running: threading.Event
    ):
        self.session = session
        self.sock = sock
        self.running = running
        self._lock = threading.Lock()
        self._reports: dict[tuple[int, int], int] = {}
        self.thread = threading.Thread(
            target=self._run, name="sync-monitor", daemon=True
        )

    def start(self):
        self.thread.start()

    def join(self):
        self.thread.join()

    def slave_start_ns(
        self, trigger_ns: int, chunk_index: int, timeout: float = 0.0
    ) -> Optional[int]:
        """Slave's start instant for a chunk, waiting up to `timeout` for it."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                started = self._reports.get((trigger_ns, chunk_index))
            if started is not None or time.monotonic() >= deadline:
                return started
            time.sleep(POLL_INTERVAL)

    def _run(self):
        while self.running.is_set():
            frames = recv_nowait(self.sock)
            if frames is None:
                time.sleep(POLL_INTERVAL)
                continue
            try:
                msg = Envelope.from_bytes(frames[0])
            except Exception:
                logger.exception("Undecodable sync frame")
                continue
            if not isinstance(msg, SyncReport):
                logger.warning("Unexpected message on sync channel: {}", msg)
                continue
            if not self.session.accept_seq("sync", msg.sequence):
                logger.debug("Dropping stale sync report {}", msg.sequence)
                continue
            logger.trace("*SYNC* (master<-): {}", msg)
            with self._lock:
                self._reports[(msg.trigger_timestamp_ns, msg.chunk_index)] = msg.armed_ns


# ============================================================================


class MasterController:
    """Master node.

    Parameters
    ----------
    config : NodeConfig
        Configuration with `role == "master"`.
    device : TimeTaggerProtocol, optional
        Local time tagger. Built from the configuration if not given.
    """

    def __init__(self, config: NodeConfig, device: Optional[TimeTaggerProtocol] = None):
        if config.role != CONSTS.ROLE.MASTER:
            raise ValueError(f"MasterController needs a master config, got {config.role}")
        self.config = config
        self.device = device or make_device(
            config.device_type,
            config.device_address,
            config.device_port,
            dict(config.device_options),
        )
        self.session = AcquisitionSession(CONSTS.ROLE.MASTER)
        self.output_dir = Path(config.output_dir)
        self.running = threading.Event()
        self.abort = threading.Event()
        self._context: Optional[zmq.Context] = None
        self._trigger_sock: Optional[zmq.Socket] = None
        self._sockets: list[zmq.Socket] = []
        self.commands: Optional[CommandClient] = None
        self.monitor: Optional[HeartbeatMonitor] = None
        self.receiver: Optional[FileReceiver] = None
        self.sync: Optional[SyncMonitor] = None

    def __enter__(self) -> MasterController:
        self.initialize()
        return self

    def __exit__(self, *exc):
        self.stop()

    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Open the device and channels, start the background threads."""
        ok, msg = self.device.open()
        logger.info("Master device open: {} ({})", ok, msg)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self._context = zmq.Context()
        self._trigger_sock = open_channel(self._context, self.config, "trigger")
        status_sock = open_channel(self._context, self.config, "status")
        file_sock = open_channel(self._context, self.config, "file")
        sync_sock = open_channel(self._context, self.config, "sync")
        self._sockets = [self._trigger_sock, status_sock, file_sock, sync_sock]

        self.running.set()
        self.commands = CommandClient(self._context, self.config, self.session, self.running)
        self.monitor = HeartbeatMonitor(
            self.session,
            status_sock,
            self.config.heartbeat_timeout,
            self.running,
            self.abort,
        )
        self.receiver = FileReceiver(
            self.session, file_sock, self.output_dir, self.running, self._ack_file
        )
        self.sync = SyncMonitor(self.session, sync_sock, self.running)
        for worker in (self.commands, self.monitor, self.receiver, self.sync):
            worker.start()
        logger.info("Master initialized (peer {})", self.config.peer_address)

    def stop(self) -> None:
        """Stop all threads, then close sockets, context and device."""
        if not self.running.is_set():
            return
        self.abort.set()
        self.running.clear()
        for worker in (self.commands, self.monitor, self.receiver, self.sync):
            if worker is not None:
                worker.join()
        if self.commands is not None:
            self.commands.close()
        for sock in self._sockets:
            sock.close()
        self._sockets = []
        if self._context is not None:
            self._context.term()
            self._context = None
        self.device.close()
        logger.info("Master stopped")

    def _ack_file(self, sequence: int) -> None:
        # called from the receiver thread, must not block on the reply
        self.commands.submit(CONSTS.COMMS.FILE_ACK, {"sequence": sequence})

    # ------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            resp = self.commands.call(CONSTS.COMMS.PING, timeout=PROBE_TIMEOUT)
        except SyncError:
            return False
        return resp.data.get("reply") == CONSTS.COMMS.PONG

    def peer_status(self) -> dict:
        return self.commands.call(CONSTS.COMMS.STATUS).data

    def status(self) -> dict:
        snap = self.session.snapshot()
        hb = self.monitor.last if self.monitor is not None else None
        snap["peer"] = hb.to_dict() if hb is not None else None
        return snap

    def reset(self) -> None:
        """Return an errored session to idle and clear the slave's error."""
        logger.info("Resetting master session")
        self.session.reset()
        self.abort.clear()
        self.monitor.rearm()
        try:
            self.commands.call(CONSTS.COMMS.ACK_ERROR)
        except SyncError as exc:
            logger.warning("Slave did not acknowledge reset: {}", exc)

    def stop_acquisition(self) -> None:
        """Abort a running acquisition on both nodes."""
        self.abort.set()
        try:
            self.commands.call(CONSTS.COMMS.STOP)
        except SyncError as exc:
            logger.warning("Slave did not acknowledge stop: {}", exc)

    # ------------------------------------------------------------------

    def _probe(self) -> None:
        # a slave still finishing the previous acquisition gets until the deadline
        deadline = time.monotonic() + PROBE_TIMEOUT
        while True:
            try:
                resp = self.commands.call(CONSTS.COMMS.PREPARE, timeout=PROBE_TIMEOUT)
            except SyncError as exc:
                raise PeerNotReady(f"Slave readiness probe failed: {exc}") from exc
            if resp.data.get("ready", False):
                return
            if time.monotonic() >= deadline:
                raise PeerNotReady(
                    f"Slave not ready: {resp.data.get('reason', 'no reason given')}"
                )
            time.sleep(5 * POLL_INTERVAL)

    def _confirm_trigger(self, sequence: int) -> None:
        deadline = time.monotonic() + TRIGGER_CONFIRM_TIMEOUT
        while time.monotonic() < deadline:
            resp = self.commands.call(
                CONSTS.COMMS.TRIGGER_STATUS, {"sequence": sequence}
            )
            status = resp.data.get("status")
            if status == CONSTS.TRIGGER.ACCEPTED:
                return
            if status == CONSTS.TRIGGER.REJECTED:
                raise error_from_kind(resp.data.get("error_kind"), resp.data.get("error", ""))
            time.sleep(POLL_INTERVAL)
        raise PeerNotReady(f"Slave did not confirm trigger {sequence}")

    def _check_peer(self) -> None:
        err = self.monitor.peer_error()
        if err is not None:
            kind, message = err
            raise error_from_kind(kind, f"slave: {message}")

    def start_acquisition(
        self,
        duration: Optional[float] = None,
        channels: Optional[Sequence[int]] = None,
    ) -> list[OffsetReport]:
        """Run one synchronized acquisition and return one report per chunk.

        Raises
        ------
        Busy
            An acquisition is already active.
        PeerNotReady
            The slave did not answer the readiness probe, or did not confirm
            the trigger. Local state is unchanged if the probe failed.
        LateTrigger
            The slave received the trigger too late.
        PeerUnresponsive, TransferFailed, DeviceError
            Failures during the acquisition; the session is left in error.
        """
        duration = self.config.duration if duration is None else duration
        channels = list(channels or self.config.channels)
        state = self.session.state
        if state in ACTIVE_STATES:
            raise Busy(f"Master session is {state}")
        if state == SESSION_STATE.ERROR:
            kind, message = self.session.error
            raise error_from_kind(kind, f"Master session needs a reset: {message}")
        self._probe()

        chunks = plan_from_config(self.config, duration)
        trigger_ns = time.time_ns() + TRIGGER_LOOKAHEAD_NS
        label = session_label(trigger_ns)
        trigger = TriggerMessage(
            sequence=self.session.next_command_seq(),
            trigger_timestamp_ns=trigger_ns,
            duration=duration,
            channels=channels,
            sub_duration=self.config.sub_duration,
            num_chunks=len(chunks),
        )
        self.abort.clear()
        self.monitor.rearm()
        self.session.begin(channels, trigger_ns, label)
        logger.info("*TRIGGER* (master->): {}", trigger)
        self._trigger_sock.send(trigger.to_bytes())

        master_files: list[tuple[Chunk, Path, int]] = []

        def on_chunk(chunk: Chunk, records, started_ns: int):
            path = self.output_dir / results_filename(CONSTS.ROLE.MASTER, label, chunk.index)
            write_bin(records, path)
            if self.config.text_output:
                write_txt(records, path.with_suffix(".txt"), role=CONSTS.ROLE.MASTER)
            master_files.append((chunk, path, started_ns))

        acq = ChunkedAcquisition(
            self.device, self.session, channels, trigger_ns, chunks, self.abort, on_chunk
        )
        try:
            self._confirm_trigger(trigger.sequence)
            acq.arm(chunks[0])
            acq.run(armed=True)
            reports = self._collect_and_correlate(label, trigger_ns, master_files)
        except Aborted:
            acq.stop_device()
            self.session.finish()
            raise
        except Exception as exc:
            acq.stop_device()
            self.session.fail(exc)
            raise
        self.session.finish()
        return reports

    def _collect_and_correlate(
        self, label: str, trigger_ns: int, master_files: list[tuple[Chunk, Path, int]]
    ) -> list[OffsetReport]:
        reports = []
        for chunk, master_path, started_ns in master_files:
            slave_path = self.receiver.wait_for(
                label, chunk.index, FILE_WAIT_TIMEOUT, self.abort, self._check_peer
            )
            if self.config.text_output:
                bin_to_txt(slave_path, role=CONSTS.ROLE.SLAVE)
            slave_start = self.sync.slave_start_ns(
                trigger_ns, chunk.index, SYNC_WAIT_TIMEOUT
            )
            report = correlate_files(
                master_path,
                slave_path,
                sync_percentage=self.config.sync_percentage,
                match_window_ns=self.config.match_window_ns,
                trigger_offset_ns=(
                    slave_start - started_ns if slave_start is not None else None
                ),
                report_path=self.output_dir
                / f"offset_report_{label}_{chunk.index:03d}.json",
                corrected_path=master_path.with_name(
                    f"{master_path.stem}_corrected.bin"
                ),
            )
            reports.append(report)
        return reports
