# -*- coding: utf-8 -*-
"""
Slave node: trigger listener, command handler, heartbeats and acquisition.

Command handlers are registered with the `@handler` decorator:

1. Each handler is decorated with `@handler(CONSTS.COMMS.<NAME>)`
2. The decorator adds it to `COMMAND_HANDLERS`
3. Handlers receive the agent and the `Command`, and return the reply data
4. Raising a `SyncError` turns into an error reply carrying its kind

A trigger is accepted only while the session is idle and at least
`MIN_TRIGGER_MARGIN_NS` before its start instant; a rejected trigger leaves
the session idle and is reported through `trigger_status`. Triggers and
commands whose sequence is not newer than the last accepted one are dropped.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import OrderedDict
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Optional

import zmq
from loguru import logger

from tagsync.device import make_device
from tagsync.node.acquisition import (
    Chunk,
    ChunkedAcquisition,
    plan_chunks,
)
from tagsync.node.heartbeat import HeartbeatEmitter
from tagsync.node.session import SESSION_STATE, AcquisitionSession, session_label
from tagsync.node.transfer import FileSender, results_filename
from tagsync.node.transport import open_channel, recv_nowait, send_nowait
from tagsync.types import (
    CONSTS,
    Aborted,
    Busy,
    Command,
    CommandResponse,
    Envelope,
    LateTrigger,
    NodeConfig,
    StaleSequence,
    SyncError,
    SyncReport,
    TimeTaggerProtocol,
    TriggerMessage,
    error_kind,
)
from tagsync.util import format_error_response
from tagsync.util.defaults import (
    MAX_CHUNK_RETRIES,
    MAX_TRIGGER_OUTCOMES,
    MIN_TRIGGER_MARGIN_NS,
    POLL_INTERVAL,
)
from tagsync.util.timestamp_io import write_bin, write_txt

# ============================================================================

CommandHandler = Callable[["SlaveAgent", Command], dict[str, Any]]
COMMAND_HANDLERS: dict[str, CommandHandler] = {}


def handler(command: str) -> Callable[[CommandHandler], CommandHandler]:
    """Register a slave command handler.

    Example:
        @handler(CONSTS.COMMS.PING)
        def handle_ping(agent, cmd):
            return {"reply": CONSTS.COMMS.PONG}
    """

    def decorator(func: CommandHandler) -> CommandHandler:
        @wraps(func)
        def wrapper(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
            return func(agent, cmd)

        COMMAND_HANDLERS[command] = wrapper
        return wrapper

    return decorator


# ============================================================================


@handler(CONSTS.COMMS.PING)
def handle_ping(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    return {"reply": CONSTS.COMMS.PONG}


@handler(CONSTS.COMMS.STATUS)
def handle_status(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    return agent.session.snapshot()


@handler(CONSTS.COMMS.PREPARE)
def handle_prepare(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    """Readiness probe: idle session and a connected device."""
    state = agent.session.state
    if state != SESSION_STATE.IDLE:
        return {"ready": False, "reason": f"session is {state}"}
    if not agent.device.is_connected():
        return {"ready": False, "reason": "device not connected"}
    return {"ready": True}


@handler(CONSTS.COMMS.TRIGGER_STATUS)
def handle_trigger_status(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    return agent.trigger_outcome(int(cmd.params["sequence"]))


@handler(CONSTS.COMMS.FILE_ACK)
def handle_file_ack(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    agent.sender.acknowledge(int(cmd.params["sequence"]))
    return {}


@handler(CONSTS.COMMS.STOP)
def handle_stop(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    agent.abort.set()
    return {"state": agent.session.state}


@handler(CONSTS.COMMS.RESET)
def handle_reset(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    agent.reset()
    return {"state": agent.session.state}


@handler(CONSTS.COMMS.ACK_ERROR)
def handle_ack_error(agent: SlaveAgent, cmd: Command) -> dict[str, Any]:
    # only clears an error, a running acquisition is left alone
    if agent.session.state == SESSION_STATE.ERROR:
        agent.reset()
    return {"state": agent.session.state}


# ============================================================================


class SlaveAgent:
    """Slave node.

    Parameters
    ----------
    config : NodeConfig
        Configuration with `role == "slave"`.
    device : TimeTaggerProtocol, optional
        Local time tagger. Built from the configuration if not given.
    """

    def __init__(self, config: NodeConfig, device: Optional[TimeTaggerProtocol] = None):
        if config.role != CONSTS.ROLE.SLAVE:
            raise ValueError(f"SlaveAgent needs a slave config, got {config.role}")
        self.config = config
        self.device = device or make_device(
            config.device_type,
            config.device_address,
            config.device_port,
            dict(config.device_options),
        )
        self.session = AcquisitionSession(CONSTS.ROLE.SLAVE)
        self.output_dir = Path(config.output_dir)
        self.running = threading.Event()
        self.abort = threading.Event()
        self._context: Optional[zmq.Context] = None
        self._sockets: dict[str, zmq.Socket] = {}
        self._threads: list[threading.Thread] = []
        self._triggers: queue.Queue[TriggerMessage] = queue.Queue()
        self._outcomes: OrderedDict[int, dict[str, Any]] = OrderedDict()
        self._outcome_lock = threading.Lock()
        self.emitter: Optional[HeartbeatEmitter] = None
        self.sender: Optional[FileSender] = None
        self.files_sent: list[Path] = []

    def __enter__(self) -> SlaveAgent:
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    # ------------------------------------------------------------------

    def start(self) -> None:
        ok, msg = self.device.open()
        logger.info("Slave device open: {} ({})", ok, msg)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self._context = zmq.Context()
        for channel in ("trigger", "command", "status", "file", "sync"):
            self._sockets[channel] = open_channel(self._context, self.config, channel)

        self.running.set()
        self.emitter = HeartbeatEmitter(
            self.session,
            self._sockets["status"],
            self.config.heartbeat_interval_ms / 1000.0,
            self.running,
        )
        self.sender = FileSender(self.session, self._sockets["file"])
        self._threads = [
            threading.Thread(target=self._trigger_loop, name="trigger-listener", daemon=True),
            threading.Thread(target=self._command_loop, name="command-handler", daemon=True),
            threading.Thread(target=self._worker_loop, name="acquisition-worker", daemon=True),
        ]
        self.emitter.start()
        for t in self._threads:
            t.start()
        logger.info("Slave started (master {})", self.config.peer_address)

    def stop(self) -> None:
        """Stop all threads, then close sockets, context and device."""
        if not self.running.is_set():
            return
        self.abort.set()
        self.running.clear()
        self.emitter.join()
        for t in self._threads:
            t.join()
        for sock in self._sockets.values():
            sock.close()
        self._sockets = {}
        if self._context is not None:
            self._context.term()
            self._context = None
        self.device.close()
        logger.info("Slave stopped")

    def run_forever(self) -> None:
        """Start and serve until interrupted."""
        self.start()
        try:
            while self.running.is_set():
                time.sleep(0.1)
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()

    def reset(self) -> None:
        logger.info("Resetting slave session")
        if self.session.state in (
            SESSION_STATE.ARMED,
            SESSION_STATE.ACQUIRING,
            SESSION_STATE.FINISHING,
        ):
            self.abort.set()
        self.session.reset()

    # ------------------------------------------------------------------
    # trigger channel

    def trigger_outcome(self, sequence: int) -> dict[str, Any]:
        with self._outcome_lock:
            return self._outcomes.get(sequence, {"status": CONSTS.TRIGGER.PENDING})

    def _set_outcome(self, sequence: int, status: str, exc: Optional[SyncError] = None):
        outcome: dict[str, Any] = {"status": status}
        if exc is not None:
            outcome["error_kind"] = error_kind(exc)
            outcome["error"] = str(exc)
        with self._outcome_lock:
            self._outcomes[sequence] = outcome
            while len(self._outcomes) > MAX_TRIGGER_OUTCOMES:
                self._outcomes.popitem(last=False)

    def handle_trigger(self, msg: TriggerMessage) -> bool:
        """Validate a trigger and arm the session. Returns True if accepted."""
        if not self.session.accept_seq("trigger", msg.sequence):
            logger.warning(
                "Discarding stale trigger {} (last {})",
                msg.sequence,
                self.session.last_accepted("trigger"),
            )
            return False
        margin = msg.trigger_timestamp_ns - time.time_ns()
        try:
            if margin < MIN_TRIGGER_MARGIN_NS:
                raise LateTrigger(
                    f"Trigger {msg.sequence} arrived {margin / 1e6:.1f} ms before its "
                    f"start, need {MIN_TRIGGER_MARGIN_NS / 1e6:.1f} ms"
                )
            self.session.begin(
                msg.channels,
                msg.trigger_timestamp_ns,
                session_label(msg.trigger_timestamp_ns),
            )
        except (LateTrigger, Busy) as exc:
            logger.error("Rejected trigger {}: {}", msg.sequence, exc)
            if isinstance(exc, LateTrigger):
                self.session.note_error(exc)
            self._set_outcome(msg.sequence, CONSTS.TRIGGER.REJECTED, exc)
            return False
        self.abort.clear()
        self._set_outcome(msg.sequence, CONSTS.TRIGGER.ACCEPTED)
        self._triggers.put(msg)
        logger.info("Accepted trigger {} at {}", msg.sequence, msg.trigger_timestamp_ns)
        return True

    def _trigger_loop(self):
        sock = self._sockets["trigger"]
        while self.running.is_set():
            frames = recv_nowait(sock)
            if frames is None:
                time.sleep(POLL_INTERVAL)
                continue
            try:
                msg = Envelope.from_bytes(frames[0])
            except Exception:
                logger.exception("Undecodable trigger frame")
                continue
            logger.info("*TRIGGER* (slave<-): {}", msg)
            if not isinstance(msg, TriggerMessage):
                logger.warning("Unexpected message on trigger channel: {}", msg)
                continue
            self.handle_trigger(msg)

    # ------------------------------------------------------------------
    # command channel

    def handle_command(self, cmd: Command) -> CommandResponse:
        resp = CommandResponse(command=cmd.command, sequence=cmd.sequence)
        if not self.session.accept_seq("command", cmd.sequence):
            resp.success = False
            resp.error_kind = StaleSequence.kind
            resp.error = (
                f"Stale command sequence {cmd.sequence} "
                f"(last {self.session.last_accepted('command')})"
            )
            return resp
        func = COMMAND_HANDLERS.get(cmd.command)
        if func is None:
            resp.success = False
            resp.error_kind = "UnknownCommand"
            resp.error = f"Unknown command: {cmd.command}"
            return resp
        try:
            resp.data = func(self, cmd)
        except SyncError as exc:
            resp.success = False
            resp.error_kind = exc.kind
            resp.error = str(exc)
        except Exception as exc:
            logger.exception("Error handling command {}", cmd.command)
            resp.success = False
            resp.error_kind = error_kind(exc)
            resp.error = format_error_response()
        return resp

    def _command_loop(self):
        sock = self._sockets["command"]
        while self.running.is_set():
            frames = recv_nowait(sock)
            if frames is None:
                time.sleep(POLL_INTERVAL)
                continue
            try:
                cmd = Envelope.from_bytes(frames[0])
                if not isinstance(cmd, Command):
                    raise SyncError(f"Not a command: {cmd}")
            except Exception:
                logger.exception("Undecodable command frame")
                resp = CommandResponse(
                    command="",
                    sequence=0,
                    success=False,
                    error_kind="SyncError",
                    error=format_error_response(),
                )
            else:
                logger.debug("*COMMAND* (slave<-): {}", cmd)
                resp = self.handle_command(cmd)
            logger.debug("*RESPONSE* (slave->): {}", resp)
            sock.send(resp.to_bytes())

    # ------------------------------------------------------------------
    # acquisition worker

    def _worker_loop(self):
        while self.running.is_set():
            try:
                msg = self._triggers.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            self.acquire(msg)

    def acquire(self, msg: TriggerMessage) -> None:
        """Run the acquisition for an accepted trigger, to idle or error."""
        label = self.session.label
        # the master decides the chunking, a single chunk means non-streaming
        chunks = plan_chunks(
            msg.duration, msg.sub_duration, msg.num_chunks, msg.num_chunks > 1
        )

        def on_chunk(chunk: Chunk, records, started_ns: int):
            self._send_sync(msg.trigger_timestamp_ns, chunk.index, started_ns)
            path = self.output_dir / results_filename(
                CONSTS.ROLE.SLAVE, label, chunk.index
            )
            write_bin(records, path)
            if self.config.text_output:
                write_txt(records, path.with_suffix(".txt"), role=CONSTS.ROLE.SLAVE)
            self.sender.send_file(
                path, CONSTS.ROLE.SLAVE, label, chunk.index, abort=self.abort
            )
            self.files_sent.append(path)

        acq = ChunkedAcquisition(
            self.device,
            self.session,
            msg.channels,
            msg.trigger_timestamp_ns,
            chunks,
            self.abort,
            on_chunk,
            retries=MAX_CHUNK_RETRIES if len(chunks) > 1 else 0,
        )
        try:
            acq.arm(chunks[0])
            acq.run(armed=True)
        except Exception as exc:
            acq.stop_device()
            if isinstance(exc, Aborted) or self.abort.is_set():
                logger.info("Slave acquisition stopped: {}", exc)
                self.session.finish()
            else:
                self.session.fail(exc)
            return
        self.session.finish()
        logger.info("Slave acquisition {} complete, {} chunk(s)", label, len(chunks))

    def _send_sync(self, trigger_ns: int, chunk_index: int, started_ns: int) -> None:
        report = SyncReport(
            sequence=self.session.next_status_seq(),
            trigger_timestamp_ns=trigger_ns,
            chunk_index=chunk_index,
            armed_ns=started_ns,
        )
        if not send_nowait(self._sockets["sync"], [report.to_bytes()]):
            logger.warning("Sync report for chunk {} not sent", chunk_index)
