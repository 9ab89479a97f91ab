"""File transfer, slave -> master, over the file channel.

A payload of at most `FILE_CHUNK_SIZE` bytes travels as one multipart message
`[header, payload]`. Larger payloads are split: a header announcing `parts`,
then `parts` messages `[part, bytes]`, then a footer. The master acknowledges
each complete file with a `file_ack` command carrying its sequence; the slave
resends once with the same sequence if no ack arrives in time.
"""

from __future__ import annotations

import math
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import zmq
from loguru import logger

from tagsync.node.acquisition import raise_if_aborted
from tagsync.node.session import AcquisitionSession, is_session_label
from tagsync.node.transport import recv_nowait
from tagsync.types import (
    CONSTS,
    Envelope,
    FileFooter,
    FileHeader,
    FilePart,
    TransferFailed,
)
from tagsync.util.defaults import FILE_ACK_TIMEOUT, FILE_CHUNK_SIZE, POLL_INTERVAL


def results_filename(role: str, label: str, chunk_index: int) -> str:
    return f"{role}_results_{label}_{chunk_index:03d}.bin"


def build_messages(
    sequence: int,
    filename: str,
    role: str,
    label: str,
    chunk_index: int,
    payload: bytes,
    chunk_size: int = FILE_CHUNK_SIZE,
) -> list[list[bytes]]:
    """Multipart messages that carry `payload` (see module docstring)."""
    length = len(payload)
    if length <= chunk_size:
        header = FileHeader(
            sequence=sequence,
            filename=filename,
            role=role,
            session=label,
            chunk_index=chunk_index,
            length=length,
            parts=0,
        )
        return [[header.to_bytes(), payload]]
    parts = math.ceil(length / chunk_size)
    header = FileHeader(
        sequence=sequence,
        filename=filename,
        role=role,
        session=label,
        chunk_index=chunk_index,
        length=length,
        parts=parts,
    )
    msgs = [[header.to_bytes()]]
    for i in range(parts):
        part = FilePart(sequence=sequence, index=i)
        msgs.append([part.to_bytes(), payload[i * chunk_size : (i + 1) * chunk_size]])
    footer = FileFooter(sequence=sequence, filename=filename, length=length, parts=parts)
    msgs.append([footer.to_bytes()])
    return msgs


class FileSender:
    """Slave side. Pushes files and waits for the master's acknowledgement."""

    def __init__(
        self,
        session: AcquisitionSession,
        sock: zmq.Socket,
        ack_timeout: float = FILE_ACK_TIMEOUT,
        chunk_size: int = FILE_CHUNK_SIZE,
    ):
        self.session = session
        self.sock = sock
        self.ack_timeout = ack_timeout
        self.chunk_size = chunk_size
        self._acked: set[int] = set()
        self._cond = threading.Condition()

    def acknowledge(self, sequence: int) -> None:
        with self._cond:
            self._acked.add(sequence)
            self._cond.notify_all()
        logger.debug("File {} acknowledged", sequence)

    def _wait_ack(self, sequence: int, abort: Optional[threading.Event]) -> bool:
        deadline = time.monotonic() + self.ack_timeout
        with self._cond:
            while sequence not in self._acked:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                if abort is not None:
                    raise_if_aborted(self.session, abort)
                self._cond.wait(min(remaining, POLL_INTERVAL))
            self._acked.discard(sequence)
            return True

    def _push(self, msgs: list[list[bytes]]) -> None:
        for frames in msgs:
            if not self.sock.poll(int(1000 * self.ack_timeout), zmq.POLLOUT):
                raise TransferFailed("No master connected to the file channel")
            self.sock.send_multipart(frames)

    def send_file(
        self,
        path: str | Path,
        role: str,
        label: str,
        chunk_index: int,
        abort: Optional[threading.Event] = None,
    ) -> int:
        """Send one file, blocking until acknowledged. Returns its sequence.

        Raises
        ------
        TransferFailed
            No acknowledgement after the original send and one resend.
        """
        path = Path(path)
        payload = path.read_bytes()
        sequence = self.session.next_file_seq()
        msgs = build_messages(
            sequence, path.name, role, label, chunk_index, payload, self.chunk_size
        )
        for attempt in range(2):
            logger.info(
                "*FILE* (slave->): {} ({} bytes, seq {}, attempt {})",
                path.name,
                len(payload),
                sequence,
                attempt + 1,
            )
            self._push(msgs)
            if self._wait_ack(sequence, abort):
                return sequence
            logger.warning("No ack for file {} (seq {})", path.name, sequence)
        raise TransferFailed(
            f"File {path.name} (seq {sequence}) not acknowledged after resend"
        )


class FileReceiver:
    """Master side. Reassembles incoming files, writes them and acknowledges them.

    Files are written to `output_dir` as `{role}_results_{session}_{chunk:03d}.bin`.
    A file whose sequence is not newer than the last accepted one is a
    duplicate (a resend after a lost ack): it is acknowledged again but not
    rewritten. A file from another role or with a malformed session label is
    dropped without an ack.
    """

    def __init__(
        self,
        session: AcquisitionSession,
        sock: zmq.Socket,
        output_dir: str | Path,
        running: threading.Event,
        on_ack: Callable[[int], None],
        peer_role: str = CONSTS.ROLE.SLAVE,
    ):
        self.session = session
        self.sock = sock
        self.output_dir = Path(output_dir)
        self.running = running
        self.on_ack = on_ack
        self.peer_role = peer_role
        self._pending: dict[int, tuple[FileHeader, dict[int, bytes]]] = {}
        self._files: dict[tuple[str, int], Path] = {}
        self._cond = threading.Condition()
        self.thread = threading.Thread(
            target=self._run, name="file-receiver", daemon=True
        )

    def start(self):
        self.thread.start()

    def join(self):
        self.thread.join()

    def _run(self):
        while self.running.is_set():
            frames = recv_nowait(self.sock)
            if frames is None:
                time.sleep(POLL_INTERVAL)
                continue
            try:
                self.handle(frames)
            except Exception:
                logger.exception("Error handling file message")

    def handle(self, frames: list[bytes]) -> Optional[Path]:
        """Process one multipart message, returns the path once a file completes."""
        msg = Envelope.from_bytes(frames[0])
        if isinstance(msg, FileHeader):
            if msg.parts == 0:
                if len(frames) < 2:
                    logger.error("File header {} without payload", msg.sequence)
                    return None
                return self._complete(msg, frames[1])
            self._pending[msg.sequence] = (msg, {})
            return None
        if isinstance(msg, FilePart):
            if msg.sequence not in self._pending:
                logger.warning("File part for unknown transfer {}", msg.sequence)
                return None
            self._pending[msg.sequence][1][msg.index] = frames[1]
            return None
        if isinstance(msg, FileFooter):
            if msg.sequence not in self._pending:
                logger.warning("File footer for unknown transfer {}", msg.sequence)
                return None
            header, parts = self._pending.pop(msg.sequence)
            if sorted(parts) != list(range(msg.parts)):
                logger.error(
                    "File {} incomplete: {} of {} parts",
                    msg.filename,
                    len(parts),
                    msg.parts,
                )
                return None
            return self._complete(header, b"".join(parts[i] for i in range(msg.parts)))
        logger.warning("Unexpected message on file channel: {}", msg)
        return None

    def _complete(self, header: FileHeader, payload: bytes) -> Optional[Path]:
        if (
            header.role != self.peer_role
            or not is_session_label(header.session)
            or header.chunk_index < 0
        ):
            # these name the output file, never write outside output_dir
            logger.error(
                "Rejecting file {} (seq {}): role {!r}, session {!r}, chunk {}",
                header.filename,
                header.sequence,
                header.role,
                header.session,
                header.chunk_index,
            )
            return None
        if header.sequence <= self.session.last_accepted("file"):
            logger.info(
                "Duplicate file {} (seq {}), acknowledging again",
                header.filename,
                header.sequence,
            )
            self.on_ack(header.sequence)
            return None
        if len(payload) != header.length:
            # no ack, the sender resends
            logger.error(
                "File {} length mismatch: got {} bytes, expected {}",
                header.filename,
                len(payload),
                header.length,
            )
            return None
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / results_filename(
            header.role, header.session, header.chunk_index
        )
        path.write_bytes(payload)
        self.session.accept_seq("file", header.sequence)
        logger.info("*FILE* (master<-): {} -> {}", header.filename, path)
        with self._cond:
            self._files[(header.session, header.chunk_index)] = path
            self._cond.notify_all()
        self.on_ack(header.sequence)
        return path

    def wait_for(
        self,
        label: str,
        chunk_index: int,
        timeout: float,
        abort: Optional[threading.Event] = None,
        check: Optional[Callable[[], None]] = None,
    ) -> Path:
        """Block until the file for (`label`, `chunk_index`) has arrived.

        `check` is called every poll and may raise to end the wait early.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while (label, chunk_index) not in self._files:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransferFailed(
                        f"Slave file for chunk {chunk_index} of {label} "
                        f"not received within {timeout}s"
                    )
                if abort is not None:
                    raise_if_aborted(self.session, abort)
                if check is not None:
                    check()
                self._cond.wait(min(remaining, POLL_INTERVAL))
            return self._files[(label, chunk_index)]
