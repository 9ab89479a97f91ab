"""Message types exchanged between master and slave.

Every message is a JSON envelope with a `type` discriminator, so a receiver can
decode any frame with `Envelope.from_json` and dispatch on the concrete class.
Binary file payloads never go through JSON: they travel as separate frames
next to their header.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mashumaro.config import BaseConfig
from mashumaro.mixins.json import DataClassJSONMixin
from mashumaro.types import Discriminator


@dataclass(kw_only=True)
class Envelope(DataClassJSONMixin):
    """Base class for all messages."""

    type: str  # subclass to define

    class Config(BaseConfig):
        discriminator = Discriminator(field="type", include_subtypes=True)

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> Envelope:
        return cls.from_json(raw.decode("utf-8"))


@dataclass(kw_only=True)
class TriggerMessage(Envelope):
    """Synchronized start instruction, master -> slave."""

    type: str = "trigger"
    sequence: int
    trigger_timestamp_ns: int
    duration: float  # total seconds
    channels: list[int]
    sub_duration: float  # seconds per chunk
    num_chunks: int = 1


@dataclass(kw_only=True)
class Command(Envelope):
    """A request from master to slave over the command channel."""

    type: str = "command"
    command: str
    sequence: int
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class CommandResponse(Envelope):
    """Slave's reply to a Command. Errors carry their kind for re-raising."""

    type: str = "response"
    command: str
    sequence: int
    success: bool = True
    error: str = ""
    error_kind: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class Heartbeat(Envelope):
    """Periodic liveness + status message, slave -> master."""

    type: str = "heartbeat"
    sequence: int
    state: str
    progress: float
    error: str = ""
    error_kind: str = ""
    trigger_timestamp_ns: int = 0
    timestamp_ms: int = 0


@dataclass(kw_only=True)
class FileHeader(Envelope):
    """Start of a file transfer.

    `parts == 0` means the payload follows in the same multipart message.
    Otherwise `parts` FilePart messages and a FileFooter follow.
    """

    type: str = "file_header"
    sequence: int
    filename: str
    role: str
    session: str
    chunk_index: int
    length: int
    parts: int = 0


@dataclass(kw_only=True)
class FilePart(Envelope):
    type: str = "file_part"
    sequence: int
    index: int


@dataclass(kw_only=True)
class FileFooter(Envelope):
    type: str = "file_footer"
    sequence: int
    filename: str
    length: int
    parts: int


@dataclass(kw_only=True)
class SyncReport(Envelope):
    """Slave's wall-clock arm instant for one chunk, slave -> master."""

    type: str = "sync_report"
    sequence: int
    trigger_timestamp_ns: int
    chunk_index: int
    armed_ns: int
