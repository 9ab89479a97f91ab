"""Node configuration and derived result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from mashumaro import DataClassDictMixin
from mashumaro.mixins.json import DataClassJSONMixin

from tagsync.util.defaults import (
    DEFAULT_COMMAND_PORT,
    DEFAULT_DEVICE_PORT,
    DEFAULT_FILE_PORT,
    DEFAULT_HEARTBEAT_INTERVAL_MS,
    DEFAULT_HEARTBEAT_TIMEOUT_FACTOR,
    DEFAULT_HOST_ADDR,
    DEFAULT_STATUS_PORT,
    DEFAULT_SYNC_PERCENTAGE,
    DEFAULT_SYNC_PORT,
    DEFAULT_TRIGGER_PORT,
)


@dataclass(frozen=True, kw_only=True)
class NodeConfig(DataClassDictMixin):
    """Per-process configuration of a master or slave node.

    Loaded once at start (see `tagsync.system.load_node_config`) and never
    mutated afterwards.
    """

    role: str  # "master" | "slave"
    device_type: str = "TimeController"
    device_address: str = DEFAULT_HOST_ADDR
    device_port: int = DEFAULT_DEVICE_PORT
    device_options: dict[str, Any] = field(default_factory=dict)
    peer_address: str = DEFAULT_HOST_ADDR
    trigger_port: int = DEFAULT_TRIGGER_PORT
    status_port: int = DEFAULT_STATUS_PORT
    file_port: int = DEFAULT_FILE_PORT
    command_port: int = DEFAULT_COMMAND_PORT
    sync_port: int = DEFAULT_SYNC_PORT
    duration: float = 1.0  # seconds
    channels: tuple[int, ...] = (1, 2, 3, 4)
    streaming_mode: bool = False
    max_files: int = 10
    sub_duration: float = 0.2  # seconds
    sync_percentage: float = DEFAULT_SYNC_PERCENTAGE
    output_dir: str = "./outputs"
    verbose_output: bool = False
    text_output: bool = False
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    heartbeat_timeout_factor: float = DEFAULT_HEARTBEAT_TIMEOUT_FACTOR
    local_mode: bool = False
    match_window_ns: Optional[int] = None

    def __post_init__(self):
        if self.role not in ("master", "slave"):
            raise ValueError(f"Invalid role: {self.role}")
        if not self.channels:
            raise ValueError("At least one channel is required.")
        if not 0.0 < self.sync_percentage <= 1.0:
            raise ValueError(
                f"sync_percentage must be in (0, 1], got {self.sync_percentage}"
            )
        if self.duration <= 0 or self.sub_duration <= 0:
            raise ValueError("duration and sub_duration must be positive.")
        if self.max_files < 1:
            raise ValueError("max_files must be at least 1.")
        if self.heartbeat_interval_ms <= 0:
            raise ValueError("heartbeat_interval_ms must be positive.")

    @property
    def heartbeat_timeout(self) -> float:
        """Seconds without a heartbeat before the peer counts as unresponsive."""
        return self.heartbeat_interval_ms * self.heartbeat_timeout_factor / 1000.0


@dataclass(frozen=True, kw_only=True)
class OffsetReport(DataClassJSONMixin):
    """Result of correlating one master/slave file pair. Write-once."""

    min_offset_ns: float
    max_offset_ns: float
    mean_offset_ns: float
    std_offset_ns: float
    quality: float
    sample_count: int
    insufficient_data: bool = False
    match_window_ns: float = 0.0
    trigger_offset_ns: Optional[int] = None
    master_file: str = ""
    slave_file: str = ""
