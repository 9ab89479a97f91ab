"""Node configuration handling for tagsync.

Nodes are configured through INI files, one section per node:

[master]
peer_address = 192.168.0.20
duration = 1.0
channels = 1,2,3,4
streaming_mode = true
max_files = 5
sub_duration = 0.2
output_dir = ./outputs

# Device configuration
device_type = TimeController
device_address = 127.0.0.1
device_port = 5555
device.timeout = 3.0

Keys map onto `tagsync.types.NodeConfig` fields. `device.<option>` keys are
collected into `device_options` and passed to the device constructor.

See Also
--------
tagsync.types.config : NodeConfig definition
tagsync.util.defaults : Default ports and timeouts
"""

from __future__ import annotations

import dataclasses
from configparser import ConfigParser
from pathlib import Path
from typing import Any

from loguru import logger

from tagsync.types import NodeConfig

_BOOL_FIELDS = {
    "streaming_mode",
    "verbose_output",
    "text_output",
    "local_mode",
}
_INT_FIELDS = {
    "device_port",
    "trigger_port",
    "status_port",
    "file_port",
    "command_port",
    "sync_port",
    "max_files",
    "heartbeat_interval_ms",
    "match_window_ns",
}
_FLOAT_FIELDS = {
    "duration",
    "sub_duration",
    "sync_percentage",
    "heartbeat_timeout_factor",
}
_FIELDS = {f.name for f in dataclasses.fields(NodeConfig)}


def parse_channels(value: str) -> tuple[int, ...]:
    """Parse a channel list such as `1,2,3,4`."""
    chans = tuple(int(c) for c in value.replace(" ", "").split(",") if c)
    if not chans:
        raise ValueError(f"No channels in {value!r}")
    return chans


def _parse_option(value: str) -> Any:
    # numbers stay numbers, 'true'/'false' become bools, everything else a string
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False
    return value


def node_config_from_section(config: ConfigParser, section: str, **overrides) -> NodeConfig:
    """Build a NodeConfig from one ConfigParser section.

    `overrides` take precedence over file values (`None` values are ignored).
    The role defaults to the section name when not given explicitly.

    Raises
    ------
    ValueError
        Unknown key, unparsable value or invalid resulting configuration.
    """
    sect = config[section]
    params: dict[str, Any] = {"role": section.lower()}
    device_options: dict[str, Any] = {}

    for key in sect:
        if key.startswith("device."):
            device_options[key[len("device.") :]] = _parse_option(sect[key])
        elif key not in _FIELDS:
            raise ValueError(f"Unknown key {key!r} in section [{section}]")
        elif key in _BOOL_FIELDS:
            params[key] = sect.getboolean(key)
        elif key in _INT_FIELDS:
            params[key] = sect.getint(key)
        elif key in _FLOAT_FIELDS:
            params[key] = sect.getfloat(key)
        elif key == "channels":
            params[key] = parse_channels(sect[key])
        else:
            params[key] = sect[key]

    if device_options:
        params["device_options"] = device_options
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in _FIELDS:
            raise ValueError(f"Unknown configuration override {key!r}")
        params[key] = value

    logger.debug("Node configuration [{}]: {}", section, params)
    return NodeConfig(**params)


def load_node_config(path: str | Path, section: str, **overrides) -> NodeConfig:
    """Load a node configuration from an INI file.

    Parameters
    ----------
    path : str | Path
        INI file to read.
    section : str
        Section to load (case-insensitive), usually `master` or `slave`.
    **overrides
        Field values that replace those in the file, e.g. from the CLI.

    Returns
    -------
    NodeConfig
        Validated, immutable node configuration.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    config = ConfigParser()
    config.read(path)
    for sect in config.sections():
        if sect.lower() == section.lower():
            return node_config_from_section(config, sect, **overrides)
    raise ValueError(f"Section [{section}] not found in {path}")


def write_default_config(path: str | Path) -> None:
    """Write an example INI file with a master and a slave section."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    config = ConfigParser()
    config["master"] = {
        "peer_address": "127.0.0.1",
        "device_type": "MockTimeController",
        "duration": "1.0",
        "channels": "1,2,3,4",
        "streaming_mode": "false",
        "max_files": "10",
        "sub_duration": "0.2",
        "output_dir": "./outputs",
    }
    config["slave"] = {
        "peer_address": "127.0.0.1",
        "device_type": "MockTimeController",
        "device.clock_offset_ns": "0",
        "output_dir": "./outputs",
    }
    with path.open("w") as f:
        config.write(f)
    logger.info("Wrote default node configuration to {}", path)
