"""Node configuration loading (INI files)."""

from .sysconfig import (
    load_node_config,
    node_config_from_section,
    parse_channels,
    write_default_config,
)

__all__ = [
    "load_node_config",
    "node_config_from_section",
    "parse_channels",
    "write_default_config",
]
