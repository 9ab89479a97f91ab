"""Tests for node configuration handling."""

import dataclasses
from configparser import ConfigParser

import pytest

from tagsync.system import (
    load_node_config,
    node_config_from_section,
    parse_channels,
    write_default_config,
)
from tagsync.types import NodeConfig


@pytest.fixture
def config_file(tmp_path):
    """Create an INI file with a master and a slave section."""
    path = tmp_path / "tagsync.ini"
    config = ConfigParser()
    config["Master"] = {
        "peer_address": "192.168.0.20",
        "duration": "2.5",
        "channels": "1, 3",
        "streaming_mode": "yes",
        "max_files": "4",
        "sub_duration": "0.5",
        "device_type": "TimeController",
        "device_address": "10.0.0.5",
        "device_port": "5556",
        "device.timeout": "1.5",
        "match_window_ns": "2000",
    }
    config["slave"] = {
        "peer_address": "192.168.0.10",
        "device_type": "MockTimeController",
        "device.clock_offset_ns": "-400",
        "device.jitter_ns": "12.5",
        "text_output": "true",
    }
    with path.open("w") as f:
        config.write(f)
    return path


def test_parse_channels():
    assert parse_channels("1,2,3,4") == (1, 2, 3, 4)
    assert parse_channels(" 2 , 5 ") == (2, 5)
    with pytest.raises(ValueError):
        parse_channels(",")


def test_load_master(config_file):
    config = load_node_config(config_file, "master")
    assert config.role == "master"
    assert config.peer_address == "192.168.0.20"
    assert config.duration == 2.5
    assert config.channels == (1, 3)
    assert config.streaming_mode is True
    assert config.max_files == 4
    assert config.device_port == 5556
    assert config.device_options == {"timeout": 1.5}
    assert config.match_window_ns == 2000
    # unspecified fields keep their defaults
    assert config.trigger_port == NodeConfig(role="master").trigger_port


def test_load_slave(config_file):
    config = load_node_config(config_file, "SLAVE")
    assert config.role == "slave"
    assert config.text_output is True
    assert config.device_options == {"clock_offset_ns": -400, "jitter_ns": 12.5}


def test_overrides(config_file):
    config = load_node_config(
        config_file, "master", duration=0.3, peer_address=None, local_mode=True
    )
    assert config.duration == 0.3
    assert config.peer_address == "192.168.0.20"
    assert config.local_mode is True


def test_missing_file_and_section(tmp_path, config_file):
    with pytest.raises(FileNotFoundError):
        load_node_config(tmp_path / "nope.ini", "master")
    with pytest.raises(ValueError):
        load_node_config(config_file, "observer")


def test_unknown_key():
    config = ConfigParser()
    config["master"] = {"duraton": "1.0"}
    with pytest.raises(ValueError, match="duraton"):
        node_config_from_section(config, "master")


def test_invalid_values():
    config = ConfigParser()
    config["master"] = {"sync_percentage": "1.5"}
    with pytest.raises(ValueError):
        node_config_from_section(config, "master")
    config["master"] = {"max_files": "many"}
    with pytest.raises(ValueError):
        node_config_from_section(config, "master")


def test_default_config_loads(tmp_path):
    path = tmp_path / "sub" / "tagsync.ini"
    write_default_config(path)
    master = load_node_config(path, "master")
    slave = load_node_config(path, "slave")
    assert master.device_type == slave.device_type == "MockTimeController"
    assert slave.device_options == {"clock_offset_ns": 0}


def test_config_is_immutable():
    config = NodeConfig(role="slave")
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.duration = 5.0
