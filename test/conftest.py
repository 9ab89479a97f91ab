import socket

import pytest
from loguru import logger

from tagsync.types import NodeConfig
from tagsync.util import TEST_LOGLEVEL, shutdown_node_log, start_node_log


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: marks test as slow running test")
    config.addinivalue_line(
        "markers", "hardware: marks test that require physical hardware"
    )


def free_ports(n):
    """Ports currently free on the loopback interface."""
    socks = []
    try:
        for _ in range(n):
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            s.bind(("127.0.0.1", 0))
            socks.append(s)
        return [s.getsockname()[1] for s in socks]
    finally:
        for s in socks:
            s.close()


@pytest.fixture(scope="session", autouse=True)
def node_log():
    start_node_log(
        role="test", log_to_file=False, log_to_stdout=True, log_level=TEST_LOGLEVEL
    )
    yield
    shutdown_node_log()


@pytest.fixture(autouse=True)
def log(request):
    logger.warning("STARTED Test '{}'".format(request.node.originalname))

    def fin():
        logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

    request.addfinalizer(fin)


@pytest.fixture
def node_configs(tmp_path):
    """Factory for a matching (master, slave) config pair on free local ports."""

    def make(master_options=None, slave_options=None, **shared):
        trigger, status, file, command, sync = free_ports(5)
        common = dict(
            device_type="MockTimeController",
            trigger_port=trigger,
            status_port=status,
            file_port=file,
            command_port=command,
            sync_port=sync,
            local_mode=True,
            heartbeat_interval_ms=100,
            channels=(1, 2),
        )
        common.update(shared)
        master = NodeConfig(
            role="master",
            output_dir=str(tmp_path / "master"),
            device_options=dict(master_options or {}),
            **common,
        )
        slave = NodeConfig(
            role="slave",
            output_dir=str(tmp_path / "slave"),
            device_options=dict(slave_options or {}),
            **common,
        )
        return master, slave

    return make


@pytest.fixture
def ports():
    """Callable returning `n` free loopback ports."""
    return free_ports
