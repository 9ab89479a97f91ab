import zmq

from tagsync.node.transport import CHANNELS, resolve_endpoint, socket_type
from tagsync.types import NodeConfig


def test_remote_endpoints():
    master = NodeConfig(role="master", peer_address="10.0.0.2")
    slave = NodeConfig(role="slave", peer_address="10.0.0.1")
    assert resolve_endpoint(master, "trigger") == ("tcp://*:5557", True)
    assert resolve_endpoint(slave, "trigger") == ("tcp://10.0.0.1:5557", False)
    # the command channel is the one the slave serves
    assert resolve_endpoint(master, "command") == ("tcp://10.0.0.2:5561", False)
    assert resolve_endpoint(slave, "command") == ("tcp://*:5561", True)


def test_local_mode_uses_loopback():
    for role in ("master", "slave"):
        config = NodeConfig(role=role, peer_address="10.0.0.2", local_mode=True)
        for channel in CHANNELS:
            endpoint, _ = resolve_endpoint(config, channel)
            assert endpoint.startswith("tcp://127.0.0.1:")


def test_socket_pairs():
    master = NodeConfig(role="master")
    slave = NodeConfig(role="slave")
    assert socket_type(master, "status") == zmq.PULL
    assert socket_type(slave, "status") == zmq.PUSH
    assert socket_type(master, "command") == zmq.REQ
    assert socket_type(slave, "command") == zmq.REP
