import json
import threading
import time
from pathlib import Path

import pytest
import zmq
from loguru import logger

from tagsync.node import (
    SESSION_STATE,
    AcquisitionSession,
    CommandClient,
    MasterController,
    SlaveAgent,
)
from tagsync.types import CONSTS, Busy, DeviceError, PeerNotReady, SyncError


def wait_for(predicate, timeout=5.0):
    t0 = time.time()
    while time.time() - t0 < timeout:
        if predicate():
            return True
        time.sleep(0.05)
    raise RuntimeError("Timeout waiting for condition")


class TestMasterAlone:
    def test_no_slave_is_peer_not_ready(self, node_configs):
        master_config, _ = node_configs(heartbeat_interval_ms=100)
        with MasterController(master_config) as master:
            # well past the heartbeat timeout before the first start
            time.sleep(3 * master_config.heartbeat_timeout)
            assert master.session.is_idle()
            assert not master.monitor.peer_alive()
            with pytest.raises(PeerNotReady):
                master.start_acquisition(duration=0.1)
            # nothing started locally
            assert master.session.is_idle()
            assert not any(Path(master_config.output_dir).glob("*.bin"))
            assert not master.ping()

    def test_busy(self, node_configs):
        master_config, _ = node_configs(heartbeat_interval_ms=10_000)
        with MasterController(master_config) as master:
            master.session.begin([1], time.time_ns())
            with pytest.raises(Busy):
                master.start_acquisition(duration=0.1)

    def test_errored_session_needs_reset(self, node_configs):
        master_config, _ = node_configs(heartbeat_interval_ms=10_000)
        with MasterController(master_config) as master:
            master.session.fail(DeviceError("REC:PLAY rejected"))
            with pytest.raises(DeviceError, match="reset"):
                master.start_acquisition(duration=0.1)
            master.reset()
            assert master.session.is_idle()

    def test_silent_slave_marks_peer_down(self, node_configs):
        master_config, _ = node_configs(heartbeat_interval_ms=50)
        with MasterController(master_config) as master:
            time.sleep(3 * master_config.heartbeat_timeout)
            assert not master.monitor.peer_alive()
            assert master.session.is_idle()
            assert not master.abort.is_set()


class TestCommandClient:
    def test_concurrent_callers_never_stale(self, node_configs):
        master_config, slave_config = node_configs(heartbeat_interval_ms=10_000)
        running = threading.Event()
        running.set()
        context = zmq.Context()
        client = CommandClient(
            context, master_config, AcquisitionSession("master"), running
        )
        client.start()
        errors = []
        sequences = []

        def caller():
            for _ in range(10):
                try:
                    sequences.append(client.call(CONSTS.COMMS.PING).sequence)
                except SyncError as exc:
                    errors.append(exc)

        with SlaveAgent(slave_config):
            callers = [threading.Thread(target=caller) for _ in range(4)]
            for t in callers:
                t.start()
            for t in callers:
                t.join()
        running.clear()
        client.join()
        client.close()
        context.term()

        assert errors == []
        assert len(sequences) == 40
        assert len(set(sequences)) == 40


@pytest.mark.slow
class TestMasterSlave:
    @pytest.fixture
    def nodes(self, node_configs):
        def start(master_options=None, slave_options=None, **shared):
            shared.setdefault("heartbeat_interval_ms", 250)
            master_config, slave_config = node_configs(
                master_options, slave_options, **shared
            )
            slave = SlaveAgent(slave_config)
            slave.start()
            master = MasterController(master_config)
            master.initialize()
            started.append((master, slave))
            wait_for(master.monitor.peer_alive)
            return master, slave

        started = []
        yield start
        for master, slave in started:
            master.stop()
            slave.stop()

    def test_single_acquisition(self, nodes):
        master, slave = nodes(slave_options={"clock_offset_ns": 3_000_000})
        reports = master.start_acquisition(duration=0.3)

        assert len(reports) == 1
        report = reports[0]
        logger.info("Report: {}", report)
        assert report.mean_offset_ns == pytest.approx(3_000_000)
        assert report.quality == 1.0
        assert report.trigger_offset_ns is not None

        label = master.session.label
        out = Path(master.config.output_dir)
        assert (out / f"master_results_{label}_000.bin").exists()
        assert (out / f"slave_results_{label}_000.bin").exists()
        assert (out / f"master_results_{label}_000_corrected.bin").exists()
        saved = json.loads((out / f"offset_report_{label}_000.json").read_text())
        assert saved["sample_count"] == report.sample_count

        assert master.session.is_idle()
        wait_for(slave.session.is_idle)
        assert master.ping()

    def test_streaming(self, nodes):
        master, slave = nodes(
            slave_options={"clock_offset_ns": -750_000, "jitter_ns": 10.0},
            streaming_mode=True,
            sub_duration=0.2,
            max_files=5,
            text_output=True,
        )
        reports = master.start_acquisition(duration=1.0)

        assert len(reports) == 5
        for report in reports:
            assert report.mean_offset_ns == pytest.approx(-750_000, abs=10)
            assert not report.insufficient_data
        assert len(slave.files_sent) == 5

        out = Path(master.config.output_dir)
        label = master.session.label
        assert len(list(out.glob(f"slave_results_{label}_*.bin"))) == 5
        assert len(list(out.glob(f"master_results_{label}_00?.txt"))) == 5
        assert len(list(out.glob(f"offset_report_{label}_*.json"))) == 5
        wait_for(slave.session.is_idle)

    def test_repeated_acquisitions(self, nodes):
        master, slave = nodes()
        first = master.start_acquisition(duration=0.2)
        label = master.session.label
        second = master.start_acquisition(duration=0.2)
        assert master.session.label != label
        assert len(first) == len(second) == 1

    def test_slave_device_failure(self, nodes):
        master, slave = nodes(slave_options={"fail_prefixes": ["REC:PLAY"]})
        with pytest.raises(DeviceError):
            master.start_acquisition(duration=0.2)
        assert master.session.state == SESSION_STATE.ERROR
        wait_for(lambda: slave.session.state == SESSION_STATE.ERROR)

        # reset clears the error on both nodes
        master.reset()
        assert master.session.is_idle()
        assert slave.session.is_idle()

    def test_peer_status(self, nodes):
        master, slave = nodes()
        assert master.peer_status()["state"] == SESSION_STATE.IDLE
        wait_for(lambda: master.status()["peer"] is not None)
        assert master.status()["peer"]["state"] == SESSION_STATE.IDLE
