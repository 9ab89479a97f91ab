import threading
import time

import pytest

from tagsync.device import MockTimeController
from tagsync.node import SESSION_STATE, AcquisitionSession, ChunkedAcquisition, plan_chunks
from tagsync.node.acquisition import wait_until_ns
from tagsync.types import Aborted, DeviceError, DeviceTimeout, PeerUnresponsive


def _acquisition(device, chunks, retries=0, lead_ns=50_000_000):
    session = AcquisitionSession("slave")
    trigger_ns = time.time_ns() + lead_ns
    session.begin([1, 2], trigger_ns)
    results = []
    acq = ChunkedAcquisition(
        device,
        session,
        [1, 2],
        trigger_ns,
        chunks,
        threading.Event(),
        lambda chunk, records, started_ns: results.append((chunk, records, started_ns)),
        retries=retries,
    )
    return acq, results


class FailingStopController(MockTimeController):
    """Mock whose first stop while recording fails, like a lost REC:STOP reply."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_next_stop = True
        self.play_ns = 0
        self.windows_ns = []

    def play(self):
        super().play()
        self.play_ns = time.time_ns()

    def stop(self, channels):
        if self.fail_next_stop and self._recording:
            self.fail_next_stop = False
            raise DeviceError("REC:STOP not acknowledged")
        super().stop(channels)

    def collect(self, channels, start_ns, duration):
        self.windows_ns.append(time.time_ns() - self.play_ns)
        return super().collect(channels, start_ns, duration)


class TestChunkedAcquisition:
    def test_streaming_run(self):
        device = MockTimeController(event_period_ns=1_000_000)
        device.open()
        chunks = plan_chunks(0.15, 0.05, 10, streaming=True)
        acq, results = _acquisition(device, chunks)
        acq.run()

        assert [c.index for c, _, _ in results] == [0, 1, 2]
        for chunk, records, started_ns in results:
            assert records.shape[0] > 0
            assert set(records["channel"]) <= {1, 2}
            # recording starts on or after the chunk's planned instant
            assert started_ns >= acq.trigger_ns + chunk.offset_ns
        assert acq.session.state == SESSION_STATE.FINISHING
        assert acq.session.snapshot()["progress"] == 1.0
        assert device.commands.count("REC:PLAY") == 3

    def test_device_failure_retried(self):
        device = MockTimeController(hang_prefixes=["REC:PLAY"])
        device.open()
        acq, results = _acquisition(device, plan_chunks(0.05, 0.05, 1, False), retries=2)
        with pytest.raises(DeviceTimeout):
            acq.run()
        assert device.commands.count("REC:PLAY") == 3
        assert results == []

    def test_retry_records_a_full_window(self):
        device = FailingStopController()
        device.open()
        chunks = plan_chunks(0.2, 0.1, 10, streaming=True)
        acq, results = _acquisition(device, chunks, retries=2)
        acq.run()

        assert [c.index for c, _, _ in results] == [0, 1]
        assert device.commands.count("REC:PLAY") == 3
        # the retried chunk and the one after it both record a full window
        assert len(device.windows_ns) == 2
        for window in device.windows_ns:
            assert window >= 0.09e9
        assert acq.shift_ns > 0
        (_, _, first), (_, _, second) = results
        assert first > acq.trigger_ns + chunks[0].offset_ns
        assert second - first >= 0.09e9
        for _, records, _ in results:
            assert records.shape[0] > 0

    def test_abort(self):
        device = MockTimeController()
        device.open()
        acq, results = _acquisition(
            device, plan_chunks(0.05, 0.05, 1, False), lead_ns=10**9
        )
        threading.Timer(0.05, acq.abort.set).start()
        with pytest.raises(Aborted):
            acq.run()
        assert "REC:PLAY" not in device.commands

    def test_abort_after_error_raises_the_error(self):
        session = AcquisitionSession("master")
        session.fail(PeerUnresponsive("gone"))
        abort = threading.Event()
        abort.set()
        with pytest.raises(PeerUnresponsive):
            wait_until_ns(time.time_ns() + 10**9, session, abort)

    def test_wait_until_reports_lateness(self):
        session = AcquisitionSession("master")
        late = wait_until_ns(time.time_ns() - 5_000_000, session, threading.Event())
        assert late >= 5_000_000
