import threading
import time

import pytest
import zmq

from tagsync.node import SESSION_STATE, AcquisitionSession, HeartbeatEmitter, HeartbeatMonitor
from tagsync.types import Envelope, Heartbeat, TransferFailed


def _heartbeat(sequence, state=SESSION_STATE.IDLE, **kwargs):
    return Heartbeat(sequence=sequence, state=state, progress=0.0, **kwargs).to_bytes()


@pytest.fixture
def monitor():
    abort = threading.Event()
    return HeartbeatMonitor(
        AcquisitionSession("master"), None, 0.05, threading.Event(), abort
    )


class TestMonitor:
    def test_idle_timeout_marks_peer_down(self, monitor):
        monitor.handle(_heartbeat(1))
        assert monitor.peer_alive()
        time.sleep(0.1)
        assert not monitor.check()
        assert not monitor.peer_alive()
        # no acquisition running, so nothing to fail
        assert monitor.session.is_idle()
        assert not monitor.abort.is_set()

    def test_timeout_fails_active_session_once(self, monitor):
        monitor.session.begin([1], time.time_ns())
        assert not monitor.check()
        time.sleep(0.1)
        assert monitor.check()
        assert monitor.session.state == SESSION_STATE.ERROR
        assert monitor.session.error[0] == "PeerUnresponsive"
        assert monitor.abort.is_set()
        # fires once per silent period
        assert not monitor.check()

    def test_timeout_while_acquiring(self, monitor):
        monitor.session.begin([1], time.time_ns())
        monitor.session.transition(SESSION_STATE.ACQUIRING)
        time.sleep(0.1)
        assert monitor.check()
        assert monitor.session.state == SESSION_STATE.ERROR

    def test_session_started_after_idle_timeout(self, monitor):
        time.sleep(0.1)
        assert not monitor.check()
        monitor.rearm()
        monitor.session.begin([1], time.time_ns())
        time.sleep(0.1)
        assert monitor.check()
        assert monitor.session.error[0] == "PeerUnresponsive"

    def test_heartbeats_keep_peer_alive(self, monitor):
        assert not monitor.peer_alive()
        for seq in range(1, 5):
            assert monitor.handle(_heartbeat(seq))
            time.sleep(0.02)
            assert not monitor.check()
        assert monitor.peer_alive()
        assert monitor.last.sequence == 4

    def test_stale_heartbeat_dropped(self, monitor):
        assert monitor.handle(_heartbeat(10))
        assert not monitor.handle(_heartbeat(10))
        assert not monitor.handle(_heartbeat(9))
        assert monitor.last.sequence == 10

    def test_peer_error(self, monitor):
        monitor.handle(_heartbeat(1))
        assert monitor.peer_error() is None
        monitor.handle(
            _heartbeat(
                2,
                state=SESSION_STATE.ERROR,
                error="ack timeout",
                error_kind=TransferFailed.kind,
            )
        )
        assert monitor.peer_error() == ("TransferFailed", "ack timeout")

    def test_rearm_after_reset(self, monitor):
        monitor.session.begin([1], time.time_ns())
        time.sleep(0.1)
        assert monitor.check()
        monitor.session.reset()
        monitor.abort.clear()
        monitor.rearm()
        assert not monitor.check()
        assert monitor.session.is_idle()

    def test_garbage_frame(self, monitor):
        assert not monitor.handle(b"not json")


class TestEmitter:
    def test_emitter_reports_state_changes(self):
        ctx = zmq.Context()
        pull = ctx.socket(zmq.PULL)
        pull.bind("inproc://status")
        push = ctx.socket(zmq.PUSH)
        push.connect("inproc://status")
        session = AcquisitionSession("slave")
        running = threading.Event()
        running.set()
        emitter = HeartbeatEmitter(session, push, interval=5.0, running=running)
        emitter.start()
        try:
            first = Envelope.from_bytes(pull.recv_multipart()[0])
            assert first.state == SESSION_STATE.IDLE
            # a state change is reported well before the interval elapses
            session.begin([1, 2], time.time_ns() + 10**9)
            assert pull.poll(1000)
            second = Envelope.from_bytes(pull.recv_multipart()[0])
            assert second.state == SESSION_STATE.ARMED
            assert second.sequence > first.sequence
        finally:
            running.clear()
            emitter.join()
            push.close(linger=0)
            pull.close(linger=0)
            ctx.term()
