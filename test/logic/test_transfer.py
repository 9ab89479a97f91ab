import threading
import time

import pytest
import zmq

from tagsync.node import AcquisitionSession, FileReceiver, FileSender, build_messages
from tagsync.node.transfer import results_filename
from tagsync.types import (
    Aborted,
    Envelope,
    FileFooter,
    FileHeader,
    FilePart,
    PeerUnresponsive,
    TransferFailed,
)

LABEL = "20250101_120000_000"


@pytest.fixture
def receiver(tmp_path):
    acks = []
    rec = FileReceiver(
        AcquisitionSession("master"),
        None,
        tmp_path / "in",
        threading.Event(),
        acks.append,
    )
    rec.acks = acks
    return rec


class TestMessages:
    def test_single_message(self):
        msgs = build_messages(7, "f.bin", "slave", LABEL, 0, b"abc")
        assert len(msgs) == 1
        header = Envelope.from_bytes(msgs[0][0])
        assert isinstance(header, FileHeader)
        assert header.parts == 0
        assert header.length == 3
        assert msgs[0][1] == b"abc"

    def test_split_message(self):
        msgs = build_messages(7, "f.bin", "slave", LABEL, 2, b"0123456789", chunk_size=4)
        kinds = [type(Envelope.from_bytes(m[0])) for m in msgs]
        assert kinds == [FileHeader, FilePart, FilePart, FilePart, FileFooter]
        assert Envelope.from_bytes(msgs[0][0]).parts == 3
        assert b"".join(m[1] for m in msgs[1:4]) == b"0123456789"


class TestReceiver:
    def test_single_file(self, receiver, tmp_path):
        (msg,) = build_messages(11, "f.bin", "slave", LABEL, 1, b"payload")
        path = receiver.handle(msg)
        assert path == tmp_path / "in" / results_filename("slave", LABEL, 1)
        assert path.read_bytes() == b"payload"
        assert receiver.acks == [11]

    def test_split_file(self, receiver):
        msgs = build_messages(12, "f.bin", "slave", LABEL, 0, b"0123456789", chunk_size=4)
        results = [receiver.handle(m) for m in msgs]
        assert results[:-1] == [None] * 4
        assert results[-1].read_bytes() == b"0123456789"
        assert receiver.acks == [12]

    def test_duplicate_is_acked_not_rewritten(self, receiver):
        (first,) = build_messages(20, "f.bin", "slave", LABEL, 0, b"original")
        (again,) = build_messages(20, "f.bin", "slave", LABEL, 0, b"resent!!")
        path = receiver.handle(first)
        assert receiver.handle(again) is None
        assert path.read_bytes() == b"original"
        assert receiver.acks == [20, 20]

    def test_length_mismatch_not_acked(self, receiver):
        (msg,) = build_messages(30, "f.bin", "slave", LABEL, 0, b"abc")
        assert receiver.handle([msg[0], b"ab"]) is None
        assert receiver.acks == []

    def test_missing_part_not_acked(self, receiver):
        msgs = build_messages(31, "f.bin", "slave", LABEL, 0, b"0123456789", chunk_size=4)
        del msgs[2]
        assert [receiver.handle(m) for m in msgs] == [None] * 4
        assert receiver.acks == []

    def test_wait_for(self, receiver):
        (msg,) = build_messages(40, "f.bin", "slave", LABEL, 3, b"x")
        threading.Timer(0.05, receiver.handle, args=(msg,)).start()
        path = receiver.wait_for(LABEL, 3, timeout=2.0)
        assert path.read_bytes() == b"x"

    def test_wait_for_timeout(self, receiver):
        with pytest.raises(TransferFailed):
            receiver.wait_for(LABEL, 0, timeout=0.05)

    def test_wait_for_abort(self, receiver):
        abort = threading.Event()
        abort.set()
        with pytest.raises(Aborted):
            receiver.wait_for(LABEL, 0, timeout=2.0, abort=abort)

    def test_wait_for_abort_keeps_session_error(self, receiver):
        receiver.session.fail(PeerUnresponsive("no heartbeat"))
        abort = threading.Event()
        abort.set()
        with pytest.raises(PeerUnresponsive):
            receiver.wait_for(LABEL, 0, timeout=2.0, abort=abort)

    @pytest.mark.parametrize(
        "role, label",
        [
            ("slave", "../../escape"),
            ("slave", "20250101_120000_000/.."),
            ("../slave", LABEL),
            ("master", LABEL),
        ],
    )
    def test_unexpected_names_rejected(self, receiver, tmp_path, role, label):
        (msg,) = build_messages(50, "f.bin", role, label, 0, b"data")
        assert receiver.handle(msg) is None
        assert receiver.acks == []
        assert not any(tmp_path.rglob("*.bin"))


class TestSenderReceiver:
    @pytest.fixture
    def sockets(self):
        ctx = zmq.Context()
        pull = ctx.socket(zmq.PULL)
        pull.bind("inproc://files")
        push = ctx.socket(zmq.PUSH)
        push.connect("inproc://files")
        yield push, pull
        push.close(linger=0)
        pull.close(linger=0)
        ctx.term()

    def _serve(self, pull, receiver, running):
        while running.is_set():
            if pull.poll(10):
                receiver.handle(pull.recv_multipart())

    def test_transfer_acknowledged(self, sockets, tmp_path):
        push, pull = sockets
        src = tmp_path / "src.bin"
        src.write_bytes(bytes(range(256)) * 10)
        sender = FileSender(AcquisitionSession("slave"), push, ack_timeout=2.0, chunk_size=1000)
        running = threading.Event()
        running.set()
        receiver = FileReceiver(
            AcquisitionSession("master"), pull, tmp_path / "in", running, sender.acknowledge
        )
        t = threading.Thread(target=self._serve, args=(pull, receiver, running))
        t.start()
        try:
            seq = sender.send_file(src, "slave", LABEL, 0)
        finally:
            running.clear()
            t.join()
        out = tmp_path / "in" / results_filename("slave", LABEL, 0)
        assert out.read_bytes() == src.read_bytes()
        assert receiver.session.last_accepted("file") == seq

    def test_unacknowledged_is_resent_then_fails(self, sockets, tmp_path):
        push, pull = sockets
        src = tmp_path / "src.bin"
        src.write_bytes(b"data")
        sender = FileSender(AcquisitionSession("slave"), push, ack_timeout=0.1)
        t0 = time.monotonic()
        with pytest.raises(TransferFailed):
            sender.send_file(src, "slave", LABEL, 0)
        assert time.monotonic() - t0 >= 0.2
        first = Envelope.from_bytes(pull.recv_multipart()[0])
        second = Envelope.from_bytes(pull.recv_multipart()[0])
        # the resend reuses the sequence so the master can spot the duplicate
        assert first.sequence == second.sequence
