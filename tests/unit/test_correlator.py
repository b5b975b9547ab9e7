"""
Unit tests for FIFO reply correlation.
"""

from concurrent.futures import Future

import pytest

from deltahri.errors import MalformedPacket, ProtocolDesync
from deltahri.protocol.wire import Packet, pack_vec3, unpack_enable, unpack_vec3
from deltahri.server.correlator import PendingReply, ReplyCorrelator


def _reply(packet_id: str, payload: bytes = b"") -> Packet:
    return Packet(synchronous=True, tag=ord("0"), id=ord(packet_id), payload=payload)


class TestFifoMatching:
    """Replies resolve pending slots strictly in order."""

    def test_each_continuation_gets_its_own_reply(self):
        corr = ReplyCorrelator()
        futures = [Future(), Future(), Future()]
        for fut, cid in zip(futures, "RZA"):
            corr.expect(PendingReply(ord(cid), fut))

        corr.resolve(_reply("R", b"one"))
        corr.resolve(_reply("Z", b"two"))
        corr.resolve(_reply("A", b"three"))

        assert [f.result(timeout=0) for f in futures] == [b"one", b"two", b"three"]
        assert len(corr) == 0
        assert corr.resolved_replies == 3

    def test_decoder_applied(self):
        corr = ReplyCorrelator()
        fut: Future = Future()
        corr.expect(PendingReply(ord("R"), fut, unpack_vec3))
        corr.resolve(_reply("R", bytes(12)))
        assert fut.result(timeout=0) == (0.0, 0.0, 0.0)

    def test_id_mismatch_still_consumes_oldest(self):
        """Matching is by order only; ids are not compared."""
        corr = ReplyCorrelator()
        first: Future = Future()
        second: Future = Future()
        corr.expect(PendingReply(ord("R"), first))
        corr.expect(PendingReply(ord("Z"), second))
        corr.resolve(_reply("Z", b"x"))
        assert first.result(timeout=0) == b"x"
        assert not second.done()

    def test_slot_without_future_consumes_reply(self):
        corr = ReplyCorrelator()
        fut: Future = Future()
        corr.expect(PendingReply(ord("M")))
        corr.expect(PendingReply(ord("A"), fut, unpack_enable))
        assert corr.resolve(_reply("M")) is True
        corr.resolve(_reply("A", b"\x01"))
        assert fut.result(timeout=0) is True

    def test_cancelled_future_is_skipped(self):
        corr = ReplyCorrelator()
        fut: Future = Future()
        fut.cancel()
        corr.expect(PendingReply(ord("R"), fut))
        assert corr.resolve(_reply("R", b"late")) is True
        assert len(corr) == 0

    def test_cancelled_while_resolving(self):
        """The owner may cancel after the done() check; the reply is dropped quietly."""
        corr = ReplyCorrelator()
        fut: Future = Future()

        def decode_and_cancel(payload):
            fut.cancel()
            return unpack_vec3(payload)

        corr.expect(PendingReply(ord("R"), fut, decode_and_cancel))
        assert corr.resolve(_reply("R", bytes(12))) is True
        assert fut.cancelled()
        assert len(corr) == 0

    def test_bad_reply_payload_fails_future(self):
        corr = ReplyCorrelator()
        fut: Future = Future()
        corr.expect(PendingReply(ord("R"), fut, unpack_vec3))
        corr.resolve(_reply("R", b"\x00\x01"))
        with pytest.raises(MalformedPacket):
            fut.result(timeout=0)

    def test_continuation_fires_once(self):
        corr = ReplyCorrelator()
        calls = []
        fut: Future = Future()
        fut.add_done_callback(lambda f: calls.append(f.result()))
        corr.expect(PendingReply(ord("R"), fut, unpack_vec3))
        corr.resolve(_reply("R", pack_vec3(1, 2, 3)))
        corr.resolve(_reply("R", pack_vec3(4, 5, 6)))
        assert calls == [(1.0, 2.0, 3.0)]


class TestUnmatchedReplies:
    def test_logged_and_counted(self, caplog):
        corr = ReplyCorrelator()
        with caplog.at_level("WARNING"):
            assert corr.resolve(_reply("R")) is False
        assert corr.unmatched_replies == 1
        assert "no pending command" in caplog.text

    def test_strict_raises(self):
        corr = ReplyCorrelator(strict=True)
        with pytest.raises(ProtocolDesync):
            corr.resolve(_reply("R"))
        assert corr.unmatched_replies == 1


class TestWithdrawAndCancel:
    def test_withdraw_last_removes_newest(self):
        corr = ReplyCorrelator()
        old: Future = Future()
        new: Future = Future()
        corr.expect(PendingReply(ord("R"), old))
        corr.expect(PendingReply(ord("Z"), new))
        slot = corr.withdraw_last()
        assert slot is not None and slot.future is new
        corr.resolve(_reply("R", b"ok"))
        assert old.result(timeout=0) == b"ok"

    def test_withdraw_empty(self):
        assert ReplyCorrelator().withdraw_last() is None

    def test_cancel_all(self):
        corr = ReplyCorrelator()
        futures = [Future() for _ in range(3)]
        for fut in futures:
            corr.expect(PendingReply(ord("R"), fut))
        corr.expect(PendingReply(ord("M")))
        assert corr.cancel_all() == 4
        assert all(f.cancelled() for f in futures)
        assert len(corr) == 0
