from __future__ import annotations

import threading
import time
from typing import List

import pytest

from harp_loadcells.harp.correlator import CommandCorrelator
from harp_loadcells.harp.errors import CommandBusy, CommandTimeout, DeviceDisconnected, DeviceRejected
from harp_loadcells.harp.frames import Message, MessageType, PayloadType, decode


class RecordingLink:
    """Collects outgoing frames; optionally answers them immediately."""

    def __init__(self, reply=None):
        self.sent: List[bytes] = []
        self.reply = reply
        self.correlator = CommandCorrelator(self.send)

    def send(self, frame: bytes) -> None:
        self.sent.append(frame)
        if self.reply is not None:
            request = decode(frame)
            self.correlator.dispatch(self.reply(request))


def wait_for_pending(correlator: CommandCorrelator, address: int) -> None:
    deadline = time.monotonic() + 1.0
    while address not in correlator.pending():
        assert time.monotonic() < deadline, "command never became pending"
        time.sleep(0.005)


def run_in_thread(target):
    outcome = {}

    def _run():
        try:
            outcome["result"] = target()
        except Exception as exc:  # noqa: BLE001 - handed back to the test
            outcome["error"] = exc

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread, outcome


def u8_reply(request: Message, value: int, kind: MessageType = MessageType.READ) -> Message:
    return Message(kind, request.address, PayloadType.U8, bytes([value]), timestamp=1.0)


def test_read_completes_with_reply():
    link = RecordingLink(reply=lambda request: u8_reply(request, 7))
    reply = link.correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=0.5)
    assert reply.payload == b"\x07"
    request = decode(link.sent[0])
    assert request.message_type is MessageType.READ
    assert request.payload == b""
    assert link.correlator.pending() == []


def test_write_carries_payload():
    link = RecordingLink(reply=lambda request: u8_reply(request, request.payload[0], MessageType.WRITE))
    reply = link.correlator.issue(32, MessageType.WRITE, PayloadType.U8, b"\x01", timeout=0.5)
    assert reply.message_type is MessageType.WRITE
    assert decode(link.sent[0]).payload == b"\x01"


def test_second_command_on_same_address_is_busy():
    link = RecordingLink()
    correlator = link.correlator
    thread, outcome = run_in_thread(lambda: correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=2.0))
    wait_for_pending(correlator, 32)
    with pytest.raises(CommandBusy):
        correlator.issue(32, MessageType.WRITE, PayloadType.U8, b"\x01")
    assert len(link.sent) == 1
    assert correlator.dispatch(u8_reply(decode(link.sent[0]), 1))
    thread.join(timeout=1.0)
    assert outcome["result"].payload == b"\x01"


def test_other_addresses_are_independent():
    link = RecordingLink()
    correlator = link.correlator
    first, first_outcome = run_in_thread(lambda: correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=2.0))
    wait_for_pending(correlator, 32)
    second, second_outcome = run_in_thread(lambda: correlator.issue(39, MessageType.READ, PayloadType.U8, timeout=2.0))
    wait_for_pending(correlator, 39)
    assert correlator.dispatch(Message(MessageType.READ, 39, PayloadType.U8, b"\x02"))
    assert correlator.dispatch(Message(MessageType.READ, 32, PayloadType.U8, b"\x01"))
    first.join(timeout=1.0)
    second.join(timeout=1.0)
    assert first_outcome["result"].payload == b"\x01"
    assert second_outcome["result"].payload == b"\x02"


def test_timeout_then_late_reply_is_ignored():
    link = RecordingLink()
    correlator = link.correlator
    with pytest.raises(CommandTimeout):
        correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=0.05)
    assert correlator.pending() == []
    assert not correlator.dispatch(Message(MessageType.READ, 32, PayloadType.U8, b"\x09"))

    link.reply = lambda request: u8_reply(request, 3)
    assert correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=0.5).payload == b"\x03"


def test_events_and_other_kinds_do_not_complete_commands():
    link = RecordingLink()
    correlator = link.correlator
    thread, outcome = run_in_thread(lambda: correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=2.0))
    wait_for_pending(correlator, 32)
    assert not correlator.dispatch(Message(MessageType.EVENT, 32, PayloadType.U8, b"\x05"))
    assert not correlator.dispatch(Message(MessageType.WRITE, 32, PayloadType.U8, b"\x05"))
    assert correlator.pending() == [32]
    assert correlator.dispatch(Message(MessageType.READ, 32, PayloadType.U8, b"\x06"))
    thread.join(timeout=1.0)
    assert outcome["result"].payload == b"\x06"


def test_error_reply_raises_device_rejected():
    link = RecordingLink(
        reply=lambda request: Message(MessageType.WRITE_ERROR, request.address, PayloadType.U8, b"\x00")
    )
    with pytest.raises(DeviceRejected) as info:
        link.correlator.issue(32, MessageType.WRITE, PayloadType.U8, b"\x02", timeout=0.5)
    assert info.value.payload == b"\x00"
    assert info.value.reply.message_type is MessageType.WRITE_ERROR


def test_fail_all_wakes_waiters():
    link = RecordingLink()
    correlator = link.correlator
    thread, outcome = run_in_thread(lambda: correlator.issue(32, MessageType.READ, PayloadType.U8, timeout=5.0))
    wait_for_pending(correlator, 32)
    assert correlator.fail_all("link lost") == 1
    thread.join(timeout=1.0)
    assert not thread.is_alive()
    assert isinstance(outcome["error"], DeviceDisconnected)
    assert correlator.pending() == []


def test_send_failure_releases_address():
    def broken_send(frame: bytes) -> None:
        raise DeviceDisconnected("write failed")

    correlator = CommandCorrelator(broken_send)
    with pytest.raises(DeviceDisconnected):
        correlator.issue(32, MessageType.READ, PayloadType.U8)
    assert correlator.pending() == []


def test_events_cannot_be_issued():
    with pytest.raises(ValueError):
        RecordingLink().correlator.issue(32, MessageType.EVENT, PayloadType.U8)
