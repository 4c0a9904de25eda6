from __future__ import annotations

import threading
import time
from typing import List, Optional

from harp_loadcells.harp.config import SerialSettings
from harp_loadcells.harp.frames import Message, MessageType, PayloadType, encode
from harp_loadcells.harp.runner import SerialReaderThread, open_serial


class FakeSerialInstance:
    def __init__(self, chunks: List[bytes], exception: Optional[type] = None):
        self._chunks = chunks
        self._exception = exception
        self.is_open = True

    def read(self, size: int = 1) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)[:size]
        if self._exception is not None:
            raise self._exception("mock disconnect")
        time.sleep(0.001)
        return b""

    def close(self) -> None:
        self.is_open = False


class FakeSerialModule:
    def __init__(self):
        self.calls = []
        self.SerialException = RuntimeError

    def Serial(self, **kwargs):
        self.calls.append(kwargs)
        return FakeSerialInstance([])


class Collector:
    def __init__(self):
        self.messages: List[Message] = []
        self.closed = threading.Event()
        self.close_reason: Optional[BaseException] = None

    def dispatch(self, message: Message) -> None:
        self.messages.append(message)

    def on_close(self, exc: Optional[BaseException]) -> None:
        self.close_reason = exc
        self.closed.set()


def test_open_serial_uses_settings(monkeypatch):
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("harp_loadcells.harp.runner.serial", fake_serial)
    open_serial("/dev/ttyFAKE", SerialSettings(baudrate=115200, read_timeout=0.02))
    assert fake_serial.calls == [{"port": "/dev/ttyFAKE", "baudrate": 115200, "timeout": 0.02}]


def test_reader_validates_and_reports_disconnect(monkeypatch):
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("harp_loadcells.harp.runner.serial", fake_serial)
    good = encode(Message(MessageType.EVENT, 33, PayloadType.S16, bytes(16), timestamp=1.0))
    short = encode(Message(MessageType.EVENT, 33, PayloadType.S16, bytes(6), timestamp=1.0))
    unknown = encode(Message(MessageType.EVENT, 200, PayloadType.U8, b"\x01"))
    rejected = encode(Message(MessageType.READ_ERROR, 0, PayloadType.U8))
    handle = FakeSerialInstance([b"\x00\x7e" + good[:5], good[5:] + short, unknown + rejected], RuntimeError)
    collector = Collector()
    reader = SerialReaderThread(handle, collector.dispatch, collector.on_close, chunk_size=64)
    reader.start()
    assert collector.closed.wait(1.0)
    reader.join(timeout=1.0)
    assert [message.address for message in collector.messages] == [33, 200, 0]
    assert isinstance(collector.close_reason, RuntimeError)
    stats = reader.stats()
    assert stats["dispatched"] == 3
    assert stats["payload_errors"] == 1
    assert stats["resync_bytes"] == 2


def test_reader_stop_ends_loop_without_error():
    collector = Collector()
    reader = SerialReaderThread(FakeSerialInstance([]), collector.dispatch, collector.on_close)
    reader.start()
    reader.stop()
    reader.join(timeout=1.0)
    assert not reader.is_alive()
    assert collector.closed.is_set()
    assert collector.close_reason is None


def test_reader_ends_when_transport_closes():
    collector = Collector()
    handle = FakeSerialInstance([])
    reader = SerialReaderThread(handle, collector.dispatch, collector.on_close)
    reader.start()
    handle.close()
    assert collector.closed.wait(1.0)
    assert collector.close_reason is None
