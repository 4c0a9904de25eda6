"""
In-process LoadCells device.

:class:`SimulatedLoadCells` behaves like an open serial port (``read``,
``write``, ``flush``, ``close``, ``is_open``) wired to a register bank that
follows the firmware's write rules, so the whole host stack can run without
hardware. Pass ``transport_factory=lambda port: simulator`` to
:class:`~harp_loadcells.harp.device.Device`.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Set

import numpy as np
import serial

from .frames import FrameParser, Message, MessageType, encode
from .payloads import pack, unpack
from .registers import REGISTERS, WHO_AM_I, RegisterRef, find, resolve

logger = logging.getLogger(__name__)

OUTPUT_MASK = 0x1FF
EVENT_MASK = 0x0F

_DEFAULTS: Dict[str, Any] = {
    "HardwareVersionHigh": 1,
    "HardwareVersionLow": 0,
    "AssemblyVersion": 0,
    "CoreVersionHigh": 1,
    "CoreVersionLow": 11,
    "FirmwareVersionHigh": 1,
    "FirmwareVersionLow": 2,
    "DeviceName": "LoadCells",
    "DO0PulseDuration": 10,
    "EnableEvents": EVENT_MASK,
    **{f"DO{index}TargetLoadCell": 8 for index in range(8)},
}


class SimulatedLoadCells:
    def __init__(
        self,
        who_am_i: int = WHO_AM_I,
        serial_number: Optional[int] = 0x0102,
        respond: bool = True,
        timeout: float = 0.05,
        seed: int = 0,
    ):
        self.timeout = timeout
        self.is_open = True
        self.respond = respond
        self.ignored: Set[int] = set()
        self.written = bytearray()
        self.requests: List[Message] = []
        self._parser = FrameParser()
        self._outbox = bytearray()
        self._cond = threading.Condition()
        self._bank_lock = threading.RLock()
        self._values: Dict[int, bytes] = {}
        self._has_serial = serial_number is not None
        self._epoch = time.monotonic()
        self._rng = np.random.default_rng(seed)
        self._streamer: Optional[threading.Thread] = None
        self._streaming = threading.Event()
        self._restore_defaults()
        self.set_value("WhoAmI", who_am_i)
        if serial_number is not None:
            self.set_value("SerialNumber", serial_number)

    # serial-like interface

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise serial.SerialException("Port is closed")
        self.written.extend(data)
        for request in self._parser.feed(data):
            self.requests.append(request)
            if not self.respond or request.address in self.ignored:
                continue
            self._emit(self._handle(request))
        return len(data)

    def read(self, size: int = 1) -> bytes:
        with self._cond:
            if not self._outbox and self.is_open:
                self._cond.wait(self.timeout)
            chunk = bytes(self._outbox[:size])
            del self._outbox[:size]
            return chunk

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.stop_streaming()
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    # register bank

    def value(self, register: RegisterRef) -> Any:
        descriptor = resolve(register)
        with self._bank_lock:
            return unpack(descriptor, self._values[descriptor.address])

    def set_value(self, register: RegisterRef, value: Any) -> None:
        descriptor = resolve(register)
        with self._bank_lock:
            self._values[descriptor.address] = pack(descriptor, value)

    def emit_event(self, register: RegisterRef, value: Any = None) -> Message:
        descriptor = resolve(register)
        if value is not None:
            self.set_value(descriptor, value)
        with self._bank_lock:
            payload = self._values[descriptor.address]
        message = Message(
            MessageType.EVENT,
            descriptor.address,
            descriptor.payload_type,
            payload,
            timestamp=self.now(),
        )
        self._emit(message)
        return message

    def inject(self, raw: bytes) -> None:
        """Queue raw bytes towards the host, e.g. line noise."""
        with self._cond:
            self._outbox.extend(raw)
            self._cond.notify_all()

    def now(self) -> float:
        return time.monotonic() - self._epoch

    # behaviour

    @property
    def acquiring(self) -> bool:
        return bool(self.value("StartAcquisition"))

    @property
    def enabled_events(self) -> int:
        return int(self.value("EnableEvents"))

    def acquire(self, samples: int = 1) -> int:
        """Produce load cell samples; emits events when acquisition and the event bit are on."""
        emitted = 0
        for _ in range(samples):
            if not self.acquiring:
                break
            offsets = np.array([self.value(f"OffsetLoadCell{index}") for index in range(8)])
            data = np.clip(self._rng.normal(0.0, 200.0, size=8) - offsets, -32768, 32767)
            self.set_value("LoadCellData", data.round().astype(np.int16))
            if self.enabled_events & 0x01:
                self.emit_event("LoadCellData")
                emitted += 1
        return emitted

    def set_input(self, level: bool) -> None:
        self.set_value("InputEvent", 1 if level else 0)
        if self.enabled_events & 0x02:
            self.emit_event("InputEvent")

    def start_streaming(self, rate_hz: float = 100.0) -> None:
        if self._streamer is not None:
            return
        period = 1.0 / max(rate_hz, 1.0)
        self._streaming.set()

        def _loop() -> None:
            while self._streaming.is_set() and self.is_open:
                self.acquire(1)
                time.sleep(period)

        self._streamer = threading.Thread(target=_loop, daemon=True, name="loadcells-sim")
        self._streamer.start()

    def stop_streaming(self) -> None:
        self._streaming.clear()
        streamer, self._streamer = self._streamer, None
        if streamer is not None and streamer is not threading.current_thread():
            streamer.join(timeout=1.0)

    def _restore_defaults(self) -> None:
        with self._bank_lock:
            preserved = {address: self._values[address] for address in (0, 13) if address in self._values}
            for descriptor in REGISTERS.values():
                self._values[descriptor.address] = bytes(descriptor.payload_size)
            for name, value in _DEFAULTS.items():
                self.set_value(name, value)
            self._values.update(preserved)

    def _emit(self, message: Message) -> None:
        with self._cond:
            self._outbox.extend(encode(message))
            self._cond.notify_all()

    def _handle(self, request: Message) -> Message:
        descriptor = find(request.address)
        is_read = request.message_type is MessageType.READ
        error_type = MessageType.READ_ERROR if is_read else MessageType.WRITE_ERROR
        if descriptor is None or request.message_type not in (MessageType.READ, MessageType.WRITE):
            return Message(error_type, request.address, request.payload_type, timestamp=self.now())
        with self._bank_lock:
            current = self._values[descriptor.address]
        error = Message(error_type, descriptor.address, descriptor.payload_type, current, timestamp=self.now())
        if request.payload_type is not descriptor.payload_type:
            return error
        if is_read:
            if descriptor.name == "SerialNumber" and not self._has_serial:
                return error
            return Message(MessageType.READ, descriptor.address, descriptor.payload_type, current, timestamp=self.now())
        if not descriptor.writable or len(request.payload) != descriptor.payload_size:
            return error
        if not self._apply_write(descriptor.name, request.payload):
            logger.debug("Simulator rejected write of %s to %s", request.payload.hex(), descriptor.name)
            return error
        with self._bank_lock:
            stored = self._values[descriptor.address]
        return Message(MessageType.WRITE, descriptor.address, descriptor.payload_type, stored, timestamp=self.now())

    def _apply_write(self, name: str, payload: bytes) -> bool:
        descriptor = resolve(name)
        raw = payload
        value = int.from_bytes(payload, "little", signed=descriptor.payload_type.is_signed) if descriptor.count == 1 else None
        with self._bank_lock:
            if name == "StartAcquisition" and value & ~0x01:
                return False
            if name in ("DI0Mode", "DO0Mode") and value & ~0x03:
                return False
            if name == "DO0PulseDuration" and value < 1:
                return False
            if name.startswith("OffsetLoadCell") and not -255 <= value <= 255:
                return False
            if name.endswith("TargetLoadCell") and value > 8:
                return False
            if name == "EnableEvents" and value & ~EVENT_MASK:
                return False
            if name in ("OutputSet", "OutputClear", "OutputToggle", "OutputState"):
                if value & ~OUTPUT_MASK:
                    return False
                state = int(self.value("OutputState"))
                if name == "OutputSet":
                    state |= value
                elif name == "OutputClear":
                    state &= ~value
                elif name == "OutputToggle":
                    state = (state ^ value) & OUTPUT_MASK
                else:
                    state = value
                self._values[45] = state.to_bytes(2, "little")
            if name == "ResetDevice" and value & 0x01:
                self._restore_defaults()
                return True
            self._values[descriptor.address] = raw
        return True
