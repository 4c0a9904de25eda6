from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple

import serial

from .config import DeviceConfig
from .correlator import CommandCorrelator
from .errors import (
    AccessError,
    CommandError,
    CommandTimeout,
    ConnectionFailed,
    DeviceDisconnected,
    HarpError,
    IdentifyTimeout,
    NotConnected,
    PortUnavailable,
    UnexpectedDevice,
)
from .events import EventMultiplexer, Subscription
from .flags import DigitalOutputs, LoadCellEvents, ResetFlags
from .frames import Message, MessageType
from .payloads import pack, unpack_message
from .registers import (
    WHO_AM_I,
    RegisterDescriptor,
    RegisterRef,
    find,
    iter_registers,
    resolve,
)
from .runner import SerialReaderThread, open_serial

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Any]


class DeviceState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDENTIFIED = "identified"
    ACTIVE = "active"


@dataclass(frozen=True)
class HarpVersion:
    major: int
    minor: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


@dataclass(frozen=True)
class DeviceIdentity:
    who_am_i: int
    name: str
    hardware_version: HarpVersion
    firmware_version: HarpVersion
    core_version: HarpVersion
    assembly_version: int
    serial_number: Optional[int] = None


@dataclass(frozen=True)
class RegisterEvent:
    address: int
    name: str
    value: Any
    timestamp: Optional[float]
    message: Message


class EventStream:
    """Decoded view over a :class:`Subscription`."""

    def __init__(self, subscription: Subscription):
        self.subscription = subscription

    def get(self, timeout: Optional[float] = None) -> RegisterEvent:
        return decode_event(self.subscription.get(timeout))

    def close(self) -> None:
        self.subscription.close()

    def __iter__(self) -> Iterator[RegisterEvent]:
        for message in self.subscription:
            yield decode_event(message)

    def __enter__(self) -> "EventStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def decode_event(message: Message) -> RegisterEvent:
    descriptor = find(message.address)
    if descriptor is None:
        return RegisterEvent(message.address, f"Register{message.address}", message.payload, message.timestamp, message)
    return RegisterEvent(
        message.address,
        descriptor.name,
        unpack_message(descriptor, message),
        message.timestamp,
        message,
    )


class Device:
    """
    Connection to one LoadCells device.

    ``open()`` moves DISCONNECTED -> CONNECTING -> IDENTIFIED -> ACTIVE; any
    transport loss or ``close()`` returns to DISCONNECTED, failing pending
    commands and ending every event subscription.
    """

    def __init__(
        self,
        port: str,
        config: Optional[DeviceConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.port = port
        self.config = config or DeviceConfig(port=port)
        self._transport_factory = transport_factory or (lambda name: open_serial(name, self.config.serial))
        self._state = DeviceState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._handle: Any = None
        self._reader: Optional[SerialReaderThread] = None
        self.correlator = CommandCorrelator(self._send)
        self.multiplexer = EventMultiplexer(
            queue_maxsize=self.config.events.queue_maxsize,
            max_missed=self.config.events.max_missed,
        )
        self.identity: Optional[DeviceIdentity] = None

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is DeviceState.ACTIVE

    # lifecycle

    def open(self) -> DeviceIdentity:
        with self._state_lock:
            if self._state is not DeviceState.DISCONNECTED:
                raise HarpError(f"Device on {self.port} is already {self._state.value}")
            self._state = DeviceState.CONNECTING
        try:
            handle = self._transport_factory(self.port)
        except (serial.SerialException, OSError, ValueError) as exc:
            self._set_state(DeviceState.DISCONNECTED)
            raise PortUnavailable(f"Could not open {self.port}: {exc}") from exc
        self._handle = handle
        self._reader = SerialReaderThread(
            handle,
            dispatch=self._dispatch,
            on_close=self._on_transport_closed,
            chunk_size=self.config.serial.chunk_size,
        )
        self._reader.start()
        logger.info("Opened %s", self.port)
        try:
            identity = self._identify()
        except BaseException:
            self._teardown("Identification failed")
            raise
        with self._state_lock:
            if self._state is not DeviceState.CONNECTING:
                raise ConnectionFailed(f"Lost {self.port} during identification")
            self.identity = identity
            self._state = DeviceState.IDENTIFIED
            self._state = DeviceState.ACTIVE
        logger.info(
            "Connected to %s on %s (hw %s, fw %s, serial %s)",
            identity.name,
            self.port,
            identity.hardware_version,
            identity.firmware_version,
            identity.serial_number if identity.serial_number is not None else "n/a",
        )
        return identity

    def close(self) -> None:
        self._teardown("Device closed")

    def __enter__(self) -> "Device":
        if self._state is DeviceState.DISCONNECTED:
            self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def stats(self) -> Dict[str, int]:
        stats = self._reader.stats() if self._reader is not None else {}
        stats["subscribers"] = len(self.multiplexer)
        stats["pending"] = len(self.correlator.pending())
        return stats

    # register access

    def read_message(self, register: RegisterRef, timeout: Optional[float] = None) -> Message:
        descriptor = resolve(register)
        self._ensure_active()
        if not descriptor.readable:
            raise AccessError(f"{descriptor.name} is not readable")
        return self._issue(descriptor, MessageType.READ, timeout=timeout)

    def read(self, register: RegisterRef, timeout: Optional[float] = None) -> Any:
        descriptor = resolve(register)
        return unpack_message(descriptor, self.read_message(descriptor, timeout))

    def read_timestamped(self, register: RegisterRef, timeout: Optional[float] = None) -> Tuple[Optional[float], Any]:
        descriptor = resolve(register)
        reply = self.read_message(descriptor, timeout)
        return reply.timestamp, unpack_message(descriptor, reply)

    def write(self, register: RegisterRef, value: Any, timeout: Optional[float] = None) -> Message:
        """Write ``value`` and return the device's acknowledgement."""
        descriptor = resolve(register)
        self._ensure_active()
        if not descriptor.writable:
            raise AccessError(f"{descriptor.name} is not writable")
        payload = pack(descriptor, value)
        return self._issue(descriptor, MessageType.WRITE, payload, timeout)

    def subscribe(self, register: Optional[RegisterRef] = None) -> Subscription:
        address = None if register is None else resolve(register).address
        self._ensure_active()
        return self.multiplexer.subscribe(address)

    def events(self, register: Optional[RegisterRef] = None) -> EventStream:
        return EventStream(self.subscribe(register))

    def read_all(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for descriptor in iter_registers(application_only=True):
            if descriptor.readable:
                values[descriptor.name] = self.read(descriptor)
        return values

    def write_configuration(self, values: Mapping[RegisterRef, Any], persist: bool = False) -> None:
        descriptors = sorted(((resolve(key), value) for key, value in values.items()), key=lambda item: item[0].address)
        for descriptor, value in descriptors:
            self.write(descriptor, value)
            logger.info("Wrote %s: %s", descriptor.name, value)
        if persist:
            self.write("ResetDevice", ResetFlags.SAVE)

    def reset(self, flags: ResetFlags = ResetFlags.RESTORE_DEFAULT) -> Message:
        return self.write("ResetDevice", flags)

    def start_acquisition(self) -> Message:
        return self.write("StartAcquisition", 1)

    def stop_acquisition(self) -> Message:
        return self.write("StartAcquisition", 0)

    def enabled_events(self) -> LoadCellEvents:
        return self.read("EnableEvents")

    def set_enabled_events(self, events: LoadCellEvents) -> Message:
        return self.write("EnableEvents", events)

    def set_outputs(self, outputs: DigitalOutputs) -> Message:
        return self.write("OutputSet", outputs)

    def clear_outputs(self, outputs: DigitalOutputs) -> Message:
        return self.write("OutputClear", outputs)

    def toggle_outputs(self, outputs: DigitalOutputs) -> Message:
        return self.write("OutputToggle", outputs)

    def output_state(self) -> DigitalOutputs:
        return self.read("OutputState")

    # internals

    def _identify(self) -> DeviceIdentity:
        try:
            who_am_i = self._read_value("WhoAmI", timeout=self.config.timeout)
        except CommandTimeout as exc:
            raise IdentifyTimeout(
                f"Timeout when trying to connect to {self.port}. Most likely not a Harp device."
            ) from exc
        except DeviceDisconnected as exc:
            raise PortUnavailable(f"Lost {self.port} during identification") from exc
        except CommandError as exc:
            raise UnexpectedDevice(self.port, None) from exc
        if who_am_i != WHO_AM_I:
            raise UnexpectedDevice(self.port, who_am_i)
        try:
            name = self._read_value("DeviceName")
            hardware = HarpVersion(self._read_value("HardwareVersionHigh"), self._read_value("HardwareVersionLow"))
            firmware = HarpVersion(self._read_value("FirmwareVersionHigh"), self._read_value("FirmwareVersionLow"))
            core = HarpVersion(self._read_value("CoreVersionHigh"), self._read_value("CoreVersionLow"))
            assembly = self._read_value("AssemblyVersion")
        except CommandError as exc:
            raise ConnectionFailed(f"Identification of {self.port} failed: {exc}") from exc
        serial_number = None
        try:
            serial_number = self._read_value("SerialNumber")
        except CommandError as exc:
            # some devices may not have a serial number
            logger.debug("Serial number unavailable on %s: %s", self.port, exc)
        return DeviceIdentity(
            who_am_i=who_am_i,
            name=name,
            hardware_version=hardware,
            firmware_version=firmware,
            core_version=core,
            assembly_version=assembly,
            serial_number=serial_number,
        )

    def _read_value(self, register: RegisterRef, timeout: Optional[float] = None) -> Any:
        descriptor = resolve(register)
        return unpack_message(descriptor, self._issue(descriptor, MessageType.READ, timeout=timeout))

    def _issue(
        self,
        descriptor: RegisterDescriptor,
        kind: MessageType,
        payload: bytes = b"",
        timeout: Optional[float] = None,
    ) -> Message:
        return self.correlator.issue(
            descriptor.address,
            kind,
            descriptor.payload_type,
            payload,
            timeout=self.config.command_timeout if timeout is None else timeout,
        )

    def _ensure_active(self) -> None:
        if self._state is not DeviceState.ACTIVE:
            raise NotConnected(f"Device on {self.port} is {self._state.value}")

    def _set_state(self, state: DeviceState) -> None:
        with self._state_lock:
            self._state = state

    def _send(self, frame: bytes) -> None:
        handle = self._handle
        if handle is None:
            raise DeviceDisconnected(f"{self.port} is not open")
        with self._write_lock:
            try:
                handle.write(frame)
                handle.flush()
            except (serial.SerialException, OSError) as exc:
                raise DeviceDisconnected(f"Write to {self.port} failed: {exc}") from exc

    def _dispatch(self, message: Message) -> None:
        if not self.correlator.dispatch(message):
            self.multiplexer.publish(message)

    def _on_transport_closed(self, exc: Optional[BaseException]) -> None:
        current = threading.current_thread()
        if self._state is DeviceState.DISCONNECTED or getattr(current, "stopping", False):
            return
        reason = f"Connection to {self.port} lost" + (f": {exc}" if exc else "")
        logger.warning(reason)
        self._teardown(reason)

    def _teardown(self, reason: str) -> None:
        with self._state_lock:
            handle, self._handle = self._handle, None
            reader, self._reader = self._reader, None
            was_connected = self._state is not DeviceState.DISCONNECTED
            self._state = DeviceState.DISCONNECTED
        if reader is not None:
            reader.stop()
        if handle is not None:
            try:
                handle.close()
            except (serial.SerialException, OSError) as exc:
                logger.debug("Error closing %s: %s", self.port, exc)
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self.correlator.fail_all(reason)
        self.multiplexer.close_all()
        if was_connected:
            logger.info("Disconnected from %s (%s)", self.port, reason)


def connect(
    port: str,
    timeout_ms: Optional[float] = None,
    config: Optional[DeviceConfig] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> Device:
    """Open ``port`` and identify the LoadCells device behind it."""
    config = config or DeviceConfig(port=port)
    if timeout_ms is not None:
        config.timeout_ms = timeout_ms
    device = Device(port, config=config, transport_factory=transport_factory)
    device.open()
    return device
