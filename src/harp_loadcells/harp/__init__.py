"""
Harp protocol core for the LoadCells device.

The subpackage holds the wire codec, the register catalog, the reader thread
with its command correlator and event multiplexer, and the ``Device`` facade
that composes them. ``SimulatedLoadCells`` stands in for hardware in tests
and demos.
"""

from .config import DeviceConfig, EventSettings, SerialSettings, load_config
from .device import Device, DeviceIdentity, DeviceState, EventStream, HarpVersion, RegisterEvent, connect
from .errors import (
    AccessError,
    CommandBusy,
    CommandError,
    CommandTimeout,
    ConnectionFailed,
    DeviceDisconnected,
    DeviceRejected,
    FrameError,
    HarpError,
    IdentifyTimeout,
    NotConnected,
    PayloadError,
    PortUnavailable,
    SubscriptionClosed,
    UnexpectedDevice,
    UnknownRegisterError,
)
from .flags import DI0Mode, DigitalOutputs, DO0Mode, LoadCellEvents, ResetFlags, TargetLoadCell
from .frames import FrameParser, Message, MessageType, PayloadType, decode, encode
from .registers import REGISTERS, WHO_AM_I, RegisterDescriptor, lookup
from .simulator import SimulatedLoadCells

__all__ = [
    "DeviceConfig",
    "EventSettings",
    "SerialSettings",
    "load_config",
    "Device",
    "DeviceIdentity",
    "DeviceState",
    "EventStream",
    "HarpVersion",
    "RegisterEvent",
    "connect",
    "AccessError",
    "CommandBusy",
    "CommandError",
    "CommandTimeout",
    "ConnectionFailed",
    "DeviceDisconnected",
    "DeviceRejected",
    "FrameError",
    "HarpError",
    "IdentifyTimeout",
    "NotConnected",
    "PayloadError",
    "PortUnavailable",
    "SubscriptionClosed",
    "UnexpectedDevice",
    "UnknownRegisterError",
    "DI0Mode",
    "DigitalOutputs",
    "DO0Mode",
    "LoadCellEvents",
    "ResetFlags",
    "TargetLoadCell",
    "FrameParser",
    "Message",
    "MessageType",
    "PayloadType",
    "decode",
    "encode",
    "REGISTERS",
    "WHO_AM_I",
    "RegisterDescriptor",
    "lookup",
    "SimulatedLoadCells",
]
