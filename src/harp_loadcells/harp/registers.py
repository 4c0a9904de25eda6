from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Union

from .errors import UnknownRegisterError
from .flags import (
    BitSet,
    DI0Mode,
    DO0Mode,
    DigitalOutputs,
    LoadCellEvents,
    ResetFlags,
    TargetLoadCell,
)
from .frames import PayloadType

WHO_AM_I = 1232
DEVICE_NAME_LENGTH = 25


class Access(BitSet):
    FLAGS = {"READ": 0x1, "WRITE": 0x2, "EVENT": 0x4}


R = Access(0x1)
RW = Access(0x3)
RE = Access(0x5)
RWE = Access(0x7)


@dataclass(frozen=True)
class RegisterDescriptor:
    address: int
    name: str
    payload_type: PayloadType
    count: int = 1
    access: Access = RW
    value_type: Optional[type] = None
    description: str = ""

    @property
    def payload_size(self) -> int:
        return self.payload_type.element_size * self.count

    @property
    def readable(self) -> bool:
        return self.access.contains("READ")

    @property
    def writable(self) -> bool:
        return self.access.contains("WRITE")

    @property
    def evented(self) -> bool:
        return self.access.contains("EVENT")


def _indexed(
    first: int,
    template: str,
    payload_type: PayloadType,
    value_type: Optional[type] = None,
    description: str = "",
) -> List[RegisterDescriptor]:
    return [
        RegisterDescriptor(
            first + index,
            template.format(index),
            payload_type,
            value_type=value_type,
            description=description.format(index),
        )
        for index in range(8)
    ]


_COMMON: List[RegisterDescriptor] = [
    RegisterDescriptor(0, "WhoAmI", PayloadType.U16, access=R, description="Device identity"),
    RegisterDescriptor(1, "HardwareVersionHigh", PayloadType.U8, access=R),
    RegisterDescriptor(2, "HardwareVersionLow", PayloadType.U8, access=R),
    RegisterDescriptor(3, "AssemblyVersion", PayloadType.U8, access=R),
    RegisterDescriptor(4, "CoreVersionHigh", PayloadType.U8, access=R),
    RegisterDescriptor(5, "CoreVersionLow", PayloadType.U8, access=R),
    RegisterDescriptor(6, "FirmwareVersionHigh", PayloadType.U8, access=R),
    RegisterDescriptor(7, "FirmwareVersionLow", PayloadType.U8, access=R),
    RegisterDescriptor(8, "TimestampSeconds", PayloadType.U32, access=RWE),
    RegisterDescriptor(9, "TimestampMicroseconds", PayloadType.U16, access=R),
    RegisterDescriptor(10, "OperationControl", PayloadType.U8),
    RegisterDescriptor(11, "ResetDevice", PayloadType.U8, value_type=ResetFlags),
    RegisterDescriptor(12, "DeviceName", PayloadType.U8, count=DEVICE_NAME_LENGTH, value_type=str),
    RegisterDescriptor(13, "SerialNumber", PayloadType.U16, access=R),
]

_APPLICATION: List[RegisterDescriptor] = [
    RegisterDescriptor(
        32, "StartAcquisition", PayloadType.U8, description="Non-zero starts acquisition, zero stops it"
    ),
    RegisterDescriptor(
        33, "LoadCellData", PayloadType.S16, count=8, access=RE, description="Analog value of the load cells"
    ),
    RegisterDescriptor(34, "InputEvent", PayloadType.U8, access=RE, description="State of digital input DI0"),
    RegisterDescriptor(35, "OutputEvent", PayloadType.U8, access=RWE, description="State of digital output DO0"),
    RegisterDescriptor(39, "DI0Mode", PayloadType.U8, value_type=DI0Mode),
    RegisterDescriptor(40, "DO0Mode", PayloadType.U8, value_type=DO0Mode),
    RegisterDescriptor(41, "DO0PulseDuration", PayloadType.U8, description="Pulse width in ms [1:255]"),
    RegisterDescriptor(42, "OutputSet", PayloadType.U16, value_type=DigitalOutputs),
    RegisterDescriptor(43, "OutputClear", PayloadType.U16, value_type=DigitalOutputs),
    RegisterDescriptor(44, "OutputToggle", PayloadType.U16, value_type=DigitalOutputs),
    RegisterDescriptor(45, "OutputState", PayloadType.U16, access=RWE, value_type=DigitalOutputs),
    *_indexed(48, "OffsetLoadCell{}", PayloadType.S16, description="Offset of load cell channel {} [-255:255]"),
    *_indexed(58, "DO{}TargetLoadCell", PayloadType.U8, TargetLoadCell),
    *_indexed(66, "DO{}Threshold", PayloadType.S16),
    *_indexed(74, "DO{}BufferRisingEdge", PayloadType.U16, description="Time (ms) above threshold to set DO{}"),
    *_indexed(82, "DO{}BufferFallingEdge", PayloadType.U16, description="Time (ms) below threshold to clear DO{}"),
    RegisterDescriptor(90, "EnableEvents", PayloadType.U8, value_type=LoadCellEvents),
]

REGISTERS: Mapping[int, RegisterDescriptor] = MappingProxyType(
    {descriptor.address: descriptor for descriptor in _COMMON + _APPLICATION}
)
_BY_NAME: Mapping[str, RegisterDescriptor] = MappingProxyType(
    {descriptor.name.lower(): descriptor for descriptor in REGISTERS.values()}
)

APPLICATION_ADDRESSES = tuple(descriptor.address for descriptor in _APPLICATION)

RegisterRef = Union[int, str, RegisterDescriptor]


def lookup(address: int) -> RegisterDescriptor:
    try:
        return REGISTERS[address]
    except KeyError:
        raise UnknownRegisterError(address) from None


def find(address: int) -> Optional[RegisterDescriptor]:
    return REGISTERS.get(address)


def by_name(name: str) -> RegisterDescriptor:
    try:
        return _BY_NAME[name.lower()]
    except KeyError:
        raise UnknownRegisterError(name) from None


def resolve(register: RegisterRef) -> RegisterDescriptor:
    """Accept an address, a register name (case-insensitive) or a descriptor."""
    if isinstance(register, RegisterDescriptor):
        return register
    if isinstance(register, str):
        text = register.strip()
        if text.isdigit():
            return lookup(int(text))
        return by_name(text)
    return lookup(int(register))


def iter_registers(application_only: bool = False) -> Iterator[RegisterDescriptor]:
    for address in sorted(REGISTERS):
        if application_only and address not in APPLICATION_ADDRESSES:
            continue
        yield REGISTERS[address]


def catalog_table() -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for descriptor in iter_registers():
        rows.append(
            {
                "address": descriptor.address,
                "name": descriptor.name,
                "type": descriptor.payload_type.name,
                "count": descriptor.count,
                "access": "".join(flag[0] for flag in descriptor.access.names()),
            }
        )
    return rows
