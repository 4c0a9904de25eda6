"""
Typed views over bit-field and mode registers.

Bit-field registers are modelled as small immutable sets of named flags
rather than integer enums, so membership and combination are explicit
method calls (``contains``, ``union``, ``difference``).
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import ClassVar, Iterator, List, Mapping, TypeVar, Union

B = TypeVar("B", bound="BitSet")

FlagLike = Union["BitSet", int, str]


@dataclass(frozen=True)
class BitSet:
    bits: int = 0

    FLAGS: ClassVar[Mapping[str, int]] = {}

    def __post_init__(self) -> None:
        if self.bits < 0 or self.bits & ~self.mask():
            raise ValueError(f"{type(self).__name__} has no flag for bits 0x{self.bits & ~self.mask():X}")

    @classmethod
    def mask(cls) -> int:
        value = 0
        for bit in cls.FLAGS.values():
            value |= bit
        return value

    @classmethod
    def none(cls: type[B]) -> B:
        return cls(0)

    @classmethod
    def all(cls: type[B]) -> B:
        return cls(cls.mask())

    @classmethod
    def of(cls: type[B], *flags: FlagLike) -> B:
        bits = 0
        for flag in flags:
            bits |= cls._bits_of(flag)
        return cls(bits)

    @classmethod
    def _bits_of(cls, flag: FlagLike) -> int:
        if isinstance(flag, BitSet):
            if not isinstance(flag, cls):
                raise TypeError(f"Cannot combine {type(flag).__name__} with {cls.__name__}")
            return flag.bits
        if isinstance(flag, str):
            try:
                return cls.FLAGS[flag.upper()]
            except KeyError as exc:
                raise ValueError(f"Unknown {cls.__name__} flag '{flag}'") from exc
        return int(flag)

    def contains(self, flag: FlagLike) -> bool:
        bits = self._bits_of(flag)
        return bits != 0 and (self.bits & bits) == bits

    def union(self: B, flag: FlagLike) -> B:
        return type(self)(self.bits | self._bits_of(flag))

    def difference(self: B, flag: FlagLike) -> B:
        return type(self)(self.bits & ~self._bits_of(flag))

    def names(self) -> List[str]:
        return [name for name, bit in self.FLAGS.items() if self.bits & bit]

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __int__(self) -> int:
        return self.bits

    def __bool__(self) -> bool:
        return self.bits != 0

    def __str__(self) -> str:
        return "|".join(self.names()) or "NONE"


class LoadCellEvents(BitSet):
    """EnableEvents register (90)."""

    FLAGS: ClassVar[Mapping[str, int]] = {
        "LOAD_CELL_DATA": 0x01,
        "DI0": 0x02,
        "DO0": 0x04,
        # No register publishes threshold events; the bit is stored as-is.
        "THRESHOLDS": 0x08,
    }

    LOAD_CELL_DATA: ClassVar["LoadCellEvents"]
    DI0: ClassVar["LoadCellEvents"]
    DO0: ClassVar["LoadCellEvents"]
    THRESHOLDS: ClassVar["LoadCellEvents"]


class DigitalOutputs(BitSet):
    """OutputSet/OutputClear/OutputToggle/OutputState registers (42-45)."""

    FLAGS: ClassVar[Mapping[str, int]] = {f"DO{index}": 1 << index for index in range(9)}


class ResetFlags(BitSet):
    """ResetDevice common register (11)."""

    FLAGS: ClassVar[Mapping[str, int]] = {
        "RESTORE_DEFAULT": 0x01,
        "RESTORE_EEPROM": 0x02,
        "SAVE": 0x04,
        "RESTORE_NAME": 0x08,
        "BOOT_FROM_DEFAULT": 0x40,
        "BOOT_FROM_EEPROM": 0x80,
    }

    RESTORE_DEFAULT: ClassVar["ResetFlags"]
    RESTORE_EEPROM: ClassVar["ResetFlags"]
    SAVE: ClassVar["ResetFlags"]
    RESTORE_NAME: ClassVar["ResetFlags"]
    BOOT_FROM_DEFAULT: ClassVar["ResetFlags"]
    BOOT_FROM_EEPROM: ClassVar["ResetFlags"]


def _bind_members(cls: type[BitSet]) -> None:
    for name, bit in cls.FLAGS.items():
        setattr(cls, name, cls(bit))


for _cls in (LoadCellEvents, DigitalOutputs, ResetFlags):
    _bind_members(_cls)


class DI0Mode(enum.IntEnum):
    NONE = 0
    RISING_EDGE_START_ACQUISITION = 1
    FALLING_EDGE_START_ACQUISITION = 2


class DO0Mode(enum.IntEnum):
    NONE = 0
    TOGGLE_EACH_SECOND = 1
    PULSE = 2


class TargetLoadCell(enum.IntEnum):
    LOAD_CELL0 = 0
    LOAD_CELL1 = 1
    LOAD_CELL2 = 2
    LOAD_CELL3 = 3
    LOAD_CELL4 = 4
    LOAD_CELL5 = 5
    LOAD_CELL6 = 6
    LOAD_CELL7 = 7
    NONE = 8

