from __future__ import annotations

import enum
from typing import Any, Dict

import numpy as np

from .errors import PayloadError
from .flags import BitSet
from .frames import Message, PayloadType
from .registers import RegisterDescriptor


_DTYPES: Dict[PayloadType, np.dtype] = {
    PayloadType.U8: np.dtype("<u1"),
    PayloadType.U16: np.dtype("<u2"),
    PayloadType.U32: np.dtype("<u4"),
    PayloadType.U64: np.dtype("<u8"),
    PayloadType.S8: np.dtype("<i1"),
    PayloadType.S16: np.dtype("<i2"),
    PayloadType.S32: np.dtype("<i4"),
    PayloadType.S64: np.dtype("<i8"),
    PayloadType.FLOAT: np.dtype("<f4"),
}


def dtype_for(payload_type: PayloadType) -> np.dtype:
    return _DTYPES[payload_type]


def check_shape(descriptor: RegisterDescriptor, message: Message) -> bool:
    """True when the message payload has the register's type and length."""
    return (
        message.payload_type is descriptor.payload_type
        and len(message.payload) == descriptor.payload_size
    )


def unpack(descriptor: RegisterDescriptor, payload: bytes) -> Any:
    if len(payload) != descriptor.payload_size:
        raise PayloadError(
            f"{descriptor.name} expects {descriptor.payload_size} payload bytes, got {len(payload)}"
        )
    if descriptor.value_type is str:
        return payload.split(b"\x00", 1)[0].decode("ascii", errors="ignore")
    array = np.frombuffer(payload, dtype=dtype_for(descriptor.payload_type))
    if descriptor.count > 1:
        return array.copy()
    value = array[0].item()
    if descriptor.value_type is not None:
        try:
            return descriptor.value_type(value)
        except ValueError as exc:
            raise PayloadError(f"{descriptor.name} value {value} is out of range: {exc}") from exc
    return value


def unpack_message(descriptor: RegisterDescriptor, message: Message) -> Any:
    if message.payload_type is not descriptor.payload_type:
        raise PayloadError(
            f"{descriptor.name} is {descriptor.payload_type.name}, reply carried {message.payload_type.name}"
        )
    return unpack(descriptor, message.payload)


def pack(descriptor: RegisterDescriptor, value: Any) -> bytes:
    if descriptor.value_type is str:
        if not isinstance(value, str):
            raise PayloadError(f"{descriptor.name} expects a string")
        encoded = value.encode("ascii", errors="strict")
        if len(encoded) > descriptor.count:
            raise PayloadError(f"{descriptor.name} holds at most {descriptor.count} characters")
        return encoded.ljust(descriptor.count, b"\x00")
    if isinstance(value, BitSet):
        value = value.bits
    elif isinstance(value, enum.Enum):
        value = int(value.value)
    dtype = dtype_for(descriptor.payload_type)
    array = np.atleast_1d(np.asarray(value))
    if array.dtype == np.bool_:
        array = array.astype(np.uint8)
    if array.ndim != 1 or array.size != descriptor.count:
        raise PayloadError(f"{descriptor.name} expects {descriptor.count} value(s), got shape {array.shape}")
    if not np.issubdtype(array.dtype, np.number):
        raise PayloadError(f"{descriptor.name} expects numeric values")
    if np.issubdtype(dtype, np.integer):
        if not np.all(np.equal(np.mod(array, 1), 0)):
            raise PayloadError(f"{descriptor.name} expects integer values")
        info = np.iinfo(dtype)
        if array.min() < info.min or array.max() > info.max:
            raise PayloadError(f"{descriptor.name} values must lie in [{info.min}, {info.max}]")
    return array.astype(dtype).tobytes()
