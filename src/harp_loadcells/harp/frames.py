from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional, Union

from .errors import FrameError


TIMESTAMP_FLAG = 0x10
DEFAULT_PORT = 0xFF
TICK_US = 32
TICKS_PER_SECOND = 1_000_000 // TICK_US

# address + port + payload type + checksum
_MIN_LENGTH = 4
_TIMESTAMP_SIZE = struct.calcsize("<IH")
_HEADER_SIZE = 5


class MessageType(enum.IntEnum):
    WRITE = 1
    READ = 2
    EVENT = 3
    WRITE_ERROR = 9
    READ_ERROR = 10

    @property
    def is_error(self) -> bool:
        return self in (MessageType.READ_ERROR, MessageType.WRITE_ERROR)

    @property
    def command(self) -> "MessageType":
        """The command kind a message of this type answers (EVENT for events)."""
        return _COMMAND_OF[self]


_COMMAND_OF: Dict[MessageType, MessageType] = {
    MessageType.WRITE: MessageType.WRITE,
    MessageType.WRITE_ERROR: MessageType.WRITE,
    MessageType.READ: MessageType.READ,
    MessageType.READ_ERROR: MessageType.READ,
    MessageType.EVENT: MessageType.EVENT,
}

_MESSAGE_TAGS = frozenset(int(tag) for tag in MessageType)


class PayloadType(enum.IntEnum):
    """Element type tag. Low nibble is the element width in bytes."""

    U8 = 0x01
    U16 = 0x02
    U32 = 0x04
    U64 = 0x08
    S8 = 0x81
    S16 = 0x82
    S32 = 0x84
    S64 = 0x88
    FLOAT = 0x44

    @property
    def element_size(self) -> int:
        return self.value & 0x0F

    @property
    def is_signed(self) -> bool:
        return bool(self.value & 0x80)

    @property
    def is_float(self) -> bool:
        return bool(self.value & 0x40)


@dataclass(frozen=True)
class Message:
    message_type: MessageType
    address: int
    payload_type: PayloadType
    payload: bytes = b""
    port: int = DEFAULT_PORT
    timestamp: Optional[float] = None

    @property
    def is_timestamped(self) -> bool:
        return self.timestamp is not None

    @property
    def element_count(self) -> int:
        return len(self.payload) // self.payload_type.element_size

    @property
    def size(self) -> int:
        extra = _TIMESTAMP_SIZE if self.is_timestamped else 0
        return _HEADER_SIZE + extra + len(self.payload) + 1

    def __str__(self) -> str:
        stamp = f" t={self.timestamp:.6f}" if self.timestamp is not None else ""
        return (
            f"{self.message_type.name} addr={self.address} port={self.port} "
            f"type={self.payload_type.name} payload={self.payload.hex()}{stamp}"
        )


def checksum(data: Union[bytes, bytearray, memoryview]) -> int:
    return sum(data) & 0xFF


def split_timestamp(timestamp: float) -> tuple[int, int]:
    """Split seconds into whole seconds and 32 µs ticks, rounding to the nearest tick."""
    seconds = int(timestamp)
    ticks = int(round((timestamp - seconds) * TICKS_PER_SECOND))
    if ticks >= TICKS_PER_SECOND:
        seconds += 1
        ticks -= TICKS_PER_SECOND
    return seconds, ticks


def join_timestamp(seconds: int, ticks: int) -> float:
    return seconds + ticks * TICK_US / 1e6


def encode(message: Message) -> bytes:
    element_size = message.payload_type.element_size
    if len(message.payload) % element_size:
        raise ValueError(
            f"Payload of {len(message.payload)} bytes is not a whole number of "
            f"{message.payload_type.name} elements"
        )
    raw_type = int(message.payload_type)
    body = bytearray()
    if message.timestamp is not None:
        seconds, ticks = split_timestamp(message.timestamp)
        if message.timestamp < 0 or seconds > 0xFFFFFFFF:
            raise ValueError(f"Timestamp {message.timestamp} does not fit in u32 seconds")
        raw_type |= TIMESTAMP_FLAG
        body += struct.pack("<IH", seconds, ticks)
    body += message.payload
    length = _MIN_LENGTH + len(body)
    if length > 0xFF:
        raise ValueError(f"Message too long ({length} bytes after the length field)")
    frame = bytearray(
        [int(message.message_type), length, message.address, message.port, raw_type]
    )
    frame += body
    frame.append(checksum(frame))
    return bytes(frame)


def decode(buffer: Union[bytes, bytearray]) -> Union[Message, FrameError]:
    """
    Decode the frame at the start of ``buffer``.

    Trailing bytes past the declared length are ignored. Malformed input is
    reported through a :class:`FrameError` member rather than an exception so
    stream readers can resynchronize; ``INCOMPLETE`` means decoding may succeed
    once more bytes arrive.
    """
    if len(buffer) < 2:
        return FrameError.INCOMPLETE
    length = buffer[1]
    if length < _MIN_LENGTH:
        return FrameError.INVALID_LENGTH
    size = length + 2
    if len(buffer) < size:
        return FrameError.INCOMPLETE
    if checksum(buffer[: size - 1]) != buffer[size - 1]:
        return FrameError.CHECKSUM_MISMATCH
    if buffer[0] not in _MESSAGE_TAGS:
        return FrameError.UNKNOWN_MESSAGE_TYPE
    raw_type = buffer[4]
    try:
        payload_type = PayloadType(raw_type & ~TIMESTAMP_FLAG)
    except ValueError:
        return FrameError.UNKNOWN_PAYLOAD_TYPE
    offset = _HEADER_SIZE
    timestamp = None
    if raw_type & TIMESTAMP_FLAG:
        if length < _MIN_LENGTH + _TIMESTAMP_SIZE:
            return FrameError.INVALID_LENGTH
        seconds, ticks = struct.unpack_from("<IH", buffer, offset)
        timestamp = join_timestamp(seconds, ticks)
        offset += _TIMESTAMP_SIZE
    payload = bytes(buffer[offset : size - 1])
    if len(payload) % payload_type.element_size:
        return FrameError.INVALID_LENGTH
    return Message(
        message_type=MessageType(buffer[0]),
        address=buffer[2],
        port=buffer[3],
        payload_type=payload_type,
        payload=payload,
        timestamp=timestamp,
    )


class FrameParser:
    """
    Streaming parser re-framing a serial byte stream into messages.

    Any decode error other than ``INCOMPLETE`` drops exactly one byte before
    retrying. An incomplete head is abandoned as soon as a complete frame is
    found later in the buffer, so recovering from N bytes of garbage costs at
    most N skipped bytes even when the garbage looks like a frame header.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._stats: Dict[str, int] = {
            "frames": 0,
            "checksum_errors": 0,
            "format_errors": 0,
            "resync_bytes": 0,
        }
        self._log = logging.getLogger(__name__)

    def feed(self, chunk: bytes) -> Iterator[Message]:
        if chunk:
            self._buffer.extend(chunk)
        yield from self._extract_frames()

    def parse(self, chunks: Iterable[bytes]) -> Iterator[Message]:
        for chunk in chunks:
            if not chunk:
                continue
            yield from self.feed(chunk)

    def _extract_frames(self) -> Iterator[Message]:
        while self._buffer:
            if self._buffer[0] not in _MESSAGE_TAGS:
                # Not a frame start; no need to wait for a full window
                self._discard_byte()
                continue
            result = decode(self._buffer)
            if result is FrameError.INCOMPLETE:
                offset = self._find_later_frame()
                if offset is None:
                    break
                # stalled false start
                self._stats["format_errors"] += 1
                self._log.debug("Dropping %d byte(s) of a stalled candidate at 0x%02X", offset, self._buffer[0])
                del self._buffer[:offset]
                self._stats["resync_bytes"] += offset
                continue
            if isinstance(result, FrameError):
                if result is FrameError.CHECKSUM_MISMATCH:
                    self._stats["checksum_errors"] += 1
                else:
                    self._stats["format_errors"] += 1
                self._log.debug("Resynchronizing after %s at 0x%02X", result.value, self._buffer[0])
                self._discard_byte()
                continue
            del self._buffer[: result.size]
            self._stats["frames"] += 1
            yield result

    def _find_later_frame(self) -> Optional[int]:
        """Offset of the first frame past the head that decodes completely from the buffer."""
        data = bytes(self._buffer)
        for offset in range(1, len(data) - 1):
            if data[offset] in _MESSAGE_TAGS and isinstance(decode(data[offset:]), Message):
                return offset
        return None

    def _discard_byte(self) -> None:
        del self._buffer[0]
        self._stats["resync_bytes"] += 1

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        self._buffer.clear()


def iterate_binary_stream(handle: Any, chunk_size: int = 256) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk
