from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .frames import Message


class FrameError(str, enum.Enum):
    """Reasons a buffer could not be decoded into a message.

    These are returned, not raised: the stream parser recovers from all of
    them locally.
    """

    INCOMPLETE = "incomplete"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UNKNOWN_PAYLOAD_TYPE = "unknown_payload_type"
    UNKNOWN_MESSAGE_TYPE = "unknown_message_type"
    INVALID_LENGTH = "invalid_length"


class HarpError(Exception):
    """Base class for every error raised by the device layer."""


class UnknownRegisterError(HarpError, KeyError):
    def __init__(self, register: object):
        super().__init__(register)
        self.register = register

    def __str__(self) -> str:
        return f"Unknown register {self.register!r}"


class AccessError(HarpError):
    pass


class PayloadError(HarpError, ValueError):
    pass


class CommandError(HarpError):
    pass


class CommandTimeout(CommandError, TimeoutError):
    pass


class CommandBusy(CommandError):
    pass


class DeviceDisconnected(CommandError):
    pass


class NotConnected(CommandError):
    pass


class DeviceRejected(CommandError):
    """The device answered with a ReadError/WriteError frame."""

    def __init__(self, reply: "Message"):
        super().__init__(
            f"Device rejected {reply.message_type.name} on register {reply.address}"
        )
        self.reply = reply

    @property
    def payload(self) -> bytes:
        return self.reply.payload


class ConnectionFailed(HarpError):
    pass


class PortUnavailable(ConnectionFailed):
    pass


class IdentifyTimeout(ConnectionFailed, TimeoutError):
    pass


class UnexpectedDevice(ConnectionFailed):
    def __init__(self, port: str, who_am_i: Optional[int]):
        super().__init__(
            f"The device ID {who_am_i} on {port} was unexpected. "
            "Check whether a LoadCells device is connected to the specified serial port."
        )
        self.port = port
        self.who_am_i = who_am_i


class SubscriptionClosed(HarpError):
    pass
