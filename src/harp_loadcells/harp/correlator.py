from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Union

from .errors import CommandBusy, CommandError, CommandTimeout, DeviceDisconnected, DeviceRejected
from .frames import Message, MessageType, PayloadType, encode

logger = logging.getLogger(__name__)


@dataclass
class PendingOperation:
    address: int
    kind: MessageType
    reply: "queue.Queue[Union[Message, CommandError]]" = field(
        default_factory=lambda: queue.Queue(maxsize=1)
    )
    started: float = field(default_factory=time.monotonic)


class CommandCorrelator:
    """
    Matches outgoing commands with their replies.

    Only one command per register address may be outstanding; the reader
    thread completes operations through :meth:`dispatch`.
    """

    def __init__(self, send: Callable[[bytes], None]):
        self._send = send
        self._pending: Dict[int, PendingOperation] = {}
        self._lock = threading.Lock()

    def issue(
        self,
        address: int,
        kind: MessageType,
        payload_type: PayloadType,
        payload: bytes = b"",
        timeout: float = 1.0,
    ) -> Message:
        if kind not in (MessageType.READ, MessageType.WRITE):
            raise ValueError(f"Cannot issue a {kind.name} command")
        operation = PendingOperation(address=address, kind=kind)
        with self._lock:
            if address in self._pending:
                raise CommandBusy(f"A command on register {address} is already pending")
            self._pending[address] = operation
        try:
            request = Message(
                message_type=kind,
                address=address,
                payload_type=payload_type,
                payload=payload if kind is MessageType.WRITE else b"",
            )
            self._send(encode(request))
            try:
                result = operation.reply.get(timeout=timeout)
            except queue.Empty:
                raise CommandTimeout(
                    f"Timeout waiting for {kind.name} reply on register {address}"
                ) from None
        finally:
            self._release(operation)
        if isinstance(result, CommandError):
            raise result
        if result.message_type.is_error:
            raise DeviceRejected(result)
        return result

    def dispatch(self, message: Message) -> bool:
        """Complete the operation waiting for ``message``; False if none matched."""
        if message.message_type is MessageType.EVENT:
            return False
        with self._lock:
            operation = self._pending.get(message.address)
            if operation is None or operation.kind is not message.message_type.command:
                return False
            del self._pending[message.address]
        operation.reply.put_nowait(message)
        return True

    def fail_all(self, reason: str = "Device disconnected") -> int:
        with self._lock:
            operations = list(self._pending.values())
            self._pending.clear()
        for operation in operations:
            operation.reply.put_nowait(DeviceDisconnected(reason))
        if operations:
            logger.info("Failed %d pending command(s): %s", len(operations), reason)
        return len(operations)

    def pending(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)

    def _release(self, operation: PendingOperation) -> None:
        with self._lock:
            if self._pending.get(operation.address) is operation:
                del self._pending[operation.address]
