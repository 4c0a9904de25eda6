from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import serial

from .config import SerialSettings
from .frames import FrameParser, Message
from .payloads import check_shape
from .registers import find


def open_serial(port: str, settings: SerialSettings) -> Any:
    return serial.Serial(
        port=port,
        baudrate=settings.baudrate,
        timeout=settings.read_timeout,
    )


class SerialReaderThread(threading.Thread):
    """
    Owns the read side of the transport for the lifetime of a connection.

    Every decoded message that fits its register shape goes to ``dispatch``.
    When the loop ends (stop request, transport error or closed port)
    ``on_close`` runs exactly once with the exception that ended it, if any.
    """

    def __init__(
        self,
        handle: Any,
        dispatch: Callable[[Message], None],
        on_close: Callable[[Optional[BaseException]], None],
        chunk_size: int = 256,
    ) -> None:
        super().__init__(daemon=True, name="harp-reader")
        self.handle = handle
        self.chunk_size = max(chunk_size, 1)
        self.parser = FrameParser()
        self._dispatch = dispatch
        self._on_close = on_close
        self._stop_event = threading.Event()
        self._dispatched = 0
        self._payload_errors = 0
        self.last_exception: Optional[BaseException] = None
        self._log = logging.getLogger(__name__)

    def run(self) -> None:
        try:
            while not self._stop_event.is_set():
                data = self.handle.read(self.chunk_size)
                if not data:
                    if not getattr(self.handle, "is_open", True):
                        self._log.info("Transport closed")
                        break
                    continue
                for message in self.parser.feed(data):
                    if self._accept(message):
                        self._dispatched += 1
                        self._dispatch(message)
        except serial.SerialException as exc:
            if not self._stop_event.is_set():
                self.last_exception = exc
                self._log.warning("Serial error: %s", exc)
        except Exception as exc:
            if not self._stop_event.is_set():
                self.last_exception = exc
                self._log.exception("Unexpected error in serial reader")
        finally:
            self._on_close(self.last_exception)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stats(self) -> Dict[str, int]:
        stats = self.parser.stats()
        stats["dispatched"] = self._dispatched
        stats["payload_errors"] = self._payload_errors
        return stats

    def _accept(self, message: Message) -> bool:
        descriptor = find(message.address)
        if descriptor is None or message.message_type.is_error:
            return True
        if check_shape(descriptor, message):
            return True
        self._payload_errors += 1
        self._log.warning(
            "Rejecting %s: register %s is %s[%d]",
            message,
            descriptor.name,
            descriptor.payload_type.name,
            descriptor.count,
        )
        return False
