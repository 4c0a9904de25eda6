from __future__ import annotations

import numpy as np
import pytest

from harp_loadcells.harp.errors import PayloadError
from harp_loadcells.harp.flags import DI0Mode, LoadCellEvents
from harp_loadcells.harp.frames import Message, MessageType, PayloadType
from harp_loadcells.harp.payloads import check_shape, pack, unpack, unpack_message
from harp_loadcells.harp.registers import resolve


def test_scalar_round_trip():
    descriptor = resolve("WhoAmI")
    assert pack(descriptor, 1232) == b"\xd0\x04"
    assert unpack(descriptor, b"\xd0\x04") == 1232
    assert pack(resolve("OffsetLoadCell0"), -100) == (-100).to_bytes(2, "little", signed=True)


def test_array_register():
    descriptor = resolve("LoadCellData")
    values = [1, -2, 3, -4, 5, -6, 7, -32768]
    payload = pack(descriptor, values)
    assert len(payload) == 16
    decoded = unpack(descriptor, payload)
    assert decoded.dtype == np.int16
    np.testing.assert_array_equal(decoded, values)
    with pytest.raises(PayloadError):
        pack(descriptor, values[:7])


def test_pack_rejects_values_that_do_not_fit():
    descriptor = resolve("StartAcquisition")
    for bad in (256, -1, 1.5, "x"):
        with pytest.raises(PayloadError):
            pack(descriptor, bad)


def test_device_name():
    descriptor = resolve("DeviceName")
    payload = pack(descriptor, "LoadCells")
    assert len(payload) == 25
    assert unpack(descriptor, payload) == "LoadCells"
    with pytest.raises(PayloadError):
        pack(descriptor, "x" * 26)


def test_typed_registers():
    events = resolve("EnableEvents")
    assert pack(events, LoadCellEvents.LOAD_CELL_DATA) == b"\x01"
    assert unpack(events, b"\x05") == LoadCellEvents.of("LOAD_CELL_DATA", "DO0")
    assert unpack(resolve("DI0Mode"), b"\x01") is DI0Mode.RISING_EDGE_START_ACQUISITION
    assert pack(resolve("DI0Mode"), DI0Mode.FALLING_EDGE_START_ACQUISITION) == b"\x02"
    with pytest.raises(PayloadError):
        unpack(events, b"\x80")


def test_message_type_mismatch():
    descriptor = resolve("WhoAmI")
    message = Message(MessageType.READ, 0, PayloadType.S16, b"\xd0\x04")
    assert not check_shape(descriptor, message)
    with pytest.raises(PayloadError):
        unpack_message(descriptor, message)
