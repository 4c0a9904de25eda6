from __future__ import annotations

import pytest

from harp_loadcells.harp.errors import UnknownRegisterError
from harp_loadcells.harp.flags import LoadCellEvents, TargetLoadCell
from harp_loadcells.harp.frames import PayloadType
from harp_loadcells.harp.registers import (
    REGISTERS,
    WHO_AM_I,
    catalog_table,
    iter_registers,
    lookup,
    resolve,
)


def test_who_am_i_constant():
    assert WHO_AM_I == 1232
    assert lookup(0).name == "WhoAmI"
    assert lookup(0).payload_type is PayloadType.U16


def test_load_cell_data_shape():
    descriptor = resolve("LoadCellData")
    assert descriptor.address == 33
    assert descriptor.payload_type is PayloadType.S16
    assert descriptor.count == 8
    assert descriptor.payload_size == 16
    assert descriptor.readable and descriptor.evented
    assert not descriptor.writable


def test_application_map_layout():
    names = {descriptor.address: descriptor.name for descriptor in iter_registers(application_only=True)}
    assert names[32] == "StartAcquisition"
    assert names[45] == "OutputState"
    assert names[48] == "OffsetLoadCell0"
    assert names[55] == "OffsetLoadCell7"
    assert names[58] == "DO0TargetLoadCell"
    assert names[66] == "DO0Threshold"
    assert names[74] == "DO0BufferRisingEdge"
    assert names[89] == "DO7BufferFallingEdge"
    assert names[90] == "EnableEvents"
    assert min(names) == 32 and max(names) == 90
    for hole in (36, 37, 38, 46, 47, 56, 57):
        assert hole not in REGISTERS


def test_value_types():
    assert resolve(90).value_type is LoadCellEvents
    assert resolve("DO3TargetLoadCell").value_type is TargetLoadCell


def test_resolve_accepts_several_forms():
    descriptor = lookup(90)
    assert resolve("enableevents") is descriptor
    assert resolve("90") is descriptor
    assert resolve(90) is descriptor
    assert resolve(descriptor) is descriptor


def test_unknown_register():
    with pytest.raises(UnknownRegisterError):
        lookup(200)
    with pytest.raises(KeyError):
        resolve("NoSuchRegister")


def test_catalog_is_immutable_and_unique():
    with pytest.raises(TypeError):
        REGISTERS[200] = REGISTERS[0]  # type: ignore[index]
    names = [descriptor.name for descriptor in iter_registers()]
    assert len(names) == len(set(names))


def test_catalog_table_rows():
    rows = {row["address"]: row for row in catalog_table()}
    assert rows[33]["access"] == "RE"
    assert rows[32]["access"] == "RW"
    assert rows[0]["access"] == "R"
    assert rows[12]["count"] == 25
