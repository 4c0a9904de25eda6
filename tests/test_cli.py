from __future__ import annotations

import pytest
import typer
from typer.testing import CliRunner

from harp_loadcells.cli import app, parse_value
from harp_loadcells.harp.flags import DI0Mode, LoadCellEvents
from harp_loadcells.harp.frames import Message, MessageType, PayloadType, encode
from harp_loadcells.harp.registers import resolve

runner = CliRunner()


def test_registers_lists_catalog():
    result = runner.invoke(app, ["registers"])
    assert result.exit_code == 0
    assert "LoadCellData" in result.stdout
    assert "EnableEvents" in result.stdout


def test_demo_runs_against_simulator():
    result = runner.invoke(app, ["demo", "--samples", "3"])
    assert result.exit_code == 0, result.stdout
    assert "Connected to LoadCells (WhoAmI 1232" in result.stdout
    assert result.stdout.count("LoadCellData:") == 3
    assert "Demo finished" in result.stdout


def test_info_read_and_write_on_simulated_port():
    result = runner.invoke(app, ["info", "--port", "sim"])
    assert result.exit_code == 0, result.stdout
    assert "WhoAmI 1232" in result.stdout

    result = runner.invoke(app, ["read", "StartAcquisition", "--port", "sim"])
    assert result.exit_code == 0, result.stdout
    assert "StartAcquisition: 0" in result.stdout

    result = runner.invoke(app, ["write", "EnableEvents", "LOAD_CELL_DATA|DI0", "--port", "sim"])
    assert result.exit_code == 0, result.stdout
    assert "EnableEvents <- LOAD_CELL_DATA|DI0" in result.stdout


def test_events_on_simulated_port():
    result = runner.invoke(app, ["events", "--port", "sim", "--register", "LoadCellData", "--count", "2"])
    assert result.exit_code == 0, result.stdout
    assert "2 event(s) received" in result.stdout


def test_missing_port_is_rejected():
    result = runner.invoke(app, ["info"])
    assert result.exit_code != 0


def test_dump_decodes_capture(tmp_path):
    capture = tmp_path / "capture.bin"
    frame = encode(Message(MessageType.EVENT, 34, PayloadType.U8, b"\x01", timestamp=2.0))
    capture.write_bytes(b"\x00\x00" + frame + frame)
    result = runner.invoke(app, ["dump", "--in", str(capture)])
    assert result.exit_code == 0, result.stdout
    assert result.stdout.count("EVENT addr=34") == 2
    assert "2 frame(s)" in result.stdout
    assert "2 byte(s) skipped" in result.stdout


def test_parse_value():
    assert parse_value(resolve("EnableEvents"), ["LOAD_CELL_DATA|0x2"]) == LoadCellEvents.of("LOAD_CELL_DATA", "DI0")
    assert parse_value(resolve("DI0Mode"), ["rising_edge_start_acquisition"]) is DI0Mode.RISING_EDGE_START_ACQUISITION
    assert parse_value(resolve("DI0Mode"), ["1"]) == 1
    assert parse_value(resolve("DeviceName"), ["Bench", "A"]) == "Bench A"
    assert parse_value(resolve("OffsetLoadCell2"), ["-0x10"]) == -16
    with pytest.raises(typer.BadParameter):
        parse_value(resolve("StartAcquisition"), ["on"])
    with pytest.raises(typer.BadParameter):
        parse_value(resolve("EnableEvents"), ["BOGUS"])
