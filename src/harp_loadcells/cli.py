"""Command line interface for the harp_loadcells package."""
from __future__ import annotations

import enum
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

import numpy as np
import typer

from .harp.config import DeviceConfig, load_config
from .harp.device import Device
from .harp.errors import ConnectionFailed, HarpError
from .harp.flags import BitSet, LoadCellEvents, ResetFlags
from .harp.frames import FrameParser, iterate_binary_stream
from .harp.payloads import unpack_message
from .harp.registers import RegisterDescriptor, catalog_table, resolve
from .harp.simulator import SimulatedLoadCells

SIMULATED_PORT = "sim"

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_config(
    port: Optional[str],
    config_path: Optional[Path],
    overrides: Optional[List[str]],
    timeout_ms: Optional[float],
) -> DeviceConfig:
    try:
        config = load_config(config_path, overrides)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--set") from exc
    if port:
        config.port = port
    if timeout_ms is not None:
        config.timeout_ms = timeout_ms
    if not config.port:
        raise typer.BadParameter("No serial port given (use --port or a config file)", param_hint="--port")
    return config


@contextmanager
def _open_device(config: DeviceConfig) -> Iterator[Device]:
    factory = None
    if config.port == SIMULATED_PORT:
        simulator = SimulatedLoadCells()
        # samples only flow once acquisition is started on the device
        simulator.start_streaming()
        factory = lambda _port: simulator  # noqa: E731
    device = Device(config.port, config=config, transport_factory=factory)
    try:
        device.open()
    except ConnectionFailed as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc
    try:
        yield device
    except HarpError as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        device.close()


def format_value(value: Any) -> str:
    if isinstance(value, np.ndarray):
        return " ".join(str(item) for item in value.tolist())
    if isinstance(value, enum.Enum):
        return value.name
    return str(value)


def parse_value(descriptor: RegisterDescriptor, raw: List[str]) -> Any:
    """Turn command line words into a value ``pack`` accepts for ``descriptor``."""
    if descriptor.value_type is str:
        return " ".join(raw)
    if descriptor.count > 1:
        if len(raw) != descriptor.count:
            raise typer.BadParameter(f"{descriptor.name} takes {descriptor.count} values, got {len(raw)}")
        return [_parse_number(descriptor, word) for word in raw]
    if len(raw) != 1:
        raise typer.BadParameter(f"{descriptor.name} takes a single value")
    word = raw[0]
    value_type = descriptor.value_type
    if isinstance(value_type, type) and issubclass(value_type, BitSet):
        try:
            return value_type.of(*(_flag_word(part) for part in word.split("|")))
        except (TypeError, ValueError) as exc:
            raise typer.BadParameter(str(exc)) from exc
    if isinstance(value_type, type) and issubclass(value_type, enum.Enum):
        try:
            return value_type[word.upper()]
        except KeyError:
            pass
    return _parse_number(descriptor, word)


def _flag_word(word: str) -> Any:
    word = word.strip()
    try:
        return int(word, 0)
    except ValueError:
        return word


def _parse_number(descriptor: RegisterDescriptor, word: str) -> Any:
    try:
        if descriptor.payload_type.is_float:
            return float(word)
        return int(word, 0)
    except ValueError as exc:
        raise typer.BadParameter(f"'{word}' is not a valid {descriptor.payload_type.name} value") from exc


def _resolve(register: str) -> RegisterDescriptor:
    try:
        return resolve(register)
    except HarpError as exc:
        raise typer.BadParameter(str(exc), param_hint="REGISTER") from exc


PortOption = typer.Option(None, "--port", "-p", help="Serial port of the device ('sim' for the simulator).")
ConfigOption = typer.Option(None, "--config", help="JSON configuration file.")
SetOption = typer.Option(None, "--set", help="Override configuration values (key=value).")
TimeoutOption = typer.Option(None, "--timeout-ms", help="Identify handshake timeout in milliseconds.")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


@app.command()
def registers() -> None:
    """Print the register catalog."""

    for row in catalog_table():
        typer.echo(f"{row['address']:>3}  {row['name']:<24} {row['type']:<5} x{row['count']:<3} {row['access']}")


@app.command()
def info(
    port: Optional[str] = PortOption,
    config_path: Optional[Path] = ConfigOption,
    overrides: Optional[List[str]] = SetOption,
    timeout_ms: Optional[float] = TimeoutOption,
    verbose: bool = VerboseOption,
) -> None:
    """Connect, identify and print the device identity."""

    _configure_logging(verbose)
    config = _build_config(port, config_path, overrides, timeout_ms)
    with _open_device(config) as device:
        identity = device.identity
        typer.echo(f"Device:    {identity.name} (WhoAmI {identity.who_am_i})")
        typer.echo(f"Hardware:  {identity.hardware_version}")
        typer.echo(f"Firmware:  {identity.firmware_version}")
        typer.echo(f"Core:      {identity.core_version}")
        typer.echo(f"Assembly:  {identity.assembly_version}")
        typer.echo(f"Serial:    {identity.serial_number if identity.serial_number is not None else 'n/a'}")


@app.command()
def read(
    register: Optional[str] = typer.Argument(None, help="Register name or address; all registers if omitted."),
    port: Optional[str] = PortOption,
    config_path: Optional[Path] = ConfigOption,
    overrides: Optional[List[str]] = SetOption,
    timeout_ms: Optional[float] = TimeoutOption,
    verbose: bool = VerboseOption,
) -> None:
    """Read one register, or every application register."""

    _configure_logging(verbose)
    descriptor = _resolve(register) if register is not None else None
    config = _build_config(port, config_path, overrides, timeout_ms)
    with _open_device(config) as device:
        if descriptor is None:
            for name, value in device.read_all().items():
                typer.echo(f"{name}: {format_value(value)}")
        else:
            typer.echo(f"{descriptor.name}: {format_value(device.read(descriptor))}")


@app.command()
def write(
    register: str = typer.Argument(..., help="Register name or address."),
    values: List[str] = typer.Argument(..., help="Value(s); flags may be combined as A|B."),
    port: Optional[str] = PortOption,
    config_path: Optional[Path] = ConfigOption,
    overrides: Optional[List[str]] = SetOption,
    timeout_ms: Optional[float] = TimeoutOption,
    verbose: bool = VerboseOption,
) -> None:
    """Write a register and print the acknowledged value."""

    _configure_logging(verbose)
    descriptor = _resolve(register)
    value = parse_value(descriptor, values)
    config = _build_config(port, config_path, overrides, timeout_ms)
    with _open_device(config) as device:
        ack = device.write(descriptor, value)
        typer.echo(f"{descriptor.name} <- {format_value(unpack_message(descriptor, ack))}")


@app.command()
def events(
    register: Optional[str] = typer.Option(None, "--register", "-r", help="Only show events of this register."),
    count: int = typer.Option(10, "--count", "-n", help="Stop after this many events (0 runs until Ctrl-C)."),
    enable: Optional[str] = typer.Option(None, "--enable", help="EnableEvents value to write first, e.g. 0x1."),
    port: Optional[str] = PortOption,
    config_path: Optional[Path] = ConfigOption,
    overrides: Optional[List[str]] = SetOption,
    timeout_ms: Optional[float] = TimeoutOption,
    verbose: bool = VerboseOption,
) -> None:
    """Start acquisition and print incoming events."""

    _configure_logging(verbose)
    descriptor = _resolve(register) if register is not None else None
    config = _build_config(port, config_path, overrides, timeout_ms)
    with _open_device(config) as device:
        if enable is not None:
            device.set_enabled_events(parse_value(resolve("EnableEvents"), [enable]))
        stream = device.events(descriptor)
        device.start_acquisition()
        received = 0
        try:
            with stream:
                for event in stream:
                    stamp = f"{event.timestamp:.6f}" if event.timestamp is not None else "-"
                    typer.echo(f"{stamp} {event.name}: {format_value(event.value)}")
                    received += 1
                    if count and received >= count:
                        break
        except KeyboardInterrupt:
            pass
        finally:
            if device.connected:
                device.stop_acquisition()
        typer.echo(f"{received} event(s) received")


@app.command()
def reset(
    save: bool = typer.Option(False, "--save", help="Persist the current registers instead of restoring defaults."),
    port: Optional[str] = PortOption,
    config_path: Optional[Path] = ConfigOption,
    overrides: Optional[List[str]] = SetOption,
    timeout_ms: Optional[float] = TimeoutOption,
    verbose: bool = VerboseOption,
) -> None:
    """Restore default register values (or save them with --save)."""

    _configure_logging(verbose)
    config = _build_config(port, config_path, overrides, timeout_ms)
    with _open_device(config) as device:
        flags = ResetFlags.SAVE if save else ResetFlags.RESTORE_DEFAULT
        device.reset(flags)
        typer.echo(f"Reset sent ({flags})")


@app.command()
def dump(
    input_path: Optional[Path] = typer.Option(None, "--in", help="Binary capture; stdin when omitted."),
    chunk_size: int = typer.Option(256, "--chunk-size", help="Read size in bytes."),
    verbose: bool = VerboseOption,
) -> None:
    """Decode a raw byte capture and print each message."""

    _configure_logging(verbose)
    parser = FrameParser()
    if input_path is not None:
        with input_path.open("rb") as handle:
            for message in parser.parse(iterate_binary_stream(handle, chunk_size)):
                typer.echo(str(message))
    else:
        for message in parser.parse(iterate_binary_stream(sys.stdin.buffer, chunk_size)):
            typer.echo(str(message))
    stats = parser.stats()
    typer.echo(
        f"{stats['frames']} frame(s), {stats['checksum_errors']} checksum error(s), "
        f"{stats['format_errors']} format error(s), {stats['resync_bytes']} byte(s) skipped, "
        f"{parser.pending} byte(s) trailing"
    )


@app.command()
def demo(
    samples: int = typer.Option(5, "--samples", help="Load cell samples to acquire."),
    verbose: bool = VerboseOption,
) -> None:
    """Run the simulated device end to end."""

    _configure_logging(verbose)
    simulator = SimulatedLoadCells()
    config = DeviceConfig(port=SIMULATED_PORT)
    with Device(SIMULATED_PORT, config=config, transport_factory=lambda _port: simulator) as device:
        identity = device.identity
        typer.echo(f"Connected to {identity.name} (WhoAmI {identity.who_am_i}, fw {identity.firmware_version})")
        device.set_enabled_events(LoadCellEvents.LOAD_CELL_DATA)
        device.write("OffsetLoadCell0", 100)
        with device.events("LoadCellData") as stream:
            device.start_acquisition()
            simulator.acquire(samples)
            for _ in range(samples):
                event = stream.get(timeout=1.0)
                typer.echo(f"{event.timestamp:.6f} {event.name}: {format_value(event.value)}")
            device.stop_acquisition()
        stats = device.stats()
    typer.echo(f"Demo finished: {stats['dispatched']} message(s) dispatched, {stats['resync_bytes']} byte(s) skipped")
    logger.debug("Demo stats: %s", stats)


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
