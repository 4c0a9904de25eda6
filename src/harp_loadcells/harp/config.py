from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence


@dataclass
class SerialSettings:
    baudrate: int = 1_000_000
    read_timeout: float = 0.05
    chunk_size: int = 256


@dataclass
class EventSettings:
    queue_maxsize: int = 256
    max_missed: int = 32


@dataclass
class DeviceConfig:
    port: Optional[str] = None
    timeout_ms: float = 500.0  # identify handshake
    command_timeout_ms: float = 1000.0
    serial: SerialSettings = field(default_factory=SerialSettings)
    events: EventSettings = field(default_factory=EventSettings)

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def command_timeout(self) -> float:
        return self.command_timeout_ms / 1000.0


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> DeviceConfig:
    """
    Load the device configuration from JSON (optional) and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["serial.baudrate=115200", "timeout_ms=1000"]
    """
    data: Dict[str, Any] = {}
    if path is not None:
        data = _load_json(Path(path))
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    serial_data = merged.get("serial") or {}
    events_data = merged.get("events") or {}
    config = DeviceConfig(
        port=str(merged["port"]) if merged.get("port") else None,
        timeout_ms=float(merged.get("timeout_ms", 500.0)),
        command_timeout_ms=float(merged.get("command_timeout_ms", 1000.0)),
        serial=SerialSettings(
            baudrate=int(serial_data.get("baudrate", 1_000_000)),
            read_timeout=float(serial_data.get("read_timeout", 0.05)),
            chunk_size=int(serial_data.get("chunk_size", 256)),
        ),
        events=EventSettings(
            queue_maxsize=int(events_data.get("queue_maxsize", 256)),
            max_missed=int(events_data.get("max_missed", 32)),
        ),
    )
    _validate(config)
    return config


def _validate(config: DeviceConfig) -> None:
    if config.timeout_ms <= 0 or config.command_timeout_ms <= 0:
        raise ValueError("timeout_ms and command_timeout_ms must be positive")
    if config.serial.chunk_size < 1:
        raise ValueError("serial.chunk_size must be at least 1")
    if config.events.queue_maxsize < 1 or config.events.max_missed < 1:
        raise ValueError("events.queue_maxsize and events.max_missed must be at least 1")


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
