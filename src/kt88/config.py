from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Sequence

from .commands import HardwareFilter, Montage, Reference, parse_montage, parse_reference


_PARITIES = {"N", "E", "O", "M", "S"}


@dataclass
class SerialSettings:
    port: str = "/dev/ttyUSB0"
    baudrate: int = 921600
    bytesize: int = 8
    parity: str = "N"
    stopbits: float = 1
    timeout: float = 0.5
    write_timeout: float = 0.5


@dataclass
class AcquisitionRuntime:
    queue_maxsize: int = 1024
    join_timeout_s: float = 0.5
    error_backoff_s: float = 0.05
    stats_log_interval_s: float = 10.0


@dataclass
class DeviceSetup:
    reference: str = "AA"
    montage: int = 1
    hardware_filter: bool = True
    settle_delay_s: float = 0.3

    @property
    def reference_enum(self) -> Reference:
        return parse_reference(self.reference)

    @property
    def montage_enum(self) -> Montage:
        return parse_montage(self.montage)

    @property
    def filter_enum(self) -> HardwareFilter:
        return HardwareFilter.ENABLE if self.hardware_filter else HardwareFilter.DISABLE


@dataclass
class DriverConfig:
    serial: SerialSettings = field(default_factory=SerialSettings)
    acquisition: AcquisitionRuntime = field(default_factory=AcquisitionRuntime)
    device: DeviceSetup = field(default_factory=DeviceSetup)
    output_csv: Path | None = None

    def validate(self) -> "DriverConfig":
        if self.serial.parity.upper() not in _PARITIES:
            raise ValueError(f"Unsupported parity '{self.serial.parity}'")
        if self.serial.timeout <= 0:
            raise ValueError("serial.timeout must be positive; the acquisition loop relies on it to observe stop")
        if self.acquisition.queue_maxsize < 1:
            raise ValueError("acquisition.queue_maxsize must be at least 1")
        if self.device.settle_delay_s < 0:
            raise ValueError("device.settle_delay_s may not be negative")
        # Raise early on names the device does not know.
        self.device.reference_enum
        self.device.montage_enum
        return self


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> DriverConfig:
    """
    Build a driver configuration from an optional JSON file plus overrides.

    Overrides are dotted `key=value` pairs, e.g.:
        ["serial.port=/dev/ttyUSB1", "device.reference=AVG"]
    Missing keys fall back to the device defaults (921600 8N1, 0.5 s timeouts).
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)

    serial_data = merged.get("serial") or {}
    acq_data = merged.get("acquisition") or {}
    device_data = merged.get("device") or {}
    defaults = DriverConfig()
    config = DriverConfig(
        serial=SerialSettings(
            port=str(serial_data.get("port", defaults.serial.port)),
            baudrate=int(serial_data.get("baudrate", defaults.serial.baudrate)),
            bytesize=int(serial_data.get("bytesize", defaults.serial.bytesize)),
            parity=str(serial_data.get("parity", defaults.serial.parity)).upper(),
            stopbits=float(serial_data.get("stopbits", defaults.serial.stopbits)),
            timeout=float(serial_data.get("timeout", defaults.serial.timeout)),
            write_timeout=float(serial_data.get("write_timeout", defaults.serial.write_timeout)),
        ),
        acquisition=AcquisitionRuntime(
            queue_maxsize=int(acq_data.get("queue_maxsize", defaults.acquisition.queue_maxsize)),
            join_timeout_s=float(acq_data.get("join_timeout_s", defaults.acquisition.join_timeout_s)),
            error_backoff_s=float(acq_data.get("error_backoff_s", defaults.acquisition.error_backoff_s)),
            stats_log_interval_s=float(
                acq_data.get("stats_log_interval_s", defaults.acquisition.stats_log_interval_s)
            ),
        ),
        device=DeviceSetup(
            reference=str(device_data.get("reference", defaults.device.reference)),
            montage=int(device_data.get("montage", defaults.device.montage)),
            hardware_filter=_as_bool(
                device_data.get("hardware_filter", defaults.device.hardware_filter), "device.hardware_filter"
            ),
            settle_delay_s=float(device_data.get("settle_delay_s", defaults.device.settle_delay_s)),
        ),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
    )
    return config.validate()


def _as_bool(value: Any, key: str) -> bool:
    # JSON strings such as "false" would otherwise read as True
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false, got {value!r}")
    return value


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    return key, _coerce_value(raw_value.strip())


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if raw.startswith("/") or raw.lower().startswith("com"):
            return raw
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value


def config_summary(config: DriverConfig) -> Dict[str, str]:
    return {
        "port": config.serial.port,
        "baud": str(config.serial.baudrate),
        "reference": config.device.reference_enum.name,
        "montage": str(int(config.device.montage_enum)),
        "filter": "on" if config.device.hardware_filter else "off",
    }
