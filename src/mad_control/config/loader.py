"""Configuration loader utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import yaml

from .models import (
    Config,
    DeviceConfig,
    FlashConfig,
    HealthConfig,
    LoggingConfig,
    SerialLinkConfig,
    StreamConfig,
)


def _normalize_path(path: Path | str) -> Path:
    return path if isinstance(path, Path) else Path(path)


def _load_raw_config(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found at {config_path}")

    suffix = config_path.suffix.lower()
    with config_path.open("r", encoding="utf-8") as stream:
        if suffix in {".yaml", ".yml"}:
            return yaml.safe_load(stream) or {}
        if suffix == ".json":
            return json.load(stream)
        raise ValueError(f"Unsupported config format: {suffix}")


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = raw.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping.")
    return dict(section)


def load_config(config_path: Path | str) -> Config:
    """Load configuration file and construct the Config dataclass."""

    config_path = _normalize_path(config_path)
    raw = _load_raw_config(config_path)

    serial = SerialLinkConfig(**_section(raw, "serial"))
    health = HealthConfig(**_section(raw, "health"))
    stream = StreamConfig(**_section(raw, "stream"))
    device = DeviceConfig(**_section(raw, "device"))

    flash_raw = _section(raw, "flash")
    # bin_dir is relative to the config file, not the working directory.
    bin_dir = flash_raw.get("bin_dir")
    if bin_dir:
        flash_raw["bin_dir"] = (config_path.parent / bin_dir).resolve()
    extensions = flash_raw.get("firmware_extensions")
    if extensions is not None:
        flash_raw["firmware_extensions"] = tuple(str(ext).lower() for ext in extensions)
    flash = FlashConfig(**flash_raw)

    logging_raw = _section(raw, "logging")
    log_path = logging_raw.get("filepath")
    if log_path:
        logging_raw["filepath"] = (config_path.parent / log_path).resolve()
    logging = LoggingConfig(**logging_raw)

    return Config(serial=serial, health=health, stream=stream, flash=flash, device=device, logging=logging)
