"""Dataclass definitions for application configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Mapping, Optional, Sequence


@dataclass(frozen=True)
class SerialLinkConfig:
    """Serial link settings for the instrument connection."""

    port: Optional[str] = None
    baudrate: int = 115200
    bytesize: int = 8
    parity: Literal["N", "E", "O", "M", "S"] = "N"
    stopbits: float = 1
    timeout: float = 0.1
    read_chunk_size: int = 256
    response_timeout_ms: int = 1000


@dataclass(frozen=True)
class HealthConfig:
    """Polling cadence and liveness window of the health tracker."""

    sample_interval_ms: int = 100
    state_interval_ms: int = 1000
    liveness_window_ms: int = 1000


@dataclass(frozen=True)
class StreamConfig:
    """Acknowledgment and retry policy for streamed motion commands."""

    ack_timeout_ms: int = 5000
    retry_delay_ms: int = 1000
    max_attempts: int = 3


@dataclass(frozen=True)
class FlashConfig:
    """Location and invocation of the external firmware flashing tool."""

    bin_dir: Path = Path("bin")
    tool_name_windows: str = "loadp2.exe"
    tool_name_macos: str = "loadp2.mac"
    tool_name_linux: str = "loadp2"
    loader_name: str = "P2ES_flashloader.bin"
    flash_baudrate: int = 230400
    loader_address: str = "0"
    firmware_address: str = "8000"
    firmware_extensions: Sequence[str] = (".bin",)
    settle_delay_ms: int = 500
    reconnect_delay_ms: int = 1000
    watchdog_timeout_s: float = 300.0

    def resolved_bin_dir(self) -> Path:
        path = self.bin_dir if isinstance(self.bin_dir, Path) else Path(self.bin_dir)
        return path.expanduser().resolve()


@dataclass(frozen=True)
class DeviceConfig:
    """Host-side caching limits."""

    sample_buffer_size: int = 100


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    filepath: Path = Path("logs/mad_control.log")
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5
    console: bool = True
    # Per-logger overrides, e.g. {"serial.codec": "WARNING"}.
    levels: Mapping[str, str] = field(default_factory=dict)

    def resolved_path(self) -> Path:
        path = self.filepath if isinstance(self.filepath, Path) else Path(self.filepath)
        return path.expanduser().resolve()


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    serial: SerialLinkConfig = field(default_factory=SerialLinkConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    flash: FlashConfig = field(default_factory=FlashConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
