"""Configuration package for the MaD Control host."""

from .loader import load_config
from .models import (
    Config,
    DeviceConfig,
    FlashConfig,
    HealthConfig,
    LoggingConfig,
    SerialLinkConfig,
    StreamConfig,
)

__all__ = [
    "Config",
    "DeviceConfig",
    "FlashConfig",
    "HealthConfig",
    "LoggingConfig",
    "SerialLinkConfig",
    "StreamConfig",
    "load_config",
]
