"""Cached device snapshots kept by the controller."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional

from ..serial_io.protocol import FirmwareVersion, MachineConfiguration, MachineState, SampleData


class DeviceCache:
    """Latest state, configuration and firmware version plus a bounded sample history."""

    def __init__(self, sample_buffer_size: int = 100) -> None:
        self._lock = threading.Lock()
        self._samples: Deque[SampleData] = deque(maxlen=max(1, sample_buffer_size))
        self._state: Optional[MachineState] = None
        self._configuration: Optional[MachineConfiguration] = None
        self._firmware_version: Optional[FirmwareVersion] = None

    def add_sample(self, sample: SampleData) -> None:
        with self._lock:
            self._samples.append(sample)

    def samples(self) -> list[SampleData]:
        with self._lock:
            return list(self._samples)

    def latest_sample(self) -> Optional[SampleData]:
        with self._lock:
            return self._samples[-1] if self._samples else None

    @property
    def state(self) -> Optional[MachineState]:
        return self._state

    @state.setter
    def state(self, value: Optional[MachineState]) -> None:
        with self._lock:
            self._state = value

    @property
    def configuration(self) -> Optional[MachineConfiguration]:
        return self._configuration

    @configuration.setter
    def configuration(self, value: Optional[MachineConfiguration]) -> None:
        with self._lock:
            self._configuration = value

    @property
    def firmware_version(self) -> Optional[FirmwareVersion]:
        return self._firmware_version

    @firmware_version.setter
    def firmware_version(self, value: Optional[FirmwareVersion]) -> None:
        with self._lock:
            self._firmware_version = value
