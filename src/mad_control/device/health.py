"""Device liveness tracking driven by the sample and state poll ticks."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from statemachine import State, StateMachine

from ..config.models import HealthConfig
from ..serial_io.engine import ProtocolEngine
from ..serial_io.protocol import ReadType
from ..services.event_bus import EventBus
from ..services.events import HealthChangedEvent

logger = logging.getLogger("device.health")

MESSAGE_RESPONDING = "Device is responding"
MESSAGE_NOT_RESPONDING = "Device stopped responding"


class HealthStateMachine(StateMachine):
    """RESPONDING / NOT_RESPONDING with one transition each way."""

    not_responding = State("NotResponding", initial=True)
    responding = State("Responding")

    recover = not_responding.to(responding)
    lose = responding.to(not_responding)

    def on_enter_responding(self) -> None:
        logger.info("Device is responding.")

    def on_enter_not_responding(self) -> None:
        logger.debug("Entering state: NotResponding")


class HealthTracker:
    """Polls the device and decides whether it is still alive.

    ``on_sample_tick`` requests a sample and re-evaluates liveness;
    ``on_state_tick`` requests the machine state. Any sample or state frame
    counts as proof of life through ``mark_inbound``. A ``HealthChangedEvent``
    is published only when the responding flag flips.
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        bus: EventBus,
        is_connected: Callable[[], bool],
        config: HealthConfig = HealthConfig(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._bus = bus
        self._is_connected = is_connected
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._last_inbound: Optional[float] = None
        self.machine = HealthStateMachine()

    @property
    def responding(self) -> bool:
        return self.machine.responding.is_active

    @property
    def last_inbound(self) -> Optional[float]:
        return self._last_inbound

    def on_sample_tick(self) -> None:
        connected = self._is_connected()
        if connected:
            self._engine.read_request(ReadType.SAMPLE)
        self._evaluate(connected)

    def on_state_tick(self) -> None:
        if self._is_connected():
            self._engine.read_request(ReadType.STATE)

    def mark_inbound(self) -> None:
        """Record proof of life; called on the reader thread."""
        with self._lock:
            self._last_inbound = self._clock()
        if not self.responding:
            self._evaluate(self._is_connected())

    def reset(self) -> None:
        """Forget the last inbound time, e.g. after the link was reopened or closed."""
        with self._lock:
            self._last_inbound = None
        self._evaluate(self._is_connected())

    def _evaluate(self, connected: bool) -> None:
        window_s = self._config.liveness_window_ms / 1000.0
        with self._lock:
            last = self._last_inbound
            alive = connected and last is not None and (self._clock() - last) <= window_s
            if alive == self.responding:
                return
            if alive:
                self.machine.recover()
            else:
                if connected:
                    logger.warning(
                        "Device stopped responding - no data received for >%.1f second(s)", window_s
                    )
                self.machine.lose()
            self._bus.publish(
                HealthChangedEvent(
                    responding=alive,
                    connected=connected,
                    message=MESSAGE_RESPONDING if alive else MESSAGE_NOT_RESPONDING,
                )
            )
