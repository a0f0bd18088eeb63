"""Sequential, acknowledged delivery of motion command lines."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional, cast

from ..config.models import StreamConfig
from ..infra.exceptions import OperationCanceledError, ResponseTimeoutError, RetryExhaustedError
from ..serial_io.engine import ProtocolEngine
from ..serial_io.protocol import Acknowledgment, InboundMessage, WriteType, ack_matches
from ..services.cancel import CancelToken

logger = logging.getLogger("device.stream")

CANCELED = "canceled"


@dataclass(frozen=True)
class StreamResult:
    success: bool
    failed_line: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        if self.failed_line is not None:
            data["line"] = self.failed_line
        return data


class CommandStream:
    """Writes TEST_MOVE lines one at a time, each confirmed before the next.

    A line that is not acknowledged within ``ack_timeout_ms`` is resent after
    ``retry_delay_ms``, up to ``max_attempts`` sends in total. Only one stream
    runs at a time; a second caller blocks until the first has finished.
    """

    def __init__(self, engine: ProtocolEngine, config: StreamConfig = StreamConfig()) -> None:
        self._engine = engine
        self._config = config
        self._lock = threading.Lock()

    def stream_text(self, text: str, cancel: Optional[CancelToken] = None) -> StreamResult:
        return self.stream(text.splitlines(), cancel=cancel)

    def stream(self, lines: Iterable[str], cancel: Optional[CancelToken] = None) -> StreamResult:
        commands = [line.strip() for line in lines if line.strip()]
        cancel = cancel or CancelToken()
        with self._lock:
            logger.info("Streaming %d command line(s).", len(commands))
            for index, line in enumerate(commands, start=1):
                try:
                    self._deliver(line, cancel)
                except OperationCanceledError:
                    logger.info("Stream canceled at line %d: %s", index, line)
                    return StreamResult(success=False, failed_line=line, error=CANCELED)
                except RetryExhaustedError as exc:
                    logger.error("Failed to send line after %d attempts: %s", exc.attempts, line)
                    return StreamResult(success=False, failed_line=line, error=str(exc))
            logger.info("Stream complete.")
            return StreamResult(success=True)

    def _deliver(self, line: str, cancel: CancelToken) -> Acknowledgment:
        attempts = max(1, self._config.max_attempts)
        timeout_s = self._config.ack_timeout_ms / 1000.0
        for attempt in range(1, attempts + 1):
            if cancel.is_canceled:
                raise OperationCanceledError("Stream canceled")
            correlation_id = self._engine.next_correlation_id()

            def _is_ack(message: InboundMessage, correlation_id: int = correlation_id) -> bool:
                return isinstance(message, Acknowledgment) and ack_matches(
                    message, WriteType.TEST_MOVE, correlation_id
                )

            try:
                message = self._engine.request(
                    WriteType.TEST_MOVE,
                    _is_ack,
                    timeout_s,
                    payload=line,
                    correlation_id=correlation_id,
                    cancel=cancel,
                )
            except ResponseTimeoutError:
                if attempt == attempts:
                    raise RetryExhaustedError(line, attempts) from None
                logger.warning("Retrying line (attempt %d/%d): %s", attempt, attempts, line)
                if cancel.sleep(self._config.retry_delay_ms / 1000.0):
                    raise OperationCanceledError("Stream canceled") from None
                continue
            ack = cast(Acknowledgment, message)
            if not ack.ok:
                logger.warning("Device rejected line (negative acknowledgment): %s", line)
            return ack
        raise RetryExhaustedError(line, attempts)
