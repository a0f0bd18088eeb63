"""Two-stage firmware flashing through the external loadp2 tool."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Optional, Sequence, Union

from statemachine import State, StateMachine

from ..config.models import FlashConfig
from ..infra.exceptions import DeviceConnectionError, FlashError
from ..serial_io.link import SerialLink
from ..serial_io.protocol import DeviceNotification, NotificationKind
from ..services.cancel import CancelToken
from ..services.event_bus import EventBus
from ..services.events import FlashProgressEvent, FlashStatusEvent, NotificationEvent

logger = logging.getLogger("device.flasher")

ALREADY_RUNNING = "Firmware flash already in progress"
NO_CONNECTION = "no connection"
NOT_RUNNING = "No flash process running"
RECONNECT_FAILED = "Note: Could not automatically reconnect. Please reconnect manually if needed."

PopenFactory = Callable[..., "subprocess.Popen[str]"]


class FlashState(Enum):
    PREPARING = "preparing"
    FLASHING = "flashing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"


# Status names understood by the firmware-update screen.
_STATUS_BY_STATE = {
    "preparing": "preparing",
    "flashing": "flashing",
    "succeeded": "success",
    "failed": "error",
    "canceled": "canceled",
    "timed_out": "error",
}


@dataclass(frozen=True)
class FlashResult:
    success: bool
    state: Optional[FlashState] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"success": self.success}
        if self.message is not None:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error
        return data


class ProcessState(Enum):
    SPAWNED = "spawned"
    EXITED = "exited"
    SIGNALED = "signaled"
    KILLED = "killed"


class FlashProcess:
    """Owned handle to the flashing tool; terminate and kill are idempotent."""

    def __init__(self, popen: "subprocess.Popen[str]") -> None:
        self._popen = popen
        self._state = ProcessState.SPAWNED
        self._lock = threading.Lock()

    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._state

    @property
    def stdout(self) -> Optional[IO[str]]:
        return self._popen.stdout

    @property
    def stderr(self) -> Optional[IO[str]]:
        return self._popen.stderr

    def terminate(self) -> bool:
        """Ask the tool to stop (SIGTERM); False if it already exited or was signalled."""
        with self._lock:
            if self._state is not ProcessState.SPAWNED or self._popen.poll() is not None:
                return False
            try:
                self._popen.terminate()
            except ProcessLookupError:
                return False
            self._state = ProcessState.SIGNALED
            return True

    def kill(self) -> bool:
        """Force the tool to stop (SIGKILL); only the first call has an effect."""
        with self._lock:
            if self._state in (ProcessState.EXITED, ProcessState.KILLED) or self._popen.poll() is not None:
                return False
            try:
                self._popen.kill()
            except ProcessLookupError:
                return False
            self._state = ProcessState.KILLED
            return True

    def wait(self) -> int:
        code = self._popen.wait()
        with self._lock:
            if self._state is ProcessState.SPAWNED:
                self._state = ProcessState.EXITED
        return code


_CANCELABLE = (None, FlashState.PREPARING, FlashState.FLASHING)


class FlashJobMachine(StateMachine):
    """Lifecycle of one flashing job; every state change is published."""

    idle = State("Idle", initial=True)
    preparing = State("Preparing")
    flashing = State("Flashing")
    succeeded = State("Succeeded", final=True)
    failed = State("Failed", final=True)
    canceled = State("Canceled", final=True)
    timed_out = State("TimedOut", final=True)

    begin = idle.to(preparing)
    start_flashing = preparing.to(flashing)
    succeed = flashing.to(succeeded)
    fail = preparing.to(failed) | flashing.to(failed)
    abort = preparing.to(canceled) | flashing.to(canceled)
    time_out = flashing.to(timed_out)

    def __init__(self, bus: EventBus):
        self.bus = bus
        super().__init__()

    def before_transition(self, event: str, source: object, target: object) -> None:
        source_name = getattr(source, "id", str(source))
        target_name = getattr(target, "id", str(target))
        logger.info("Flash job %s -> %s (trigger: %s)", source_name, target_name, event)

    def after_transition(self, event: str, source: object, target: object, message: str = "") -> None:
        status = _STATUS_BY_STATE.get(getattr(target, "id", ""))
        if status is None:
            return
        self.bus.publish(FlashStatusEvent(status=status, message=message))

    @property
    def flash_state(self) -> Optional[FlashState]:
        state_id = self.current_state.id
        if state_id == "idle":
            return None
        return FlashState(state_id)


@dataclass
class FlashJob:
    firmware_path: Path
    port: str
    baudrate: int
    machine: FlashJobMachine
    loader_path: Optional[Path] = None
    process: Optional[FlashProcess] = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    timed_out: bool = False
    stderr_lines: list[str] = field(default_factory=list)

    @property
    def state(self) -> Optional[FlashState]:
        return self.machine.flash_state


class FirmwareFlasher:
    """Runs one flashing job at a time against the currently connected port.

    The link is closed while the tool owns the port and, if flashing succeeds,
    reopened with the same port and baud rate.
    """

    def __init__(
        self,
        link: SerialLink,
        bus: EventBus,
        config: FlashConfig = FlashConfig(),
        reconnect: Optional[Callable[[str, int], object]] = None,
        popen_factory: PopenFactory = subprocess.Popen,
        platform: str = sys.platform,
    ) -> None:
        self._link = link
        self._bus = bus
        self._config = config
        self._reconnect = reconnect or link.open
        self._popen_factory = popen_factory
        self._platform = platform
        self._flash_lock = threading.Lock()
        self._job_lock = threading.Lock()
        self._job: Optional[FlashJob] = None

    @property
    def active_job(self) -> Optional[FlashJob]:
        with self._job_lock:
            return self._job

    # Public API ----------------------------------------------------------------

    def flash(self, firmware_path: Union[str, Path]) -> FlashResult:
        """Flash ``firmware_path``; blocks until the tool exits."""
        if not self._flash_lock.acquire(blocking=False):
            logger.warning("Rejecting flash request: another flash is running.")
            return FlashResult(success=False, error=ALREADY_RUNNING)
        try:
            return self._flash(Path(firmware_path))
        finally:
            with self._job_lock:
                self._job = None
            self._flash_lock.release()

    def cancel(self) -> CancelResult:
        with self._job_lock:
            job = self._job
            if job is None or job.state not in _CANCELABLE:
                return CancelResult(success=False, error=NOT_RUNNING)
            self._job = None
        logger.info("Canceling firmware flash process")
        job.cancel_token.cancel()
        if job.process is not None:
            job.process.terminate()
        self._progress("Firmware flashing canceled by user")
        return CancelResult(success=True, message="Firmware flashing canceled")

    # Job -----------------------------------------------------------------------

    def _flash(self, firmware: Path) -> FlashResult:
        handle = self._link.handle
        if handle is None or not handle.is_open:
            logger.warning("Cannot flash firmware: no serial connection.")
            return FlashResult(success=False, error=NO_CONNECTION)

        problem = self.validate_firmware(firmware)
        if problem:
            logger.warning("Rejecting firmware %s: %s", firmware, problem)
            return FlashResult(success=False, error=problem)

        job = FlashJob(
            firmware_path=firmware,
            port=handle.port,
            baudrate=handle.baudrate,
            machine=FlashJobMachine(self._bus),
        )
        with self._job_lock:
            self._job = job

        try:
            result = self._run(job)
        except Exception as exc:
            logger.exception("Error in firmware flashing.")
            message = f"Error flashing firmware: {exc}"
            if job.machine.current_state.id in ("preparing", "flashing"):
                job.machine.fail(message=message)
            return FlashResult(success=False, state=job.state, error=message)

        if result.success:
            self._reconnect_after_flash(job)
        return result

    def _run(self, job: FlashJob) -> FlashResult:
        job.machine.begin(message="Preparing to flash firmware...")
        self._progress("Preparing to flash firmware...")
        self._close_link()
        if job.cancel_token.sleep(self._config.settle_delay_ms / 1000.0):
            return self._finish_canceled(job)

        try:
            tool = self._prepare_tool()
            job.loader_path = self._check_inputs(job.firmware_path)
            command = self.build_command(tool, job.port, job.loader_path, job.firmware_path)
            if job.cancel_token.is_canceled:
                return self._finish_canceled(job)
            self._progress(f"Running command: {' '.join(str(part) for part in command)}")
            job.process = self._spawn(command)
        except FlashError as exc:
            logger.error("Firmware flash failed: %s", exc)
            job.machine.fail(message=str(exc))
            return FlashResult(success=False, state=job.state, error=str(exc))

        job.machine.start_flashing(message="Firmware flashing in progress...")
        if job.cancel_token.is_canceled:
            job.process.terminate()

        readers = [
            self._start_reader(job.process.stdout, job, capture=False, name="stdout"),
            self._start_reader(job.process.stderr, job, capture=True, name="stderr"),
        ]
        watchdog = threading.Timer(self._config.watchdog_timeout_s, self._on_watchdog, args=(job,))
        watchdog.daemon = True
        watchdog.start()
        try:
            code = job.process.wait()
        finally:
            watchdog.cancel()
        for reader in readers:
            if reader is not None:
                reader.join(timeout=1.0)
        logger.info("LoadP2 process exited with code %s (%s)", code, job.process.state.value)
        return self._finish(job, code)

    def _finish(self, job: FlashJob, code: int) -> FlashResult:
        if job.cancel_token.is_canceled:
            return self._finish_canceled(job)
        if job.timed_out:
            minutes = self._config.watchdog_timeout_s / 60.0
            message = f"Firmware flashing timed out after {minutes:g} minutes"
            job.machine.time_out(message=message)
            return FlashResult(success=False, state=job.state, error=message)
        if code == 0:
            self._progress("Firmware binary flashed successfully using two-stage loader")
            job.machine.succeed(message="Firmware flashed successfully")
            return FlashResult(success=True, state=job.state)
        message = self.describe_failure(code, "".join(job.stderr_lines))
        job.machine.fail(message=message)
        return FlashResult(success=False, state=job.state, error=message)

    def _finish_canceled(self, job: FlashJob) -> FlashResult:
        self._progress("Firmware flashing was canceled")
        job.machine.abort(message="Firmware flashing was canceled by user")
        return FlashResult(success=False, state=job.state, error="Firmware flashing was canceled")

    def _on_watchdog(self, job: FlashJob) -> None:
        if job.process is None or job.process.state in (ProcessState.EXITED, ProcessState.KILLED):
            return
        if job.cancel_token.is_canceled:
            logger.warning("Flash process ignored termination, killing process")
        else:
            logger.warning("Flash process timed out, killing process")
            job.timed_out = True
        job.process.kill()

    def _reconnect_after_flash(self, job: FlashJob) -> None:
        self._progress("Firmware flashed successfully. Reconnecting to device...")
        time.sleep(self._config.reconnect_delay_ms / 1000.0)
        try:
            self._reconnect(job.port, job.baudrate)
        except Exception as exc:
            logger.warning("Warning while reconnecting: %s", exc)
            self._progress(RECONNECT_FAILED)
            self._bus.publish(
                NotificationEvent(notification=DeviceNotification(kind=NotificationKind.WARN, message=RECONNECT_FAILED))
            )
            return
        self._progress("Reconnected to device successfully")

    # Helpers -------------------------------------------------------------------

    def validate_firmware(self, firmware: Path) -> Optional[str]:
        """Reason ``firmware`` cannot be flashed, or None."""
        if not firmware.is_file():
            return "Selected file does not exist"
        extensions = tuple(ext.lower() for ext in self._config.firmware_extensions)
        if firmware.suffix.lower() not in extensions:
            return f"Invalid file type. Please select a {' or '.join(extensions)} file."
        return None

    def tool_path(self) -> Path:
        bin_dir = self._config.resolved_bin_dir()
        if self._platform.startswith("win"):
            return bin_dir / self._config.tool_name_windows
        if self._platform == "darwin":
            return bin_dir / self._config.tool_name_macos
        return bin_dir / self._config.tool_name_linux

    def loader_path(self) -> Path:
        return self._config.resolved_bin_dir() / self._config.loader_name

    def build_command(self, tool: Path, port: str, loader: Path, firmware: Path) -> list[str]:
        stages = f"@{self._config.loader_address}={loader},@{self._config.firmware_address}+{firmware}"
        return [str(tool), f"-b{self._config.flash_baudrate}", "-p", port, stages]

    @staticmethod
    def describe_failure(code: int, stderr: str) -> str:
        if "cannot open serial port" in stderr:
            return (
                "Error: Cannot open serial port. The port may be in use or you may need permission to access it."
            )
        if "No such file or directory" in stderr:
            return "Error: Could not find the firmware file."
        if "permission denied" in stderr.lower():
            return (
                "Error: Permission denied when accessing the port. "
                "Try running as administrator or change port permissions."
            )
        return f"LoadP2 exited with code {code}. {stderr}".rstrip()

    def _close_link(self) -> None:
        self._progress("Closing serial port before flashing...")
        try:
            self._link.close()
        except DeviceConnectionError as exc:
            logger.warning("Warning while closing serial port: %s", exc)
            self._progress("Warning while closing serial port, continuing anyway...")
            return
        self._progress("Serial port closed successfully")

    def _prepare_tool(self) -> Path:
        tool = self.tool_path()
        if not tool.is_file():
            raise FlashError(
                f"LoadP2 tool not found at {tool}. Please make sure it's installed in the bin directory."
            )
        if not self._platform.startswith("win"):
            try:
                os.chmod(tool, 0o755)
                self._progress(f"Made {tool} executable")
            except OSError as exc:
                logger.warning("Unable to make %s executable: %s", tool, exc)
        return tool

    def _check_inputs(self, firmware: Path) -> Path:
        try:
            size = firmware.stat().st_size
        except OSError as exc:
            raise FlashError(f"Error accessing firmware binary: {exc}") from exc
        if size == 0:
            raise FlashError("Firmware binary file is empty")
        self._progress(f"Firmware binary size: {size} bytes")

        loader = self.loader_path()
        if not loader.is_file():
            raise FlashError(f"Flash loader binary not found at {loader}")
        loader_size = loader.stat().st_size
        if loader_size == 0:
            raise FlashError(f"Flash loader binary is empty: {loader}")
        self._progress(f"Flash loader size: {loader_size} bytes")
        return loader

    def _spawn(self, command: Sequence[str]) -> FlashProcess:
        kwargs: dict[str, object] = {}
        if os.name == "posix":
            kwargs["start_new_session"] = True
        try:
            popen = self._popen_factory(
                list(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
                **kwargs,
            )
        except (OSError, ValueError) as exc:
            raise FlashError(f"Failed to run LoadP2 tool: {exc}") from exc
        logger.info("Spawned LoadP2 (pid %s)", popen.pid)
        return FlashProcess(popen)

    def _start_reader(
        self, stream: Optional[IO[str]], job: FlashJob, capture: bool, name: str
    ) -> Optional[threading.Thread]:
        if stream is None:
            return None

        def _pump() -> None:
            try:
                for line in stream:
                    text = line.rstrip("\r\n")
                    if capture:
                        job.stderr_lines.append(line)
                        logger.error("LoadP2 %s: %s", name, text)
                    else:
                        logger.info("LoadP2 %s: %s", name, text)
                    if text:
                        self._progress(text)
            except (OSError, ValueError):
                logger.debug("LoadP2 %s pipe closed.", name)

        thread = threading.Thread(target=_pump, name=f"LoadP2-{name}", daemon=True)
        thread.start()
        return thread

    def _progress(self, message: str) -> None:
        self._bus.publish(FlashProgressEvent(message=message))
