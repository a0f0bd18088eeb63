import logging

import pytest

from mad_control.config.models import LoggingConfig
from mad_control.infra.logging import configure_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)
    for name in ("serial.codec", "device.flasher"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_writes_formatted_records_to_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "host.log"
    configure_logging(LoggingConfig(level="INFO", filepath=log_file, console=False))

    logging.getLogger("device.health").info("Device is responding.")
    logging.getLogger("device.health").debug("hidden")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert lines[0].endswith("| INFO     | MainThread | device.health | Device is responding.")


def test_per_logger_levels_override_root(tmp_path):
    config = LoggingConfig(
        level="INFO",
        filepath=tmp_path / "host.log",
        console=False,
        levels={"serial.codec": "warning", "device.flasher": "DEBUG"},
    )

    configure_logging(config)

    assert not logging.getLogger("serial.codec").isEnabledFor(logging.INFO)
    assert logging.getLogger("device.flasher").isEnabledFor(logging.DEBUG)
    assert not logging.getLogger("device.stream").isEnabledFor(logging.DEBUG)


def test_unknown_level_is_rejected(tmp_path):
    config = LoggingConfig(filepath=tmp_path / "host.log", console=False, levels={"serial.link": "LOUD"})

    with pytest.raises(ValueError, match="LOUD"):
        configure_logging(config)
