import json
import logging

import pytest

from skyframe.config import GlobalConfig
from skyframe.logging import DEFAULT_QUIET_LOGGERS, configure_logging, get_logger, quiet_loggers


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


def test_json_log_file_receives_structured_events(tmp_path):
    log_file = tmp_path / "logs" / "skyframe.log"
    configure_logging(level="INFO", json_output=True, log_file=log_file)

    get_logger("skyframe.test").warning("cache.write_failed", query="summer")

    record = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
    assert record["event"] == "cache.write_failed"
    assert record["query"] == "summer"
    assert record["level"] == "warning"
    assert record["logger"] == "skyframe.test"


def test_library_loggers_follow_debug_mode():
    configure_logging(level="DEBUG")
    assert logging.getLogger("urllib3").level == logging.INFO

    configure_logging(level="INFO")
    assert logging.getLogger("urllib3").level == logging.WARNING
    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_configured_quiet_loggers_use_root_level():
    names = GlobalConfig.model_validate({"runtime": {"quiet_loggers": ["skyframe.test.chatty"]}}).runtime.quiet_loggers
    logging.getLogger().setLevel(logging.INFO)

    quiet_loggers(names)

    assert logging.getLogger("skyframe.test.chatty").level == logging.WARNING
    assert GlobalConfig().runtime.quiet_loggers == list(DEFAULT_QUIET_LOGGERS)
