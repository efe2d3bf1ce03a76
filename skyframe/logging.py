"""structlog setup shared by the CLI and the long-running scheduler.

Every module logs through ``get_logger`` with dotted event names
(``scheduler.fetch_start``, ``cache.write_failed``) and keyword context.
Output goes to stderr and, optionally, to a log file; both receive the same
rendered line so a JSON log file can be tailed by other tools.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

import structlog

# HTTP and scheduler internals; overridable through ``runtime.quiet_loggers``.
DEFAULT_QUIET_LOGGERS = ("urllib3", "apscheduler")


def _processors(json_output: bool) -> List[structlog.types.Processor]:
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def _handlers(log_file: Optional[Union[str, Path]]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    return handlers


def quiet_loggers(names: Iterable[str], level: Optional[Union[str, int]] = None) -> None:
    """Hold third-party loggers at WARNING unless the app itself runs at DEBUG.

    ``level`` defaults to the root logger's current level.
    """

    if level is None:
        level = logging.getLogger().level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    library_level = logging.INFO if level == logging.DEBUG else logging.WARNING
    for name in names:
        logging.getLogger(name).setLevel(library_level)


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Union[str, Path]] = None,
    quiet: Iterable[str] = DEFAULT_QUIET_LOGGERS,
) -> None:
    """Route structlog through stdlib logging at ``level``.

    Safe to call more than once; the CLI reconfigures after it has read the
    configured log level.
    """

    logging.basicConfig(level=level.upper(), format="%(message)s", handlers=_handlers(log_file), force=True)
    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    quiet_loggers(quiet, level)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
