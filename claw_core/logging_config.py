"""
Logging setup for clawCore.

All modules log through ``logging.getLogger(__name__)``, so handlers are
attached once to the ``claw_core`` parent logger and every child
(claw_core.loop, claw_core.llm.client, ...) inherits them.

Output goes to the console and, unless disabled, to a rotating file under
the agent's data directory. ``CLAW_LOG_LEVEL`` overrides the configured
level. urllib3 connection chatter from ``requests`` is held at WARNING.
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import List, Optional

PARENT_LOGGER = "claw_core"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUPS = 5
QUIET_LOGGERS = ("urllib3",)

_logging_configured = False


def _resolve_log_path(log_file: Optional[str], data_dir: Optional[str]) -> Optional[Path]:
    """None means file logging is off."""
    if isinstance(log_file, str) and log_file.lower() == "none":
        return None
    if log_file:
        return Path(log_file)
    return Path(data_dir or ".claw") / "logs" / "claw_core.log"


def _handlers(level: int, path: Optional[Path]) -> List[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            str(path), maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
        ))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging(level: str = "INFO", log_file: Optional[str] = None,
                  data_dir: Optional[str] = None) -> None:
    """Configure clawCore logging. Only the first call has an effect.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: ``None`` for ``<data_dir>/logs/claw_core.log``, ``"none"``
            to disable file output, anything else is used as the path.
        data_dir: Base directory for the default log file (``./.claw``).
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    level = os.environ.get("CLAW_LOG_LEVEL", level)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    parent = logging.getLogger(PARENT_LOGGER)
    parent.setLevel(numeric_level)
    parent.propagate = False
    for handler in _handlers(numeric_level, _resolve_log_path(log_file, data_dir)):
        parent.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def setup_logging_from_config(config) -> None:
    """``setup_logging`` driven by a ``GlobalConfig``; logs live beside memory."""
    data_dir = Path(config.memory.persist_path).parent
    setup_logging(config.logging_level, config.logging_file, str(data_dir))


def reset_logging() -> None:
    """Detach clawCore handlers so ``setup_logging`` can run again (tests)."""
    global _logging_configured
    parent = logging.getLogger(PARENT_LOGGER)
    for handler in list(parent.handlers):
        parent.removeHandler(handler)
        handler.close()
    parent.setLevel(logging.NOTSET)
    parent.propagate = True
    _logging_configured = False
