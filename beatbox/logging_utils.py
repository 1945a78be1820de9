from __future__ import annotations

import logging
import os
import sys
import traceback
from datetime import datetime
from pathlib import Path

_LOGGER = logging.getLogger("beatbox.logging")
_ROOT_LOGGER_NAME = "beatbox"
_LOG_DIR_ENV = "BEATBOX_LOG_DIR"
_DEBUG_ENV = "BEATBOX_DEBUG"
_LOG_FILE = "beatbox.log"
_configured = False


class _TaggedFormatter(logging.Formatter):
    """Console format with a short bracketed level tag in front."""

    TAGS = {
        logging.DEBUG: "[debug]",
        logging.INFO: "[info]",
        logging.WARNING: "[warn]",
        logging.ERROR: "[error]",
        logging.CRITICAL: "[fatal]",
    }

    def __init__(self) -> None:
        super().__init__("%(tag)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        record.tag = self.TAGS.get(record.levelno, "")
        return super().format(record)


def get_log_dir() -> Path:
    override = os.environ.get(_LOG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cache" / "beatbox" / "logs"


def get_log_path() -> Path:
    return get_log_dir() / _LOG_FILE


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.__stderr__)
    handler.setLevel(logging.DEBUG if os.environ.get(_DEBUG_ENV) else logging.INFO)
    handler.setFormatter(_TaggedFormatter())
    return handler


def _file_handler() -> logging.Handler | None:
    path = get_log_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as exc:
        _LOGGER.warning("File logging disabled (%s): %s", path, exc)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    return handler


def configure_logging(*, force: bool = False) -> None:
    """Attach console and file handlers to the ``beatbox`` logger, once.

    The console handler is skipped when the host already configured the root
    logger, unless ``force`` is set. ``force`` also drops existing handlers.
    """
    global _configured
    if _configured and not force:
        return

    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    if force:
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()

    if force or not logging.getLogger().handlers:
        logger.addHandler(_console_handler())
    file_handler = _file_handler()
    if file_handler is not None:
        logger.addHandler(file_handler)

    logger.propagate = True
    _configured = True


def log_exception(context: str, exc: BaseException) -> Path | None:
    """Append ``exc`` and its traceback to the log file; returns the file or None."""
    path = get_log_path()
    lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
    stamp = datetime.now().isoformat(timespec="seconds")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] {context} failed: {type(exc).__name__}: {exc}\n")
            handle.writelines(lines)
            handle.write("\n")
    except OSError as log_exc:
        _LOGGER.warning("Failed to write log file %s: %s", path, log_exc)
        return None
    return path
