"""Run transcript: one timestamped log file per run, mirrored to the console."""
from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path


LOGGER_NAME = "hostdeploy"
LOG_FILE_PATTERN = "deploy_%Y%m%d_%H%M%S.log"

COLOR_RESET = "\033[0m"
STEP_COLOR = "\033[95m"
_LEVEL_COLORS = {
    logging.DEBUG: "\033[0;34m",
    logging.INFO: "\033[0;32m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[0;31m",
    logging.CRITICAL: "\033[0;31m",
}


class ConsoleFormatter(logging.Formatter):
    """Severity-coloured prefix, plain message."""

    def __init__(self, *, use_color: bool = True):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message = f"{message}\n{record.exc_text}"

        if record.levelno >= logging.ERROR:
            prefix = "[ERROR]"
        elif record.levelno >= logging.WARNING:
            prefix = "[WARNING]"
        else:
            prefix = f"[{self.formatTime(record, self.datefmt)}]"

        if not self.use_color:
            return f"{prefix} {message}"
        if getattr(record, "step", False):
            return f"{STEP_COLOR}{prefix} {message}{COLOR_RESET}"
        color = _LEVEL_COLORS.get(record.levelno, "")
        return f"{color}{prefix}{COLOR_RESET} {message}"


def configure_run_log(
    log_dir: Path | str = ".",
    *,
    now: datetime | None = None,
    console_stream=None,
    use_color: bool | None = None,
) -> Path:
    """Attach a file and a console handler to the ``hostdeploy`` logger.

    Returns the path of the log file. Handlers from a previous call in the
    same process are closed first, so each run owns exactly one file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / (now or datetime.now()).strftime(LOG_FILE_PATTERN)

    logger = logging.getLogger(LOGGER_NAME)
    close_run_log()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(file_handler)

    stream = console_stream or sys.stdout
    if use_color is None:
        use_color = bool(getattr(stream, "isatty", lambda: False)())
    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(ConsoleFormatter(use_color=use_color))
    logger.addHandler(console_handler)

    return log_path


def close_run_log() -> None:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
