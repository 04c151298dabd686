"""
Process logging for mailrelay.

This is the diagnostic log (what the process is doing); the durable audit
trail of send attempts lives in :mod:`mailrelay.logs`.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

MAX_LOG_SIZE = 10 * 1024 * 1024
BACKUP_COUNT = 5

_NOISY_LOGGERS = ("urllib3", "requests", "smtplib")


def configure_logging(
    level: int | str = logging.INFO,
    *,
    log_file: Path | None = None,
    debug: bool = False,
) -> None:
    """
    Install file and console handlers on the ``mailrelay`` logger.

    Args:
        level: Level for the file handler and the package logger.
        log_file: Rotating log file. Defaults to ``mailrelay.log`` in the
            per-user log directory.
        debug: Forces DEBUG everywhere and lets the console show it.
    """
    from mailrelay.runtime.context import get_runtime_context
    from mailrelay.runtime.paths import resolve_paths

    if debug:
        level = logging.DEBUG
    if log_file is None:
        paths = resolve_paths(get_runtime_context()).ensure()
        log_file = paths.logs_dir / "mailrelay.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("mailrelay")
    package_logger.setLevel(level)
    package_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    package_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(fmt="%(levelname)s - %(message)s"))
    package_logger.addHandler(console_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    package_logger.debug("Logging configured; file=%s", log_file)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger for ``name`` (usually ``__name__``)."""
    return logging.getLogger(name or "mailrelay")
