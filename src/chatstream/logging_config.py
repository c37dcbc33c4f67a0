"""Process-wide logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from .config import Settings
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .logging_settings import parse_logging_settings

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    settings: Settings | None = None,
    *,
    settings_path: Path | None = None,
    log_dir: Path | None = None,
) -> list[logging.Handler]:
    """Attach console and file handlers according to ``logging_settings.conf``."""

    load_dotenv()

    if settings is not None:
        settings_path = settings_path or settings.logging_settings_path
        log_dir = log_dir or settings.log_dir
    settings_path = settings_path or Path("logging_settings.conf")
    log_dir = log_dir or Path("logs/app")

    logging_settings = parse_logging_settings(settings_path)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if logging_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging_settings.terminal_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if logging_settings.file_level is not None:
        file_handler = DateStampedFileHandler(log_dir)
        file_handler.setLevel(logging_settings.file_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_level = logging_settings.root_level
    if root_level is None:
        root_level = logging.CRITICAL + 1
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    logging.getLogger("chatstream").setLevel(root_level)

    # Only surface transport chatter when debugging
    noisy_level = logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING
    logging.getLogger("httpx").setLevel(noisy_level)
    logging.getLogger("httpcore").setLevel(noisy_level)
    for name, level in logging_settings.logger_levels.items():
        logging.getLogger(name).setLevel(level)

    cleanup_old_logs(
        [log_dir],
        logging_settings.retention_hours,
        logger=logging.getLogger(__name__),
    )
    return handlers


__all__ = ["configure_logging"]
