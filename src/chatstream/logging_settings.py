"""Read ``logging_settings.conf``: sink levels, per-logger overrides and retention."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

OFF = "off"
LOGGER_PREFIX = "logger."

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_SINK_KEYS = ("terminal", "file")
_DEFAULT_SINK_LEVEL = logging.INFO
_DEFAULT_RETENTION_HOURS = 48


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None = _DEFAULT_SINK_LEVEL
    file_level: int | None = _DEFAULT_SINK_LEVEL
    retention_hours: int = _DEFAULT_RETENTION_HOURS
    logger_levels: dict[str, int] = field(default_factory=dict)

    @property
    def root_level(self) -> int | None:
        """Lowest level any sink accepts, or ``None`` when every sink is off."""

        active = [
            level for level in (self.terminal_level, self.file_level) if level is not None
        ]
        return min(active) if active else None


def _entries(text: str) -> Iterator[tuple[str, str]]:
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        yield key.strip(), value.strip()


def _sink_level(value: str) -> int | None:
    normalized = value.lower()
    if normalized == OFF:
        return None
    return _LEVEL_NAMES.get(normalized, _DEFAULT_SINK_LEVEL)


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Parse ``key = value`` lines.

    ``terminal`` and ``file`` take a level name or ``off``; ``logger.<name>``
    pins one logger to a level. Unknown keys are ignored and unreadable
    values keep their defaults.
    """

    if not path.exists():
        return LoggingSettings()

    sinks: dict[str, int | None] = {}
    logger_levels: dict[str, int] = {}
    retention_hours = _DEFAULT_RETENTION_HOURS

    for key, value in _entries(path.read_text(encoding="utf-8")):
        lowered = key.lower()
        if lowered in _SINK_KEYS:
            sinks[lowered] = _sink_level(value)
        elif lowered == "retention_hours":
            try:
                retention_hours = max(0, int(value))
            except ValueError:
                retention_hours = _DEFAULT_RETENTION_HOURS
        elif lowered.startswith(LOGGER_PREFIX):
            name = key[len(LOGGER_PREFIX):].strip()
            level = _LEVEL_NAMES.get(value.lower())
            if name and level is not None:
                logger_levels[name] = level

    return LoggingSettings(
        terminal_level=sinks.get("terminal", _DEFAULT_SINK_LEVEL),
        file_level=sinks.get("file", _DEFAULT_SINK_LEVEL),
        retention_hours=retention_hours,
        logger_levels=logger_levels,
    )


__all__ = ["LoggingSettings", "parse_logging_settings"]
