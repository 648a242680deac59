"""Logging setup for the flasher service.

Every component logs to a child of the ``flasher`` logger (``flasher.job``,
``flasher.resolver``, ``flasher.remote_zip``, ...). Handlers live on the root
``flasher`` logger only; children may carry their own level.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ISO_8601 = "%Y-%m-%dT%H:%M:%S%z"

Level = Union[int, str]


def resolve_level(level: Level, default: int = logging.INFO) -> int:
    """Turn ``"debug"``/``"INFO"``/``10`` into a numeric level; unknown names give ``default``."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else default


def parse_component_levels(value: Optional[str]) -> dict[str, str]:
    """Parse ``"resolver=DEBUG,remote_zip=WARNING"`` into a mapping.

    Blank items are skipped.

    Raises:
        ValueError: If an item has no ``=``
    """
    levels = {}
    for item in (value or "").split(","):
        item = item.strip()
        if not item:
            continue
        component, sep, level = item.partition("=")
        if not sep or not component.strip():
            raise ValueError(f"Invalid component log level {item!r}, expected name=LEVEL")
        levels[component.strip()] = level.strip()
    return levels


def setup_logger(
    name: str = "flasher",
    log_file: str = "./logs/flasher.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: Level = logging.INFO,
    component_levels: Optional[Mapping[str, Level]] = None,
) -> logging.Logger:
    """Configure the service logger: rotating file plus console.

    Args:
        name: Root logger name for the service
        log_file: Path to log file (parent directories are created)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Level of the root logger and of both handlers
        component_levels: Per-component overrides keyed by child name,
            e.g. ``{"remote_zip": "DEBUG"}`` sets ``flasher.remote_zip``

    Returns:
        The root service logger
    """
    root_level = resolve_level(level)
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(root_level)

    for component, component_level in (component_levels or {}).items():
        logging.getLogger(f"{name}.{component}").setLevel(resolve_level(component_level, root_level))

    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=ISO_8601)
    handlers = [
        RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        # Filtering happens on loggers
        handler.setLevel(logging.NOTSET)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
