from __future__ import annotations

import logging
from pathlib import Path
from typing import Final


DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_FILE_NAME: Final[str] = "run.log"


def parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def configure_logging(level: str | int = logging.INFO, log_dir: str | None = None) -> None:
    """Configure standard library logging for the CLI.

    If log_dir is provided, logs are written to '<log_dir>/run.log' as well
    as stderr. A build spans hours, so the file copy is what an operator
    reads after a failure.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_dir) / LOG_FILE_NAME, encoding="utf-8"))

    logging.basicConfig(level=parse_level(level), format=DEFAULT_LOG_FORMAT, handlers=handlers)
