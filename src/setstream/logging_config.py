"""Logging setup for pipeline runs."""

import logging
import sys

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: LoggingConfig, level_override: str | None = None) -> None:
    """Configure the root logger for a pipeline run.

    Logs go to stdout and, if configured, are tee'd to a file.

    Args:
        config: Logging section of the settings
        level_override: Level from the command line, wins over the settings
    """
    level_name = (level_override or config.level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {level_name}")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.file:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging initialized: level={level_name}, file={config.file}"
    )
