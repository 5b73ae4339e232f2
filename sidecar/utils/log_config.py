"""Loguru sink configuration shared by the CLI entry points."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from sidecar.utils.config import LoggingConfig


def setup_logging(config: LoggingConfig | None = None, *, verbose: bool = False) -> None:
    """Replace Loguru's default sink with a stderr sink and a rotating file sink."""
    config = config or LoggingConfig()
    level = "DEBUG" if verbose else config.level.upper()

    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=level,
    )

    if config.file:
        log_file = Path(config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level="DEBUG",
            rotation=f"{config.max_size_mb} MB",
            retention=config.backup_count,
            serialize=config.format == "json",
        )
