"""
Central logging configuration.

- Console handler on stdout with a short format
- Optional rotating file handler (10MB, 5 backups) when LOG_FILE is set

Log messages must never contain PHI: no decrypted field values, no
break-glass justification text, no request bodies.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path

from phiguard.app.config import Settings


def configure_logging(settings: Settings) -> None:
    """Install root handlers. Safe to call more than once."""
    level = getattr(logging, settings.log_level, logging.INFO)

    detailed_formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_formatter = logging.Formatter(fmt="%(levelname)s: %(name)s: %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates during reloads
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if settings.log_file:
        log_path = Path(settings.log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path,
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(detailed_formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    # Quiet third-party loggers
    logging.getLogger("multipart").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging initialized (level=%s)", settings.log_level)
