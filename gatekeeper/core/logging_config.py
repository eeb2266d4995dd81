# gatekeeper/core/logging_config.py
"""Logging configuration for the Gatekeeper service"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Rejections from the request pipeline go here as well as to the main log
SECURITY_LOGGER_NAME = "gatekeeper.security"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _rotating_handler(log_file: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    # 5 MB per file, 5 backups
    handler = RotatingFileHandler(
        filename=str(log_file),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    return handler


def _has_file_handler(logger: logging.Logger, log_file: Path) -> bool:
    target = str(log_file.resolve())
    return any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == target
        for h in logger.handlers
    )


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configures the logging system.

    Root logger: console plus ``gatekeeper.log``. The security logger
    additionally writes ``security.log`` so rejected requests can be audited
    without the rest of the application noise. Safe to call more than once.

    Args:
        level: Log level name, defaults to the LOG_LEVEL env var or INFO
        log_dir: Directory for log files, defaults to the LOG_DIR env var or ./logs
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Console handler (attach once)
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    main_log = directory / 'gatekeeper.log'
    if not _has_file_handler(root_logger, main_log):
        root_logger.addHandler(_rotating_handler(main_log, formatter))

    security_logger = logging.getLogger(SECURITY_LOGGER_NAME)
    security_log = directory / 'security.log'
    if not _has_file_handler(security_logger, security_log):
        security_logger.addHandler(_rotating_handler(security_log, formatter))

    # Quieter third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger
