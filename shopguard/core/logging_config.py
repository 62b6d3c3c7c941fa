# shopguard/core/logging_config.py
"""Logging setup shared by the app, the stores and the maintenance task"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging():
    """Configure root logging: console plus a rotating file under LOG_DIR"""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))

    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler, attached once
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
               for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # Rotating file, 5 MB per file, 5 backups
    log_file = log_dir / 'shopguard.log'
    if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == str(log_file.resolve())
               for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            filename=str(log_file.resolve()),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    return root_logger
