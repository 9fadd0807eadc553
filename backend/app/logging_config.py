"""Logging configuration for the API and the worker process."""

import logging
import sys
from pathlib import Path

# Create logs directory
LOGS_DIR = Path(__file__).parent.parent / "logs"

# Define log format
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-32s | %(threadName)-20s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

APP_LOGGER_NAME = "budgetplanner"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure logging for the application.

    Safe to call more than once: the API lifespan and the standalone worker
    both call it, and handlers are only attached the first time.
    """
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if getattr(app_logger, "_configured", False):
        return app_logger

    LOGS_DIR.mkdir(exist_ok=True)

    # Create formatters
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    # File handler - write to logs/app.log
    file_handler = logging.FileHandler(LOGS_DIR / "app.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Console handler - write to stdout
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Configure uvicorn loggers to use our handlers
    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        logger = logging.getLogger(logger_name)
        logger.handlers = []
        logger.addHandler(file_handler)
        logger.addHandler(console_handler)
        logger.propagate = False

    # Chatty client libraries
    for logger_name in ["httpx", "httpcore", "hpack", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    app_logger.setLevel(logging.DEBUG)
    app_logger._configured = True

    return app_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")
