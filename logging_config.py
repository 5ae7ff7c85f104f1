"""
Centralized logging configuration for StitchOrderWeb.

This module provides thread-aware logging with automatic thread context
in all log messages. Webhook deliveries and user requests hit the same
review concurrently, so knowing which request thread wrote a line matters.

Features:
    - Automatic thread name in all log messages
    - Console output (always enabled)
    - Rotating file logs (optional, for production)
    - Separate error log for ERROR/CRITICAL messages
    - Per-review child loggers for filtering one review's history

Log Format:
    2026-03-02 10:15:30 [INFO    ] [MainThread] stitch_order_web.app - Starting application
    2026-03-02 10:15:31 [INFO    ] [Thread-4] stitch_order_web.review.42 - pending -> needs-changes
    2026-03-02 10:15:32 [WARNING ] [Thread-7] stitch_order_web.services.payment_service - No-op

Usage:
    # At application startup
    from logging_config import setup_logging, get_logger

    setup_logging(log_level=logging.INFO, enable_file_logging=True)

    # In modules
    logger = get_logger(__name__)

    # For one review
    review_logger = get_review_logger(42)
"""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


APP_NAMESPACE = "stitch_order_web"


# =============================================================================
# THREAD CONTEXT FILTER
# =============================================================================

class ThreadContextFilter(logging.Filter):
    """
    Logging filter that adds thread context to all log records.

    Adds `thread_name` and `thread_id` to each record for the format string.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        current_thread = threading.current_thread()
        record.thread_name = current_thread.name
        record.thread_id = threading.get_ident()

        # Adding context, not filtering
        return True


# =============================================================================
# LOGGING SETUP
# =============================================================================

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] [%(thread_name)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Third-party loggers that log every HTTP round trip at INFO
NOISY_LOGGERS = ("stripe", "urllib3")


def _attach(
    logger: logging.Logger,
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ThreadContextFilter())
    logger.addHandler(handler)


def _rotating(path: Path) -> RotatingFileHandler:
    return RotatingFileHandler(
        filename=path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )


def setup_logging(
    app_name: str = APP_NAMESPACE,
    log_level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
) -> logging.Logger:
    """
    Configure application logging with thread context.

    Handlers:
    1. Console (always)
    2. Rotating application log (file logging only)
    3. Rotating error log, ERROR and above (file logging only)

    Provider SDK loggers are held at WARNING unless the app runs at DEBUG,
    where their request traces help with webhook debugging.

    Args:
        app_name: Name of the root logger (default: "stitch_order_web")
        log_level: Minimum log level (default: INFO)
        log_dir: Directory for log files (default: ./logs next to this file)
        enable_file_logging: Whether to write to log files (default: True)

    Returns:
        Configured root logger instance
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(log_level)
    logger.propagate = False

    # Tests build a fresh app per test; drop handlers from the last one
    logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    _attach(logger, logging.StreamHandler(sys.stdout), log_level, formatter)

    if enable_file_logging:
        log_dir = log_dir or Path(__file__).parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        app_log_file = log_dir / f"{app_name}.log"
        _attach(logger, _rotating(app_log_file), log_level, formatter)
        # Provider failures and swallowed notification errors end up here
        _attach(logger, _rotating(log_dir / f"{app_name}_error.log"), logging.ERROR, formatter)

        logger.info(f"File logging enabled: {app_log_file}")

    sdk_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(sdk_level)

    logger.info(f"Logging configured at level {logging.getLevelName(log_level)}")
    return logger


# =============================================================================
# LOGGER FACTORY FUNCTIONS
# =============================================================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger with the application namespace.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance, e.g. "stitch_order_web.services.refund_service"
    """
    if not name.startswith(APP_NAMESPACE):
        name = f"{APP_NAMESPACE}.{name}"

    return logging.getLogger(name)


def get_review_logger(review_id: Union[int, str]) -> logging.Logger:
    """
    Get a logger for a single order review.

    Every transition of a review is logged through this logger so that
    one review's history can be grepped out of a busy log.

    Example:
        get_review_logger(42).info("pending -> needs-changes")
        # Logger name: "stitch_order_web.review.42"
    """
    return logging.getLogger(f"{APP_NAMESPACE}.review.{review_id}")


def set_thread_name(name: str) -> None:
    """
    Set the name of the current thread.

    This name appears in log messages in the [thread_name] field.
    """
    threading.current_thread().name = name
