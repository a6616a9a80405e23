"""
Logging configuration for the tunnel processes.
Sets up logging with console and optional rotating file handlers.
"""
import os
import logging
import logging.handlers
import sys
from typing import Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
THREAD_FORMAT = '%(asctime)s - %(name)s - [%(threadName)s] - %(levelname)s - %(message)s'


def setup_logging(
    app_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_to_console: bool = True,
    max_size: int = 10485760,  # 10 MB
    backup_count: int = 5,
    include_thread_info: bool = False
) -> logging.Logger:
    """
    Configure logging for the process

    Handlers are installed on the root logger so the loggers used by the
    tunnel, mux and bridge modules share them.

    Args:
        app_name: Name of the application logger to return
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (None for no file logging)
        log_to_console: Whether to log to console
        max_size: Maximum log file size in bytes
        backup_count: Number of backup log files
        include_thread_info: Include the thread name in log lines

    Returns:
        The application logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicate logging
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(THREAD_FORMAT if include_thread_info else DEFAULT_FORMAT)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    logger = logging.getLogger(app_name)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size,
                backupCount=backup_count
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

            logger.info(f"Logging to file: {log_file}")
        except OSError as e:
            logger.error(f"Failed to setup file logging: {e}")

    logger.debug(f"Logging initialized for {app_name} at level {log_level}")
    return logger
