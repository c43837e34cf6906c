"""
logging_config.py — Centralized Logging Configuration for the Bot Order Sync Service

Configures one logging setup for the API process, the saga worker threads and
the order status listener.

Features:
    • Combined console and file logging output
    • Process and thread tagging (side effects run on worker threads)
    • Reduced verbosity for external dependencies (pika, httpx)
"""

import logging
import sys

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d %(threadName)s] - %(name)s - %(message)s'


def setup_logging(level=logging.INFO, log_file: str | None = "order_sync.log"):
    """
    Configures the global logging system for the application.

    Args:
        level (int): Root log level, INFO by default.
        log_file (str | None): Path of the persistent log file. ``None`` logs to stdout only.

    Notes:
        Calling it twice replaces the handlers instead of stacking them
        (``force=True``), so the API and the listener thread share one config.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a logger for a given module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.

    Returns:
        logging.Logger: A logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
