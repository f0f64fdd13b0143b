"""
logging_config.py — Centralized Logging Configuration for the Checkout Service

Configures one logging setup for the whole application so that the commit
path, the reconciler and every side-effect task write to the same sinks
in the same format.

Features:
    • Combined console and file logging output
    • Process ID tagging (uvicorn workers share one log file)
    • Level and file name taken from the environment (see config.py)
    • Reduced verbosity for pika, httpx and the SQLAlchemy engine
"""

import logging
import sys

from .config import LOG_FILE, LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'


def setup_logging(log_file: str = LOG_FILE, level: str = LOG_LEVEL):
    """
    Configures the global logging system for the application.

    Args:
        log_file (str): Path of the persistent log file. An empty string
            disables the file handler (stdout only).
        level (str): Root log level name, e.g. "INFO" or "DEBUG".
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )

    for noisy in ("pika", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a logger for a module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.

    Returns:
        logging.Logger: A logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
