"""
Logging setup for torbox-rules

Root logger always runs at DEBUG so the log file captures everything;
the console handler honours the configured level.
"""

import logging
import sys
from pathlib import Path

LOG_FORMAT_SIMPLE = '%(asctime)s [%(levelname)s] %(message)s'
LOG_FORMAT_DETAILED = '%(asctime)s [%(levelname)s] %(module)s.%(funcName)s:%(lineno)d [%(threadName)s] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config, trace_mode: bool = False):
    """
    Configure root logger with file and console handlers

    Args:
        config: Config object providing get_log_level() and get_log_file()
        trace_mode: Use detailed format (module/function/line/thread)
    """
    log_level = getattr(logging, str(config.get_log_level()).upper(), logging.INFO)
    log_format = LOG_FORMAT_DETAILED if trace_mode else LOG_FORMAT_SIMPLE

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers when called twice (tests, gunicorn reload)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format, datefmt=DATE_FORMAT)

    # File handler - everything at DEBUG
    log_file = Path(config.get_log_file())
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
    except OSError as e:
        print(f"WARNING: Failed to setup file logging at {log_file}: {type(e).__name__}: {e}", file=sys.stderr)
        print("WARNING: Continuing with console logging only", file=sys.stderr)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Quieten chatty libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger"""
    return logging.getLogger(name)
