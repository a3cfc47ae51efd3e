import logging
import sys
from pathlib import Path
import config

LOGGER_NAME = "file_store"

FILE_FORMAT = '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logger(level: str = None, log_dir: str = None) -> logging.Logger:
    """Return the shared service logger, attaching its handlers on first use.

    The log file always records DEBUG detail; the console follows *level*
    (config.LOG_LEVEL by default).
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    console_level = logging.getLevelName((level or config.LOG_LEVEL).upper())
    if not isinstance(console_level, int):
        raise ValueError(f"Unknown log level: {level or config.LOG_LEVEL}")

    logs_dir = Path(log_dir or config.LOG_DIR)
    logs_dir.mkdir(exist_ok=True, parents=True)

    logger.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(logs_dir / f"{LOGGER_NAME}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger
