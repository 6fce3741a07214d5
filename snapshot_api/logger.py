import logging
import logging.handlers
import os
import sys
from typing import Optional

DEFAULT_LOG_FILE_PATH = "data/snapshot_api.log"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# The due-backup poll fires every minute; APScheduler logs each run at INFO.
QUIET_LOGGERS = {
    "apscheduler.executors.default": logging.WARNING,
    "apscheduler.scheduler": logging.WARNING,
    "botocore": logging.WARNING,
    "boto3": logging.WARNING,
    "urllib3": logging.WARNING,
}


def setup_logging(level: Optional[str] = None, log_file_path: Optional[str] = None):
    """
    Configure the root logger: stdout plus a rotating file.

    ``LOG_LEVEL`` and ``LOG_FILE_PATH`` are read from the environment when
    no explicit values are given. An empty ``LOG_FILE_PATH`` disables the
    file handler.
    """
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    if log_file_path is None:
        log_file_path = os.environ.get("LOG_FILE_PATH", DEFAULT_LOG_FILE_PATH)

    root = logging.getLogger()
    root.setLevel(log_level)
    if root.hasHandlers():
        root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file_path:
        try:
            log_dir = os.path.dirname(log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path, maxBytes=10 * 1024 * 1024, backupCount=5  # 10 MB
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except Exception as e:
            root.error(f"Failed to create log file handler at {log_file_path}: {e}")

    logging.getLogger("snapshot_api").setLevel(log_level)
    if log_level != "DEBUG":
        for name, quiet_level in QUIET_LOGGERS.items():
            logging.getLogger(name).setLevel(quiet_level)

    logging.info(f"Logging configured with level {log_level}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
