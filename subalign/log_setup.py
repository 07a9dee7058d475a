"""Logging configuration for SubAlign."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from tqdm import tqdm

from .exceptions import FileSystemError
from .utils import ensure_dir_exists

# threadName tells orchestrator workers apart in interleaved output
DEFAULT_LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(threadName)s %(name)s:%(lineno)d] - %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

NOISY_LOGGERS = ("urllib3", "filelock", "huggingface_hub", "transformers", "numba")


class TqdmStreamHandler(logging.StreamHandler):
    """Console handler that prints above active tqdm bars instead of through them."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    log_level: int = logging.INFO,
    log_dir: str = "logs",
    log_file: str = "subalign.log",
    max_bytes: int = 10 * 1024 * 1024, # 10 MB
    backup_count: int = 5,
) -> None:
    """
    Configures the root logger for console and rotating-file output.

    The CLI calls this twice: once before the config is read, so loading
    errors are logged somewhere, and again with the configured log_dir.
    Each call replaces the handlers of the previous one.

    Args:
        log_level: Minimum level for the console.
        log_dir: Directory for the log file; created if missing.
        log_file: Log file name inside log_dir.
        max_bytes: Size at which the log file is rotated.
        backup_count: Number of rotated files to keep.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    root.setLevel(log_level)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT)

    console = TqdmStreamHandler(sys.stdout)
    console.setFormatter(formatter)
    console.setLevel(log_level)
    root.addHandler(console)

    log_path = os.path.join(log_dir, log_file)
    try:
        ensure_dir_exists(log_dir)
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8')
    except (FileSystemError, OSError) as e:
        root.error(f"File logging disabled; could not open {log_path}: {e}")
    else:
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        root.debug(f"Logging to {log_path}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
