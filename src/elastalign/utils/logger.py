"""Logging utilities"""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "elastalign.log"

# Path of the file handler installed by setup_logger
_log_file_path = None


def get_logs_directory() -> Path:
    """Get a writable logs directory, falling back to ./logs and ."""
    try:
        from elastalign.utils.platform_utils import get_logs_directory as _get_logs_dir
        log_dir = _get_logs_dir()
        test_file = log_dir / ".test_write"
        test_file.write_text("test")
        test_file.unlink()
        return log_dir
    except OSError:
        pass

    try:
        log_dir = Path("logs")
        log_dir.mkdir(parents=True, exist_ok=True)
        test_file = log_dir / ".test_write"
        test_file.write_text("test")
        test_file.unlink()
        return log_dir
    except OSError:
        pass

    return Path(".")


def setup_logger(name: str, level: int = logging.INFO, log_to_file: bool = True) -> logging.Logger:
    """Setup logger with console and file handlers"""
    global _log_file_path

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_to_file:
            try:
                log_file = get_logs_directory() / LOG_FILE_NAME
                file_handler = logging.FileHandler(str(log_file), mode='a', encoding='utf-8')
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                _log_file_path = log_file
                logger.debug(f"Logging to: {log_file.absolute()}")
            except OSError as e:
                print(f"Could not set up file logging: {e}", file=sys.stderr)

    return logger


def get_log_file_path() -> Optional[Path]:
    """Get the path to the log file"""
    return _log_file_path
