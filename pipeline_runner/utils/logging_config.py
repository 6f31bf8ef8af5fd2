import logging
import sys
import os
from datetime import datetime
from typing import Optional

from pipeline_runner.core.config import LOG_DIR
from pipeline_runner.secrets.secret_store import SecretMaskingFilter, SecretStore


class ColoredFormatter(logging.Formatter):
    """Custom formatter to add colors to console output."""

    blue = "\x1b[38;5;39m"
    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"

    FORMATS = {
        logging.DEBUG: cyan + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno)
        # Levels outside the standard range
        if not log_fmt:
            log_fmt = self.format_str
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(
    level=logging.INFO,
    secrets: Optional[SecretStore] = None,
    log_dir: Optional[str] = LOG_DIR,
):
    """
    Configure root logging: coloured console on stderr plus a daily file.

    When *secrets* is given, every handler gets a SecretMaskingFilter so no
    credential value reaches the console or the log file. Pass
    ``log_dir=None`` to skip the file handler (CLI one-shot runs).
    """
    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    handlers = []

    # Console handler (stderr for uvicorn compatibility)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    handlers.append(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"runner_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_fmt = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_fmt)
        handlers.append(file_handler)

    for handler in handlers:
        if secrets is not None:
            handler.addFilter(SecretMaskingFilter(secrets))
        root_logger.addHandler(handler)

    # Force propagation for all relevant internal loggers
    for logger_name in ["pipeline_runner", "uvicorn", "uvicorn.error", "uvicorn.access", "main"]:
        named = logging.getLogger(logger_name)
        named.setLevel(level)
        named.propagate = True

    root_logger.info("Logging initialized (console%s).", " + file" if log_dir else "")
