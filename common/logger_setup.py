# common/logger_setup.py

import logging
import sys
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config.app_config import app_config

DEFAULT_LOG_LEVEL = app_config.LOG_LEVEL
# Logs go into a 'logs' subdirectory of the project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent # Goes up two levels from common/
LOG_DIR = PROJECT_ROOT / "logs"


class EncodingStreamHandler(logging.StreamHandler):
    """StreamHandler that degrades gracefully when the console cannot encode a record."""

    def emit(self, record):
        try:
            msg = self.format(record)
            stream = self.stream
            stream.write(msg + self.terminator)
            self.flush()
        except UnicodeEncodeError:
            try:
                stream = self.stream
                encoding = getattr(stream, "encoding", None) or sys.getdefaultencoding()
                stream.write(msg.encode(encoding, 'replace').decode(encoding) + self.terminator)
                self.flush()
            except Exception:
                self.handleError(record)
        except Exception:
            self.handleError(record)


def setup_logger(name="PbxConsole", level_str=None, log_to_file=None, log_to_console=True):
    """
    Set up a logger instance.

    File logging follows LOG_TO_FILE unless overridden; files rotate at 10MB
    and are named after the logger.
    """
    if level_str is None:
        level_str = DEFAULT_LOG_LEVEL
    if log_to_file is None:
        log_to_file = app_config.LOG_TO_FILE

    numeric_level = getattr(logging, level_str.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)
    logger.propagate = False # Prevents double logging if root logger is also configured

    # Clear existing handlers to avoid duplicates if called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - [%(threadName)s] - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
    )

    if log_to_console:
        console_handler = EncodingStreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(numeric_level)
        logger.addHandler(console_handler)

    if log_to_file:
        os.makedirs(LOG_DIR, exist_ok=True)
        log_file_path = LOG_DIR / f"{name.lower().replace(' ', '_')}.log"
        file_handler = RotatingFileHandler(
            log_file_path, maxBytes=10*1024*1024, backupCount=5, encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(numeric_level)
        logger.addHandler(file_handler)

    return logger
