"""
Process-wide logging.

- rotating file log under settings.LOG_DIR (5 MB, 3 backups) plus stdout
- DatabaseLogHandler mirrors INFO and above into the `logs` table, which is
  what the operator sees in the web UI
"""
import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional

import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("bluek9")


class DatabaseLogHandler(logging.Handler):
    """Write log records into storage.add_log().

    Records emitted while a record is being stored (sqlite errors logging
    themselves) are dropped instead of recursing.
    """

    def __init__(self, storage, level=logging.INFO):
        super().__init__(level)
        self.storage = storage
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self._local, "busy", False):
            return
        self._local.busy = True
        try:
            data = getattr(record, "data", None)
            self.storage.add_log(record.levelname.lower(), record.getMessage(), data,
                                 timestamp_ms=int(record.created * 1000))
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False


def setup_logging(log_dir: str = settings.LOG_DIR, level: str = settings.LOG_LEVEL,
                  storage=None) -> logging.Logger:
    os.makedirs(log_dir, exist_ok=True)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Re-running setup (tests, reloads) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fh = RotatingFileHandler(os.path.join(log_dir, "bluek9.log"), maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(sh)

    if storage is not None:
        attach_database_handler(storage)
    return logger


def attach_database_handler(storage) -> Optional[DatabaseLogHandler]:
    for handler in logger.handlers:
        if isinstance(handler, DatabaseLogHandler):
            return None
    handler = DatabaseLogHandler(storage)
    logger.addHandler(handler)
    return handler
