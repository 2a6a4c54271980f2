# logger.py
# Logging setup shared by every module

import logging
import sys

from config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = LOG_LEVEL):
    """Configure the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            stream=sys.stdout,
            level=level,
            format=LOG_FORMAT,
            datefmt=DATE_FORMAT,
        )
    root.setLevel(level)


def log_startup(app_title: str, database_name):
    log = logging.getLogger("startup")
    log.info("=" * 60)
    log.info("%s started", app_title)
    log.info("Python: %s", sys.version.split()[0])
    log.info("Database: %s", database_name or "not configured")
    log.info("=" * 60)
