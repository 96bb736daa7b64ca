"""
Logging configuration shared by the API server and scripts
"""

import logging
import sys
from typing import Optional

from config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every request or statement at INFO
NOISY_LOGGERS = ("aiohttp.access", "sqlalchemy.engine", "httpx", "uvicorn.access")


def configure_logging(level: Optional[str] = None) -> None:
    """Install one stream handler on the root logger (idempotent)"""
    log_level = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    if not any(getattr(handler, "_treasury_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._treasury_handler = True
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
