# src/gw_backend/logs.py
from __future__ import annotations

import logging
import sys
from typing import List

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_installed: List[logging.Handler] = []


class _BelowLevel(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Configure the root logger: INFO/WARNING on stdout, ERROR and above on
    stderr, so that failure classifications land on standard error.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    # Replace handlers from a previous call only, to avoid duplicate logging
    for handler in _installed:
        root.removeHandler(handler)
    _installed.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    out_handler = logging.StreamHandler(sys.stdout)
    out_handler.setFormatter(formatter)
    out_handler.addFilter(_BelowLevel(logging.ERROR))
    root.addHandler(out_handler)
    _installed.append(out_handler)

    err_handler = logging.StreamHandler(sys.stderr)
    err_handler.setFormatter(formatter)
    err_handler.setLevel(logging.ERROR)
    root.addHandler(err_handler)
    _installed.append(err_handler)

    return root
