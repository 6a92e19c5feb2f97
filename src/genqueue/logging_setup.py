"""Logging configuration for the genqueue service."""

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are only interesting when something goes wrong
NOISY_LOGGERS = ("httpx", "httpcore", "redis")


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Install a single stderr handler on the root logger.

    Safe to call more than once, existing root handlers are replaced.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
