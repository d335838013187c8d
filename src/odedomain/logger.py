"""
Thin wrapper around Python's ``logging`` module for the ``odedomain``
logger hierarchy.

Usage
-----
>>> from odedomain.logger import get_logger
>>> log = get_logger(__name__)
>>> log.warning("step size could not be reduced")
"""

import logging
import sys
from typing import Optional, Union

ROOT = "odedomain"


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger under the ``odedomain`` hierarchy.

    Module names such as ``odedomain.domain`` inherit from the package root
    logger, so a single ``set_level()`` call controls everything.
    """
    return logging.getLogger(name or ROOT)


def set_level(level: Union[int, str] = logging.INFO) -> None:
    """Set the log level for all odedomain loggers at once."""
    logging.getLogger(ROOT).setLevel(level)


def setup(level: Union[int, str] = logging.INFO, stream=None) -> None:
    """Attach a stderr handler with the odedomain format.

    Extra calls are no-ops.
    """
    root = logging.getLogger(ROOT)
    if root.handlers:
        return
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)-7s: %(name)s: %(message)s"))
    root.addHandler(handler)
    set_level(level)
