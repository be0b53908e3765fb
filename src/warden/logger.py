"""
Logging setup built on loguru.

Modules obtain a bound logger with ``get_logger(__name__)``; the server and
CLI call ``setup_logging`` once at startup.
"""

import sys
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"name": "warden"})


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure loguru sinks.

    Args:
        level: Minimum level for all sinks.
        log_file: Optional path of a rotating log file.
    """
    _logger.remove()
    _logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        _logger.add(
            log_file,
            level=level.upper(),
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=2,
        )


def get_logger(name: str):
    """Return the shared loguru logger bound to a module name."""
    return _logger.bind(name=name)
