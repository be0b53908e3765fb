"""
Loading of the configured remote-client driver.
"""

import importlib
from typing import Any

from warden.client.base import RemoteClient
from warden.errors import ClientDriverError
from warden.logger import get_logger

logger = get_logger(__name__)


def load_client_driver(dotted_path: str, settings: Any = None) -> RemoteClient:
    """
    Import and instantiate a driver given as ``package.module.ClassName``.

    The class is constructed with ``settings`` when it accepts an argument,
    and without arguments otherwise.
    """
    if not dotted_path or "." not in dotted_path:
        raise ClientDriverError(f"Invalid client driver path: {dotted_path!r}")

    module_path, class_name = dotted_path.rsplit(".", 1)
    try:
        module = importlib.import_module(module_path)
        driver_class = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ClientDriverError(f"Could not load driver {dotted_path}: {e}") from e

    if not (isinstance(driver_class, type) and issubclass(driver_class, RemoteClient)):
        raise ClientDriverError(f"{dotted_path} is not a RemoteClient")

    try:
        try:
            driver = driver_class(settings)
        except TypeError:
            driver = driver_class()
    except TypeError as e:
        raise ClientDriverError(f"Could not construct driver {dotted_path}: {e}") from e

    logger.info(f"Loaded remote client driver: {dotted_path}")
    return driver
