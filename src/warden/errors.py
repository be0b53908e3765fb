"""
Exception types raised across the session lifecycle.
"""


class WardenError(Exception):
    """Base class for warden errors."""


class ConnectionTimeoutError(WardenError):
    """The remote client did not establish a connection in time."""


class ProxySetupError(WardenError):
    """The configured upstream proxy could not be wrapped locally."""


class InvalidBundleError(WardenError):
    """A bulk-import upload is not a zip archive."""


class ClientDriverError(WardenError):
    """The remote-client driver could not be loaded."""
