"""
Remote client contract.

The remote client drives the automated browser and speaks the messaging
protocol. Warden only supervises it through the interfaces defined here.
"""

from warden.client.base import (
    ConnectCallbacks,
    ConnectOptions,
    EventKind,
    FATAL_STATUSES,
    RemoteClient,
    RemoteHandle,
    SocketState,
    StatusFind,
    Subscription,
)
from warden.client.loader import load_client_driver

__all__ = [
    "ConnectCallbacks",
    "ConnectOptions",
    "EventKind",
    "FATAL_STATUSES",
    "RemoteClient",
    "RemoteHandle",
    "SocketState",
    "StatusFind",
    "Subscription",
    "load_client_driver",
]
