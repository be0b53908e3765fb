"""
Persistent storage: filesystem primitives and token records.
"""

from warden.storage.paths import PathStore, SINGLETON_LOCK_FILES
from warden.storage.token_store import FileTokenStore, TokenStore

__all__ = [
    "PathStore",
    "SINGLETON_LOCK_FILES",
    "FileTokenStore",
    "TokenStore",
]
