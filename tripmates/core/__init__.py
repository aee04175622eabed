"""Core utilities for Tripmates."""

from .config import SyncSettings
from .identity import StaticIdentityProvider, SupabaseIdentityProvider, acquire_identity
from .session_store import (
    CollectionPath,
    InMemorySessionStore,
    StoredRecord,
    SupabaseSessionStore,
    collection_path,
)

__all__ = [
    "CollectionPath",
    "InMemorySessionStore",
    "StaticIdentityProvider",
    "StoredRecord",
    "SupabaseIdentityProvider",
    "SupabaseSessionStore",
    "SyncSettings",
    "acquire_identity",
    "collection_path",
]
