"""Storage backends behind the tenant gateway."""
from __future__ import annotations

from webhook_service.storage.base import DataStore, Gte, In, Lt
from webhook_service.storage.memory import InMemoryDataStore
from webhook_service.storage.postgres import PostgresDataStore

__all__ = [
    "DataStore",
    "Gte",
    "In",
    "InMemoryDataStore",
    "Lt",
    "PostgresDataStore",
]
