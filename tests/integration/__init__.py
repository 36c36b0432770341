"""
Integration tests for the TM Parking engine

Integration tests focus on:
1. Entry/exit workflows through the service
2. Snapshot persistence through every store
3. Command processing and the CLI
4. Event handling after committed transitions
"""

from datetime import datetime, timezone

from tmparking.infrastructure.config import AppSettings
from tmparking.infrastructure.repositories import InMemorySnapshotStore, default_state


BASE_TIME = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


def make_memory_store(**settings) -> InMemorySnapshotStore:
    """In-memory store whose default state follows the given settings"""
    config = AppSettings(storage_backend="memory", **settings)
    return InMemorySnapshotStore(default_factory=lambda: default_state(config))
