"""explorAble location memories engine.

This package syncs records authored offline, detects nearby previously
visited places and "on this day" memories, and dispatches notifications
for them from both the foreground app and OS background tasks.

Subpackages:
    sync/  — Offline reconciliation and deduplication

Core modules:
    base           — Capability ABCs (RemoteStore, LocalStore, PushChannel, ...) and shared types
    config_loader  — Load/validate/hot-reload memories_config.yaml
    geo            — Great-circle distance
    state          — DetectionState and HomeZone
    local_store    — Typed access to the device key-value store
    home           — Home-zone resolution
    proximity      — Proximity detector
    recall         — "On this day" detector
    notifications  — Two-phase notification dispatch and message composition
    lifecycle      — Foreground timer / background task arbitration
"""

from explorable.memories.base import (
    BackgroundTasks,
    Clock,
    Coordinate,
    DispatchError,
    LocalStore,
    LocationProvider,
    MemoryItem,
    Permissions,
    ProximityPlace,
    PushChannel,
    RemoteStore,
    RemoteStoreError,
)
from explorable.memories.config_loader import MemoriesConfig, get_memories_config
from explorable.memories.state import DetectionState, HomeZone

__all__ = [
    "BackgroundTasks",
    "Clock",
    "Coordinate",
    "DetectionState",
    "DispatchError",
    "HomeZone",
    "LocalStore",
    "LocationProvider",
    "MemoriesConfig",
    "MemoryItem",
    "Permissions",
    "ProximityPlace",
    "PushChannel",
    "RemoteStore",
    "RemoteStoreError",
    "get_memories_config",
]
