"""Shared fixtures and in-memory capability fakes for the memories test suite."""

from __future__ import annotations

import copy
import math
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from explorable.memories.base import (
    BackgroundTasks,
    Clock,
    Coordinate,
    LocalStore,
    LocationProvider,
    Permissions,
    PushChannel,
    QueryFilter,
    RemoteKind,
    RemoteStore,
    RemoteStoreError,
    to_utc,
)
from explorable.memories.config_loader import MemoriesConfig, load_memories_config
from explorable.memories.local_store import LocalEntityStore

# Canonical test user ID
TEST_USER_ID = "12345678-1234-5678-1234-567812345678"
TEST_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

# Somewhere in Boulder, CO
ORIGIN = Coordinate(40.0150, -105.2705)


def offset(origin: Coordinate, north_m: float = 0.0, east_m: float = 0.0) -> Coordinate:
    """Coordinate displaced by the given meters (small-distance approximation)."""
    lat = origin.latitude + north_m / 111_195.0
    lon = origin.longitude + east_m / (111_195.0 * math.cos(math.radians(origin.latitude)))
    return Coordinate(lat, lon)


# ---------------------------------------------------------------------------
# Capability fakes
# ---------------------------------------------------------------------------


class FrozenClock(Clock):
    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def _comparable(value):
    if isinstance(value, (datetime, str)):
        return to_utc(value)
    return value


class InMemoryRemoteStore(RemoteStore):
    """Tables of dict rows with the QueryFilter semantics of the real store.

    Failure knobs:
        offline:          every call raises RemoteStoreError.
        fail_queries:     kinds whose query raises.
        fail_insert_when: predicate(kind, record) → True makes the insert raise.
        return_no_id:     inserts succeed but return None.
    """

    def __init__(self) -> None:
        self.tables: dict[RemoteKind, list[dict]] = {kind: [] for kind in RemoteKind}
        self.offline = False
        self.fail_queries: set[RemoteKind] = set()
        self.fail_insert_when = None
        self.return_no_id = False
        self.query_calls: list[tuple[RemoteKind, QueryFilter]] = []
        self.insert_calls: list[tuple[RemoteKind, dict]] = []

    def seed(self, kind: RemoteKind, **row) -> dict:
        row.setdefault("id", str(uuid.uuid4()))
        self.tables[kind].append(row)
        return row

    def rows(self, kind: RemoteKind) -> list[dict]:
        return self.tables[kind]

    async def query(self, kind: RemoteKind, flt: QueryFilter) -> list[dict]:
        self.query_calls.append((kind, flt))
        if self.offline or kind in self.fail_queries:
            raise RemoteStoreError(f"query on {kind.value} failed: network unreachable")
        owner_col = "id" if kind is RemoteKind.PROFILES else "user_id"
        out = []
        for row in self.tables[kind]:
            if row.get(owner_col) != flt.owner_id:
                continue
            if any(row.get(c) != v for c, v in flt.equals.items()):
                continue
            if any(row.get(c) is None for c in flt.not_null):
                continue
            if any(
                row.get(c) is None or _comparable(row.get(c)) < _comparable(v)
                for c, v in flt.gte.items()
            ):
                continue
            if any(
                row.get(c) is None or _comparable(row.get(c)) > _comparable(v)
                for c, v in flt.lte.items()
            ):
                continue
            selected = {c: row.get(c) for c in flt.columns} if flt.columns else row
            out.append(copy.deepcopy(selected))
        return out

    async def insert(self, kind: RemoteKind, record: dict) -> str | None:
        self.insert_calls.append((kind, record))
        if self.offline:
            raise RemoteStoreError(f"insert into {kind.value} failed: network unreachable")
        if self.fail_insert_when and self.fail_insert_when(kind, record):
            raise RemoteStoreError(f"insert into {kind.value} rejected")
        row = dict(record)
        row["id"] = str(uuid.uuid4())
        self.tables[kind].append(row)
        return None if self.return_no_id else row["id"]

    async def update(self, kind: RemoteKind, row_id: str, patch: dict) -> None:
        if self.offline:
            raise RemoteStoreError(f"update of {kind.value} failed: network unreachable")
        for row in self.tables[kind]:
            if row.get("id") == row_id:
                row.update(patch)


class InMemoryLocalStore(LocalStore):
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FakePushChannel(PushChannel):
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.accept = True
        self.error: Exception | None = None

    async def send(self, token, title, body, payload, category) -> bool:
        if self.error is not None:
            raise self.error
        self.sent.append(
            {"token": token, "title": title, "body": body, "payload": payload, "category": category}
        )
        return self.accept


class FakePermissions(Permissions):
    def __init__(self, foreground: bool = True, background: bool = True) -> None:
        self.foreground = foreground
        self.background = background
        self.requests = 0

    async def request_foreground_location(self) -> bool:
        self.requests += 1
        return self.foreground

    async def request_background_location(self) -> bool:
        self.requests += 1
        return self.background


class FakeLocation(LocationProvider):
    def __init__(self, position: Coordinate | None = ORIGIN) -> None:
        self.position = position
        self.calls = 0

    async def current_position(self) -> Coordinate | None:
        self.calls += 1
        return self.position


class FakeBackgroundTasks(BackgroundTasks):
    def __init__(self) -> None:
        self.registered: dict[str, dict] = {}

    async def register_location_task(self, name, handler, *, time_interval_s, distance_interval_m):
        self.registered[name] = {
            "handler": handler,
            "time_interval_s": time_interval_s,
            "distance_interval_m": distance_interval_m,
        }

    async def register_periodic_task(self, name, handler, *, interval_s):
        self.registered[name] = {"handler": handler, "interval_s": interval_s}

    async def unregister(self, name):
        self.registered.pop(name, None)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def memories_config() -> MemoriesConfig:
    """Load the real memories config for tests."""
    return load_memories_config()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def local_store() -> InMemoryLocalStore:
    return InMemoryLocalStore()


@pytest.fixture
def local(local_store: InMemoryLocalStore) -> LocalEntityStore:
    return LocalEntityStore(local_store)


@pytest.fixture
def push() -> FakePushChannel:
    return FakePushChannel()


@pytest.fixture
def profile(remote: InMemoryRemoteStore) -> dict:
    """A profile with push enabled and default preferences."""
    return remote.seed(
        RemoteKind.PROFILES,
        id=TEST_USER_ID,
        push_token="ExponentPushToken[test-device]",
        notifications_enabled=True,
        notification_preferences={},
        home_location=None,
        home_radius=None,
    )
