"""Tests for the lifecycle controller: timers, OS tasks and sync triggers."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from explorable.memories.base import RemoteKind
from explorable.memories.lifecycle import (
    LOCATION_TASK,
    PERIODIC_TASK,
    LifecycleController,
    LifecycleState,
    UserPreferences,
)
from explorable.memories.tests.conftest import (
    ORIGIN,
    TEST_NOW,
    TEST_USER_ID,
    FakeBackgroundTasks,
    FakeLocation,
    FakePermissions,
    offset,
)


@pytest.fixture
def permissions() -> FakePermissions:
    return FakePermissions()


@pytest.fixture
def location() -> FakeLocation:
    return FakeLocation()


@pytest.fixture
def tasks() -> FakeBackgroundTasks:
    return FakeBackgroundTasks()


@pytest.fixture
def away_from_home(profile) -> dict:
    """Profile whose explicit home is 20 km north of the test position."""
    profile["home_location"] = offset(ORIGIN, north_m=20_000).to_json()
    profile["home_radius"] = 1.0
    return profile


@pytest.fixture
def make_controller(remote, local_store, push, permissions, location, tasks, memories_config, clock):
    """Factory so tests can simulate a fresh process over the same local store."""

    def _make() -> LifecycleController:
        return LifecycleController.build(
            remote=remote,
            local_store=local_store,
            push=push,
            permissions=permissions,
            location=location,
            tasks=tasks,
            config=memories_config,
            clock=clock,
        )

    return _make


@pytest.fixture
def controller(make_controller) -> LifecycleController:
    return make_controller()


def _seed_nearby_spot(remote, north_m: float = 200, visits: int = 5) -> dict:
    point = offset(ORIGIN, north_m=north_m)
    return remote.seed(
        RemoteKind.LOCATIONS,
        user_id=TEST_USER_ID,
        name="Royal Arch",
        latitude=point.latitude,
        longitude=point.longitude,
        last_visited_at=(TEST_NOW - timedelta(days=10)).isoformat(),
        visit_count=visits,
    )


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestSessionStates:
    @pytest.mark.asyncio
    async def test_full_permissions(self, controller, tasks, away_from_home) -> None:
        state = await controller.start_session(TEST_USER_ID)
        assert state is LifecycleState.BACKGROUND_REGISTERED
        assert set(tasks.registered) == {LOCATION_TASK, PERIODIC_TASK}
        assert tasks.registered[PERIODIC_TASK]["interval_s"] == 24 * 3600

        controller.on_app_active()
        assert controller.state is LifecycleState.BOTH

        controller.on_app_background()
        assert controller.state is LifecycleState.BACKGROUND_REGISTERED
        assert not controller.foreground_running

    @pytest.mark.asyncio
    async def test_background_denied_degrades_to_foreground(
        self, controller, tasks, permissions, away_from_home
    ) -> None:
        permissions.background = False
        state = await controller.start_session(TEST_USER_ID)
        assert state is LifecycleState.NEITHER
        assert LOCATION_TASK not in tasks.registered
        assert PERIODIC_TASK in tasks.registered

        controller.on_app_active()
        assert controller.state is LifecycleState.FOREGROUND_ACTIVE
        controller.end_session()

    @pytest.mark.asyncio
    async def test_foreground_denied_never_starts_timer(
        self, controller, permissions, away_from_home
    ) -> None:
        permissions.foreground = False
        permissions.background = False
        await controller.start_session(TEST_USER_ID)
        controller.on_app_active()
        assert not controller.foreground_running
        assert controller.state is LifecycleState.NEITHER

    @pytest.mark.asyncio
    async def test_active_before_session_is_ignored(self, controller) -> None:
        controller.on_app_active()
        assert controller.state is LifecycleState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_opt_out_unregisters_tasks(self, controller, tasks, away_from_home) -> None:
        await controller.start_session(TEST_USER_ID)
        controller.on_app_active()
        await controller.opt_out()
        assert tasks.registered == {}
        assert controller.state is LifecycleState.TERMINATED
        assert not controller.foreground_running


class TestForegroundTimer:
    @pytest.mark.asyncio
    async def test_no_duplicate_timers(self, controller, away_from_home) -> None:
        await controller.start_session(TEST_USER_ID)
        controller.on_app_active()
        first = controller._timer
        controller.on_app_active()
        second = controller._timer

        assert first is not second
        await asyncio.gather(first, return_exceptions=True)
        assert first.cancelled()
        assert not second.done()
        controller.end_session()

    @pytest.mark.asyncio
    async def test_runs_immediately_and_persists_cooldown(
        self, controller, remote, local, away_from_home
    ) -> None:
        spot = _seed_nearby_spot(remote)
        await controller.start_session(TEST_USER_ID)
        controller.on_app_active()
        await _settle()

        assert len(remote.rows(RemoteKind.NOTIFICATIONS)) == 1
        stored = await local.load_detection_state(TEST_USER_ID)
        assert f"spot-{spot['id']}" in stored.cooldowns
        controller.end_session()

    @pytest.mark.asyncio
    async def test_background_cancel_is_synchronous(
        self, controller, location, away_from_home
    ) -> None:
        await controller.start_session(TEST_USER_ID)
        controller.on_app_active()
        controller.on_app_background()
        await _settle()
        assert location.calls == 0

    @pytest.mark.asyncio
    async def test_missing_position_is_tolerated(
        self, controller, location, remote, away_from_home
    ) -> None:
        location.position = None
        _seed_nearby_spot(remote)
        await controller.start_session(TEST_USER_ID)
        controller.on_app_active()
        await _settle()
        assert location.calls == 1
        assert controller.foreground_running
        assert remote.rows(RemoteKind.NOTIFICATIONS) == []
        controller.end_session()


class TestBackgroundLocation:
    @pytest.mark.asyncio
    async def test_cold_process_shares_cooldowns(
        self, make_controller, remote, tasks, clock, away_from_home
    ) -> None:
        _seed_nearby_spot(remote)
        await make_controller().start_session(TEST_USER_ID)
        handler = tasks.registered[LOCATION_TASK]["handler"]

        await handler([ORIGIN])
        assert len(remote.rows(RemoteKind.NOTIFICATIONS)) == 1

        # A fresh process: only the local store carries state over.
        clock.advance(minutes=31)
        cold = make_controller()
        await cold.handle_background_location(TEST_USER_ID, [offset(ORIGIN, east_m=5), ORIGIN])
        assert len(remote.rows(RemoteKind.NOTIFICATIONS)) == 1

    @pytest.mark.asyncio
    async def test_proximity_preference_off(self, controller, remote, away_from_home) -> None:
        away_from_home["notification_preferences"] = {"proximity": False}
        _seed_nearby_spot(remote)
        await controller.handle_background_location(TEST_USER_ID, [ORIGIN])
        assert remote.rows(RemoteKind.NOTIFICATIONS) == []

    @pytest.mark.asyncio
    async def test_proximity_distance_preference(self, controller, remote, away_from_home) -> None:
        away_from_home["notification_preferences"] = {"proximity_distance": 1000}
        _seed_nearby_spot(remote, north_m=800)
        await controller.handle_background_location(TEST_USER_ID, [ORIGIN])
        assert len(remote.rows(RemoteKind.NOTIFICATIONS)) == 1

    @pytest.mark.asyncio
    async def test_errors_are_contained(self, controller, remote, away_from_home) -> None:
        remote.offline = True
        await controller.handle_background_location(TEST_USER_ID, [ORIGIN])
        await controller.handle_background_location(TEST_USER_ID, [])


class TestBackgroundTick:
    @pytest.mark.asyncio
    async def test_recall_once_per_day(self, controller, remote, clock, profile) -> None:
        remote.seed(
            RemoteKind.ACTIVITIES, user_id=TEST_USER_ID, name="Flatirons Loop",
            start_time="2023-03-15T14:00:00+00:00",
        )
        await controller.handle_background_tick(TEST_USER_ID)
        await controller.handle_background_tick(TEST_USER_ID)
        rows = remote.rows(RemoteKind.NOTIFICATIONS)
        assert len(rows) == 1
        assert rows[0]["type"] == "memory"
        assert rows[0]["title"] == "📅 1 year ago today"

        remote.seed(
            RemoteKind.ACTIVITIES, user_id=TEST_USER_ID, name="Sunrise Run",
            start_time="2023-03-16T06:00:00+00:00",
        )
        clock.advance(days=1)
        await controller.handle_background_tick(TEST_USER_ID)
        assert len(remote.rows(RemoteKind.NOTIFICATIONS)) == 2

    @pytest.mark.asyncio
    async def test_memories_preference_off(self, controller, remote, profile) -> None:
        profile["notification_preferences"] = {"memories": False}
        remote.seed(
            RemoteKind.ACTIVITIES, user_id=TEST_USER_ID, name="Flatirons Loop",
            start_time="2023-03-15T14:00:00+00:00",
        )
        await controller.handle_background_tick(TEST_USER_ID)
        assert remote.rows(RemoteKind.NOTIFICATIONS) == []

    @pytest.mark.asyncio
    async def test_failed_write_retries_same_day(self, controller, remote, local, profile) -> None:
        remote.seed(
            RemoteKind.ACTIVITIES, user_id=TEST_USER_ID, name="Flatirons Loop",
            start_time="2023-03-15T14:00:00+00:00",
        )
        remote.fail_insert_when = lambda kind, rec: kind is RemoteKind.NOTIFICATIONS
        await controller.handle_background_tick(TEST_USER_ID)
        assert await local.get_last_recall_date(TEST_USER_ID) is None

        remote.fail_insert_when = None
        await controller.handle_background_tick(TEST_USER_ID)
        assert len(remote.rows(RemoteKind.NOTIFICATIONS)) == 1


class TestSyncTriggers:
    @pytest.mark.asyncio
    async def test_sign_in_reconciles(self, controller, remote, local) -> None:
        await local.save_collection(
            "activities",
            [{"id": "local-1", "name": "Morning Ride", "startTime": "2023-05-01T08:00:00Z"}],
        )
        result = await controller.on_sign_in(TEST_USER_ID)
        assert result.total_pushed == 1
        assert len(remote.rows(RemoteKind.ACTIVITIES)) == 1

    @pytest.mark.asyncio
    async def test_connectivity_without_session(self, controller) -> None:
        assert await controller.on_connectivity_regained() is None

    @pytest.mark.asyncio
    async def test_connectivity_with_session(self, controller, away_from_home) -> None:
        await controller.start_session(TEST_USER_ID)
        result = await controller.on_connectivity_regained()
        assert result.status == "success"


class TestUserPreferences:
    def test_defaults_enabled(self) -> None:
        prefs = UserPreferences.from_profile(None)
        assert prefs.memories_enabled and prefs.proximity_enabled
        assert prefs.proximity_distance_m is None

    def test_json_string_preferences(self) -> None:
        prefs = UserPreferences.from_profile(
            {"notification_preferences": '{"memories": false, "proximity_distance": "750"}'}
        )
        assert not prefs.memories_enabled
        assert prefs.proximity_distance_m == 750.0
