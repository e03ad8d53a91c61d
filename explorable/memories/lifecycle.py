"""Session lifecycle: foreground timer, OS background tasks, sync triggers.

The host application forwards its lifecycle hooks here:

    sign-in               → on_sign_in()           → reconciliation pass
    connectivity regained → on_connectivity_regained()
    session start         → start_session()        → home zone, permissions, OS tasks
    app active            → on_app_active()        → foreground proximity timer
    app background        → on_app_background()    → timer cancelled synchronously

OS background tasks may run in a fresh process that shares nothing with the
foreground one, so ``handle_background_location`` and
``handle_background_tick`` always start from state persisted in the local
store and write it back when done.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum

from explorable.memories.base import (
    BackgroundTasks,
    Clock,
    Coordinate,
    DispatchError,
    LocalStore,
    LocationProvider,
    Permissions,
    PushChannel,
    QueryFilter,
    RemoteKind,
    RemoteStore,
    RemoteStoreError,
    SystemClock,
)
from explorable.memories.config_loader import MemoriesConfig, get_memories_config
from explorable.memories.home import HomeZoneEstimator
from explorable.memories.local_store import LocalEntityStore
from explorable.memories.notifications import (
    DispatchResult,
    NotificationDispatcher,
    ProximityNotifier,
    RecallNotifier,
)
from explorable.memories.proximity import ProximityDetector
from explorable.memories.recall import RecallDetector
from explorable.memories.state import DetectionState
from explorable.memories.sync.reconcile import ReconcileResult, ReconciliationEngine

logger = logging.getLogger("explorable.memories.lifecycle")

LOCATION_TASK = "background-location-task"
PERIODIC_TASK = "background-fetch-memories"


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    FOREGROUND_ACTIVE = "foreground_active"
    BACKGROUND_REGISTERED = "background_registered"
    BOTH = "both"
    NEITHER = "neither"
    TERMINATED = "terminated"


@dataclass
class UserPreferences:
    """Feature toggles from ``profiles.notification_preferences``."""

    memories_enabled: bool = True
    proximity_enabled: bool = True
    proximity_distance_m: float | None = None

    @classmethod
    def from_profile(cls, profile: dict | None) -> "UserPreferences":
        prefs = (profile or {}).get("notification_preferences") or {}
        if isinstance(prefs, str):
            try:
                prefs = json.loads(prefs)
            except ValueError:
                prefs = {}
        distance = prefs.get("proximity_distance")
        try:
            distance_m = float(distance) if distance else None
        except (TypeError, ValueError):
            distance_m = None
        return cls(
            memories_enabled=prefs.get("memories") is not False,
            proximity_enabled=prefs.get("proximity") is not False,
            proximity_distance_m=distance_m,
        )


class LifecycleController:
    """Arbitrate between the foreground timer and OS background tasks.

    Usage::

        controller = LifecycleController.build(
            remote=remote_store,
            local_store=JsonFileLocalStore(),
            push=ExpoPushChannel(),
            permissions=platform.permissions,
            location=platform.location,
            tasks=platform.background_tasks,
        )
        await controller.start_session(user_id)
        controller.on_app_active()
    """

    def __init__(
        self,
        *,
        remote: RemoteStore,
        local: LocalEntityStore,
        reconciler: ReconciliationEngine,
        home: HomeZoneEstimator,
        proximity: ProximityDetector,
        proximity_notifier: ProximityNotifier,
        recall: RecallDetector,
        recall_notifier: RecallNotifier,
        permissions: Permissions,
        location: LocationProvider,
        tasks: BackgroundTasks,
        config: MemoriesConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._reconciler = reconciler
        self._home = home
        self._proximity = proximity
        self._proximity_notifier = proximity_notifier
        self._recall = recall
        self._recall_notifier = recall_notifier
        self._permissions = permissions
        self._location = location
        self._tasks = tasks
        self._config = config or get_memories_config()
        self._clock = clock or SystemClock()

        self._lifecycle = LifecycleState.UNINITIALIZED
        self._owner_id: str | None = None
        self._state: DetectionState | None = None
        self._foreground_allowed = False
        self._background_registered = False
        self._timer: asyncio.Task | None = None
        self._pass_lock = asyncio.Lock()

    @classmethod
    def build(
        cls,
        *,
        remote: RemoteStore,
        local_store: LocalStore,
        push: PushChannel | None,
        permissions: Permissions,
        location: LocationProvider,
        tasks: BackgroundTasks,
        config: MemoriesConfig | None = None,
        clock: Clock | None = None,
    ) -> "LifecycleController":
        """Wire every component from the raw capabilities."""
        config = config or get_memories_config()
        clock = clock or SystemClock()
        local = LocalEntityStore(local_store)
        dispatcher = NotificationDispatcher(remote, push, clock)
        return cls(
            remote=remote,
            local=local,
            reconciler=ReconciliationEngine(remote, local, clock),
            home=HomeZoneEstimator(remote, local, config),
            proximity=ProximityDetector(remote, config, clock),
            proximity_notifier=ProximityNotifier(dispatcher, config, clock),
            recall=RecallDetector(remote, config),
            recall_notifier=RecallNotifier(dispatcher),
            permissions=permissions,
            location=location,
            tasks=tasks,
            config=config,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle

    @property
    def foreground_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def background_registered(self) -> bool:
        return self._background_registered

    @property
    def reconciler(self) -> ReconciliationEngine:
        return self._reconciler

    @property
    def home(self) -> HomeZoneEstimator:
        return self._home

    def _refresh_state(self) -> None:
        if self._lifecycle in (LifecycleState.UNINITIALIZED, LifecycleState.TERMINATED):
            return
        fg, bg = self.foreground_running, self._background_registered
        if fg and bg:
            self._lifecycle = LifecycleState.BOTH
        elif fg:
            self._lifecycle = LifecycleState.FOREGROUND_ACTIVE
        elif bg:
            self._lifecycle = LifecycleState.BACKGROUND_REGISTERED
        else:
            self._lifecycle = LifecycleState.NEITHER

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def start_session(self, owner_id: str) -> LifecycleState:
        """Resolve the home zone, request permissions and register OS tasks.

        Permission denial degrades to foreground-only operation; it never raises.
        """
        self.stop_foreground()
        self._lifecycle = LifecycleState.INITIALIZING
        self._owner_id = owner_id

        self._state = await self._local.load_detection_state(owner_id)
        self._state.home = await self._home.resolve_home(owner_id)

        self._foreground_allowed = await self._permissions.request_foreground_location()
        background_allowed = await self._permissions.request_background_location()
        sched = self._config.scheduler

        self._background_registered = False
        if background_allowed:
            try:
                await self._tasks.register_location_task(
                    LOCATION_TASK,
                    lambda samples: self.handle_background_location(owner_id, samples),
                    time_interval_s=sched.location_time_interval_s,
                    distance_interval_m=sched.location_distance_interval_m,
                )
                self._background_registered = True
            except Exception as exc:
                logger.warning("Background location registration failed: %s", exc)
        else:
            logger.info("Background location permission denied; foreground checks only")

        try:
            await self._tasks.register_periodic_task(
                PERIODIC_TASK,
                lambda: self.handle_background_tick(owner_id),
                interval_s=sched.periodic_interval_hours * 3600,
            )
        except Exception as exc:
            logger.warning("Background fetch registration failed: %s", exc)

        self._refresh_state()
        logger.info(
            "Memory services initialized for %s: state=%s foreground_permission=%s",
            owner_id, self._lifecycle.value, self._foreground_allowed,
        )
        return self._lifecycle

    def end_session(self) -> None:
        """Stop in-process work.  OS tasks stay registered for the next launch."""
        self.stop_foreground()
        self._lifecycle = LifecycleState.TERMINATED
        self._owner_id = None
        self._state = None

    async def opt_out(self) -> None:
        """User disabled memories: stop everything, including OS tasks."""
        self.stop_foreground()
        for name in (LOCATION_TASK, PERIODIC_TASK):
            try:
                await self._tasks.unregister(name)
            except Exception as exc:
                logger.warning("Could not unregister %s: %s", name, exc)
        self._background_registered = False
        self._lifecycle = LifecycleState.TERMINATED

    # ------------------------------------------------------------------
    # Foreground timer
    # ------------------------------------------------------------------

    def on_app_active(self) -> None:
        """Start (or restart) the foreground proximity timer."""
        if self._owner_id is None or self._lifecycle is LifecycleState.TERMINATED:
            logger.debug("on_app_active ignored: no active session")
            return
        if not self._foreground_allowed:
            logger.info("Foreground location not granted; timer not started")
            return
        self.stop_foreground()
        self._timer = asyncio.get_running_loop().create_task(
            self._foreground_loop(self._owner_id), name="explorable-foreground-proximity"
        )
        self._refresh_state()

    def on_app_background(self) -> None:
        self.stop_foreground()

    def stop_foreground(self) -> None:
        """Cancel the foreground timer synchronously (no await needed)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.debug("Foreground proximity timer stopped")
        self._refresh_state()

    async def _foreground_loop(self, owner_id: str) -> None:
        interval = self._config.scheduler.foreground_interval.total_seconds()
        while True:
            try:
                position = await self._location.current_position()
                if position is not None:
                    await self.run_proximity_pass(owner_id, position)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Foreground proximity check failed for %s: %s", owner_id, exc)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_proximity_pass(
        self, owner_id: str, position: Coordinate, state: DetectionState | None = None
    ) -> DispatchResult | None:
        """Detect nearby places and notify; persists the detection state.

        Uses the session's state when ``state`` is None and the session
        belongs to ``owner_id``; otherwise loads it cold from the local store.
        """
        async with self._pass_lock:
            if state is None:
                if self._state is not None and self._owner_id == owner_id:
                    state = self._state
                else:
                    state = await self._local.load_detection_state(owner_id)
                    state.home = await self._home.resolve_home(owner_id)

            prefs = await self._preferences(owner_id)
            if not prefs.proximity_enabled:
                logger.debug("Proximity alerts disabled for %s", owner_id)
                return None

            result = None
            try:
                places = await self._proximity.detect(
                    position, owner_id, state, prefs.proximity_distance_m
                )
                if places:
                    result = await self._proximity_notifier.notify(owner_id, places, state)
            except (RemoteStoreError, DispatchError) as exc:
                logger.warning("Proximity pass failed for %s: %s", owner_id, exc)

            now = self._clock.now()
            state.prune(now, self._config.proximity.cooldown)
            merged = await self._local.save_detection_state(owner_id, state)
            state.merge(merged)
            return result

    async def run_recall_pass(self, owner_id: str) -> list[DispatchResult]:
        """Send "on this day" notifications, at most once per calendar day."""
        today = self._clock.now().date()
        if await self._local.get_last_recall_date(owner_id) == today:
            logger.debug("Recall already sent today for %s", owner_id)
            return []

        prefs = await self._preferences(owner_id)
        if not prefs.memories_enabled:
            logger.debug("Memories disabled for %s", owner_id)
            return []

        groups = await self._recall.detect_recall(owner_id, today)
        results = await self._recall_notifier.notify(owner_id, groups, today)
        if len(results) == len(groups):
            await self._local.set_last_recall_date(owner_id, today)
        return results

    async def _preferences(self, owner_id: str) -> UserPreferences:
        try:
            rows = await self._remote.query(
                RemoteKind.PROFILES,
                QueryFilter(owner_id=owner_id, columns=["notification_preferences"]),
            )
        except RemoteStoreError as exc:
            logger.warning("Could not load preferences for %s, using defaults: %s", owner_id, exc)
            return UserPreferences()
        return UserPreferences.from_profile(rows[0] if rows else None)

    # ------------------------------------------------------------------
    # OS background entry points
    # ------------------------------------------------------------------

    async def handle_background_location(self, owner_id: str, samples: list[Coordinate]) -> None:
        """OS location task: run one proximity pass on the newest sample."""
        if not samples:
            return
        try:
            await self.run_proximity_pass(owner_id, samples[-1])
        except Exception as exc:
            logger.error("Background location task failed for %s: %s", owner_id, exc)

    async def handle_background_tick(self, owner_id: str) -> None:
        """OS periodic task: daily recall check."""
        try:
            await self.run_recall_pass(owner_id)
        except Exception as exc:
            logger.error("Background fetch task failed for %s: %s", owner_id, exc)

    # ------------------------------------------------------------------
    # Sync triggers
    # ------------------------------------------------------------------

    async def on_sign_in(self, owner_id: str) -> ReconcileResult:
        return await self._reconciler.reconcile(owner_id)

    async def on_connectivity_regained(self) -> ReconcileResult | None:
        if self._owner_id is None:
            logger.debug("Connectivity regained without a signed-in user; nothing to sync")
            return None
        return await self._reconciler.reconcile(self._owner_id)
