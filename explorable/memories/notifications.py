"""Notification dispatch and message composition.

Dispatch is two-phase:

1. Write the in-app ``notifications`` row.  This is the durable record; if it
   fails the dispatch fails (``DispatchError``).
2. Relay a push message to the user's device.  Best effort: the outcome is
   returned as a ``RelayResult`` and never raised or retried.

A disabled category preference skips phase 2 only; the in-app row is still
written so the notification inbox stays complete.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from explorable.memories.base import (
    Clock,
    DispatchError,
    MemoryItem,
    MemoryKind,
    PlaceKind,
    ProximityPlace,
    PushChannel,
    QueryFilter,
    RemoteKind,
    RemoteStore,
    RemoteStoreError,
    SystemClock,
)
from explorable.memories.config_loader import MemoriesConfig, MessageConfig, get_memories_config
from explorable.memories.state import DetectionState

logger = logging.getLogger("explorable.memories.notifications")

# Notification type → preference key in profiles.notification_preferences
CATEGORY_BY_TYPE: dict[str, str] = {
    "friend_request": "friend_requests",
    "comment": "comments",
    "like": "likes",
    "activity_shared": "activity_shared",
    "achievement": "achievements",
    "memory": "memory",
    "proximity_alert": "proximity_alert",
}


def category_for(notification_type: str) -> str:
    return CATEGORY_BY_TYPE.get(notification_type, notification_type)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class RelayStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RelayResult:
    """Outcome of the best-effort push relay."""

    status: RelayStatus
    reason: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status is RelayStatus.SENT


@dataclass
class DispatchResult:
    """A durable in-app notification plus what happened to its push relay."""

    notification_id: str | None
    relay: RelayResult
    category: str = ""
    payload: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Persist in-app notifications and relay them as push messages.

    Usage::

        dispatcher = NotificationDispatcher(remote_store, push_channel)
        result = await dispatcher.dispatch(user_id, title, body, {"years_ago": 1}, "memory")
        if not result.relay.delivered:
            logger.debug("push not delivered: %s", result.relay.reason)
    """

    def __init__(
        self,
        remote: RemoteStore,
        push: PushChannel | None,
        clock: Clock | None = None,
    ) -> None:
        self._remote = remote
        self._push = push
        self._clock = clock or SystemClock()

    async def dispatch(
        self,
        owner_id: str,
        title: str,
        body: str,
        payload: dict,
        notification_type: str,
    ) -> DispatchResult:
        """Write the in-app notification, then attempt a push relay.

        Raises:
            DispatchError: If the in-app notification row cannot be written.
        """
        row = {
            "user_id": owner_id,
            "type": notification_type,
            "title": title,
            "message": body,
            "data": payload,
            "read": False,
            "created_at": self._clock.now(),
        }
        try:
            notification_id = await self._remote.insert(RemoteKind.NOTIFICATIONS, row)
        except RemoteStoreError as exc:
            logger.error(
                "Failed to write %s notification for %s: %s", notification_type, owner_id, exc
            )
            raise DispatchError(f"could not persist {notification_type} notification") from exc

        logger.info("Created %s notification %s for %s", notification_type, notification_id, owner_id)
        category = category_for(notification_type)
        relay = await self._relay(owner_id, title, body, payload, notification_type, category)
        return DispatchResult(
            notification_id=notification_id, relay=relay, category=category, payload=payload
        )

    async def _relay(
        self,
        owner_id: str,
        title: str,
        body: str,
        payload: dict,
        notification_type: str,
        category: str,
    ) -> RelayResult:
        if self._push is None:
            return RelayResult(RelayStatus.SKIPPED, "no push channel configured")

        try:
            rows = await self._remote.query(
                RemoteKind.PROFILES,
                QueryFilter(
                    owner_id=owner_id,
                    columns=["push_token", "notifications_enabled", "notification_preferences"],
                ),
            )
        except RemoteStoreError as exc:
            logger.warning("Push relay for %s: profile lookup failed: %s", owner_id, exc)
            return RelayResult(RelayStatus.FAILED, f"profile lookup failed: {exc}")

        profile = rows[0] if rows else None
        if not profile:
            return RelayResult(RelayStatus.SKIPPED, "no profile")
        token = profile.get("push_token")
        if not profile.get("notifications_enabled") or not token:
            logger.debug("User %s has notifications disabled or no push token", owner_id)
            return RelayResult(RelayStatus.SKIPPED, "notifications disabled or no push token")

        preferences = profile.get("notification_preferences") or {}
        if isinstance(preferences, str):
            try:
                preferences = json.loads(preferences)
            except ValueError:
                preferences = {}
        if preferences.get(category) is False:
            logger.info("User %s has disabled %s notifications", owner_id, category)
            return RelayResult(RelayStatus.SKIPPED, f"category {category} disabled")

        push_payload = {"type": notification_type, **payload}
        try:
            sent = await self._push.send(token, title, body, push_payload, category)
        except Exception as exc:
            logger.warning("Push relay to %s failed: %s", owner_id, exc)
            return RelayResult(RelayStatus.FAILED, str(exc))

        if not sent:
            logger.warning("Push relay to %s was rejected", owner_id)
            return RelayResult(RelayStatus.FAILED, "rejected by push channel")
        return RelayResult(RelayStatus.SENT)


# ---------------------------------------------------------------------------
# Message composition
# ---------------------------------------------------------------------------


def _plural(n: int, singular: str, plural: str | None = None) -> str:
    return f"{n} {singular if n == 1 else (plural or singular + 's')}"


def time_ago(then: datetime, now: datetime) -> str:
    """Relative phrase such as '3 months ago' or 'earlier today'."""
    days = (now - then).days
    years, months = days // 365, days // 30
    if years > 0:
        return f"{_plural(years, 'year')} ago"
    if months > 0:
        return f"{_plural(months, 'month')} ago"
    if days > 0:
        return f"{_plural(days, 'day')} ago"
    return "earlier today"


def compose_recall(years_ago: int, items: list[MemoryItem]) -> tuple[str, str]:
    """Title and body for one years-ago group of memories."""
    title = f"📅 {_plural(years_ago, 'year')} ago today"

    if len(items) == 1:
        item = items[0]
        if item.kind is MemoryKind.ACTIVITY:
            suffix = f" - {item.description}" if item.description else ""
            return title, f"You completed {item.title}{suffix}"
        if item.kind is MemoryKind.SPOT:
            return title, f"You visited {item.title}"
        return title, f"You started your trip: {item.title}"

    counts = {kind: sum(1 for i in items if i.kind is kind) for kind in MemoryKind}
    parts = []
    if counts[MemoryKind.ACTIVITY]:
        parts.append(_plural(counts[MemoryKind.ACTIVITY], "activity", "activities"))
    if counts[MemoryKind.SPOT]:
        parts.append(_plural(counts[MemoryKind.SPOT], "spot"))
    if counts[MemoryKind.TRIP]:
        parts.append(_plural(counts[MemoryKind.TRIP], "trip"))
    return title, f"You have {', '.join(parts)} from this day!"


def compose_proximity(
    place: ProximityPlace, now: datetime, messages: MessageConfig
) -> tuple[str, str] | None:
    """Title and body for a nearby place, or None if it should not fire.

    Wording escalates with the time since the last visit.  Places visited
    within the lowest tier only fire as a "favorite spot" when visited often.
    """
    days = (now - place.last_visited).days
    year_tier, half_tier, quarter_tier, month_tier = messages.tiers_days
    distance = round(place.distance_m)
    ago = time_ago(place.last_visited, now)
    where = f'"{place.name}"' if place.kind is PlaceKind.SPOT else place.name

    if days > year_tier:
        return "📍 It's been over a year!", f"You're {distance}m from {where}. You were last here {ago}."
    if days > half_tier:
        return "📍 Remember this place?", f"You're {distance}m from {where} - you haven't been back in {ago}."
    if days > quarter_tier:
        return "📍 Been a while!", f"You're {distance}m from {where}, last visited {ago}."
    if days > month_tier:
        return "📍 You've been here before!", f"You're {distance}m from {where} - last visited {ago}."
    if place.visit_count > messages.favorite_visit_threshold:
        return (
            "⭐ One of your favorite spots",
            f"You're {distance}m from {where} - you've been here {place.visit_count} times.",
        )
    return None


# ---------------------------------------------------------------------------
# Detector → dispatcher glue
# ---------------------------------------------------------------------------


class ProximityNotifier:
    """Turn a proximity pass into at most one notification and set cooldowns."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        config: MemoriesConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or get_memories_config()
        self._clock = clock or SystemClock()

    async def notify(
        self, owner_id: str, places: list[ProximityPlace], state: DetectionState
    ) -> DispatchResult | None:
        """Notify about the closest place that merits a message.

        Every place in ``places`` enters cooldown once the in-app row exists.

        Raises:
            DispatchError: If the in-app notification cannot be written.
        """
        if not places:
            return None
        now = self._clock.now()

        headline: ProximityPlace | None = None
        message: tuple[str, str] | None = None
        for place in places:
            message = compose_proximity(place, now, self._config.messages)
            if message is not None:
                headline = place
                break
        if headline is None or message is None:
            logger.debug("No proximity message for %s: all places recent", owner_id)
            return None

        title, body = message
        payload = {
            "place_id": headline.id,
            "place_type": headline.kind.value,
            "distance": headline.distance_m,
            "all_nearby": [
                {"id": p.id, "name": p.name, "type": p.kind.value, "distance": p.distance_m}
                for p in places
            ],
        }
        result = await self._dispatcher.dispatch(owner_id, title, body, payload, "proximity_alert")
        state.mark_notified([p.place_key for p in places], now)
        return result


class RecallNotifier:
    """Send one notification per years-ago group."""

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    async def notify(
        self, owner_id: str, groups: dict[int, list[MemoryItem]], today: date
    ) -> list[DispatchResult]:
        """Dispatch each group; a failed group is logged and the rest still go out."""
        results: list[DispatchResult] = []
        for years_ago in sorted(groups):
            items = groups[years_ago]
            title, body = compose_recall(years_ago, items)
            payload = {
                "memories": [{"id": m.id, "type": m.kind.value, "title": m.title} for m in items],
                "years_ago": years_ago,
                "date": today.isoformat(),
            }
            try:
                results.append(
                    await self._dispatcher.dispatch(owner_id, title, body, payload, "memory")
                )
            except DispatchError as exc:
                logger.warning(
                    "Memory notification for %d year(s) ago failed for %s: %s",
                    years_ago, owner_id, exc,
                )
        return results
