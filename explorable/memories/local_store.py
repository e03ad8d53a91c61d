"""Typed access to the device key-value store.

Keys used:
    activities / savedSpots / achievements — JSON arrays of local records
    lastSyncTime     — sync watermark (ISO timestamp)
    syncRetryIds     — local ids whose push failed on the last pass
    homeLocation     — cached HomeZone per user
    proximityState   — persisted DetectionState per user
    lastRecallDate   — last day a recall notification was sent, per user
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime

from explorable.memories.base import LocalStore, to_utc
from explorable.memories.state import DetectionState, HomeZone

logger = logging.getLogger("explorable.memories.local_store")

WATERMARK_KEY = "lastSyncTime"
RETRY_IDS_KEY = "syncRetryIds"
HOME_KEY = "homeLocation"
DETECTION_STATE_KEY = "proximityState"
RECALL_DATE_KEY = "lastRecallDate"


class LocalEntityStore:
    """JSON (de)serialization on top of a raw LocalStore."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    async def _get_json(self, key: str, default):
        blob = await self._store.get(key)
        if blob is None:
            return default
        try:
            return json.loads(blob)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("Discarding unreadable local value %r: %s", key, exc)
            return default

    async def _set_json(self, key: str, value) -> None:
        await self._store.set(key, json.dumps(value, default=str).encode("utf-8"))

    # ------------------------------------------------------------------
    # Record collections
    # ------------------------------------------------------------------

    async def load_collection(self, key: str) -> list[dict]:
        """Return the raw JSON array stored under ``key`` (empty if absent)."""
        data = await self._get_json(key, [])
        if not isinstance(data, list):
            logger.warning("Local collection %r is not a list; ignoring", key)
            return []
        return data

    async def save_collection(self, key: str, records: list[dict]) -> None:
        await self._set_json(key, records)

    # ------------------------------------------------------------------
    # Sync watermark and retry set
    # ------------------------------------------------------------------

    async def get_watermark(self) -> datetime | None:
        blob = await self._store.get(WATERMARK_KEY)
        if blob is None:
            return None
        return to_utc(blob.decode("utf-8", errors="replace").strip().strip('"'))

    async def set_watermark(self, value: datetime) -> None:
        await self._store.set(WATERMARK_KEY, value.isoformat().encode("utf-8"))

    async def clear_watermark(self) -> None:
        await self._store.remove(WATERMARK_KEY)

    async def get_retry_ids(self) -> set[str]:
        data = await self._get_json(RETRY_IDS_KEY, [])
        return {str(i) for i in data} if isinstance(data, list) else set()

    async def set_retry_ids(self, ids: set[str]) -> None:
        if ids:
            await self._set_json(RETRY_IDS_KEY, sorted(ids))
        else:
            await self._store.remove(RETRY_IDS_KEY)

    # ------------------------------------------------------------------
    # Home cache
    # ------------------------------------------------------------------

    async def get_home(self, owner_id: str) -> HomeZone | None:
        data = await self._get_json(HOME_KEY, {})
        entry = data.get(owner_id) if isinstance(data, dict) else None
        return HomeZone.from_json(entry) if isinstance(entry, dict) else None

    async def set_home(self, owner_id: str, home: HomeZone | None) -> None:
        data = await self._get_json(HOME_KEY, {})
        if not isinstance(data, dict):
            data = {}
        if home is None:
            data.pop(owner_id, None)
        else:
            data[owner_id] = home.to_json()
        await self._set_json(HOME_KEY, data)

    # ------------------------------------------------------------------
    # Detection state
    # ------------------------------------------------------------------

    async def load_detection_state(self, owner_id: str) -> DetectionState:
        data = await self._get_json(DETECTION_STATE_KEY, {})
        entry = data.get(owner_id) if isinstance(data, dict) else None
        return DetectionState.from_json(entry) if isinstance(entry, dict) else DetectionState()

    async def save_detection_state(self, owner_id: str, state: DetectionState) -> DetectionState:
        """Persist ``state`` merged with whatever another context stored meanwhile.

        Returns the merged state that was written.
        """
        data = await self._get_json(DETECTION_STATE_KEY, {})
        if not isinstance(data, dict):
            data = {}
        stored = data.get(owner_id)
        merged = DetectionState.from_json(stored) if isinstance(stored, dict) else DetectionState()
        merged.merge(state)
        data[owner_id] = merged.to_json()
        await self._set_json(DETECTION_STATE_KEY, data)
        return merged

    # ------------------------------------------------------------------
    # Recall bookkeeping
    # ------------------------------------------------------------------

    async def get_last_recall_date(self, owner_id: str) -> date | None:
        data = await self._get_json(RECALL_DATE_KEY, {})
        value = data.get(owner_id) if isinstance(data, dict) else None
        if not value:
            return None
        try:
            return date.fromisoformat(value)
        except (TypeError, ValueError):
            return None

    async def set_last_recall_date(self, owner_id: str, day: date) -> None:
        data = await self._get_json(RECALL_DATE_KEY, {})
        if not isinstance(data, dict):
            data = {}
        data[owner_id] = day.isoformat()
        await self._set_json(RECALL_DATE_KEY, data)
