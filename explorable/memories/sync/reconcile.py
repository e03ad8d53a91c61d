"""Offline reconciliation: push locally authored records to the remote store.

For each record kind (activities, saved spots, achievements):
1. Load the local collection; records with a server-format id are done
2. Fetch the owner's remote rows and index them by dedup key
3. Merge local records whose key already exists remotely (rebind the id)
4. Insert the rest, if newer than the sync watermark or queued for retry
5. Reload the collection and rebind only the entries that were pushed or merged,
   so records the app saved during the pass are kept

After every kind has been processed the watermark advances to the pass start
time, unless no remote call succeeded at all (offline), in which case the
watermark is left alone so the next trigger repeats the same work.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError

from explorable.memories.base import Clock, QueryFilter, RemoteStore, RemoteStoreError, SystemClock
from explorable.memories.local_store import LocalEntityStore
from explorable.memories.sync.dedup import DedupKey, RemoteKeyIndex
from explorable.models.local_records import RECORD_MODELS, LocalRecord, RecordKind

logger = logging.getLogger("explorable.memories.sync.reconcile")


@dataclass
class KindResult:
    """Outcome of reconciling one record kind.

    Attributes:
        pushed:     Records inserted remotely.
        merged:     Records rebound to an existing remote row.
        skipped:    Unsynced records left alone (older than the watermark).
        malformed:  Local entries that failed validation.
        failed_ids: Local ids whose insert failed.
        attempted:  True if the kind had pending records and contacted the remote.
        reachable:  True if the remote fetch for this kind succeeded.
    """

    pushed: int = 0
    merged: int = 0
    skipped: int = 0
    malformed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    attempted: bool = False
    reachable: bool = False


@dataclass
class ReconcileResult:
    """Result of one reconciliation pass.

    Attributes:
        owner_id:           User whose records were reconciled.
        pushed:             kind → records inserted.
        merged:             kind → records rebound to existing rows.
        errors:             Human-readable error messages, in order.
        watermark_advanced: False when the pass failed entirely.
        started_at:         Pass start time (the new watermark on success).
    """

    owner_id: str
    pushed: dict[RecordKind, int] = field(default_factory=dict)
    merged: dict[RecordKind, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    watermark_advanced: bool = False
    started_at: datetime | None = None

    @property
    def status(self) -> str:
        """'success', 'partial' or 'error' (nothing reachable)."""
        if not self.watermark_advanced:
            return "error"
        return "partial" if self.errors else "success"

    @property
    def total_pushed(self) -> int:
        return sum(self.pushed.values())


class ReconciliationEngine:
    """Push-sync local records, deduplicating against the remote store.

    Usage::

        engine = ReconciliationEngine(remote_store, LocalEntityStore(local_store))
        result = await engine.reconcile(user_id)
        logger.info("pushed=%s errors=%d", result.pushed, len(result.errors))
    """

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalEntityStore,
        clock: Clock | None = None,
        models: list[type[LocalRecord]] | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._clock = clock or SystemClock()
        self._models = models or RECORD_MODELS
        self._lock = asyncio.Lock()

    async def reconcile(self, owner_id: str) -> ReconcileResult:
        """Run one full pass for ``owner_id``.

        Passes within one process are serialised; a second trigger waits for
        the running pass and then finds nothing left to push.
        """
        async with self._lock:
            return await self._reconcile(owner_id)

    async def manual_sync(self, owner_id: str) -> ReconcileResult:
        """Forget the watermark and reconsider every unsynced record."""
        async with self._lock:
            await self._local.clear_watermark()
            logger.info("Manual sync requested for %s: watermark cleared", owner_id)
            return await self._reconcile(owner_id)

    async def reset_sync(self) -> None:
        """Clear the watermark and retry queue; the next pass checks everything."""
        async with self._lock:
            await self._local.clear_watermark()
            await self._local.set_retry_ids(set())
            logger.info("Sync reset: next pass will check all local records")

    async def _reconcile(self, owner_id: str) -> ReconcileResult:
        started_at = self._clock.now()
        result = ReconcileResult(owner_id=owner_id, started_at=started_at)
        watermark = await self._local.get_watermark()
        retry_ids = await self._local.get_retry_ids()

        logger.info(
            "Reconciling %s (watermark=%s, retry=%d)",
            owner_id, watermark.isoformat() if watermark else "none", len(retry_ids),
        )

        attempted = reachable = False
        failed_ids: set[str] = set()
        for model in self._models:
            kind_result = await self._reconcile_kind(
                model, owner_id, watermark, retry_ids, started_at, result.errors
            )
            result.pushed[model.KIND] = kind_result.pushed
            result.merged[model.KIND] = kind_result.merged
            failed_ids.update(kind_result.failed_ids)
            attempted = attempted or kind_result.attempted
            reachable = reachable or kind_result.reachable

        if attempted and not reachable:
            logger.warning(
                "Reconciliation for %s failed entirely; watermark left at %s",
                owner_id, watermark,
            )
            return result

        # Never move the watermark backwards (clock skew between contexts).
        if watermark is None or started_at > watermark:
            await self._local.set_watermark(started_at)
        await self._local.set_retry_ids(failed_ids)
        result.watermark_advanced = True

        logger.info(
            "Reconciliation complete for %s: pushed=%d merged=%d errors=%d status=%s",
            owner_id,
            result.total_pushed,
            sum(result.merged.values()),
            len(result.errors),
            result.status,
        )
        return result

    async def _reconcile_kind(
        self,
        model: type[LocalRecord],
        owner_id: str,
        watermark: datetime | None,
        retry_ids: set[str],
        started_at: datetime,
        errors: list[str],
    ) -> KindResult:
        kind_result = KindResult()
        raws = await self._local.load_collection(model.LOCAL_KEY)

        pending: list[LocalRecord] = []
        for raw in raws:
            if not isinstance(raw, dict):
                kind_result.malformed += 1
                logger.warning("Skipping non-object %s entry: %r", model.KIND.value, raw)
                continue
            try:
                record = model.from_local(raw)
            except ValidationError as exc:
                kind_result.malformed += 1
                logger.warning(
                    "Skipping malformed local %s %r: %s",
                    model.KIND.value, raw.get("id"), exc.errors()[:3],
                )
                continue
            if not record.is_synced:
                pending.append(record)

        if not pending:
            return kind_result

        kind_result.attempted = True
        try:
            rows = await self._remote.query(
                model.REMOTE_KIND,
                QueryFilter(owner_id=owner_id, columns=model.REMOTE_KEY_COLUMNS),
            )
        except RemoteStoreError as exc:
            msg = f"{model.KIND.value}: could not fetch remote rows: {exc}"
            logger.warning("Reconcile %s for %s: %s", model.KIND.value, owner_id, exc)
            errors.append(msg)
            kind_result.failed_ids = [r.id for r in pending if r.id]
            return kind_result
        kind_result.reachable = True

        index = RemoteKeyIndex()
        for row in rows:
            key = model.remote_dedup_key(row)
            if key is not None and row.get("id") is not None:
                index.add(key, str(row["id"]))

        # local id (or dedup key for id-less entries) -> server id
        rebinds: dict[str, str] = {}
        keyed_rebinds: dict[DedupKey, str] = {}
        pushed_without_id: set = set()
        for record in pending:
            key = record.dedup_key()
            if key in pushed_without_id:
                kind_result.skipped += 1
                continue
            existing_id = index.get(key)
            if existing_id is not None:
                logger.debug(
                    "Merging local %s %r into remote %s", model.KIND.value, record.id, existing_id
                )
                self._note_rebind(record, key, existing_id, rebinds, keyed_rebinds)
                kind_result.merged += 1
                continue

            occurred_at = record.occurred_at() or started_at
            is_retry = record.id is not None and record.id in retry_ids
            if watermark is not None and occurred_at <= watermark and not is_retry:
                kind_result.skipped += 1
                continue

            local_id = record.id
            try:
                server_id = await self._remote.insert(
                    model.REMOTE_KIND, record.to_remote_row(owner_id, occurred_at)
                )
            except RemoteStoreError as exc:
                logger.warning(
                    "Failed to push %s %r for %s: %s", model.KIND.value, local_id, owner_id, exc
                )
                errors.append(f"{model.KIND.value} {local_id}: {exc}")
                if local_id:
                    kind_result.failed_ids.append(local_id)
                continue

            kind_result.pushed += 1
            if server_id:
                self._note_rebind(record, key, str(server_id), rebinds, keyed_rebinds)
                index.add(key, str(server_id))
            else:
                # Without an id the next pass heals this record via the dedup key.
                pushed_without_id.add(key)
                logger.debug("Insert of %s %r returned no id", model.KIND.value, local_id)

        if rebinds or keyed_rebinds:
            await self._write_rebinds(model, rebinds, keyed_rebinds)

        logger.info(
            "Reconciled %s for %s: pushed=%d merged=%d skipped=%d malformed=%d failed=%d",
            model.KIND.value, owner_id, kind_result.pushed, kind_result.merged,
            kind_result.skipped, kind_result.malformed, len(kind_result.failed_ids),
        )
        return kind_result

    @staticmethod
    def _note_rebind(
        record: LocalRecord,
        key: DedupKey,
        server_id: str,
        rebinds: dict[str, str],
        keyed_rebinds: dict[DedupKey, str],
    ) -> None:
        if record.id:
            rebinds[record.id] = server_id
        else:
            keyed_rebinds.setdefault(key, server_id)
        record.rebind(server_id)

    async def _write_rebinds(
        self,
        model: type[LocalRecord],
        rebinds: dict[str, str],
        keyed_rebinds: dict[DedupKey, str],
    ) -> None:
        """Apply id changes to the collection as it is stored now.

        The app may have added or edited entries while the pass was waiting on
        the network; only the ids of entries this pass pushed or merged change.
        """
        raws = await self._local.load_collection(model.LOCAL_KEY)
        applied = 0
        for raw in raws:
            if not isinstance(raw, dict):
                continue
            local_id = raw.get("id")
            if isinstance(local_id, str) and local_id in rebinds:
                raw["id"] = rebinds[local_id]
                applied += 1
            elif not local_id and keyed_rebinds:
                try:
                    key = model.from_local(raw).dedup_key()
                except ValidationError:
                    continue
                if key in keyed_rebinds:
                    raw["id"] = keyed_rebinds[key]
                    applied += 1
        await self._local.save_collection(model.LOCAL_KEY, raws)
        logger.debug("Rebound %d local %s entries", applied, model.KIND.value)
