from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from services.tracking.models import (
    ACTION_ARCHIVE_CHAT,
    ACTION_CREATE_CHAT,
    ACTION_POST_ALERT,
    SNAPSHOT_SCHEMA_VERSION,
    StreamRecord,
    StreamStatus,
)
from shared.errors import StateCorruption
from shared.logging.logger import get_logger
from shared.storage.state_publisher import SnapshotWriter
from shared.utils.timestamps import format_timestamp, utcnow

log = get_logger("shared.state_store")

_DEFAULT_STATE_PATH = Path("data/streams.json")


class StreamStateStore:
    """
    Authoritative map of stream id -> StreamRecord.

    Rules:
    - All mutation goes through upsert() / mutate()
    - mutate() serializes read-modify-write per stream id
    - Every persisted mutation rewrites the full snapshot (write-through)
    """

    def __init__(
        self,
        path: Path | str = _DEFAULT_STATE_PATH,
        *,
        writer: Optional[SnapshotWriter] = None,
        retention: timedelta = timedelta(hours=24),
        max_records: int = 2000,
    ):
        self._writer = writer or SnapshotWriter(path)
        self._records: Dict[str, StreamRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._retention = retention
        self._max_records = max(1, max_records)
        self._dirty = False

    # ======================================================================
    # Reads
    # ======================================================================

    def get(self, stream_id: str) -> Optional[StreamRecord]:
        return self._records.get(stream_id)

    def tracked_ids(self) -> List[str]:
        return list(self._records.keys())

    def active_ids(self) -> List[str]:
        """Ids still expected upstream (scheduled or live)."""
        return [
            r.id for r in self._records.values()
            if r.status in (StreamStatus.SCHEDULED, StreamStatus.LIVE)
        ]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._records

    # ======================================================================
    # Writes
    # ======================================================================

    def lock(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[stream_id] = lock
        return lock

    def upsert(self, record: StreamRecord, *, persist: bool = True) -> None:
        previous = self._records.get(record.id)
        if previous is not None and previous.status.terminal and not record.status.terminal:
            raise ValueError(
                f"[{record.id}] refusing to move out of terminal status "
                f"{previous.status.value} -> {record.status.value}"
            )

        self._records[record.id] = record
        self._dirty = True
        if persist:
            self.save()

    async def mutate(
        self,
        stream_id: str,
        fn: Callable[[Optional[StreamRecord]], Optional[StreamRecord]],
        *,
        persist: bool = True,
    ) -> Optional[StreamRecord]:
        """
        Apply `fn` to the current record under the stream's lock.

        `fn` returns the replacement record, or None to leave the store
        unchanged. Returns the record now stored.
        """
        async with self.lock(stream_id):
            current = self._records.get(stream_id)
            updated = fn(current)
            if updated is None:
                return current
            if updated.id != stream_id:
                raise ValueError(f"mutate({stream_id}) returned record {updated.id}")
            self.upsert(updated, persist=persist)
            return updated

    def remove(self, stream_id: str, *, persist: bool = True) -> None:
        if self._records.pop(stream_id, None) is None:
            return
        lock = self._locks.get(stream_id)
        if lock is not None and not lock.locked():
            del self._locks[stream_id]
        self._dirty = True
        if persist:
            self.save()

    # ======================================================================
    # Snapshot / restore
    # ======================================================================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "schema_version": SNAPSHOT_SCHEMA_VERSION,
            "generated_at": format_timestamp(utcnow()),
            "streams": {
                stream_id: record.to_dict()
                for stream_id, record in sorted(self._records.items())
            },
        }

    def restore(self, snapshot: Any) -> int:
        """
        Replace in-memory state with a snapshot. Undecodable records are
        dropped with a warning; the next poll re-derives them.

        Returns the number of records restored.
        """
        self._records.clear()
        self._locks.clear()

        if not isinstance(snapshot, dict):
            log.warning("State snapshot has no usable root object; starting empty")
            return 0

        version = snapshot.get("schema_version")
        if version != SNAPSHOT_SCHEMA_VERSION:
            log.warning(
                f"State snapshot schema_version={version!r} "
                f"(expected {SNAPSHOT_SCHEMA_VERSION}); attempting best-effort restore"
            )

        streams = snapshot.get("streams")
        if not isinstance(streams, dict):
            log.warning("State snapshot has no streams map; starting empty")
            return 0

        for key, raw in streams.items():
            try:
                record = StreamRecord.from_dict(raw)
                if record.id != key:
                    raise StateCorruption(f"record id {record.id!r} stored under key {key!r}")
            except StateCorruption as e:
                log.warning(f"Dropping corrupted state record {key!r}: {e}")
                continue
            self._records[record.id] = record

        self._dirty = False
        log.info(f"Restored {len(self._records)} stream record(s) from snapshot")
        return len(self._records)

    def load(self) -> int:
        return self.restore(self._writer.read())

    def save(self) -> None:
        self._writer.write(self.snapshot())
        self._dirty = False

    def flush(self) -> None:
        """Persist non-transition updates (last_seen_at) if any are pending."""
        if self._dirty:
            self.save()

    # ======================================================================
    # Reconciliation / retention
    # ======================================================================

    def needs_reconciliation(
        self,
        *,
        chat_enabled: bool,
        alerts_enabled: bool,
    ) -> List[StreamRecord]:
        """
        Records whose current status still owes a side effect: the marker
        for it is unset and the action was not flagged failed.
        """
        pending: List[StreamRecord] = []
        for record in self._records.values():
            if record.status is StreamStatus.LIVE:
                owes_chat = (
                    chat_enabled
                    and record.chat_channel_id is None
                    and not record.has_failed(ACTION_CREATE_CHAT)
                )
                owes_alert = (
                    alerts_enabled
                    and record.alert_message_id is None
                    and not record.has_failed(ACTION_POST_ALERT)
                )
                if owes_chat or owes_alert:
                    pending.append(record)
            elif record.status is StreamStatus.SCHEDULED:
                if alerts_enabled and record.owes_schedule_alert:
                    pending.append(record)
            elif record.status is StreamStatus.ENDED:
                if (
                    record.chat_channel_id is not None
                    and not record.archived
                    and not record.has_failed(ACTION_ARCHIVE_CHAT)
                ):
                    pending.append(record)
        return pending

    def _prunable(self, record: StreamRecord) -> bool:
        if record.status is StreamStatus.MISSING:
            return not record.has_posted
        if record.status is not StreamStatus.ENDED:
            return False
        return (
            record.archived
            or record.chat_channel_id is None
            or record.has_failed(ACTION_ARCHIVE_CHAT)
        )

    def prune(self, now: Optional[datetime] = None) -> List[str]:
        """
        Drop finished records past the retention window, then evict the
        least-recently-seen finished records while above max_records.
        Live and scheduled records are never evicted, nor are missing
        records that already have a chat channel or live alert.
        """
        now = now or utcnow()
        cutoff = now - self._retention

        candidates = sorted(
            (r for r in self._records.values() if self._prunable(r)),
            key=lambda r: r.last_seen_at or datetime.min.replace(tzinfo=now.tzinfo),
        )

        removed: List[str] = []
        for record in candidates:
            expired = record.last_seen_at is None or record.last_seen_at < cutoff
            over_cap = len(self._records) > self._max_records
            if not (expired or over_cap):
                continue
            if self.lock(record.id).locked():
                continue
            self._records.pop(record.id, None)
            self._locks.pop(record.id, None)
            removed.append(record.id)

        if removed:
            self._dirty = True
            self.save()
            log.info(f"Pruned {len(removed)} finished stream record(s)")
        return removed
