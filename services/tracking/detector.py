"""
Stream lifecycle transition detection.

Pure functions only: no I/O, no logging, no clock reads. Given the same
record and observation they always return the same event, which is what
makes replaying a poll snapshot safe.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from services.holodex.models.stream import RawEntry
from services.tracking.models import (
    StreamRecord,
    StreamStatus,
    TransitionEvent,
    TransitionKind,
)


def derive_status(entry: RawEntry) -> Optional[StreamStatus]:
    """
    Status implied by an observation's timestamps.

    An end timestamp is authoritative and wins over anything else in the
    same snapshot.
    """
    if entry.actual_end is not None:
        return StreamStatus.ENDED
    if entry.actual_start is not None:
        return StreamStatus.LIVE
    if entry.scheduled_start is not None:
        return StreamStatus.SCHEDULED
    return None


def _baseline(record: StreamRecord) -> StreamStatus:
    """Where a missing record sat on the lifecycle axis before it vanished."""
    if record.actual_start is not None:
        return StreamStatus.LIVE
    return StreamStatus.SCHEDULED


def detect(
    old: Optional[StreamRecord],
    new: Optional[RawEntry],
    *,
    observed_at: datetime,
) -> Optional[TransitionEvent]:
    """
    Compare the stored record with the current observation.

    `new` is None when the stream is absent from the current listing.
    Returns at most one event.
    """
    if new is not None and new.is_missing_upstream:
        new = None

    # --------------------------------------------------
    # Absent upstream
    # --------------------------------------------------
    if new is None:
        if old is None:
            return None
        if old.status in (StreamStatus.SCHEDULED, StreamStatus.LIVE):
            return TransitionEvent(
                stream_id=old.id,
                old_status=old.status,
                new_status=StreamStatus.MISSING,
                observed_at=observed_at,
                kind=TransitionKind.MISSING,
            )
        return None

    status = derive_status(new)
    if status is None:
        return None

    # --------------------------------------------------
    # First observation
    # --------------------------------------------------
    if old is None:
        if status is StreamStatus.SCHEDULED:
            kind = TransitionKind.DISCOVERED
        elif status is StreamStatus.LIVE:
            kind = TransitionKind.STARTED
        else:
            # Never tracked while it was running; nothing to do.
            return None
        return TransitionEvent(
            stream_id=new.id,
            old_status=None,
            new_status=status,
            observed_at=observed_at,
            kind=kind,
            entry=new,
        )

    if old.status.terminal:
        return None

    # --------------------------------------------------
    # Coming back from missing
    # --------------------------------------------------
    if old.status is StreamStatus.MISSING:
        if status.rank < _baseline(old).rank:
            return None
        kind = {
            StreamStatus.SCHEDULED: TransitionKind.REAPPEARED,
            StreamStatus.LIVE: TransitionKind.STARTED,
            StreamStatus.ENDED: TransitionKind.ENDED,
        }[status]
        return TransitionEvent(
            stream_id=old.id,
            old_status=old.status,
            new_status=status,
            observed_at=observed_at,
            kind=kind,
            entry=new,
        )

    # --------------------------------------------------
    # Forward progress
    # --------------------------------------------------
    if status.rank > old.status.rank:
        kind = TransitionKind.ENDED if status is StreamStatus.ENDED else TransitionKind.STARTED
        return TransitionEvent(
            stream_id=old.id,
            old_status=old.status,
            new_status=status,
            observed_at=observed_at,
            kind=kind,
            entry=new,
        )

    if (
        status is StreamStatus.SCHEDULED
        and old.status is StreamStatus.SCHEDULED
        and new.scheduled_start is not None
        and new.scheduled_start != old.scheduled_start
    ):
        return TransitionEvent(
            stream_id=old.id,
            old_status=old.status,
            new_status=status,
            observed_at=observed_at,
            kind=TransitionKind.RESCHEDULED,
            entry=new,
            previous_start=old.scheduled_start,
        )

    # Same status, or a regression we refuse to apply.
    return None


def apply_event(
    old: Optional[StreamRecord],
    event: TransitionEvent,
    *,
    talent_id: Optional[str] = None,
) -> StreamRecord:
    """
    Build the record that reflects `event`.

    Markers are carried over untouched; only the dispatcher sets them.
    A reschedule also records the start time it replaced.
    """
    entry = event.entry

    if old is None:
        if entry is None:
            raise ValueError(f"{event} has no observation to create a record from")
        return StreamRecord(
            id=event.stream_id,
            talent_id=talent_id or entry.channel_id,
            status=event.new_status,
            title=entry.title,
            scheduled_start=entry.scheduled_start,
            actual_start=entry.actual_start,
            actual_end=entry.actual_end,
            last_seen_at=event.observed_at,
        )

    if entry is None:
        return old.evolve(status=event.new_status)

    if event.kind is TransitionKind.RESCHEDULED:
        # Persisted so reconciliation can resume an unsent schedule alert.
        old = old.evolve(rescheduled_from=event.previous_start)

    return old.evolve(
        status=event.new_status,
        title=entry.title or old.title,
        scheduled_start=entry.scheduled_start or old.scheduled_start,
        actual_start=entry.actual_start or old.actual_start,
        actual_end=entry.actual_end or old.actual_end,
        last_seen_at=event.observed_at,
    )


def refresh(old: StreamRecord, entry: RawEntry, *, observed_at: datetime) -> StreamRecord:
    """Non-transition update: bump last_seen_at and pick up a new title."""
    return old.evolve(
        title=entry.title or old.title,
        last_seen_at=observed_at,
    )
