from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional

from shared.errors import StateCorruption
from shared.utils.timestamps import format_timestamp, parse_timestamp

if TYPE_CHECKING:
    from services.holodex.models.stream import RawEntry


SNAPSHOT_SCHEMA_VERSION = 1


class StreamStatus(Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"
    MISSING = "missing"

    @property
    def terminal(self) -> bool:
        return self is StreamStatus.ENDED

    @property
    def rank(self) -> int:
        """Position on the scheduled -> live -> ended axis. Missing has none."""
        return _STATUS_RANK.get(self, -1)


_STATUS_RANK = {
    StreamStatus.SCHEDULED: 0,
    StreamStatus.LIVE: 1,
    StreamStatus.ENDED: 2,
}


# Action names used for markers, failure flags and logs.
ACTION_CREATE_CHAT = "create_chat_channel"
ACTION_POST_ALERT = "post_alert"
ACTION_ARCHIVE_CHAT = "archive_chat"
ACTION_SCHEDULE_ALERT = "post_schedule_change_alert"

ACTION_NAMES = (
    ACTION_CREATE_CHAT,
    ACTION_POST_ALERT,
    ACTION_ARCHIVE_CHAT,
    ACTION_SCHEDULE_ALERT,
)


@dataclass(frozen=True)
class StreamRecord:
    """
    Last-known state of one tracked broadcast, including the side-effect
    markers used for dedup.

    Immutable: every change goes through the state store, which swaps in a
    new instance built with `evolve()`.
    """

    id: str
    talent_id: str
    status: StreamStatus
    title: str = ""
    scheduled_start: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    # Markers
    chat_channel_id: Optional[str] = None
    alert_message_id: Optional[str] = None
    archived: bool = False
    end_notice_sent: bool = False
    logs_exported: bool = False
    schedule_alert_for: Optional[datetime] = None
    # Start time replaced by the latest reschedule.
    rescheduled_from: Optional[datetime] = None
    failed_actions: FrozenSet[str] = field(default_factory=frozenset)

    # --------------------------------------------------

    @property
    def url(self) -> str:
        return f"https://youtube.com/watch?v={self.id}"

    @property
    def thumbnail(self) -> str:
        return f"https://i3.ytimg.com/vi/{self.id}/maxresdefault.jpg"

    def evolve(self, **changes: Any) -> "StreamRecord":
        return replace(self, **changes)

    def has_failed(self, action: str) -> bool:
        return action in self.failed_actions

    def with_failure(self, action: str) -> "StreamRecord":
        return replace(self, failed_actions=self.failed_actions | {action})

    @property
    def has_posted(self) -> bool:
        """A chat channel or live alert exists for this stream."""
        return self.chat_channel_id is not None or self.alert_message_id is not None

    @property
    def owes_schedule_alert(self) -> bool:
        """A reschedule happened and its alert has not gone out yet."""
        return (
            self.status is StreamStatus.SCHEDULED
            and self.rescheduled_from is not None
            and self.scheduled_start is not None
            and self.schedule_alert_for != self.scheduled_start
            and not self.has_failed(ACTION_SCHEDULE_ALERT)
        )

    # --------------------------------------------------
    # Serialization
    # --------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "talent_id": self.talent_id,
            "status": self.status.value,
            "title": self.title,
            "scheduled_start": format_timestamp(self.scheduled_start),
            "actual_start": format_timestamp(self.actual_start),
            "actual_end": format_timestamp(self.actual_end),
            "last_seen_at": format_timestamp(self.last_seen_at),
            "chat_channel_id": self.chat_channel_id,
            "alert_message_id": self.alert_message_id,
            "archived": self.archived,
            "end_notice_sent": self.end_notice_sent,
            "logs_exported": self.logs_exported,
            "schedule_alert_for": format_timestamp(self.schedule_alert_for),
            "rescheduled_from": format_timestamp(self.rescheduled_from),
            "failed_actions": sorted(self.failed_actions),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "StreamRecord":
        if not isinstance(raw, dict):
            raise StateCorruption(f"record is not an object: {raw!r}")

        try:
            stream_id = raw["id"]
            talent_id = raw["talent_id"]
            if not isinstance(stream_id, str) or not stream_id:
                raise StateCorruption(f"invalid stream id: {stream_id!r}")
            if not isinstance(talent_id, str) or not talent_id:
                raise StateCorruption(f"[{stream_id}] invalid talent id: {talent_id!r}")

            failed = raw.get("failed_actions") or []
            if not isinstance(failed, list):
                raise StateCorruption(f"[{stream_id}] failed_actions is not a list")

            archived = raw.get("archived", False)
            if not isinstance(archived, bool):
                raise StateCorruption(f"[{stream_id}] archived is not a bool")
            flags = {
                name: raw.get(name, False)
                for name in ("end_notice_sent", "logs_exported")
            }
            for name, value in flags.items():
                if not isinstance(value, bool):
                    raise StateCorruption(f"[{stream_id}] {name} is not a bool")

            return cls(
                id=stream_id,
                talent_id=talent_id,
                status=StreamStatus(raw["status"]),
                title=str(raw.get("title") or ""),
                scheduled_start=parse_timestamp(raw.get("scheduled_start")),
                actual_start=parse_timestamp(raw.get("actual_start")),
                actual_end=parse_timestamp(raw.get("actual_end")),
                last_seen_at=parse_timestamp(raw.get("last_seen_at")),
                chat_channel_id=_optional_str(raw.get("chat_channel_id")),
                alert_message_id=_optional_str(raw.get("alert_message_id")),
                archived=archived,
                end_notice_sent=flags["end_notice_sent"],
                logs_exported=flags["logs_exported"],
                schedule_alert_for=parse_timestamp(raw.get("schedule_alert_for")),
                rescheduled_from=parse_timestamp(raw.get("rescheduled_from")),
                failed_actions=frozenset(str(name) for name in failed),
            )
        except StateCorruption:
            raise
        except (KeyError, ValueError, TypeError) as e:
            raise StateCorruption(f"undecodable record {raw.get('id')!r}: {e}") from e


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value)
    raise TypeError(f"expected string id, got {value!r}")


# ======================================================================
# Transitions
# ======================================================================

class TransitionKind(Enum):
    DISCOVERED = "discovered"
    STARTED = "started"
    ENDED = "ended"
    MISSING = "missing"
    RESCHEDULED = "rescheduled"
    REAPPEARED = "reappeared"
    RESUMED = "resumed"


@dataclass(frozen=True)
class TransitionEvent:
    """
    Ephemeral detector output. Never persisted.

    `entry` is the upstream observation that caused the event; it is None
    for `missing` and `resumed` events. `previous_start` is only set on
    `rescheduled` events.
    """

    stream_id: str
    old_status: Optional[StreamStatus]
    new_status: StreamStatus
    observed_at: datetime
    kind: TransitionKind
    entry: Optional["RawEntry"] = None
    previous_start: Optional[datetime] = None

    def __str__(self) -> str:
        old = self.old_status.value if self.old_status else "none"
        return f"[{self.stream_id}] {self.kind.value} ({old} -> {self.new_status.value})"
