from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from shared.errors import DeserializeError
from shared.utils.timestamps import parse_timestamp

# Upstream video types we track. Clips and premieres of uploads are ignored.
TRACKED_VIDEO_TYPES = frozenset({"stream", "placeholder"})


@dataclass(frozen=True)
class RawEntry:
    """
    One decoded Holodex video entry.

    Only the fields that drive the lifecycle are kept. The upstream
    `status` string is informational; the detector derives status from the
    timestamps.
    """

    id: str
    channel_id: str
    title: str
    upstream_status: str
    scheduled_start: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    available_at: Optional[datetime] = None

    @property
    def is_missing_upstream(self) -> bool:
        return self.upstream_status == "missing"


def parse_entry(payload: Any) -> RawEntry:
    """
    Decode a single Holodex video object.

    Raises DeserializeError when the entry lacks an id/channel or carries no
    lifecycle timestamps at all.
    """
    if not isinstance(payload, dict):
        raise DeserializeError(f"entry is not an object: {type(payload).__name__}")

    video_id = payload.get("id")
    if not isinstance(video_id, str) or not video_id:
        raise DeserializeError(f"entry has no usable id: {video_id!r}")

    channel = payload.get("channel")
    channel_id = None
    if isinstance(channel, dict):
        channel_id = channel.get("id")
    channel_id = channel_id or payload.get("channel_id")
    if not isinstance(channel_id, str) or not channel_id:
        raise DeserializeError(f"[{video_id}] entry has no channel id")

    status = str(payload.get("status") or "").lower()

    try:
        available_at = parse_timestamp(payload.get("available_at"))
        scheduled_start = parse_timestamp(payload.get("start_scheduled"))
        actual_start = parse_timestamp(payload.get("start_actual"))
        actual_end = parse_timestamp(payload.get("end_actual"))
    except ValueError as e:
        raise DeserializeError(f"[{video_id}] bad timestamp: {e}") from e

    # Holodex occasionally reports a live/past status before the matching
    # timestamp is filled in.
    if status == "live" and actual_start is None:
        actual_start = available_at or scheduled_start
    if status == "past" and actual_end is None:
        actual_end = (
            _estimate_end(payload, actual_start)
            or available_at
            or actual_start
            or scheduled_start
        )

    if scheduled_start is None and actual_start is None and actual_end is None:
        if status == "upcoming" and available_at is not None:
            scheduled_start = available_at
        elif status != "missing":
            raise DeserializeError(f"[{video_id}] entry has no lifecycle timestamps")

    return RawEntry(
        id=video_id,
        channel_id=channel_id,
        title=str(payload.get("title") or ""),
        upstream_status=status,
        scheduled_start=scheduled_start,
        actual_start=actual_start,
        actual_end=actual_end,
        available_at=available_at,
    )


def is_tracked_type(payload: Dict[str, Any]) -> bool:
    video_type = payload.get("type")
    # Entries without a type are treated as streams.
    return video_type is None or video_type in TRACKED_VIDEO_TYPES


def _estimate_end(payload: Dict[str, Any], actual_start: Optional[datetime]) -> Optional[datetime]:
    duration = payload.get("duration")
    if actual_start is None or not isinstance(duration, (int, float)) or duration <= 0:
        return None
    return actual_start + timedelta(seconds=duration)
