"""
Embed payload builders.

Embeds are built as plain dicts (Discord's wire shape). The platform adapter
converts them to discord.Embed right before sending.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.context import Talent
from services.tracking.models import StreamRecord
from shared.utils.timestamps import format_timestamp

DEFAULT_COLOUR = 6_282_735

COLOUR_INFO = 0x5865F2
COLOUR_SUCCESS = 0x57F287
COLOUR_WARNING = 0xFEE75C
COLOUR_ERROR = 0xED4245

_CHANNEL_NAME_STRIP = re.compile(r"[^\w\-]+", re.UNICODE)
_WATCH_PREFIX = "https://youtube.com/watch?v="


def _author(talent: Optional[Talent], fallback_channel: str) -> Dict[str, Any]:
    channel_id = talent.id if talent else fallback_channel
    author: Dict[str, Any] = {
        "name": talent.name if talent else fallback_channel,
        "url": f"https://www.youtube.com/channel/{channel_id}",
    }
    if talent and talent.icon:
        author["icon_url"] = talent.icon
    return author


def _colour(talent: Optional[Talent]) -> int:
    return talent.colour if talent and talent.colour else DEFAULT_COLOUR


def _stream_embed(
    title: str,
    record: StreamRecord,
    talent: Optional[Talent],
    *,
    timestamp: Optional[datetime],
) -> Dict[str, Any]:
    embed: Dict[str, Any] = {
        "title": title,
        "description": record.title,
        "url": record.url,
        "color": _colour(talent),
        "image": {"url": record.thumbnail},
        "author": _author(talent, record.talent_id),
    }
    if timestamp is not None:
        embed["timestamp"] = format_timestamp(timestamp)
    return embed


# ----------------------------------------------------------------------
# Stream embeds
# ----------------------------------------------------------------------

def live_alert_embed(record: StreamRecord, talent: Optional[Talent]) -> Dict[str, Any]:
    name = talent.name if talent else record.talent_id
    return _stream_embed(
        f"{name} just went live!",
        record,
        talent,
        timestamp=record.actual_start or record.scheduled_start,
    )


def now_watching_embed(record: StreamRecord, talent: Optional[Talent]) -> Dict[str, Any]:
    return _stream_embed(
        "Now watching",
        record,
        talent,
        timestamp=record.actual_start or record.scheduled_start,
    )


def schedule_change_embed(
    record: StreamRecord,
    talent: Optional[Talent],
    *,
    previous_start: Optional[datetime],
) -> Dict[str, Any]:
    name = talent.name if talent else record.talent_id
    embed = _stream_embed(
        f"{name} rescheduled a stream",
        record,
        talent,
        timestamp=record.scheduled_start,
    )

    fields = []
    if previous_start is not None:
        fields.append({
            "name": "Previously",
            "value": f"<t:{int(previous_start.timestamp())}:F>",
            "inline": True,
        })
    if record.scheduled_start is not None:
        fields.append({
            "name": "Now",
            "value": f"<t:{int(record.scheduled_start.timestamp())}:F> "
                     f"(<t:{int(record.scheduled_start.timestamp())}:R>)",
            "inline": True,
        })
    if fields:
        embed["fields"] = fields
    return embed


def format_archival_delay(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if minutes == 0 and secs <= 30:
        return "now"
    if secs >= 50:
        return f"in {minutes + 1} minutes"
    if secs <= 10:
        return f"in {minutes} minutes"
    if minutes == 0:
        return f"in {secs} seconds"
    return f"in {minutes} minutes and {secs} seconds"


def stream_ended_embed(
    talent: Optional[Talent],
    *,
    archive_delay_seconds: float,
    discussion_channel_id: Optional[str] = None,
) -> Dict[str, Any]:
    when = format_archival_delay(archive_delay_seconds)
    if discussion_channel_id:
        description = (
            f"Feel free to continue talking in <#{discussion_channel_id}>!\n"
            f"This stream will be archived {when}."
        )
    else:
        description = f"This stream will be archived {when}."

    return {
        "title": "Stream has ended!",
        "description": description,
        "color": _colour(talent),
    }


# ----------------------------------------------------------------------
# Chat log embeds
# ----------------------------------------------------------------------

INVISIBLE_FIELD_NAME = "\u200b"


def chat_log_fields(chunks: List[str]) -> List[Dict[str, Any]]:
    return [{"name": INVISIBLE_FIELD_NAME, "value": chunk, "inline": False} for chunk in chunks]


def chat_log_index_embed(
    record: Optional[StreamRecord],
    talent: Optional[Talent],
    *,
    ended_at: datetime,
    page: int = 0,
) -> Dict[str, Any]:
    """
    Head of an exported log. Only the first page carries the stream
    details; later index pages are bare.
    """
    embed: Dict[str, Any] = {"color": _colour(talent)}
    if page > 0:
        return embed

    if record is None:
        embed["title"] = "Logs from unknown stream"
        embed["timestamp"] = format_timestamp(ended_at)
        return embed

    embed.update({
        "title": f"Logs from {record.title}",
        "url": record.url,
        "thumbnail": {"url": record.thumbnail},
        "timestamp": format_timestamp(record.actual_end or ended_at),
        "author": _author(talent, record.talent_id),
    })
    return embed


def chat_log_segment_embed(index: int, talent: Optional[Talent]) -> Dict[str, Any]:
    return {"title": f"Log {index + 1}", "color": _colour(talent)}


def message_link(guild_id: Optional[str], channel_id: str, message_id: str) -> Optional[str]:
    if not guild_id:
        return None
    return f"https://discord.com/channels/{guild_id}/{channel_id}/{message_id}"


# ----------------------------------------------------------------------
# Operations embeds
# ----------------------------------------------------------------------

def info_embed(title: str, description: str | None = None) -> Dict[str, Any]:
    return {"title": title, "description": description, "color": COLOUR_INFO}


def warning_embed(title: str, description: str | None = None) -> Dict[str, Any]:
    return {"title": title, "description": description, "color": COLOUR_WARNING}


def error_embed(title: str, description: str | None = None) -> Dict[str, Any]:
    return {"title": title, "description": description, "color": COLOUR_ERROR}


# ----------------------------------------------------------------------
# Channel helpers
# ----------------------------------------------------------------------

def stream_channel_name(talent: Optional[Talent], fallback: str) -> str:
    base = (talent.name if talent else fallback).lower().replace(" ", "-")
    base = _CHANNEL_NAME_STRIP.sub("", base) or "stream"
    emoji = talent.emoji if talent else ""
    name = f"{emoji}-{base}-stream" if emoji else f"{base}-stream"
    return name[:100]


def stream_channel_topic(record: StreamRecord) -> str:
    return record.url


def stream_id_from_topic(topic: Optional[str]) -> Optional[str]:
    """Inverse of stream_channel_topic; None for channels that are not stream chats."""
    if not topic or not topic.startswith(_WATCH_PREFIX):
        return None
    return topic[len(_WATCH_PREFIX):].strip() or None

