"""
Chat log export formatting.

Before a stream chat is archived its human messages are copied into the log
channel. Each kept message becomes one line, stamped with its offset into
the stream (linked to that moment of the VOD), and lines are packed into
embed fields under Discord's size limits.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from services.tracking.base import ChatMessage

# Discord embed limits.
MAX_FIELD_SIZE = 1024
MAX_DESCRIPTION_SIZE = 4096
MAX_EMBED_SIZE = 6000
FIELDS_PER_EMBED = MAX_EMBED_SIZE // MAX_FIELD_SIZE

MAX_CONTENT_LENGTH = 1000

ARCHIVED_KINDS = frozenset({"default", "reply"})

_CUSTOM_EMOJI = re.compile(r"<a?:\w+:\d+>")
_UNICODE_EMOJI = re.compile(
    "["
    "\U0001F000-\U0001FAFF"  # pictographs, emoticons, flags
    "\u2190-\u21FF"  # arrows
    "\u2300-\u23FF"  # technical
    "\u2600-\u27BF"  # symbols, dingbats
    "\u2B00-\u2BFF"
    "\u3030\u303D\u3297\u3299\u00A9\u00AE\u2122"
    "\u200D\u20E3\uFE0F"  # joiner, keycap, variation selector
    "\U000E0020-\U000E007F"  # tag sequences
    "]+"
)


def is_only_emoji(text: str) -> bool:
    if not text.strip():
        return False
    rest = _UNICODE_EMOJI.sub("", _CUSTOM_EMOJI.sub("", text))
    return not rest.strip()


def should_archive(message: ChatMessage) -> bool:
    """Whether a message belongs in the exported log."""
    if message.author_is_bot:
        return False
    if not message.content and not message.attachments:
        return False
    if len(message.content) > MAX_CONTENT_LENGTH:
        return False
    if message.kind not in ARCHIVED_KINDS:
        return False
    if not message.attachments and is_only_emoji(message.content):
        return False
    return True


def format_offset(offset: timedelta, video_id: Optional[str] = None) -> str:
    """
    `MM:SS` (or `HH:MM:SS`) into the stream. Messages sent before the
    stream started get a leading minus and no link.
    """
    total = int(offset.total_seconds())
    hours, rest = divmod(abs(total), 3600)
    minutes, seconds = divmod(rest, 60)

    stamp = f"{minutes:02}:{seconds:02}"
    if hours:
        stamp = f"{hours:02}:{stamp}"

    if total < 0:
        return f"-{stamp}"
    if video_id is None:
        return stamp
    return f"[{stamp}](https://youtu.be/{video_id}?t={total})"


def format_message(
    message: ChatMessage,
    stream_start: datetime,
    video_id: Optional[str] = None,
) -> str:
    stamp = format_offset(message.created_at - stream_start, video_id)
    line = f"{stamp} <@{message.author_id}>: {message.content}\n"
    if message.attachments:
        line += " ".join(message.attachments) + "\n"
    return line


def pack(lines: Iterable[str], limit: int) -> List[str]:
    """Join consecutive lines into chunks of at most `limit` characters."""
    chunks: List[str] = []
    for line in lines:
        line = line[:limit]
        if chunks and len(chunks[-1]) + len(line) <= limit:
            chunks[-1] += line
        else:
            chunks.append(line)
    return chunks


def segments(chunks: List[str], size: int = FIELDS_PER_EMBED) -> List[List[str]]:
    return [chunks[i:i + size] for i in range(0, len(chunks), size)]
