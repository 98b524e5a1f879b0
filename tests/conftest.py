from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

import pytest

from core.context import Talent
from core.ratelimits import BackoffPolicy
from services.holodex.api.livestream import FetchResult
from services.holodex.models.stream import RawEntry
from services.tracking.base import ChannelInfo, ChatMessage, ChatPlatform
from services.tracking.models import StreamRecord, StreamStatus
from shared.config.tracking import (
    AlertSettings,
    ChatSettings,
    GuildSettings,
    OperationsSettings,
)
from shared.storage.state_store import StreamStateStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

CHANNEL_ID = "UCtalent000000000000000a"
CATEGORY_ID = "100"
ARCHIVE_CATEGORY_ID = "200"
ALERT_CHANNEL_ID = "300"
OPS_CHANNEL_ID = "400"
DISCUSSION_CHANNEL_ID = "500"
LOG_CHANNEL_ID = "600"


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------

def make_entry(
    stream_id: str = "vid1",
    *,
    channel_id: str = CHANNEL_ID,
    status: str = "upcoming",
    scheduled: Optional[datetime] = T0,
    started: Optional[datetime] = None,
    ended: Optional[datetime] = None,
    title: str = "Morning stream",
) -> RawEntry:
    return RawEntry(
        id=stream_id,
        channel_id=channel_id,
        title=title,
        upstream_status=status,
        scheduled_start=scheduled,
        actual_start=started,
        actual_end=ended,
    )


def make_record(
    stream_id: str = "vid1",
    status: StreamStatus = StreamStatus.SCHEDULED,
    **fields: Any,
) -> StreamRecord:
    fields.setdefault("talent_id", CHANNEL_ID)
    fields.setdefault("scheduled_start", T0)
    fields.setdefault("last_seen_at", T0)
    if status in (StreamStatus.LIVE, StreamStatus.ENDED):
        fields.setdefault("actual_start", T0 + timedelta(minutes=1))
    if status is StreamStatus.ENDED:
        fields.setdefault("actual_end", T0 + timedelta(hours=2))
    return StreamRecord(id=stream_id, status=status, **fields)


def make_message(
    content: str = "gg",
    *,
    author: str = "42",
    at: Optional[datetime] = None,
    bot: bool = False,
    attachments: tuple = (),
    kind: str = "default",
) -> ChatMessage:
    return ChatMessage(
        author_id=author,
        content=content,
        created_at=at or T0 + timedelta(minutes=10),
        author_is_bot=bot,
        attachments=attachments,
        kind=kind,
    )


def make_talent(**fields: Any) -> Talent:
    fields.setdefault("id", CHANNEL_ID)
    fields.setdefault("name", "Tokino Sora")
    fields.setdefault("emoji", "🐻")
    fields.setdefault("colour", 0x4A8FDB)
    fields.setdefault("branch", "hololive")
    return Talent(**fields)


def make_settings(
    *,
    chat: bool = True,
    alerts: bool = True,
    archive_category: Optional[str] = ARCHIVE_CATEGORY_ID,
    archive_delay: float = 0.0,
    log_channel: Optional[str] = None,
    operations: bool = True,
) -> GuildSettings:
    return GuildSettings(
        id="1",
        alerts=AlertSettings(enabled=alerts, channel_id=ALERT_CHANNEL_ID),
        chat=ChatSettings(
            enabled=chat,
            category_id=CATEGORY_ID,
            archive_category_id=archive_category,
            archive_delay_seconds=archive_delay,
            log_channel_id=log_channel,
            post_stream_discussion={"hololive": DISCUSSION_CHANNEL_ID},
        ),
        operations=OperationsSettings(enabled=operations, channel_id=OPS_CHANNEL_ID),
    )


def no_jitter(**overrides: Any) -> BackoffPolicy:
    fields = dict(base=1.0, factor=2.0, cap=30.0, jitter=0.0, max_attempts=4)
    fields.update(overrides)
    return BackoffPolicy(**fields)


# ----------------------------------------------------------------------
# Fakes
# ----------------------------------------------------------------------

class FakeSleep:
    """Records requested delays without waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


class FakeChatPlatform(ChatPlatform):
    """
    In-memory chat platform.

    `fail(method, *errors)` queues exceptions raised by the next calls of
    that method, one per call.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.channels: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.deleted: List[str] = []
        self.history: Dict[str, List[ChatMessage]] = defaultdict(list)
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._next_id = 1000

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures[method].extend(errors)

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def say(self, channel_id: str, *contents: str) -> None:
        """Seed human messages into a channel's history."""
        for content in contents:
            self.history[channel_id].append(make_message(content))

    def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        queue = self._failures[method]
        if queue:
            raise queue.popleft()

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    async def create_channel(self, category_id, name, *, topic=None):
        self._enter("create_channel", category_id, name, topic)
        channel_id = self._new_id()
        self.channels[channel_id] = {"category": category_id, "name": name, "topic": topic}
        return channel_id

    async def find_channel_by_topic(self, category_id, topic):
        self._enter("find_channel_by_topic", category_id, topic)
        for channel_id, channel in self.channels.items():
            if channel["category"] == category_id and channel["topic"] == topic:
                return channel_id
        return None

    async def list_channels(self, category_id):
        self._enter("list_channels", category_id)
        return [
            ChannelInfo(id=channel_id, topic=channel["topic"], created_at=channel.get("created_at"))
            for channel_id, channel in self.channels.items()
            if channel["category"] == category_id
        ]

    async def fetch_messages(self, channel_id):
        self._enter("fetch_messages", channel_id)
        return list(self.history[channel_id])

    async def send_message(self, channel_id, content, *, embed=None, mention_role=None):
        self._enter("send_message", channel_id, content, embed, mention_role)
        message_id = self._new_id()
        self.messages[channel_id].append(
            {"id": message_id, "content": content, "embed": embed, "mention_role": mention_role}
        )
        return message_id

    async def archive_or_move_channel(self, channel_id, category_id):
        self._enter("archive_or_move_channel", channel_id, category_id)
        self.channels[channel_id]["category"] = category_id

    async def delete_channel(self, channel_id):
        self._enter("delete_channel", channel_id)
        self.channels.pop(channel_id, None)
        self.deleted.append(channel_id)


class FakeHolodexAPI:
    """
    Stand-in for HolodexLivestreamAPI.

    `live` is a queue of FetchResult objects or exceptions, consumed one
    per fetch_live call; the last item repeats. `videos` maps ids to an
    entry, None (404) or an exception.
    """

    def __init__(self) -> None:
        self.live: List[Any] = [FetchResult()]
        self.videos: Dict[str, Any] = {}
        self.live_calls = 0
        self.video_calls: List[str] = []

    def set_live(self, *entries: RawEntry, dropped: int = 0) -> None:
        self.live = [FetchResult(entries=list(entries), dropped=dropped)]

    async def fetch_live(self, channel_ids):
        self.live_calls += 1
        item = self.live.pop(0) if len(self.live) > 1 else self.live[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_video(self, video_id):
        self.video_calls.append(video_id)
        item = self.videos.get(video_id)
        if isinstance(item, Exception):
            raise item
        return item


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "streams.json"


@pytest.fixture
def store(state_path):
    return StreamStateStore(state_path)


@pytest.fixture
def platform():
    return FakeChatPlatform()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def talents():
    talent = make_talent()
    return {talent.id: talent}
