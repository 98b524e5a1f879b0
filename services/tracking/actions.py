from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from core.context import Talent
from core.ratelimits import BackoffPolicy
from services.discord.embeds import (
    chat_log_fields,
    chat_log_index_embed,
    chat_log_segment_embed,
    live_alert_embed,
    message_link,
    now_watching_embed,
    schedule_change_embed,
    stream_channel_name,
    stream_channel_topic,
    stream_ended_embed,
    stream_id_from_topic,
)
from services.discord.guild_logging import OperationsLog
from services.tracking.base import ChannelInfo, ChatMessage, ChatPlatform
from services.tracking.chat_logs import (
    FIELDS_PER_EMBED,
    MAX_DESCRIPTION_SIZE,
    MAX_FIELD_SIZE,
    format_message,
    pack,
    segments,
    should_archive,
)
from services.tracking.models import (
    ACTION_ARCHIVE_CHAT,
    ACTION_CREATE_CHAT,
    ACTION_POST_ALERT,
    ACTION_SCHEDULE_ALERT,
    StreamRecord,
    StreamStatus,
    TransitionEvent,
    TransitionKind,
)
from shared.config.tracking import GuildSettings
from shared.errors import (
    DispatchFailure,
    PermanentApiError,
    RateLimited,
    TrackerError,
    TransientApiError,
)
from shared.logging.logger import get_logger
from shared.storage.state_store import StreamStateStore
from shared.utils.timestamps import utcnow

log = get_logger("tracking.actions")

T = TypeVar("T")


# ======================================================================
# Actions
# ======================================================================

@dataclass(frozen=True)
class CreateChatChannel:
    stream_id: str
    name = ACTION_CREATE_CHAT


@dataclass(frozen=True)
class PostAlert:
    stream_id: str
    name = ACTION_POST_ALERT


@dataclass(frozen=True)
class ArchiveChat:
    stream_id: str
    delay_seconds: float = 0.0
    name = ACTION_ARCHIVE_CHAT


@dataclass(frozen=True)
class PostScheduleChangeAlert:
    stream_id: str
    scheduled_start: Optional[datetime]
    previous_start: Optional[datetime] = None
    name = ACTION_SCHEDULE_ALERT


Action = Union[CreateChatChannel, PostAlert, ArchiveChat, PostScheduleChangeAlert]


def _started_actions(stream_id: str, settings: GuildSettings) -> List[Action]:
    actions: List[Action] = []
    if settings.chat_enabled:
        actions.append(CreateChatChannel(stream_id))
    if settings.alerts_enabled:
        actions.append(PostAlert(stream_id))
    return actions


def _ended_actions(stream_id: str, settings: GuildSettings) -> List[Action]:
    return [ArchiveChat(stream_id, delay_seconds=settings.chat.archive_delay_seconds)]


def plan_actions(
    event: TransitionEvent,
    record: Optional[StreamRecord],
    settings: GuildSettings,
) -> List[Action]:
    """
    Side effects owed for an event. Every TransitionKind is handled
    explicitly; an unknown kind is a programming error.
    """
    kind = event.kind

    if kind is TransitionKind.STARTED:
        return _started_actions(event.stream_id, settings)

    if kind is TransitionKind.ENDED:
        return _ended_actions(event.stream_id, settings)

    if kind is TransitionKind.RESCHEDULED:
        if not settings.alerts_enabled:
            return []
        scheduled = event.entry.scheduled_start if event.entry else None
        return [
            PostScheduleChangeAlert(
                event.stream_id,
                scheduled_start=scheduled,
                previous_start=event.previous_start,
            )
        ]

    if kind is TransitionKind.RESUMED:
        if record is None:
            return []
        if record.status is StreamStatus.LIVE:
            return _started_actions(event.stream_id, settings)
        if record.status is StreamStatus.ENDED:
            return _ended_actions(event.stream_id, settings)
        if settings.alerts_enabled and record.owes_schedule_alert:
            return [
                PostScheduleChangeAlert(
                    event.stream_id,
                    scheduled_start=record.scheduled_start,
                    previous_start=record.rescheduled_from,
                )
            ]
        return []

    if kind in (TransitionKind.DISCOVERED, TransitionKind.REAPPEARED, TransitionKind.MISSING):
        return []

    raise RuntimeError(f"Unsupported transition kind: {kind}")


# ======================================================================
# Executor
# ======================================================================

class ActionOutcome(Enum):
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class ActionExecutor:
    """
    Performs planned actions against the chat platform.

    Rules:
    - Markers are checked before any remote call; done or failed actions
      are no-ops
    - A marker is persisted (write-through) before execute() returns
    - Transient errors retry with backoff; permanent errors and exhausted
      retries flag the action failed and are reported, never raised
    - Remote calls are bounded by a shared semaphore; waiting out the
      archive delay does not hold a slot
    - Archiving copies the chat's human messages to the log channel
      first; a chat with none is deleted at once
    """

    def __init__(
        self,
        *,
        store: StreamStateStore,
        platform: ChatPlatform,
        settings: GuildSettings,
        talents: Mapping[str, Talent],
        policy: Optional[BackoffPolicy] = None,
        concurrency: int = 4,
        ops_log: Optional[OperationsLog] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._platform = platform
        self._settings = settings
        self._talents = talents
        self._policy = policy or BackoffPolicy(base=1.0, factor=2.0, cap=60.0, max_attempts=4)
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._ops_log = ops_log
        self._sleep = sleep
        self._rng = rng

    # ------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------

    async def execute(self, action: Action) -> ActionOutcome:
        record = self._store.get(action.stream_id)
        if record is None:
            log.debug(f"[{action.stream_id}] {action.name} skipped: record no longer tracked")
            return ActionOutcome.SKIPPED

        if record.has_failed(action.name):
            log.debug(f"[{record.id}] {action.name} skipped: previously flagged failed")
            return ActionOutcome.SKIPPED

        try:
            done = await self._dispatch(action, record)
        except PermanentApiError as e:
            log.error(f"[{record.id}] {action.name} failed permanently: {e}")
            await self._flag_failed(action, str(e), permanent=True)
            return ActionOutcome.FAILED
        except DispatchFailure as e:
            log.error(str(e))
            await self._flag_failed(action, str(e.cause), permanent=False)
            return ActionOutcome.FAILED

        return ActionOutcome.DONE if done else ActionOutcome.SKIPPED

    async def _dispatch(self, action: Action, record: StreamRecord) -> bool:
        if isinstance(action, CreateChatChannel):
            return await self._create_chat_channel(action, record)
        if isinstance(action, PostAlert):
            return await self._post_alert(action, record)
        if isinstance(action, ArchiveChat):
            return await self._archive_chat(action, record)
        if isinstance(action, PostScheduleChangeAlert):
            return await self._post_schedule_change_alert(action, record)
        raise RuntimeError(f"Unsupported action: {action!r}")

    # ------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------

    async def _create_chat_channel(self, action: CreateChatChannel, record: StreamRecord) -> bool:
        if record.chat_channel_id is not None:
            return False
        if record.status is not StreamStatus.LIVE:
            log.debug(f"[{record.id}] Not live anymore; no chat channel created")
            return False

        category_id = self._settings.chat.category_id
        talent = self._talents.get(record.talent_id)
        topic = stream_channel_topic(record)

        async def claim() -> str:
            # A channel created before a crash (marker never persisted) is adopted.
            existing = await self._platform.find_channel_by_topic(category_id, topic)
            if existing is not None:
                log.info(f"[{record.id}] Adopting existing stream chat {existing}")
                return existing
            return await self._platform.create_channel(
                category_id,
                stream_channel_name(talent, record.talent_id),
                topic=topic,
            )

        channel_id = await self._call(action, claim)

        await self._store.mutate(
            record.id,
            lambda r: r.evolve(chat_channel_id=channel_id) if r else None,
        )
        log.info(f"[{record.id}] Stream chat ready: {channel_id}")

        try:
            await self._call(
                action,
                lambda: self._platform.send_message(
                    channel_id, "", embed=now_watching_embed(record, talent)
                ),
            )
        except TrackerError as e:
            log.warning(f"[{record.id}] Could not post stream intro in {channel_id}: {e}")

        return True

    async def _post_alert(self, action: PostAlert, record: StreamRecord) -> bool:
        if record.alert_message_id is not None:
            return False
        if record.status is not StreamStatus.LIVE:
            log.debug(f"[{record.id}] Not live anymore; live alert dropped")
            return False

        talent = self._talents.get(record.talent_id)
        role = talent.discord_role if talent else None

        message_id = await self._call(
            action,
            lambda: self._platform.send_message(
                self._settings.alerts.channel_id,
                "",
                embed=live_alert_embed(record, talent),
                mention_role=role,
            ),
        )

        await self._store.mutate(
            record.id,
            lambda r: r.evolve(alert_message_id=message_id) if r else None,
        )
        log.info(f"[{record.id}] Live alert posted: {message_id}")
        return True

    async def _archive_chat(self, action: ArchiveChat, record: StreamRecord) -> bool:
        if record.chat_channel_id is None or record.archived:
            return False

        channel_id = record.chat_channel_id
        talent = self._talents.get(record.talent_id)

        kept: Optional[List[ChatMessage]] = None
        if not record.logs_exported:
            kept = await self._read_chat(action.name, record.id, channel_id)
            if kept == []:
                log.info(f"[{record.id}] Stream chat {channel_id} has no messages; deleting now")
                await self._call(action, lambda: self._platform.delete_channel(channel_id))
                await self._mark(record.id, archived=True)
                return True

        if not record.end_notice_sent:
            await self._post_end_notice(action, record, talent)

        if kept and self._settings.chat.log_channel_id:
            await self._export_chat_log(
                action.name,
                record.id,
                kept,
                record=record,
                talent=talent,
                stream_start=record.actual_start or record.scheduled_start,
            )
            await self._mark(record.id, logs_exported=True)

        if action.delay_seconds > 0:
            log.info(f"[{record.id}] Archiving {channel_id} in {action.delay_seconds:.0f}s")
            await self._sleep(action.delay_seconds)

        current = self._store.get(record.id)
        if current is None or current.archived:
            return False

        await self._dispose_channel(action.name, record.id, channel_id)
        await self._mark(record.id, archived=True)
        log.info(f"[{record.id}] Stream chat {channel_id} archived")
        return True

    async def _post_end_notice(
        self,
        action: ArchiveChat,
        record: StreamRecord,
        talent: Optional[Talent],
    ) -> None:
        chat = self._settings.chat
        discussion = chat.discussion_channel_for(talent.branch if talent else None)
        try:
            await self._call(
                action,
                lambda: self._platform.send_message(
                    record.chat_channel_id,
                    "",
                    embed=stream_ended_embed(
                        talent,
                        archive_delay_seconds=action.delay_seconds,
                        discussion_channel_id=discussion,
                    ),
                ),
            )
        except TrackerError as e:
            log.warning(f"[{record.id}] Could not post end-of-stream notice: {e}")
            return
        await self._mark(record.id, end_notice_sent=True)

    async def _post_schedule_change_alert(
        self,
        action: PostScheduleChangeAlert,
        record: StreamRecord,
    ) -> bool:
        if record.status is not StreamStatus.SCHEDULED:
            return False
        if action.scheduled_start is None or record.schedule_alert_for == action.scheduled_start:
            return False
        if record.scheduled_start != action.scheduled_start:
            # Superseded by a later reschedule already applied to the store.
            return False

        talent = self._talents.get(record.talent_id)
        await self._call(
            action,
            lambda: self._platform.send_message(
                self._settings.alerts.channel_id,
                "",
                embed=schedule_change_embed(
                    record,
                    talent,
                    previous_start=action.previous_start,
                ),
            ),
        )

        await self._store.mutate(
            record.id,
            lambda r: r.evolve(schedule_alert_for=action.scheduled_start) if r else None,
        )
        log.info(f"[{record.id}] Schedule change alert posted")
        return True

    # ------------------------------------------------------------
    # Orphaned chats
    # ------------------------------------------------------------

    async def sweep_orphaned_chats(self) -> int:
        """
        Archive stream chats in the chat category that no record owns.

        A chat is an orphan when its stream has ended or is not tracked at
        all. Chats of scheduled, live or missing streams are left alone
        (CreateChatChannel adopts them). Channels whose topic is not a
        stream link are never touched. Returns the number archived.
        """
        if not self._settings.chat_enabled:
            return 0

        category_id = self._settings.chat.category_id
        try:
            channels = await self._retry(
                ACTION_ARCHIVE_CHAT,
                f"category {category_id}",
                lambda: self._platform.list_channels(category_id),
            )
        except TrackerError as e:
            log.warning(f"Could not list stream chats under {category_id}: {e}")
            return 0

        owned = set()
        for stream_id in self._store.tracked_ids():
            record = self._store.get(stream_id)
            if record is not None and record.chat_channel_id is not None:
                owned.add(record.chat_channel_id)

        archived = 0
        for channel in channels:
            stream_id = stream_id_from_topic(channel.topic)
            if stream_id is None or channel.id in owned:
                continue
            record = self._store.get(stream_id)
            if record is not None and record.status is not StreamStatus.ENDED:
                continue

            try:
                await self._archive_orphan(channel, record)
            except TrackerError as e:
                log.error(f"Could not archive orphaned stream chat {channel.id}: {e}")
                continue
            archived += 1

        if archived:
            log.info(f"Archived {archived} orphaned stream chat(s)")
        return archived

    async def _archive_orphan(self, channel: ChannelInfo, record: Optional[StreamRecord]) -> None:
        label = record.id if record else f"channel {channel.id}"
        talent = self._talents.get(record.talent_id) if record else None

        kept = await self._read_chat(ACTION_ARCHIVE_CHAT, label, channel.id)
        if kept == []:
            await self._retry(
                ACTION_ARCHIVE_CHAT,
                label,
                lambda: self._platform.delete_channel(channel.id),
            )
            log.info(f"[{label}] Deleted orphaned stream chat {channel.id}")
            return

        if kept and self._settings.chat.log_channel_id:
            start = (record.actual_start or record.scheduled_start) if record else None
            await self._export_chat_log(
                ACTION_ARCHIVE_CHAT,
                label,
                kept,
                record=record,
                talent=talent,
                stream_start=start or channel.created_at,
            )

        await self._dispose_channel(ACTION_ARCHIVE_CHAT, label, channel.id)
        log.info(f"[{label}] Orphaned stream chat {channel.id} archived")

    # ------------------------------------------------------------
    # Chat logs
    # ------------------------------------------------------------

    async def _read_chat(self, name: str, label: str, channel_id: str) -> Optional[List[ChatMessage]]:
        """
        Messages worth keeping, or None when the history cannot be read.
        """
        try:
            messages = await self._retry(
                name, label, lambda: self._platform.fetch_messages(channel_id)
            )
        except PermanentApiError as e:
            log.warning(f"[{label}] Cannot read {channel_id} ({e}); archiving without a log")
            return None
        return [m for m in messages if should_archive(m)]

    async def _export_chat_log(
        self,
        name: str,
        label: str,
        messages: List[ChatMessage],
        *,
        record: Optional[StreamRecord],
        talent: Optional[Talent],
        stream_start: Optional[datetime],
    ) -> None:
        log_channel = self._settings.chat.log_channel_id
        start = stream_start or messages[0].created_at
        video_id = record.id if record else None
        chunks = pack((format_message(m, start, video_id) for m in messages), MAX_FIELD_SIZE)
        ended_at = utcnow()

        async def send(embed: Dict[str, Any]) -> str:
            return await self._retry(
                name, label, lambda: self._platform.send_message(log_channel, "", embed=embed)
            )

        if len(chunks) <= FIELDS_PER_EMBED:
            embed = chat_log_index_embed(record, talent, ended_at=ended_at)
            embed["fields"] = chat_log_fields(chunks)
            await send(embed)
        else:
            links: List[str] = []
            for i, segment in enumerate(segments(chunks)):
                embed = chat_log_segment_embed(i, talent)
                embed["fields"] = chat_log_fields(segment)
                message_id = await send(embed)
                url = message_link(self._settings.id, log_channel, message_id)
                links.append(f"[Log {i + 1}]({url})\n" if url else f"Log {i + 1}\n")

            for page, description in enumerate(pack(links, MAX_DESCRIPTION_SIZE)):
                embed = chat_log_index_embed(record, talent, ended_at=ended_at, page=page)
                embed["description"] = description
                await send(embed)

        log.info(f"[{label}] Exported {len(messages)} chat message(s) to {log_channel}")

    async def _dispose_channel(self, name: str, label: str, channel_id: str) -> None:
        archive_category = self._settings.chat.archive_category_id
        if archive_category:
            await self._retry(
                name,
                label,
                lambda: self._platform.archive_or_move_channel(channel_id, archive_category),
            )
        else:
            await self._retry(name, label, lambda: self._platform.delete_channel(channel_id))

    # ------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------

    async def _call(self, action: Action, call: Callable[[], Awaitable[T]]) -> T:
        return await self._retry(action.name, action.stream_id, call)

    async def _retry(self, name: str, label: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = 0
        while True:
            try:
                async with self._semaphore:
                    return await call()
            except TransientApiError as e:
                attempts += 1
                if self._policy.exhausted(attempts):
                    raise DispatchFailure(name, label, attempts, e) from e

                retry_after = e.retry_after if isinstance(e, RateLimited) else None
                delay = self._policy.delay(attempts - 1, retry_after=retry_after, rng=self._rng)
                log.warning(
                    f"[{label}] {name} failed (attempt={attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def _mark(self, stream_id: str, **markers: Any) -> None:
        await self._store.mutate(
            stream_id,
            lambda r: r.evolve(**markers) if r else None,
        )

    async def _flag_failed(self, action: Action, error: str, *, permanent: bool) -> None:
        await self._store.mutate(
            action.stream_id,
            lambda r: r.with_failure(action.name) if r else None,
        )
        if self._ops_log is not None:
            await self._ops_log.report_failure(
                action.stream_id,
                action.name,
                error,
                permanent=permanent,
            )
