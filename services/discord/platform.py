"""
discord.py implementation of the tracker's ChatPlatform.

Channel objects and role lookups are cached in a bounded LRU; nothing
else is cached here. Every discord.py failure is translated into the
tracker error taxonomy before it leaves this module.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import discord

from services.tracking.base import ChannelInfo, ChatMessage, ChatPlatform
from shared.cache.lru import LRUCache
from shared.errors import (
    NetworkError,
    PermanentApiError,
    RateLimited,
    TransientApiError,
)
from shared.logging.logger import get_logger

log = get_logger("discord.platform", runtime="discord")

T = TypeVar("T")


def to_discord_embed(payload: Dict[str, Any]) -> discord.Embed:
    cleaned = {k: v for k, v in payload.items() if v is not None}
    return discord.Embed.from_dict(cleaned)


def to_chat_message(message: discord.Message) -> ChatMessage:
    return ChatMessage(
        author_id=str(message.author.id),
        content=message.clean_content,
        created_at=message.created_at,
        author_is_bot=message.author.bot,
        attachments=tuple(a.url for a in message.attachments),
        kind=message.type.name,
    )


async def translate_errors(op: str, call: Awaitable[T]) -> T:
    """
    Await `call`, mapping discord.py / transport failures:
    - Forbidden / NotFound -> PermanentApiError
    - 429 -> RateLimited, 5xx -> NetworkError, other 4xx -> PermanentApiError
    - timeouts and connection failures -> NetworkError
    """
    try:
        return await call
    except discord.Forbidden as e:
        raise PermanentApiError(f"{op}: forbidden ({e.text or e.status})", status_code=403) from e
    except discord.NotFound as e:
        raise PermanentApiError(f"{op}: not found ({e.text or e.status})", status_code=404) from e
    except discord.HTTPException as e:
        if e.status == 429:
            raise RateLimited(
                f"{op}: rate limited",
                retry_after=getattr(e, "retry_after", None),
            ) from e
        if e.status >= 500:
            raise NetworkError(f"{op}: Discord server error {e.status}") from e
        raise PermanentApiError(f"{op}: rejected with {e.status} ({e.text})", status_code=e.status) from e
    except asyncio.TimeoutError as e:
        raise NetworkError(f"{op}: timed out") from e
    except (discord.ConnectionClosed, discord.GatewayNotFound, OSError) as e:
        raise NetworkError(f"{op}: connection error ({e})") from e
    except discord.DiscordException as e:
        raise TransientApiError(f"{op}: {e}") from e


def _snowflake(value: str, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise PermanentApiError(f"invalid {what} id {value!r}") from e


class DiscordChatPlatform(ChatPlatform):
    def __init__(self, bot: discord.Client, cache: Optional[LRUCache] = None):
        self._bot = bot
        self._cache: LRUCache = cache or LRUCache(256)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _get_channel(self, channel_id: str) -> Any:
        key = f"channel:{channel_id}"
        channel = self._cache.get(key)
        if channel is not None:
            return channel

        snowflake = _snowflake(channel_id, "channel")
        channel = self._bot.get_channel(snowflake)
        if channel is None:
            channel = await translate_errors(
                f"fetch channel {channel_id}",
                self._bot.fetch_channel(snowflake),
            )

        self._cache.put(key, channel)
        return channel

    async def _get_category(self, category_id: str) -> discord.CategoryChannel:
        category = await self._get_channel(category_id)
        if not isinstance(category, discord.CategoryChannel):
            raise PermanentApiError(f"channel {category_id} is not a category")
        return category

    def _resolve_role(self, guild: Optional[discord.Guild], role: str) -> Optional[int]:
        if role.isdigit():
            return int(role)
        if guild is None:
            return None

        key = f"role:{guild.id}:{role}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        found = discord.utils.get(guild.roles, name=role)
        if found is None:
            log.warning(f"Role '{role}' not found in guild {guild.id}; sending without mention")
            return None

        self._cache.put(key, found.id)
        return found.id

    def _forget(self, channel_id: str) -> None:
        self._cache.pop(f"channel:{channel_id}")

    # ------------------------------------------------------------------
    # ChatPlatform
    # ------------------------------------------------------------------

    async def create_channel(
        self,
        category_id: str,
        name: str,
        *,
        topic: Optional[str] = None,
    ) -> str:
        category = await self._get_category(category_id)
        channel = await translate_errors(
            f"create channel {name}",
            category.create_text_channel(
                name,
                topic=topic,
                position=1,
                overwrites=category.overwrites,
                reason="Stream chat",
            ),
        )
        self._cache.put(f"channel:{channel.id}", channel)
        log.info(f"Created channel #{channel.name} ({channel.id}) under {category_id}")
        return str(channel.id)

    async def find_channel_by_topic(self, category_id: str, topic: str) -> Optional[str]:
        category = await self._get_category(category_id)
        for channel in category.text_channels:
            if channel.topic == topic:
                return str(channel.id)
        return None

    async def list_channels(self, category_id: str) -> List[ChannelInfo]:
        category = await self._get_category(category_id)
        return [
            ChannelInfo(id=str(channel.id), topic=channel.topic, created_at=channel.created_at)
            for channel in category.text_channels
        ]

    async def fetch_messages(self, channel_id: str) -> List[ChatMessage]:
        channel = await self._get_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            raise PermanentApiError(f"channel {channel_id} is not messageable")

        async def collect() -> List[discord.Message]:
            return [m async for m in channel.history(limit=None, oldest_first=True)]

        messages = await translate_errors(f"read history of {channel_id}", collect())
        return [to_chat_message(m) for m in messages]

    async def send_message(
        self,
        channel_id: str,
        content: str,
        *,
        embed: Optional[Dict[str, Any]] = None,
        mention_role: Optional[str] = None,
    ) -> str:
        channel = await self._get_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            raise PermanentApiError(f"channel {channel_id} is not messageable")

        allowed = discord.AllowedMentions.none()
        if mention_role:
            role_id = self._resolve_role(getattr(channel, "guild", None), mention_role)
            if role_id is not None:
                content = f"<@&{role_id}> {content}".strip()
                allowed = discord.AllowedMentions(
                    everyone=False,
                    users=False,
                    roles=[discord.Object(id=role_id)],
                )

        try:
            message = await translate_errors(
                f"send message to {channel_id}",
                channel.send(
                    content=content or None,
                    embed=to_discord_embed(embed) if embed else None,
                    allowed_mentions=allowed,
                ),
            )
        except PermanentApiError:
            self._forget(channel_id)
            raise

        return str(message.id)

    async def archive_or_move_channel(self, channel_id: str, category_id: str) -> None:
        channel = await self._get_channel(channel_id)
        category = await self._get_category(category_id)
        try:
            await translate_errors(
                f"move channel {channel_id}",
                channel.edit(category=category, sync_permissions=True, reason="Stream ended"),
            )
        except PermanentApiError:
            self._forget(channel_id)
            raise
        log.info(f"Moved channel {channel_id} to archive category {category_id}")

    async def delete_channel(self, channel_id: str) -> None:
        try:
            channel = await self._get_channel(channel_id)
            await translate_errors(
                f"delete channel {channel_id}",
                channel.delete(reason="Stream ended"),
            )
            log.info(f"Deleted channel {channel_id}")
        except PermanentApiError as e:
            if e.status_code != 404:
                raise
            log.info(f"Channel {channel_id} already gone")
        finally:
            self._forget(channel_id)
