import asyncio
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from conftest import T0, make_record, make_talent
from services.discord.embeds import (
    chat_log_index_embed,
    format_archival_delay,
    live_alert_embed,
    stream_channel_name,
    stream_channel_topic,
    stream_ended_embed,
    stream_id_from_topic,
)
from services.discord.platform import DiscordChatPlatform, to_discord_embed, translate_errors
from shared.cache.lru import LRUCache
from shared.errors import NetworkError, PermanentApiError, RateLimited, TransientApiError

pytestmark = pytest.mark.unit


def _response(status, reason="error"):
    return MagicMock(status=status, reason=reason)


async def _raise(exc):
    raise exc


# ----------------------------------------------------------------------
# Error translation
# ----------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exc", "expected", "status"),
    [
        (discord.Forbidden(_response(403, "Forbidden"), "Missing Permissions"), PermanentApiError, 403),
        (discord.NotFound(_response(404, "Not Found"), "Unknown Channel"), PermanentApiError, 404),
        (discord.HTTPException(_response(400, "Bad Request"), "Invalid Form Body"), PermanentApiError, 400),
    ],
)
async def test_client_errors_are_permanent(exc, expected, status):
    with pytest.raises(expected) as info:
        await translate_errors("op", _raise(exc))
    assert info.value.status_code == status


@pytest.mark.asyncio
async def test_rate_limit_and_server_errors_are_transient():
    with pytest.raises(RateLimited):
        await translate_errors("op", _raise(discord.HTTPException(_response(429), "slow down")))
    with pytest.raises(NetworkError):
        await translate_errors("op", _raise(discord.HTTPException(_response(502), "bad gateway")))
    with pytest.raises(NetworkError):
        await translate_errors("op", _raise(asyncio.TimeoutError()))
    with pytest.raises(NetworkError):
        await translate_errors("op", _raise(ConnectionResetError()))
    with pytest.raises(TransientApiError):
        await translate_errors("op", _raise(discord.DiscordException("odd")))


@pytest.mark.asyncio
async def test_successful_call_passes_through():
    async def ok():
        return 42

    assert await translate_errors("op", ok()) == 42


# ----------------------------------------------------------------------
# Platform adapter
# ----------------------------------------------------------------------

def _text_channel(channel_id=10, topic=None):
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = channel_id
    channel.topic = topic
    channel.send = AsyncMock(return_value=MagicMock(id=999))
    channel.delete = AsyncMock()
    return channel


def _bot(*channels):
    by_id = {c.id: c for c in channels}
    bot = MagicMock()
    bot.get_channel.side_effect = lambda snowflake: by_id.get(snowflake)
    bot.fetch_channel = AsyncMock(
        side_effect=discord.NotFound(_response(404, "Not Found"), "Unknown Channel")
    )
    return bot


@pytest.mark.asyncio
async def test_send_message_mentions_role_and_caches_channel():
    channel = _text_channel()
    bot = _bot(channel)
    platform = DiscordChatPlatform(bot, LRUCache(8))

    message_id = await platform.send_message("10", "", embed={"title": "hi"}, mention_role="1234")
    await platform.send_message("10", "again")

    assert message_id == "999"
    first = channel.send.await_args_list[0].kwargs
    assert first["content"] == "<@&1234>"
    assert first["embed"].title == "hi"
    assert [r.id for r in first["allowed_mentions"].roles] == [1234]
    assert bot.get_channel.call_count == 1


@pytest.mark.asyncio
async def test_unknown_channel_is_permanent():
    platform = DiscordChatPlatform(_bot(), LRUCache(8))
    with pytest.raises(PermanentApiError) as info:
        await platform.send_message("77", "hello")
    assert info.value.status_code == 404


@pytest.mark.asyncio
async def test_find_channel_by_topic():
    category = MagicMock(spec=discord.CategoryChannel)
    category.id = 100
    category.text_channels = [_text_channel(11, "other"), _text_channel(12, "https://x")]
    platform = DiscordChatPlatform(_bot(category), LRUCache(8))

    assert await platform.find_channel_by_topic("100", "https://x") == "12"
    assert await platform.find_channel_by_topic("100", "https://nope") is None


@pytest.mark.asyncio
async def test_create_channel_requires_category():
    platform = DiscordChatPlatform(_bot(_text_channel(100)), LRUCache(8))
    with pytest.raises(PermanentApiError):
        await platform.create_channel("100", "name")


@pytest.mark.asyncio
async def test_delete_of_vanished_channel_is_not_an_error():
    channel = _text_channel()
    channel.delete.side_effect = discord.NotFound(_response(404, "Not Found"), "Unknown Channel")
    platform = DiscordChatPlatform(_bot(channel), LRUCache(8))

    await platform.delete_channel("10")
    channel.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_invalid_snowflake_is_permanent():
    platform = DiscordChatPlatform(_bot(), LRUCache(8))
    with pytest.raises(PermanentApiError):
        await platform.send_message("not-a-number", "x")



def _message(content, *, bot=False, kind=discord.MessageType.default, attachments=()):
    message = MagicMock()
    message.author.id = 42
    message.author.bot = bot
    message.clean_content = content
    message.created_at = T0
    message.attachments = [MagicMock(url=url) for url in attachments]
    message.type = kind
    return message


def _history(*items):
    async def pages(**kwargs):
        for item in items:
            if isinstance(item, Exception):
                raise item
            yield item

    return MagicMock(side_effect=pages)


@pytest.mark.asyncio
async def test_fetch_messages_reads_history_oldest_first():
    channel = _text_channel()
    channel.history = _history(
        _message("hello", attachments=("https://cdn.example/a.png",)),
        _message("joined", kind=discord.MessageType.new_member),
        _message("Now watching", bot=True),
    )
    platform = DiscordChatPlatform(_bot(channel), LRUCache(8))

    messages = await platform.fetch_messages("10")

    assert channel.history.call_args.kwargs == {"limit": None, "oldest_first": True}
    assert [m.content for m in messages] == ["hello", "joined", "Now watching"]
    assert messages[0].author_id == "42"
    assert messages[0].created_at == T0
    assert messages[0].attachments == ("https://cdn.example/a.png",)
    assert messages[1].kind == "new_member"
    assert messages[2].author_is_bot


@pytest.mark.asyncio
async def test_unreadable_history_is_permanent():
    channel = _text_channel()
    channel.history = _history(_message("hi"), discord.Forbidden(_response(403, "Forbidden"), "Missing Access"))
    platform = DiscordChatPlatform(_bot(channel), LRUCache(8))

    with pytest.raises(PermanentApiError):
        await platform.fetch_messages("10")


@pytest.mark.asyncio
async def test_list_channels():
    category = MagicMock(spec=discord.CategoryChannel)
    category.id = 100
    first, second = _text_channel(11, None), _text_channel(12, "https://youtube.com/watch?v=vid1")
    first.created_at = second.created_at = T0
    category.text_channels = [first, second]
    platform = DiscordChatPlatform(_bot(category), LRUCache(8))

    channels = await platform.list_channels("100")

    assert [(c.id, c.topic) for c in channels] == [("11", None), ("12", "https://youtube.com/watch?v=vid1")]
    assert channels[0].created_at == T0


# ----------------------------------------------------------------------
# Embeds
# ----------------------------------------------------------------------

@pytest.mark.parametrize(
    ("seconds", "text"),
    [
        (0, "now"),
        (20, "now"),
        (45, "in 45 seconds"),
        (300, "in 5 minutes"),
        (295, "in 5 minutes"),
        (150, "in 2 minutes and 30 seconds"),
    ],
)
def test_format_archival_delay(seconds, text):
    assert format_archival_delay(seconds) == text


def test_stream_channel_name():
    assert stream_channel_name(make_talent(), "UCx") == "🐻-tokino-sora-stream"
    assert stream_channel_name(make_talent(emoji="", name="Mori Calliope!"), "UCx") == "mori-calliope-stream"
    assert stream_channel_name(None, "UCabc") == "ucabc-stream"


def test_live_alert_embed_converts_to_discord_embed():
    record = make_record("vid1")
    payload = live_alert_embed(record, make_talent())

    embed = to_discord_embed(payload)
    assert embed.title == "Tokino Sora just went live!"
    assert embed.url == "https://youtube.com/watch?v=vid1"
    assert embed.colour.value == 0x4A8FDB


def test_stream_ended_embed_without_discussion_channel():
    embed = stream_ended_embed(None, archive_delay_seconds=300)
    assert embed["description"] == "This stream will be archived in 5 minutes."


def test_stream_id_from_topic_inverts_channel_topic():
    assert stream_id_from_topic(stream_channel_topic(make_record("vid1"))) == "vid1"
    assert stream_id_from_topic("Be nice") is None
    assert stream_id_from_topic(None) is None


def test_chat_log_index_embed():
    record = make_record("vid1", title="Karaoke")
    embed = chat_log_index_embed(record, make_talent(), ended_at=T0)
    assert embed["title"] == "Logs from Karaoke"
    assert embed["url"] == "https://youtube.com/watch?v=vid1"

    assert chat_log_index_embed(None, None, ended_at=T0)["title"] == "Logs from unknown stream"
    assert "title" not in chat_log_index_embed(record, make_talent(), ended_at=T0, page=1)
