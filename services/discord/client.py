"""
Discord Client

This module owns the Discord connection itself. It is intentionally
minimal and lifecycle-focused.

Responsibilities:
- connect to Discord
- handle ready / resume / disconnect events
- expose a clean async run() / wait_until_ready() / shutdown() contract

IMPORTANT:
- This client MUST NOT create its own event loop
- Stream tracking only reaches Discord through DiscordChatPlatform
"""

from __future__ import annotations

import asyncio
from typing import Optional

import discord
from discord.ext import commands

from shared.logging.logger import get_logger

# NOTE: routed to Discord runtime log file
log = get_logger("discord.client", runtime="discord")


class DiscordClient:
    """
    Thin wrapper around discord.py Bot.
    """

    def __init__(self, token: str):
        if not token:
            raise RuntimeError("Discord bot token is required")

        self._token = token
        self._bot: commands.Bot = self._build_bot()
        self._ready_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # --------------------------------------------------

    def _build_bot(self) -> commands.Bot:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = False
        intents.messages = False
        intents.message_content = False

        bot = commands.Bot(
            command_prefix="!",
            intents=intents,
            help_command=None,
        )

        # --------------------------------------------------
        # Lifecycle Events
        # --------------------------------------------------

        @bot.event
        async def on_ready():
            log.info(
                f"Discord connected as {bot.user} "
                f"(id={bot.user.id}) "
                f"guilds={len(bot.guilds)}"
            )
            self._ready_event.set()

        @bot.event
        async def on_resumed():
            log.info("Discord connection resumed")

        @bot.event
        async def on_disconnect():
            log.warning("Discord connection lost")

        return bot

    # --------------------------------------------------

    def start(self) -> asyncio.Task:
        """
        Start the connection in a background task.
        """
        if self._task is not None:
            raise RuntimeError("Discord client already running")

        log.info("Initializing Discord client")
        self._task = asyncio.create_task(self._run(), name="discord-client")
        return self._task

    async def _run(self) -> None:
        try:
            await self._bot.start(self._token)
        except asyncio.CancelledError:
            log.info("Discord client task cancelled")
            raise
        except discord.LoginFailure as e:
            log.error(f"Discord login failed: {e}")
            raise
        finally:
            log.info("Discord client stopped")

    async def wait_until_ready(self, timeout: Optional[float] = None) -> None:
        """
        Block until the gateway reports ready. Raises if the client task
        dies first (bad token, network down at boot).
        """
        if self._task is None:
            raise RuntimeError("Discord client not started")

        ready = asyncio.create_task(self._ready_event.wait())
        done, _ = await asyncio.wait(
            {ready, self._task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if ready not in done:
            ready.cancel()
            if self._task in done:
                # Surfaces the client's exception.
                self._task.result()
                raise RuntimeError("Discord client exited before becoming ready")
            raise asyncio.TimeoutError("Discord client not ready in time")

    # --------------------------------------------------

    async def shutdown(self) -> None:
        """
        Gracefully close the Discord connection.
        """
        log.info("Closing Discord connection")

        try:
            await self._bot.close()
        except (discord.DiscordException, OSError) as e:
            log.warning(f"Discord close error ignored: {e}")

        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        self._ready_event.clear()

    # --------------------------------------------------

    @property
    def bot(self) -> commands.Bot:
        return self._bot
