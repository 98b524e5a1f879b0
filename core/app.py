import asyncio
import os
import signal
import sys

from dotenv import load_dotenv

from core.config_loader import ConfigLoader
from core.jobs import ActionDispatcher
from core.registry import TalentRegistry
from core.scheduler import StreamScheduler
from runtime.version import as_string
from services.discord.client import DiscordClient
from services.discord.guild_logging import OperationsLog
from services.discord.platform import DiscordChatPlatform
from services.holodex.api.livestream import HolodexLivestreamAPI
from services.holodex.workers.livestream_worker import HolodexPoller
from services.tracking.actions import ActionExecutor
from shared.cache.lru import LRUCache
from shared.errors import ConfigError
from shared.logging.logger import get_logger
from shared.storage.state_store import StreamStateStore

log = get_logger("core.app")

DISCORD_READY_TIMEOUT = 120.0


def _require_env(name: str) -> str:
    value = (os.getenv(name) or "").strip()
    if not value:
        raise ConfigError(f"{name} not found in environment")
    return value


async def main(stop_event: asyncio.Event):
    # --------------------------------------------------
    # ENV
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info(f"{as_string()} booting")

    holodex_key = _require_env("HOLODEX_API_KEY")
    discord_token = _require_env("DISCORD_BOT_TOKEN")

    # --------------------------------------------------
    # CONFIG
    # --------------------------------------------------
    loader = ConfigLoader()
    config = loader.load_tracking_config()
    talents = TalentRegistry(loader)
    roster = talents.load()

    guild = config.guild
    log.info(
        f"[BOOT] Stream chats: {'ENABLED' if guild.chat_enabled else 'DISABLED'} | "
        f"live alerts: {'ENABLED' if guild.alerts_enabled else 'DISABLED'} | "
        f"operations log: {'ENABLED' if guild.operations.enabled else 'DISABLED'}"
    )

    # --------------------------------------------------
    # STATE
    # --------------------------------------------------
    store = StreamStateStore(
        config.state.path,
        retention=config.state.retention,
        max_records=config.state.max_records,
    )
    restored = store.load()

    # --------------------------------------------------
    # DISCORD
    # --------------------------------------------------
    client = DiscordClient(discord_token)
    client.start()
    await client.wait_until_ready(timeout=DISCORD_READY_TIMEOUT)

    platform = DiscordChatPlatform(client.bot, LRUCache(config.cache.capacity))
    ops_log = OperationsLog(platform, guild.operations)

    # --------------------------------------------------
    # CORE SYSTEMS
    # --------------------------------------------------
    api = HolodexLivestreamAPI(
        api_key=holodex_key,
        base_url=config.holodex.base_url,
        window_size=config.holodex.window_size,
        timeout=config.holodex.request_timeout,
    )
    poller = HolodexPoller(
        api=api,
        channel_ids=talents.channel_ids(),
        policy=config.polling.backoff,
        timeout=config.polling.timeout_seconds,
    )
    executor = ActionExecutor(
        store=store,
        platform=platform,
        settings=guild,
        talents=roster,
        policy=config.dispatch.backoff,
        concurrency=config.dispatch.concurrency,
        ops_log=ops_log,
    )
    dispatcher = ActionDispatcher(
        executor=executor,
        store=store,
        settings=guild,
        workers=config.dispatch.workers,
        queue_size=config.dispatch.queue_size,
    )
    scheduler = StreamScheduler(
        poller=poller,
        store=store,
        dispatcher=dispatcher,
        settings=guild,
        interval=config.polling.interval_seconds,
        ops_log=ops_log,
        orphan_sweep=executor.sweep_orphaned_chats,
    )

    dispatcher.start()
    await ops_log.log_startup(talents=len(roster), restored=restored)

    # --------------------------------------------------
    # RUN UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    poll_task = asyncio.create_task(scheduler.run(stop_event), name="poll-loop")
    await stop_event.wait()

    log.info("Shutdown initiated")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN: POLLING, THEN DISPATCH, THEN CONNECTIONS
    # --------------------------------------------------
    try:
        await poll_task
    except Exception as e:
        log.warning(f"Poll loop shutdown error ignored: {e}")

    await dispatcher.shutdown(grace=config.dispatch.shutdown_grace_seconds)

    try:
        store.save()
    except OSError as e:
        log.error(f"Final state snapshot failed: {e}")

    await api.close()
    await client.shutdown()

    log.info(f"Stream tracker stopped (dispatch metrics: {dispatcher.get_metrics()})")


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Windows-safe Ctrl+C handler.
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except (ValueError, OSError):
        pass


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run():
    stop_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _install_signal_handlers(loop, stop_event)

    exit_code = 0
    try:
        loop.run_until_complete(main(stop_event))

    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        exit_code = 2

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")
        stop_event.set()

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        # --------------------------------------------------
        # FINAL LOOP CLEANUP
        # --------------------------------------------------
        loop.run_until_complete(loop.shutdown_asyncgens())

        asyncio.set_event_loop(None)
        loop.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(run())
