import asyncio
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set

from core.jobs import ActionDispatcher
from services.discord.guild_logging import OperationsLog
from services.holodex.workers.livestream_worker import HolodexPoller, PollResult
from services.tracking.detector import apply_event, detect, refresh
from services.tracking.models import (
    StreamStatus,
    TransitionEvent,
    TransitionKind,
)
from shared.config.tracking import GuildSettings
from shared.logging.logger import get_logger
from shared.storage.state_store import StreamStateStore
from shared.utils.timestamps import utcnow

log = get_logger("core.scheduler")


class StreamScheduler:
    """
    Cooperative poll loop: Poller -> Detector -> State Store -> Dispatcher.

    Status changes are written to the store when they are detected; the
    dispatcher only ever writes markers. The first successful poll also
    computes the reconciliation set and sweeps orphaned stream chats.
    """

    def __init__(
        self,
        *,
        poller: HolodexPoller,
        store: StreamStateStore,
        dispatcher: ActionDispatcher,
        settings: GuildSettings,
        interval: float = 60.0,
        ops_log: Optional[OperationsLog] = None,
        orphan_sweep: Optional[Callable[[], Awaitable[int]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._poller = poller
        self._store = store
        self._dispatcher = dispatcher
        self._settings = settings
        self._interval = interval
        self._ops_log = ops_log
        self._orphan_sweep = orphan_sweep
        self._clock = clock

        # None until the first successful poll computes it.
        self._reconcile_ids: Optional[Set[str]] = None
        self._swept = False

        self.cycles = 0

    @property
    def reconciled(self) -> bool:
        return self._reconcile_ids is not None and not self._reconcile_ids

    # ------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        log.info(f"[BOOT] Poll loop started (interval={self._interval:.0f}s)")
        loop = asyncio.get_running_loop()

        while not stop_event.is_set():
            started = loop.time()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Poll cycle crashed; continuing with next cycle")

            wait = max(0.0, self._interval - (loop.time() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        log.info("Poll loop stopped")

    # ------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------

    async def run_cycle(self) -> bool:
        """
        Run one poll cycle. Returns False when the cycle was skipped.
        """
        result = await self._poller.poll(self._store.active_ids())
        if result is None:
            return False

        self.cycles += 1
        now = self._clock()

        if self._reconcile_ids is None:
            pending = self._store.needs_reconciliation(
                chat_enabled=self._settings.chat_enabled,
                alerts_enabled=self._settings.alerts_enabled,
            )
            self._reconcile_ids = {r.id for r in pending}
            if pending:
                log.info(f"Reconciling {len(pending)} record(s) with unfinished actions")

        events = self._detect(result, now)
        resumed = self._reconcile(result, events, now)

        if self._orphan_sweep is not None and not self._swept:
            # Must follow detection: streams first seen live this cycle own their chats.
            self._swept = True
            await self._orphan_sweep()

        # Reconciliation goes out before anything else from this cycle.
        for event in resumed + events:
            if event.kind is TransitionKind.MISSING:
                await self._report_missing(event)
            await self._dispatcher.submit(event)

        self._store.flush()
        self._store.prune(now)
        return True

    def _detect(self, result: PollResult, now: datetime) -> List[TransitionEvent]:
        events: List[TransitionEvent] = []

        for stream_id, entry in result.entries.items():
            old = self._store.get(stream_id)
            event = detect(old, entry, observed_at=now)
            if event is not None:
                self._store.upsert(apply_event(old, event))
                log.info(str(event))
                events.append(event)
            elif old is not None and old.status is not StreamStatus.MISSING:
                self._store.upsert(refresh(old, entry, observed_at=now), persist=False)

        for stream_id in self._store.tracked_ids():
            if stream_id in result.entries or stream_id in result.unresolved:
                continue
            old = self._store.get(stream_id)
            event = detect(old, None, observed_at=now)
            if event is None:
                continue
            self._store.upsert(apply_event(old, event))
            log.warning(str(event))
            events.append(event)

        return events

    def _reconcile(
        self,
        result: PollResult,
        events: List[TransitionEvent],
        now: datetime,
    ) -> List[TransitionEvent]:
        if not self._reconcile_ids:
            return []

        transitioned = {e.stream_id for e in events}
        resumed: List[TransitionEvent] = []

        for stream_id in sorted(self._reconcile_ids):
            record = self._store.get(stream_id)
            if record is None or stream_id in transitioned:
                # A fresh event supersedes reconciliation.
                self._reconcile_ids.discard(stream_id)
                continue
            if stream_id in result.unresolved:
                # Status not confirmed this cycle; retry next cycle.
                continue

            self._reconcile_ids.discard(stream_id)
            resumed.append(
                TransitionEvent(
                    stream_id=stream_id,
                    old_status=record.status,
                    new_status=record.status,
                    observed_at=now,
                    kind=TransitionKind.RESUMED,
                )
            )
            log.info(f"[{stream_id}] Resuming unfinished actions ({record.status.value})")

        return resumed

    async def _report_missing(self, event: TransitionEvent) -> None:
        if self._ops_log is None:
            return
        record = self._store.get(event.stream_id)
        url = record.url if record else event.stream_id
        previous = event.old_status.value if event.old_status else "unknown"
        await self._ops_log.report_missing(event.stream_id, previous_status=previous, url=url)
