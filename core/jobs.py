import asyncio
from typing import Dict, List, Optional

from services.tracking.actions import ActionExecutor, ActionOutcome, plan_actions
from services.tracking.models import TransitionEvent
from shared.config.tracking import GuildSettings
from shared.logging.logger import get_logger
from shared.storage.state_store import StreamStateStore

log = get_logger("core.jobs")


class ActionDispatcher:
    """
    Turns transition events into executed actions.

    Rules:
    - submit() blocks while the queue is full; events are never dropped
    - Events for one stream id run strictly in arrival order
    - Distinct stream ids run concurrently across the worker pool
    - An event is acknowledged (task_done) only after its markers persist
    """

    def __init__(
        self,
        *,
        executor: ActionExecutor,
        store: StreamStateStore,
        settings: GuildSettings,
        workers: int = 4,
        queue_size: int = 256,
    ):
        self._executor = executor
        self._store = store
        self._settings = settings
        self._worker_count = max(1, workers)
        self._queue: "asyncio.Queue[TransitionEvent]" = asyncio.Queue(maxsize=max(1, queue_size))
        self._workers: List[asyncio.Task] = []

        # stream id -> lock; acquired in dequeue order, which asyncio.Lock
        # hands out FIFO.
        self._stream_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, int] = {}

        self._accepting = False

        # --------------------------------------------------
        # METRICS (READ-ONLY, ADDITIVE)
        # --------------------------------------------------
        self._metrics = {
            "dispatched": 0,
            "completed": 0,
            "skipped": 0,
            "failed": 0,
        }

    # ------------------------------------------------------------
    # READ-ONLY VISIBILITY HOOKS
    # ------------------------------------------------------------

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def start(self) -> None:
        if self._workers:
            log.warning("Dispatcher already started; skipping")
            return

        self._accepting = True
        for i in range(self._worker_count):
            task = asyncio.create_task(self._worker(i), name=f"dispatcher-worker-{i}")
            self._workers.append(task)
        log.info(f"Dispatcher started with {self._worker_count} worker(s)")

    async def submit(self, event: TransitionEvent) -> None:
        if not self._accepting:
            raise RuntimeError("Dispatcher is not accepting events")

        if self._queue.full():
            log.warning(f"Dispatch queue full ({self._queue.maxsize}); producer waiting")
        await self._queue.put(event)
        self._metrics["dispatched"] += 1
        log.debug(f"Queued {event}")

    async def join(self) -> None:
        await self._queue.join()

    async def shutdown(self, grace: float = 10.0) -> None:
        """
        Stop accepting, give queued events `grace` seconds to drain, then
        cancel workers. Cancelled actions set no marker.
        """
        self._accepting = False
        if not self._workers:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=grace)
            log.info("Dispatch queue drained")
        except asyncio.TimeoutError:
            log.warning(
                f"Dispatch queue not drained within {grace:.0f}s; "
                f"abandoning {self._queue.qsize()} queued event(s)"
            )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        log.info("Dispatcher stopped")

    # ------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------

    def _lock_for(self, stream_id: str) -> asyncio.Lock:
        lock = self._stream_locks.get(stream_id)
        if lock is None:
            lock = asyncio.Lock()
            self._stream_locks[stream_id] = lock
        return lock

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            stream_id = event.stream_id
            lock = self._lock_for(stream_id)
            self._pending[stream_id] = self._pending.get(stream_id, 0) + 1

            try:
                async with lock:
                    await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._metrics["failed"] += 1
                log.exception(f"Dispatch of {event} crashed (worker={index})")
            finally:
                remaining = self._pending[stream_id] - 1
                if remaining:
                    self._pending[stream_id] = remaining
                else:
                    del self._pending[stream_id]
                    self._stream_locks.pop(stream_id, None)
                self._queue.task_done()

    async def _handle(self, event: TransitionEvent) -> None:
        record = self._store.get(event.stream_id)
        actions = plan_actions(event, record, self._settings)
        if not actions:
            log.debug(f"No actions for {event}")
            return

        log.info(f"Dispatching {event}: {', '.join(a.name for a in actions)}")
        for action in actions:
            outcome = await self._executor.execute(action)
            if outcome is ActionOutcome.DONE:
                self._metrics["completed"] += 1
            elif outcome is ActionOutcome.SKIPPED:
                self._metrics["skipped"] += 1
            else:
                self._metrics["failed"] += 1
