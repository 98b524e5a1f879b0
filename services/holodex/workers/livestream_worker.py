import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from core.ratelimits import BackoffPolicy
from services.holodex.api.livestream import HolodexLivestreamAPI
from services.holodex.models.stream import RawEntry
from shared.errors import (
    DeserializeError,
    PermanentApiError,
    RateLimited,
    TransientApiError,
)
from shared.logging.logger import get_logger

log = get_logger("holodex.poller")

T = TypeVar("T")


@dataclass
class PollResult:
    """
    Outcome of one successful poll cycle.

    - entries: every stream currently visible upstream, keyed by id
    - dropped: entries discarded because they failed to decode
    - unresolved: ids whose direct lookup failed; their absence from
      `entries` must not be read as "missing"
    """

    entries: Dict[str, RawEntry] = field(default_factory=dict)
    dropped: int = 0
    unresolved: Set[str] = field(default_factory=set)


class HolodexPoller:
    """
    Scheduler-owned poll driver for Holodex.

    Responsibilities:
    - Run one fetch cycle at a time (single-flight)
    - Bound every cycle by a timeout
    - Retry rate limits / network errors with capped exponential backoff
    - Never raise on upstream failure: a failed cycle returns None
    """

    def __init__(
        self,
        *,
        api: HolodexLivestreamAPI,
        channel_ids: Iterable[str],
        policy: Optional[BackoffPolicy] = None,
        timeout: float = 45.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._api = api
        self._channel_ids = sorted(set(channel_ids))
        self._policy = policy or BackoffPolicy(base=1.0, factor=2.0, cap=30.0, max_attempts=5)
        self._timeout = timeout
        self._sleep = sleep
        self._rng = rng
        self._lock = asyncio.Lock()

        # Waits applied during the most recent cycle (observability + tests).
        self.last_backoff: List[float] = []
        self.cycles_ok = 0
        self.cycles_skipped = 0

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------ #

    async def poll(self, lookup_ids: Iterable[str] = ()) -> Optional[PollResult]:
        """
        Run one cycle.

        `lookup_ids` are tracked non-terminal streams; any of them absent
        from the live listing is resolved directly so endings are observed.
        """
        if self._lock.locked():
            log.warning("Poll cycle still in flight, skipping overlapping cycle")
            return None

        async with self._lock:
            self.last_backoff = []
            try:
                result = await asyncio.wait_for(
                    self._run_cycle(list(lookup_ids)),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                log.error(f"Poll cycle exceeded {self._timeout:.0f}s, skipped")
                result = None
            except TransientApiError as e:
                log.error(f"Poll cycle skipped after retries exhausted: {e}")
                result = None
            except PermanentApiError as e:
                log.error(f"Poll cycle skipped, upstream rejected request: {e}")
                result = None
            except DeserializeError as e:
                log.error(f"Poll cycle skipped, undecodable listing: {e}")
                result = None

            if result is None:
                self.cycles_skipped += 1
            else:
                self.cycles_ok += 1
            return result

    # ------------------------------------------------------------------ #

    async def _run_cycle(self, lookup_ids: List[str]) -> PollResult:
        listing = await self._with_backoff(
            "live listing",
            lambda: self._api.fetch_live(self._channel_ids),
        )

        result = PollResult(dropped=listing.dropped)
        for entry in listing.entries:
            if entry.is_missing_upstream:
                continue
            result.entries[entry.id] = entry

        tracked_channels = set(self._channel_ids)

        for stream_id in lookup_ids:
            if stream_id in result.entries:
                continue

            try:
                entry = await self._with_backoff(
                    f"lookup {stream_id}",
                    lambda sid=stream_id: self._api.fetch_video(sid),
                )
            except (TransientApiError, PermanentApiError) as e:
                log.warning(f"[{stream_id}] Direct lookup failed, state kept: {e}")
                result.unresolved.add(stream_id)
                continue
            except DeserializeError as e:
                log.warning(f"[{stream_id}] Direct lookup undecodable, state kept: {e}")
                result.dropped += 1
                result.unresolved.add(stream_id)
                continue

            if entry is None or entry.is_missing_upstream:
                log.debug(f"[{stream_id}] Not known upstream anymore")
                continue
            if entry.channel_id not in tracked_channels:
                continue

            result.entries[entry.id] = entry

        log.debug(
            f"Poll cycle ok: entries={len(result.entries)} "
            f"dropped={result.dropped} unresolved={len(result.unresolved)}"
        )
        return result

    async def _with_backoff(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = 0
        while True:
            try:
                return await call()
            except TransientApiError as e:
                attempts += 1
                if self._policy.exhausted(attempts):
                    raise

                retry_after = e.retry_after if isinstance(e, RateLimited) else None
                delay = self._policy.delay(
                    attempts - 1,
                    retry_after=retry_after,
                    rng=self._rng,
                )
                self.last_backoff.append(delay)

                log.warning(
                    f"Holodex {label} failed (attempt={attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
