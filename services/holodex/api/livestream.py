from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

import httpx

from runtime.version import user_agent
from services.holodex.models.stream import RawEntry, is_tracked_type, parse_entry
from shared.errors import (
    DeserializeError,
    NetworkError,
    PermanentApiError,
    RateLimited,
)
from shared.logging.logger import get_logger

log = get_logger("holodex.livestream")


@dataclass
class FetchResult:
    entries: List[RawEntry] = field(default_factory=list)
    dropped: int = 0


class HolodexLivestreamAPI:
    """
    Holodex livestream discovery API (v2).

    Responsibilities:
    - List live + upcoming streams for a set of channels, windowed so each
      request stays under the upstream channel-list limit
    - Look up a single video directly (used to catch streams that dropped
      out of the live listing)
    - Translate HTTP failures into the tracker's error taxonomy

    This module is read-only and safe to call repeatedly.
    """

    DEFAULT_BASE_URL = "https://holodex.net/api/v2"
    USER_AGENT = user_agent()

    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        window_size: int = 50,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise RuntimeError("Holodex API key is required")

        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.window_size = max(1, int(window_size))

        # Allow caller to supply a shared client; otherwise own lifecycle
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "X-APIKEY": api_key,
                "User-Agent": self.USER_AGENT,
                "Accept": "application/json",
            },
        )
        self._client_owned = client is None

    async def close(self) -> None:
        if self._client_owned:
            await self._client.aclose()

    # ------------------------------------------------------------
    # Live listing
    # ------------------------------------------------------------

    async def fetch_live(self, channel_ids: Iterable[str]) -> FetchResult:
        """
        Fetch live + upcoming streams for all given channels.

        Entries that fail to decode are dropped and counted; a malformed
        response body raises DeserializeError for the whole batch.
        """
        channels = sorted(set(channel_ids))
        result = FetchResult()

        for start in range(0, len(channels), self.window_size):
            window = channels[start:start + self.window_size]
            payload = await self._get_json(
                "/users/live",
                params={"channels": ",".join(window)},
            )

            if not isinstance(payload, list):
                raise DeserializeError(
                    f"live listing is not a list (got {type(payload).__name__})"
                )

            tracked = set(window)
            for item in payload:
                if isinstance(item, dict) and not is_tracked_type(item):
                    continue
                try:
                    entry = parse_entry(item)
                except DeserializeError as e:
                    result.dropped += 1
                    log.warning(f"Dropped undecodable Holodex entry: {e}")
                    continue

                # Collab listings can surface foreign channels.
                if entry.channel_id not in tracked:
                    continue
                result.entries.append(entry)

        log.debug(
            f"Holodex live listing: channels={len(channels)} "
            f"entries={len(result.entries)} dropped={result.dropped}"
        )
        return result

    # ------------------------------------------------------------
    # Direct lookup
    # ------------------------------------------------------------

    async def fetch_video(self, video_id: str) -> Optional[RawEntry]:
        """
        Resolve a single video. Returns None when Holodex no longer knows it.
        """
        try:
            payload = await self._get_json(f"/videos/{video_id}")
        except PermanentApiError as e:
            if e.status_code == 404:
                return None
            raise

        return parse_entry(payload)

    # ------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------

    async def _get_json(self, path: str, *, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"

        try:
            r = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Holodex request timed out: {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Holodex transport error on {path}: {e}") from e

        status = r.status_code

        if status == 429:
            raise RateLimited(
                f"Holodex rate limited on {path}",
                retry_after=_parse_retry_after(r.headers.get("Retry-After")),
            )
        if status >= 500:
            raise NetworkError(f"Holodex server error {status} on {path}")
        if status >= 400:
            raise PermanentApiError(
                f"Holodex rejected {path} with {status}",
                status_code=status,
            )

        try:
            return r.json()
        except ValueError as e:
            raise DeserializeError(f"Holodex returned non-JSON body for {path}") from e


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by Holodex.
        return None
