from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from services.discord.embeds import error_embed, info_embed, warning_embed
from services.tracking.base import ChatPlatform
from shared.config.tracking import OperationsSettings
from shared.errors import TrackerError
from shared.logging.logger import get_logger

log = get_logger("discord.guild_logging", runtime="discord")


class OperationsLog:
    """
    Posts operator-facing reports (startup, missing streams, failed
    actions) to the guild's operations channel.

    Reporting is best-effort: a failure to report is logged and never
    propagates into the caller's control flow.
    """

    def __init__(self, platform: Optional[ChatPlatform], settings: OperationsSettings) -> None:
        self._platform = platform
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return (
            self._platform is not None
            and self._settings.enabled
            and self._settings.channel_id is not None
        )

    # ------------------------------------------------------------------

    async def log_startup(self, *, talents: int, restored: int) -> None:
        embed = info_embed(
            "Stream tracker started",
            f"Tracking {talents} talent(s); restored {restored} stream record(s).",
        )
        await self._send(embed)

    async def report_missing(self, stream_id: str, *, previous_status: str, url: str) -> None:
        embed = warning_embed(
            "Stream went missing",
            f"[{stream_id}]({url}) disappeared upstream while {previous_status}. "
            "Its chat channel (if any) is left in place.",
        )
        await self._send(embed)

    async def report_failure(
        self,
        stream_id: str,
        action: str,
        error: str,
        *,
        permanent: bool,
    ) -> None:
        embed = error_embed(
            "Stream action failed",
            f"`{action}` for `{stream_id}` failed: {error[:900]}",
        )
        embed["fields"] = [
            {
                "name": "Retry",
                "value": "No (permanent failure)" if permanent else "No (retries exhausted)",
                "inline": True,
            }
        ]
        await self._send(embed)

    # ------------------------------------------------------------------

    async def _send(self, embed: Dict[str, Any]) -> None:
        if not self.enabled:
            return

        embed["timestamp"] = datetime.now(timezone.utc).isoformat()
        channel_id = self._settings.channel_id

        try:
            await self._platform.send_message(channel_id, "", embed=embed)
        except TrackerError as exc:
            log.warning(f"Failed to send operations report to channel {channel_id}: {exc}")
