"""
Tracker configuration normalization.

Design rules:
- Import-safe (no side effects)
- Tolerant: unknown keys are ignored, bad values fall back to defaults
- The runtime only ever sees TrackingConfig, never the raw JSON
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from core.ratelimits import BackoffPolicy
from shared.logging.logger import get_logger

log = get_logger("shared.config.tracking")

CONFIG_PATH = Path(__file__).parent / "tracking.json"
SCHEMA_PATH = Path(__file__).parent / "tracking.schema.json"
TALENTS_PATH = Path(__file__).parent / "talents.json"


# ======================================================================
# Settings
# ======================================================================

@dataclass(frozen=True)
class HolodexSettings:
    base_url: str = "https://holodex.net/api/v2"
    window_size: int = 50
    request_timeout: float = 15.0


@dataclass(frozen=True)
class PollingSettings:
    interval_seconds: float = 60.0
    timeout_seconds: float = 45.0
    backoff: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(base=1.0, factor=2.0, cap=30.0, max_attempts=5)
    )


@dataclass(frozen=True)
class DispatchSettings:
    concurrency: int = 4
    workers: int = 4
    queue_size: int = 256
    shutdown_grace_seconds: float = 10.0
    backoff: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(base=1.0, factor=2.0, cap=60.0, max_attempts=4)
    )


@dataclass(frozen=True)
class StateSettings:
    path: Path = Path("data/streams.json")
    retention_hours: float = 24.0
    max_records: int = 2000

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)


@dataclass(frozen=True)
class CacheSettings:
    capacity: int = 256


@dataclass(frozen=True)
class AlertSettings:
    enabled: bool = False
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class ChatSettings:
    enabled: bool = False
    category_id: Optional[str] = None
    archive_category_id: Optional[str] = None
    archive_delay_seconds: float = 300.0
    # Where human messages are copied before a chat is archived.
    log_channel_id: Optional[str] = None
    # branch name -> discussion channel id
    post_stream_discussion: Dict[str, str] = field(default_factory=dict)

    def discussion_channel_for(self, branch: Optional[str]) -> Optional[str]:
        if not branch:
            return None
        return self.post_stream_discussion.get(branch)


@dataclass(frozen=True)
class OperationsSettings:
    enabled: bool = False
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class GuildSettings:
    id: Optional[str] = None
    tracking_enabled: bool = True
    alerts: AlertSettings = field(default_factory=AlertSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)
    operations: OperationsSettings = field(default_factory=OperationsSettings)

    @property
    def chat_enabled(self) -> bool:
        return self.tracking_enabled and self.chat.enabled and self.chat.category_id is not None

    @property
    def alerts_enabled(self) -> bool:
        return self.tracking_enabled and self.alerts.enabled and self.alerts.channel_id is not None


@dataclass(frozen=True)
class TrackingConfig:
    holodex: HolodexSettings = field(default_factory=HolodexSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    state: StateSettings = field(default_factory=StateSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    guild: GuildSettings = field(default_factory=GuildSettings)


# ======================================================================
# Normalizers
# ======================================================================

def _normalize_channel_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        raw = value.strip()
        if raw.isdigit():
            return raw
    return None


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        log.warning(f"tracking.json '{key}' is not an object; using defaults")
        return {}
    return value


def _number(section: Dict[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        log.warning(f"tracking.json '{key}' must be a number; using {default}")
        return default
    if value < minimum:
        log.warning(f"tracking.json '{key}'={value} below {minimum}; using {default}")
        return default
    return float(value)


def _integer(section: Dict[str, Any], key: str, default: int, *, minimum: int = 1) -> int:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        log.warning(f"tracking.json '{key}' must be an integer; using {default}")
        return default
    if value < minimum:
        log.warning(f"tracking.json '{key}'={value} below {minimum}; using {default}")
        return default
    return value


def _flag(section: Dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key)
    if isinstance(value, bool):
        return value
    if value is not None:
        log.warning(f"tracking.json '{key}' must be a bool; using {default}")
    return default


def _backoff(section: Dict[str, Any], default: BackoffPolicy) -> BackoffPolicy:
    try:
        return BackoffPolicy.from_config(
            section,
            base=default.base,
            factor=default.factor,
            cap=default.cap,
            jitter=default.jitter,
            max_attempts=default.max_attempts,
        )
    except (TypeError, ValueError) as e:
        log.warning(f"tracking.json backoff settings invalid ({e}); using defaults")
        return default


def _normalize_guild(raw: Dict[str, Any]) -> GuildSettings:
    tracking_raw = _section(raw, "stream_tracking")
    alerts_raw = _section(raw, "alerts")
    chat_raw = _section(raw, "chat")
    ops_raw = _section(raw, "operations")

    alerts = AlertSettings(
        enabled=_flag(alerts_raw, "enabled", False),
        channel_id=_normalize_channel_id(alerts_raw.get("channel_id")),
    )
    if alerts.enabled and alerts.channel_id is None:
        log.warning("Stream alerts enabled without a channel_id; alerts disabled")

    discussion: Dict[str, str] = {}
    discussion_raw = chat_raw.get("post_stream_discussion")
    if isinstance(discussion_raw, dict):
        for branch, channel in discussion_raw.items():
            channel_id = _normalize_channel_id(channel)
            if channel_id:
                discussion[str(branch)] = channel_id
            else:
                log.warning(f"Ignoring invalid post-stream discussion channel for '{branch}'")

    chat = ChatSettings(
        enabled=_flag(chat_raw, "enabled", False),
        category_id=_normalize_channel_id(chat_raw.get("category_id")),
        archive_category_id=_normalize_channel_id(chat_raw.get("archive_category_id")),
        archive_delay_seconds=_number(chat_raw, "archive_delay_seconds", 300.0),
        log_channel_id=_normalize_channel_id(chat_raw.get("log_channel_id")),
        post_stream_discussion=discussion,
    )
    if chat.enabled and chat.category_id is None:
        log.warning("Stream chats enabled without a category_id; stream chats disabled")

    operations = OperationsSettings(
        enabled=_flag(ops_raw, "enabled", False),
        channel_id=_normalize_channel_id(ops_raw.get("channel_id")),
    )

    return GuildSettings(
        id=_normalize_channel_id(raw.get("id")),
        tracking_enabled=_flag(tracking_raw, "enabled", True),
        alerts=alerts,
        chat=chat,
        operations=operations,
    )


def normalize_tracking_config(raw: Any) -> TrackingConfig:
    """
    Turn a raw tracking.json document into TrackingConfig.

    Missing or invalid values fall back to defaults with a warning; nothing
    here raises.
    """
    if not isinstance(raw, dict):
        return TrackingConfig()

    defaults = TrackingConfig()

    holodex_raw = _section(raw, "holodex")
    base_url = holodex_raw.get("base_url")
    holodex = HolodexSettings(
        base_url=base_url if isinstance(base_url, str) and base_url else defaults.holodex.base_url,
        window_size=_integer(holodex_raw, "window_size", defaults.holodex.window_size),
        request_timeout=_number(
            holodex_raw, "request_timeout", defaults.holodex.request_timeout, minimum=0.1
        ),
    )

    polling_raw = _section(raw, "polling")
    polling = PollingSettings(
        interval_seconds=_number(
            polling_raw, "interval_seconds", defaults.polling.interval_seconds, minimum=1.0
        ),
        timeout_seconds=_number(
            polling_raw, "timeout_seconds", defaults.polling.timeout_seconds, minimum=1.0
        ),
        backoff=_backoff(polling_raw, defaults.polling.backoff),
    )

    dispatch_raw = _section(raw, "dispatch")
    dispatch = DispatchSettings(
        concurrency=_integer(dispatch_raw, "concurrency", defaults.dispatch.concurrency),
        workers=_integer(dispatch_raw, "workers", defaults.dispatch.workers),
        queue_size=_integer(dispatch_raw, "queue_size", defaults.dispatch.queue_size),
        shutdown_grace_seconds=_number(
            dispatch_raw, "shutdown_grace_seconds", defaults.dispatch.shutdown_grace_seconds
        ),
        backoff=_backoff(dispatch_raw, defaults.dispatch.backoff),
    )

    state_raw = _section(raw, "state")
    state_path = state_raw.get("path")
    state = StateSettings(
        path=Path(state_path) if isinstance(state_path, str) and state_path else defaults.state.path,
        retention_hours=_number(state_raw, "retention_hours", defaults.state.retention_hours),
        max_records=_integer(state_raw, "max_records", defaults.state.max_records),
    )

    cache_raw = _section(raw, "cache")
    cache = CacheSettings(
        capacity=_integer(cache_raw, "capacity", defaults.cache.capacity),
    )

    return TrackingConfig(
        holodex=holodex,
        polling=polling,
        dispatch=dispatch,
        state=state,
        cache=cache,
        guild=_normalize_guild(_section(raw, "guild")),
    )
