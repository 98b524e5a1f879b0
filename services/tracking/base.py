from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ChatMessage:
    """One message read back from a stream chat, oldest first."""

    author_id: str
    content: str
    created_at: datetime
    author_is_bot: bool = False
    attachments: Tuple[str, ...] = ()
    # Platform message type name; "default" and "reply" are user messages.
    kind: str = "default"


@dataclass(frozen=True)
class ChannelInfo:
    id: str
    topic: Optional[str] = None
    created_at: Optional[datetime] = None


class ChatPlatform(ABC):
    """
    Base class for the chat platform the tracker drives.

    Implementations translate their client library's failures into the
    tracker error taxonomy:
    - TransientApiError for rate limits, timeouts, 5xx and connection loss
    - PermanentApiError for missing permissions or deleted resources

    Ids are opaque strings on this side of the boundary.
    """

    @abstractmethod
    async def create_channel(
        self,
        category_id: str,
        name: str,
        *,
        topic: Optional[str] = None,
    ) -> str:
        """
        Create a text channel under `category_id` and return its id.
        """
        raise NotImplementedError

    @abstractmethod
    async def find_channel_by_topic(self, category_id: str, topic: str) -> Optional[str]:
        """
        Return the id of a channel under `category_id` whose topic equals
        `topic`, or None.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_channels(self, category_id: str) -> List[ChannelInfo]:
        """
        Text channels currently under `category_id`.
        """
        raise NotImplementedError

    @abstractmethod
    async def fetch_messages(self, channel_id: str) -> List[ChatMessage]:
        """
        Full message history of a channel, oldest first.
        """
        raise NotImplementedError

    @abstractmethod
    async def send_message(
        self,
        channel_id: str,
        content: str,
        *,
        embed: Optional[Dict[str, Any]] = None,
        mention_role: Optional[str] = None,
    ) -> str:
        """
        Post a message and return its id. `embed` is a plain embed dict.
        """
        raise NotImplementedError

    @abstractmethod
    async def archive_or_move_channel(self, channel_id: str, category_id: str) -> None:
        """
        Move a channel under `category_id` and lock it for posting.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_channel(self, channel_id: str) -> None:
        raise NotImplementedError
