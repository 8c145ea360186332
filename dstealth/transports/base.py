"""Transport contract the agent consumes.

Adapters wrap a chat platform client and expose conversations, recent
history and a live stream of inbound messages. Only the fields the agent
needs are modelled.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

TEXT = "text"


@dataclass(frozen=True)
class InboundMessage:
    id: Optional[str]
    conversation_id: str
    sender_id: str
    content: str
    content_kind: str = TEXT
    sent_at: float = 0.0

    @property
    def is_text(self) -> bool:
        return self.content_kind == TEXT and isinstance(self.content, str)


class Conversation(abc.ABC):
    id: str

    @property
    @abc.abstractmethod
    def is_group(self) -> bool:
        """True for multi-party conversations (more than two participants)."""

    async def sync(self) -> None:
        return None

    @abc.abstractmethod
    async def send(self, text: str) -> None:
        ...

    @abc.abstractmethod
    async def messages(self, limit: int = 10) -> List[InboundMessage]:
        """Most recent messages, newest first."""


class Transport(abc.ABC):
    @property
    @abc.abstractmethod
    def inbox_id(self) -> str:
        """Stable identity of the agent on this transport."""

    @property
    def mention_handles(self) -> Sequence[str]:
        return ()

    @abc.abstractmethod
    async def start(self) -> None:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...

    async def sync(self) -> None:
        return None

    @abc.abstractmethod
    async def list_conversations(self) -> List[Conversation]:
        ...

    @abc.abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abc.abstractmethod
    def stream_all_messages(self) -> AsyncIterator[InboundMessage]:
        ...
