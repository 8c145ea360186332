import asyncio
import contextlib
import logging
from typing import AsyncIterator, List, Optional, Sequence

import discord

from dstealth.core.errors import TransportError

from .base import TEXT, Conversation, InboundMessage, Transport

log = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000


def _chunks(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    if len(text) <= limit:
        return [text]
    parts: List[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            parts.append(remaining)
            break
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        parts.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    return parts


def to_inbound(message: discord.Message) -> InboundMessage:
    if message.content:
        kind = TEXT
    elif message.attachments:
        kind = "attachment"
    else:
        kind = "other"
    return InboundMessage(
        id=str(message.id) if message.id else None,
        conversation_id=str(message.channel.id),
        sender_id=str(message.author.id),
        content=message.content or "",
        content_kind=kind,
        sent_at=message.created_at.timestamp() if message.created_at else 0.0,
    )


class DiscordConversation(Conversation):
    def __init__(self, channel: discord.abc.Messageable):
        self.channel = channel
        self.id = str(channel.id)

    @property
    def is_group(self) -> bool:
        # Guild channels and group DMs are multi-party; only a DMChannel is one-to-one.
        return not isinstance(self.channel, discord.DMChannel)

    async def send(self, text: str) -> None:
        for chunk in _chunks(text):
            await self.channel.send(chunk)

    async def messages(self, limit: int = 10) -> List[InboundMessage]:
        return [to_inbound(message) async for message in self.channel.history(limit=limit)]


class _DiscordClient(discord.Client):
    def __init__(self, transport: "DiscordTransport"):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents)
        self.transport = transport

    async def on_ready(self):
        log.info("Discord client ready as %s", self.user)
        self.transport._ready.set()

    async def on_message(self, message: discord.Message):
        self.transport._queue.put_nowait(to_inbound(message))


class DiscordTransport(Transport):
    def __init__(self, token: str, *, handles: Sequence[str] = ()):
        self.token = token
        self._handles = tuple(handles)
        self.client = _DiscordClient(self)
        self._queue: "asyncio.Queue[Optional[InboundMessage]]" = asyncio.Queue()
        self._ready = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None

    @property
    def inbox_id(self) -> str:
        user = self.client.user
        return str(user.id) if user else ""

    @property
    def mention_handles(self) -> Sequence[str]:
        handles = list(self._handles)
        user = self.client.user
        if user:
            handles.extend([f"<@{user.id}>", f"<@!{user.id}>", f"@{user.name.lower()}"])
        return handles

    async def start(self) -> None:
        self._runner = asyncio.create_task(self.client.start(self.token))
        self._runner.add_done_callback(lambda _: self._queue.put_nowait(None))
        ready = asyncio.create_task(self._ready.wait())
        done, _ = await asyncio.wait({self._runner, ready}, return_when=asyncio.FIRST_COMPLETED)
        if self._runner in done:
            ready.cancel()
            exc = self._runner.exception() if not self._runner.cancelled() else None
            raise TransportError("Discord client stopped before becoming ready") from exc

    async def close(self) -> None:
        await self.client.close()
        if self._runner:
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await self._runner
        self._runner = None

    async def list_conversations(self) -> List[Conversation]:
        conversations: List[Conversation] = [
            DiscordConversation(channel) for channel in self.client.private_channels
        ]
        for guild in self.client.guilds:
            me = guild.me
            for channel in guild.text_channels:
                if me and not channel.permissions_for(me).read_message_history:
                    continue
                conversations.append(DiscordConversation(channel))
        return conversations

    async def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        try:
            channel_id = int(conversation_id)
        except (TypeError, ValueError):
            return None
        channel = self.client.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(channel_id)
            except discord.DiscordException as exc:
                log.warning("Failed to fetch Discord channel %s: %s", conversation_id, exc)
                return None
        if not isinstance(channel, discord.abc.Messageable):
            return None
        return DiscordConversation(channel)

    async def stream_all_messages(self) -> AsyncIterator[InboundMessage]:
        while True:
            item = await self._queue.get()
            if item is None:
                raise TransportError("Discord gateway connection closed")
            yield item
