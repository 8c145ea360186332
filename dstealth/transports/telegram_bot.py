import asyncio
import logging
import time
from collections import deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence

from telegram import Bot, Chat, Update
from telegram.constants import ChatType
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from dstealth.core.errors import TransportError

from .base import TEXT, Conversation, InboundMessage, Transport

log = logging.getLogger(__name__)

TELEGRAM_MESSAGE_LIMIT = 4096
RECENT_PER_CHAT = 10


class TelegramConversation(Conversation):
    """A chat known to the bot.

    The Bot API exposes no history, so `messages()` only returns what this
    process has seen; undelivered updates are replayed by Telegram itself
    when polling resumes.
    """

    def __init__(self, bot: Bot, chat_id: str, chat_type: str):
        self.bot = bot
        self.id = chat_id
        self.chat_type = chat_type
        self._recent: Deque[InboundMessage] = deque(maxlen=RECENT_PER_CHAT)

    @property
    def is_group(self) -> bool:
        return self.chat_type != ChatType.PRIVATE

    def remember(self, message: InboundMessage) -> None:
        self._recent.appendleft(message)

    async def send(self, text: str) -> None:
        for start in range(0, len(text), TELEGRAM_MESSAGE_LIMIT):
            await self.bot.send_message(
                chat_id=int(self.id), text=text[start : start + TELEGRAM_MESSAGE_LIMIT]
            )

    async def messages(self, limit: int = 10) -> List[InboundMessage]:
        return list(self._recent)[:limit]


class TelegramTransport(Transport):
    def __init__(self, token: str, *, handles: Sequence[str] = ()):
        self._handles = tuple(handles)
        self.application = Application.builder().token(token).build()
        self.application.add_handler(
            MessageHandler(filters.UpdateType.MESSAGE, self.handle_message)
        )
        self._conversations: Dict[str, TelegramConversation] = {}
        self._queue: "asyncio.Queue[Optional[InboundMessage]]" = asyncio.Queue()

    @property
    def inbox_id(self) -> str:
        return str(self.application.bot.id)

    @property
    def mention_handles(self) -> Sequence[str]:
        handles = list(self._handles)
        username = self.application.bot.username
        if username:
            handles.append(f"@{username.lower()}")
        return handles

    def _remember_chat(self, chat: Chat) -> TelegramConversation:
        key = str(chat.id)
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = TelegramConversation(self.application.bot, key, chat.type)
            self._conversations[key] = conversation
        return conversation

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        chat = update.effective_chat
        user = update.effective_user
        if not message or not chat:
            return
        conversation = self._remember_chat(chat)
        inbound = InboundMessage(
            # message_id is only unique within a chat
            id=f"{chat.id}:{message.message_id}",
            conversation_id=str(chat.id),
            sender_id=str(user.id) if user else "",
            content=message.text or "",
            content_kind=TEXT if message.text else "other",
            sent_at=message.date.timestamp() if message.date else time.time(),
        )
        conversation.remember(inbound)
        await self._queue.put(inbound)

    async def start(self) -> None:
        try:
            await self.application.initialize()
            await self.application.start()
            await self.application.updater.start_polling()
        except TelegramError as exc:
            raise TransportError(f"Telegram polling failed to start: {exc}") from exc

    async def close(self) -> None:
        try:
            if self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()
        finally:
            self._queue.put_nowait(None)

    async def list_conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    async def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        cached = self._conversations.get(conversation_id)
        if cached is not None:
            return cached
        try:
            chat = await self.application.bot.get_chat(int(conversation_id))
        except (TelegramError, ValueError) as exc:
            log.warning("Failed to resolve Telegram chat %s: %s", conversation_id, exc)
            return None
        return self._remember_chat(chat)

    async def stream_all_messages(self) -> AsyncIterator[InboundMessage]:
        while True:
            item = await self._queue.get()
            if item is None:
                raise TransportError("Telegram polling stopped")
            yield item
