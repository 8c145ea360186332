import logging
from typing import Optional

from dstealth.transports.base import Conversation, Transport

from .responses import SEND_FAILURE_TEXT

log = logging.getLogger(__name__)


class Dispatcher:
    """Delivers replies. A failed send gets exactly one generic fallback."""

    def __init__(self, transport: Transport, *, fallback_text: str = SEND_FAILURE_TEXT):
        self.transport = transport
        self.fallback_text = fallback_text

    async def resolve(self, conversation_id: str) -> Optional[Conversation]:
        try:
            return await self.transport.get_conversation_by_id(conversation_id)
        except Exception as exc:
            log.warning("Could not resolve conversation %s: %s", conversation_id, exc)
            return None

    async def dispatch(self, conversation: Conversation, text: str) -> bool:
        """Returns True when the reply itself went out."""
        if not text or not text.strip():
            log.debug("Skipping empty reply for %s", conversation.id)
            return False
        try:
            await conversation.send(text)
            return True
        except Exception as exc:
            log.warning("Send to %s failed: %s", conversation.id, exc)
        try:
            await conversation.send(self.fallback_text)
        except Exception as exc:
            log.error("Fallback send to %s failed: %s", conversation.id, exc)
        return False
