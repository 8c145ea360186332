import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern

from .intents import TriggerCategory

log = logging.getLogger(__name__)

GROUP_COMMANDS = frozenset({"/help", "/setup", "/fkey", "/scan", "/links", "/balance", "/create"})
EMPTY_INVOCATION = "help"


@dataclass(frozen=True)
class RouteDecision:
    proceed: bool
    is_group: bool
    text: str
    mentioned: bool = False
    reason: str = ""


def command_word(text: str) -> Optional[str]:
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    return stripped.split(None, 1)[0].lower()


def _handle_pattern(handle: str) -> Pattern[str]:
    return re.compile(r"(?<![\w@])" + re.escape(handle) + r"(?![\w-])", re.IGNORECASE)


class ContextClassifier:
    """Decides whether a message is addressed to the agent.

    One-to-one conversations always proceed. In groups a message needs a
    mention, a whitelisted slash-command or a payment request; anything else
    is suppressed.
    """

    def __init__(self, handles: Iterable[str], *, payment: Optional[TriggerCategory] = None):
        self.payment = payment
        self.set_handles(handles)

    def set_handles(self, handles: Iterable[str]) -> None:
        unique = {h.strip() for h in handles if h and h.strip()}
        # Longest first so "@dstealth.eth" is consumed before "@dstealth".
        self.handles: List[str] = sorted(unique, key=len, reverse=True)
        self._patterns = [_handle_pattern(handle) for handle in self.handles]

    def is_mentioned(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._patterns)

    def strip_mentions(self, text: str) -> str:
        cleaned = text
        for pattern in self._patterns:
            cleaned = pattern.sub(" ", cleaned)
        cleaned = " ".join(cleaned.split()).strip(" ,:;-")
        return cleaned or EMPTY_INVOCATION

    def classify(self, text: str, *, is_group: bool) -> RouteDecision:
        if not is_group:
            mentioned = self.is_mentioned(text)
            cleaned = self.strip_mentions(text) if mentioned else text.strip()
            return RouteDecision(True, False, cleaned, mentioned, "direct")

        if self.is_mentioned(text):
            return RouteDecision(True, True, self.strip_mentions(text), True, "mention")

        stripped = text.strip()
        if command_word(stripped) in GROUP_COMMANDS:
            return RouteDecision(True, True, stripped, False, "command")
        if self.payment and self.payment.matches(stripped):
            return RouteDecision(True, True, stripped, False, "payment")

        return RouteDecision(False, True, stripped, False, "not addressed")
