import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from .onboarding import SetupStatus

log = logging.getLogger(__name__)

HISTORY_LIMIT = 50
ENTRY_CHARS = 200
IDLE_EXPIRY_SECONDS = 24 * 60 * 60
MAX_CONTEXTS = 10000


class ContextMirror(Protocol):
    def save_context(self, key: str, data: Dict[str, Any]) -> None:
        ...

    def load_context(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def purge_contexts(self, older_than: float) -> int:
        ...


@dataclass
class HistoryEntry:
    timestamp: float
    role: str
    content: str
    trigger: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "role": self.role,
            "content": self.content,
            "trigger": self.trigger,
        }


@dataclass
class ConversationContext:
    user_id: str
    conversation_id: str
    last_activity: float = field(default_factory=time.time)
    message_count: int = 0
    setup_status: SetupStatus = SetupStatus.NEW
    history: List[HistoryEntry] = field(default_factory=list)

    @property
    def key(self) -> str:
        return context_key(self.user_id, self.conversation_id)

    def add(self, role: str, content: str, *, trigger: Optional[str] = None, now: Optional[float] = None) -> None:
        stamp = time.time() if now is None else now
        self.history.append(HistoryEntry(stamp, role, content[:ENTRY_CHARS], trigger))
        if len(self.history) > HISTORY_LIMIT:
            del self.history[: len(self.history) - HISTORY_LIMIT]
        self.last_activity = stamp
        if role == "user":
            self.message_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "last_activity": self.last_activity,
            "message_count": self.message_count,
            "setup_status": self.setup_status.value,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConversationContext":
        history = [
            HistoryEntry(
                timestamp=float(item.get("timestamp") or 0.0),
                role=str(item.get("role") or "user"),
                content=str(item.get("content") or "")[:ENTRY_CHARS],
                trigger=item.get("trigger"),
            )
            for item in payload.get("history") or []
            if isinstance(item, dict)
        ]
        return cls(
            user_id=str(payload["user_id"]),
            conversation_id=str(payload["conversation_id"]),
            last_activity=float(payload.get("last_activity") or time.time()),
            message_count=int(payload.get("message_count") or 0),
            setup_status=SetupStatus(payload.get("setup_status") or SetupStatus.NEW.value),
            history=history[-HISTORY_LIMIT:],
        )


def context_key(user_id: str, conversation_id: str) -> str:
    return f"{user_id.lower()}:{conversation_id}"


class ContextStore:
    """Per user/conversation state with idle expiry and a size bound.

    Contexts live in memory and are written through to `mirror` when one is
    given. A mirrored copy is only read back when the in-memory entry is
    missing, so it never overrides live state.
    """

    def __init__(
        self,
        *,
        mirror: Optional[ContextMirror] = None,
        max_contexts: int = MAX_CONTEXTS,
        idle_expiry: float = IDLE_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.mirror = mirror
        self.max_contexts = max_contexts
        self.idle_expiry = idle_expiry
        self.clock = clock
        self._contexts: "OrderedDict[str, ConversationContext]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._contexts)

    def _expired(self, context: ConversationContext, now: float) -> bool:
        return now - context.last_activity > self.idle_expiry

    def _restore(self, key: str, now: float) -> Optional[ConversationContext]:
        if not self.mirror:
            return None
        try:
            payload = self.mirror.load_context(key)
        except Exception as exc:
            log.warning("Failed to load context %s: %s", key, exc)
            return None
        if not payload:
            return None
        try:
            context = ConversationContext.from_dict(payload)
        except (KeyError, ValueError) as exc:
            log.warning("Ignoring unreadable context %s: %s", key, exc)
            return None
        if self._expired(context, now):
            return None
        return context

    def get(self, user_id: str, conversation_id: str) -> ConversationContext:
        key = context_key(user_id, conversation_id)
        now = self.clock()
        with self._lock:
            context = self._contexts.get(key)
            if context is not None and self._expired(context, now):
                self._contexts.pop(key, None)
                context = None
            if context is None:
                context = self._restore(key, now) or ConversationContext(
                    user_id=user_id, conversation_id=conversation_id, last_activity=now
                )
                self._contexts[key] = context
            self._contexts.move_to_end(key)
            self._prune(now)
        return context

    def save(self, context: ConversationContext) -> None:
        with self._lock:
            self._contexts[context.key] = context
            self._contexts.move_to_end(context.key)
        if self.mirror:
            try:
                self.mirror.save_context(context.key, context.to_dict())
            except Exception as exc:
                log.warning("Failed to mirror context %s: %s", context.key, exc)

    def _prune(self, now: float) -> None:
        stale = [key for key, ctx in self._contexts.items() if self._expired(ctx, now)]
        for key in stale:
            self._contexts.pop(key, None)
        while len(self._contexts) > self.max_contexts:
            self._contexts.popitem(last=False)

    def prune(self) -> int:
        """Drop idle contexts from memory and from the mirror."""
        now = self.clock()
        with self._lock:
            before = len(self._contexts)
            self._prune(now)
            dropped = before - len(self._contexts)
        if self.mirror:
            try:
                dropped_rows = self.mirror.purge_contexts(now - self.idle_expiry)
            except Exception as exc:
                log.warning("Failed to purge mirrored contexts: %s", exc)
            else:
                if dropped_rows:
                    log.info("Purged %d idle mirrored contexts", dropped_rows)
        return dropped
