import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from dstealth.transports.base import InboundMessage, Transport

from .context import ContextStore
from .dedup import Deduplicator
from .dispatcher import Dispatcher
from .ingest import MAX_RETRIES, StreamIngestor
from .intents import IntentClassifier
from .onboarding import UserProfile
from .profiles import ProfileStore
from .responses import GUARANTEED_FALLBACK, Interaction, Reply, ResponseGenerator, summarize_events
from .routing import ContextClassifier

log = logging.getLogger(__name__)

CONTEXT_PRUNE_SECONDS = 60 * 60


class StealthAgent:
    """Message pipeline: dedup, route, classify, respond, dispatch.

    One consumer pulls messages from the ingestor and finishes each one,
    collaborator calls included, before taking the next.
    """

    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport],
        profiles: ProfileStore,
        responder: ResponseGenerator,
        intents: IntentClassifier,
        handles: Sequence[str] = (),
        dedup_capacity: int = 1000,
        resync_interval: float = 30.0,
        max_retries: int = MAX_RETRIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.profiles = profiles
        self.responder = responder
        self.intents = intents
        self.handles = tuple(handles)
        self.dedup = Deduplicator(dedup_capacity, mirror=profiles)
        self.contexts = ContextStore(mirror=profiles)
        self.router = ContextClassifier(self.handles, payment=intents.category("payment"))
        self.dispatcher: Optional[Dispatcher] = None
        self.ingestor = StreamIngestor(
            transport_factory,
            self.dedup,
            resync_interval=resync_interval,
            max_retries=max_retries,
            sleep=sleep,
            on_connect=self.attach,
        )
        self._pending_events: List[Interaction] = []
        self._stopping = False
        self._last_prune = 0.0

    def attach(self, transport: Transport) -> None:
        self.dispatcher = Dispatcher(transport)
        self.router.set_handles([*self.handles, *transport.mention_handles])

    def stop(self) -> None:
        self._stopping = True
        self.ingestor.stop()

    async def run(self) -> None:
        loaded = self.dedup.load()
        if loaded:
            log.info("Loaded %d processed message ids", loaded)
        self.prune_contexts()
        async for message in self.ingestor.messages():
            if self._stopping:
                break
            await self.handle_message(message)
        log.info("Agent stopped")

    async def handle_message(self, message: InboundMessage) -> bool:
        """Process one inbound message. Returns True when a reply was sent."""
        if not message.id or self.dedup.has_processed(message.id):
            return False
        self.dedup.mark_processed(message.id)

        if self.dispatcher is None:
            log.warning("No transport connected; dropping %s", message.id)
            return False
        conversation = await self.dispatcher.resolve(message.conversation_id)
        if conversation is None:
            log.warning("Conversation %s not found; dropping %s", message.conversation_id, message.id)
            return False

        decision = self.router.classify(message.content, is_group=conversation.is_group)
        if not decision.proceed:
            log.debug("Suppressed group message %s (%s)", message.id, decision.reason)
            return False

        sender = message.sender_id
        try:
            profile = self.profiles.get_by_user(sender) or UserProfile(user_id=sender)
            context = self.contexts.get(sender, message.conversation_id)
            analysis = self.intents.analyze(decision.text, len(context.history))
            context.add("user", decision.text, trigger=analysis.primary_trigger)
            reply = await self.responder.respond(
                decision.text, analysis, context, profile, decision.is_group
            )
            context.add("assistant", reply.text)
            context.setup_status = (reply.profile or profile).setup_status
            self.contexts.save(context)
            if reply.profile is not None:
                self.profiles.upsert(reply.profile)
        except Exception:
            log.exception("Failed to build a reply for %s", message.id)
            reply = Reply(GUARANTEED_FALLBACK)

        self._pending_events.extend(reply.events)
        sent = await self.dispatcher.dispatch(conversation, reply.text)
        log.info(
            "Handled %s from %s (%s, events: %s)",
            message.id,
            sender,
            "sent" if sent else "not sent",
            summarize_events(reply.events),
        )
        self._flush_events()
        if self.contexts.clock() - self._last_prune >= CONTEXT_PRUNE_SECONDS:
            self.prune_contexts()
        return sent

    def prune_contexts(self) -> None:
        self._last_prune = self.contexts.clock()
        dropped = self.contexts.prune()
        if dropped:
            log.info("Expired %d idle conversation contexts", dropped)

    def drain_events(self) -> List[Interaction]:
        events = list(self._pending_events)
        self._pending_events.clear()
        return events

    def _flush_events(self) -> None:
        for event in self.drain_events():
            try:
                self.profiles.log_interaction(event.user_id, event.kind, event.payload)
            except Exception as exc:
                log.warning("Failed to log %s interaction for %s: %s", event.kind, event.user_id, exc)
