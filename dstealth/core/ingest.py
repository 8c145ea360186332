"""Long-running message intake.

`StreamIngestor.messages()` yields every inbound text message exactly in the
order it reaches the single internal queue: the startup catch-up first, then
whatever the live stream and the periodic re-sync enqueue. Transport faults
close the client and rebuild it with bounded exponential backoff.
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Set, Union

from dstealth.transports.base import Conversation, InboundMessage, Transport

from .dedup import Deduplicator
from .errors import TransportError

log = logging.getLogger(__name__)

RETRY_BASE_SECONDS = 2.0
RETRY_CAP_SECONDS = 60.0
MAX_RETRIES = 3
CATCH_UP_DEPTH = 10

_STOP = object()

QueueItem = Union[InboundMessage, BaseException, object]


def retry_delay(attempt: int, *, base: float = RETRY_BASE_SECONDS, cap: float = RETRY_CAP_SECONDS) -> float:
    """Seconds to wait before reconnect attempt ``attempt`` (0-based)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(cap, base * (2 ** attempt))


def is_from_agent(message: InboundMessage, inbox_id: str) -> bool:
    return bool(inbox_id) and message.sender_id.lower() == inbox_id.lower()


def accept(message: InboundMessage, inbox_id: str) -> bool:
    if not message.id:
        return False
    if not message.is_text:
        return False
    return not is_from_agent(message, inbox_id)


class StreamIngestor:
    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        dedup: Deduplicator,
        *,
        resync_interval: float = 30.0,
        max_retries: int = MAX_RETRIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_connect: Optional[Callable[[Transport], None]] = None,
    ) -> None:
        self.transport_factory = transport_factory
        self.dedup = dedup
        self.resync_interval = resync_interval
        self.max_retries = max_retries
        self.sleep = sleep
        self.on_connect = on_connect
        self.transport: Optional[Transport] = None
        self._known: Set[str] = set()
        self._queue: Optional["asyncio.Queue[QueueItem]"] = None
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        self._stopping = True
        if self._queue is not None:
            self._queue.put_nowait(_STOP)

    async def messages(self) -> AsyncIterator[InboundMessage]:
        failures = 0
        while not self._stopping:
            transport: Optional[Transport] = None
            try:
                transport = await self._connect()
                async for message in self._session(transport):
                    # reset only once a session delivers; connecting alone does not count
                    failures = 0
                    yield message
                if self._stopping:
                    return
                raise TransportError("message stream ended")
            except Exception as exc:
                if self._stopping:
                    return
                if failures >= self.max_retries:
                    log.error("Giving up on the transport after %d retries: %s", failures, exc)
                    if isinstance(exc, TransportError):
                        raise
                    raise TransportError(str(exc)) from exc
                delay = retry_delay(failures)
                failures += 1
                log.warning(
                    "Transport failure (%s); retry %d/%d in %.0fs",
                    exc,
                    failures,
                    self.max_retries,
                    delay,
                )
                await self._close(transport)
                transport = None
                await self.sleep(delay)
            finally:
                await self._close(transport)

    async def _connect(self) -> Transport:
        transport = self.transport_factory()
        self.transport = transport
        try:
            await transport.start()
            await transport.sync()
        except Exception:
            await self._close(transport)
            raise
        log.info("Transport connected as %s", transport.inbox_id)
        if self.on_connect:
            self.on_connect(transport)
        return transport

    async def _close(self, transport: Optional[Transport]) -> None:
        if transport is None:
            return
        if self.transport is transport:
            self.transport = None
        try:
            await transport.close()
        except Exception as exc:
            log.debug("Transport close failed: %s", exc)

    async def _session(self, transport: Transport) -> AsyncIterator[InboundMessage]:
        inbox_id = transport.inbox_id
        async for message in self._catch_up(transport, inbox_id):
            yield message
        if self._stopping:
            return

        queue: "asyncio.Queue[QueueItem]" = asyncio.Queue()
        self._queue = queue
        pump = asyncio.create_task(self._pump(transport, queue))
        resync = asyncio.create_task(self._resync(transport, queue, inbox_id))
        try:
            while not self._stopping:
                item = await queue.get()
                if item is _STOP:
                    return
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, InboundMessage) and accept(item, inbox_id):
                    yield item
        finally:
            self._queue = None
            for task in (pump, resync):
                task.cancel()
            for task in (pump, resync):
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    async def _catch_up(self, transport: Transport, inbox_id: str) -> AsyncIterator[InboundMessage]:
        conversations = await transport.list_conversations()
        log.info("Catching up on %d conversations", len(conversations))
        for conversation in conversations:
            if self._stopping:
                return
            latest = await self._visit(conversation, inbox_id)
            if latest:
                yield latest

    async def _visit(self, conversation: Conversation, inbox_id: str) -> Optional[InboundMessage]:
        """Latest unprocessed message in `conversation`.

        The conversation only counts as known once its history was read, so a
        failed read is retried by the next re-sync.
        """
        try:
            latest = await self._latest(conversation, inbox_id)
        except Exception as exc:
            log.warning("Failed to read recent messages in %s: %s", conversation.id, exc)
            return None
        self._known.add(conversation.id)
        if latest and not self.dedup.has_processed(latest.id):
            return latest
        return None

    async def _latest(self, conversation: Conversation, inbox_id: str) -> Optional[InboundMessage]:
        await conversation.sync()
        recent = await conversation.messages(limit=CATCH_UP_DEPTH)
        for message in recent:
            if not is_from_agent(message, inbox_id):
                return message if accept(message, inbox_id) else None
        return None

    async def _pump(self, transport: Transport, queue: "asyncio.Queue[QueueItem]") -> None:
        try:
            async for message in transport.stream_all_messages():
                if self._stopping:
                    return
                await queue.put(message)
            await queue.put(TransportError("message stream ended"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(exc)

    async def _resync(self, transport: Transport, queue: "asyncio.Queue[QueueItem]", inbox_id: str) -> None:
        while not self._stopping:
            await asyncio.sleep(self.resync_interval)
            if self._stopping:
                return
            try:
                await transport.sync()
                conversations = await transport.list_conversations()
            except Exception as exc:
                log.warning("Periodic re-sync failed: %s", exc)
                continue
            fresh = [c for c in conversations if c.id not in self._known]
            if fresh:
                log.info("Re-sync found %d new conversations", len(fresh))
            for conversation in fresh:
                latest = await self._visit(conversation, inbox_id)
                if latest:
                    await queue.put(latest)
