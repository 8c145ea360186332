import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from dstealth.core.intents import IntentClassifier
from dstealth.core.onboarding import SetupStatus, UserProfile
from dstealth.core.profiles import ProfileStore
from dstealth.core.responses import ResponseGenerator
from dstealth.core.services import Balances, ContentLink, LookupResult, PaymentLink
from dstealth.transports.base import Conversation, InboundMessage, Transport

AGENT_INBOX = "agent-inbox"
ADDRESS = "0x1111111111111111111111111111111111111111"


def inbound(message_id, text, *, sender="alice", conversation="dm-1", kind="text"):
    return InboundMessage(
        id=message_id,
        conversation_id=conversation,
        sender_id=sender,
        content=text,
        content_kind=kind,
    )


def complete_profile(user_id="alice", fkey="tantodefi.fkey.id", address=ADDRESS):
    return UserProfile(
        user_id=user_id,
        setup_status=SetupStatus.COMPLETE,
        fkey_id=fkey,
        stealth_address=address,
    )


class FakeConversation(Conversation):
    def __init__(self, conversation_id: str, *, is_group: bool = False, history=None, fail_sends: int = 0):
        self.id = conversation_id
        self._is_group = is_group
        self.history: List[InboundMessage] = list(history or [])
        self.sent: List[str] = []
        self.fail_sends = fail_sends
        self.send_attempts = 0

    @property
    def is_group(self) -> bool:
        return self._is_group

    async def send(self, text: str) -> None:
        self.send_attempts += 1
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise RuntimeError("send failed")
        self.sent.append(text)

    async def messages(self, limit: int = 10) -> List[InboundMessage]:
        return self.history[:limit]


class FakeTransport(Transport):
    """In-memory transport; `feed()` pushes live messages, `fail()` breaks the stream."""

    def __init__(self, conversations=(), *, start_error: Optional[BaseException] = None):
        self.conversations: Dict[str, FakeConversation] = {c.id: c for c in conversations}
        self.start_error = start_error
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.started = False
        self.closed = False

    @property
    def inbox_id(self) -> str:
        return AGENT_INBOX

    async def start(self) -> None:
        if self.start_error:
            raise self.start_error
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def list_conversations(self) -> List[Conversation]:
        return list(self.conversations.values())

    async def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    def feed(self, message: InboundMessage) -> None:
        self.queue.put_nowait(message)

    def fail(self, exc: BaseException) -> None:
        self.queue.put_nowait(exc)

    async def stream_all_messages(self):
        while True:
            item = await self.queue.get()
            if isinstance(item, BaseException):
                raise item
            yield item


class StubApi:
    def __init__(self, lookups: Optional[Dict[str, LookupResult]] = None):
        self.lookups = lookups or {}
        self.lookup_calls: List[str] = []
        self.scan_calls: List[str] = []
        self.link_calls: List[Optional[str]] = []
        self.create_calls: List[Dict[str, Any]] = []
        self.scan_result: Optional[Dict[str, Any]] = {"transactions": [], "privacyScore": 72}
        self.links: Optional[List[ContentLink]] = []

    async def lookup_fkey(self, claim: str) -> LookupResult:
        self.lookup_calls.append(claim)
        return self.lookups.get(claim, LookupResult(success=False, error="Profile not found"))

    async def scan(self, address: str):
        self.scan_calls.append(address)
        return self.scan_result

    async def list_links(self, owner):
        self.link_calls.append(owner)
        return self.links

    async def create_content(self, **kwargs):
        self.create_calls.append(kwargs)
        return {"success": True, "url": "https://dstealth.xyz/c/1"}


class StubPayments:
    def __init__(self, url: str = "https://pay.daimo.com/checkout?id=abc"):
        self.url = url
        self.calls: List[Dict[str, Any]] = []

    async def create_link(self, amount, recipient, metadata=None):
        self.calls.append({"amount": amount, "recipient": recipient, "metadata": metadata})
        if not self.url:
            return None
        return PaymentLink(url=self.url, id="abc")


class StubBalances:
    def __init__(self):
        self.calls: List[str] = []

    async def get_balances(self, address):
        self.calls.append(address)
        return Balances(eth=Decimal("0.5"), usdc=Decimal("12.5"))


class StubCompletion:
    def __init__(self, text: Optional[str] = None, *, delay: float = 0.0):
        self.text = text
        self.delay = delay
        self.calls: List[str] = []

    async def complete(self, system_prompt: str, user_text: str) -> Optional[str]:
        self.calls.append(user_text)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.text


def found(address: str = ADDRESS, proof=None) -> LookupResult:
    return LookupResult(success=True, address=address, proof=proof, is_registered=True)


@pytest.fixture
def profiles():
    store = ProfileStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def intents():
    return IntentClassifier()


@pytest.fixture
def api():
    return StubApi({"tantodefi.fkey.id": found()})


@pytest.fixture
def payments():
    return StubPayments()


@pytest.fixture
def balances():
    return StubBalances()


@pytest.fixture
def completion():
    return StubCompletion()


@pytest.fixture
def responder(api, payments, balances, completion, profiles):
    return ResponseGenerator(
        api=api,
        payments=payments,
        balances=balances,
        completion=completion,
        identities=profiles,
    )
