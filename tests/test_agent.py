"""End-to-end pipeline tests against the in-memory transport."""

import asyncio
from unittest import mock

from dstealth.core.agent import StealthAgent
from dstealth.core.config import DEFAULT_HANDLES
from dstealth.core.onboarding import SetupStatus
from dstealth.core.responses import GUARANTEED_FALLBACK, ResponseGenerator

from conftest import FakeConversation, FakeTransport, StubCompletion, inbound


def build_agent(transport, profiles, responder, intents):
    agent = StealthAgent(
        transport_factory=lambda: transport,
        profiles=profiles,
        responder=responder,
        intents=intents,
        handles=DEFAULT_HANDLES,
        resync_interval=60.0,
    )
    agent.attach(transport)
    return agent


class TestHandleMessage:
    def test_duplicate_id_is_answered_once(self, profiles, responder, intents):
        conversation = FakeConversation("dm-1")
        agent = build_agent(FakeTransport([conversation]), profiles, responder, intents)
        message = inbound("m1", "hello")

        async def scenario():
            first = await agent.handle_message(message)
            second = await agent.handle_message(message)
            return first, second

        assert asyncio.run(scenario()) == (True, False)
        assert len(conversation.sent) == 1

    def test_claim_is_persisted_and_logged(self, profiles, responder, intents):
        conversation = FakeConversation("dm-1")
        agent = build_agent(FakeTransport([conversation]), profiles, responder, intents)

        asyncio.run(agent.handle_message(inbound("m1", "tantodefi")))

        stored = profiles.get_by_user("alice")
        assert stored.fkey_id == "tantodefi.fkey.id"
        assert stored.setup_status is SetupStatus.FKEY_SET
        assert profiles.interactions("alice")[0]["kind"] == "fkey_set"
        assert agent.drain_events() == []

    def test_unaddressed_group_message_is_ignored(self, profiles, responder, intents):
        group = FakeConversation("g1", is_group=True)
        agent = build_agent(FakeTransport([group]), profiles, responder, intents)

        sent = asyncio.run(agent.handle_message(inbound("m1", "lunch anyone?", conversation="g1")))

        assert not sent
        assert group.sent == []
        assert agent.dedup.has_processed("m1")

    def test_mention_in_group_gets_short_reply(self, profiles, responder, intents):
        group = FakeConversation("g1", is_group=True)
        agent = build_agent(FakeTransport([group]), profiles, responder, intents)

        asyncio.run(agent.handle_message(inbound("m1", "@dstealth hi", conversation="g1")))

        assert len(group.sent) == 1
        assert "Welcome to dStealth" not in group.sent[0]

    def test_unknown_conversation_is_dropped(self, profiles, responder, intents):
        agent = build_agent(FakeTransport(), profiles, responder, intents)
        assert not asyncio.run(agent.handle_message(inbound("m1", "hello", conversation="gone")))
        assert agent.dedup.has_processed("m1")

    def test_responder_crash_sends_guaranteed_fallback(self, profiles, responder, intents):
        conversation = FakeConversation("dm-1")
        agent = build_agent(FakeTransport([conversation]), profiles, responder, intents)

        with mock.patch.object(responder, "respond", side_effect=RuntimeError("boom")):
            asyncio.run(agent.handle_message(inbound("m1", "hello")))

        assert conversation.sent == [GUARANTEED_FALLBACK]


class TestRun:
    def test_slow_message_stalls_the_next(self, profiles, api, payments, balances, intents):
        """Messages are finished strictly in arrival order."""
        completion = StubCompletion(text="a considered answer", delay=0.2)
        responder = ResponseGenerator(
            api=api, payments=payments, balances=balances, completion=completion, identities=profiles
        )
        conversation = FakeConversation("dm-1")
        transport = FakeTransport([conversation])
        agent = build_agent(transport, profiles, responder, intents)

        async def scenario():
            task = asyncio.create_task(agent.run())
            await asyncio.sleep(0)
            transport.feed(inbound("m1", "explain why receivers stay hidden on chain"))
            transport.feed(inbound("m2", "/help"))
            for _ in range(100):
                if len(conversation.sent) >= 2:
                    break
                await asyncio.sleep(0.05)
            agent.stop()
            await asyncio.wait_for(task, 5)

        asyncio.run(scenario())

        assert conversation.sent[0] == "a considered answer"
        assert "dStealth Agent" in conversation.sent[1]
        assert completion.calls == ["explain why receivers stay hidden on chain"]

    def test_processed_ids_survive_restart(self, profiles, responder, intents):
        conversation = FakeConversation("dm-1")
        first = build_agent(FakeTransport([conversation]), profiles, responder, intents)
        asyncio.run(first.handle_message(inbound("m1", "hello")))

        conversation.history = [inbound("m1", "hello")]
        transport = FakeTransport([conversation])
        second = build_agent(transport, profiles, responder, intents)

        async def scenario():
            task = asyncio.create_task(second.run())
            await asyncio.sleep(0.1)
            second.stop()
            await asyncio.wait_for(task, 5)

        asyncio.run(scenario())
        assert len(conversation.sent) == 1
