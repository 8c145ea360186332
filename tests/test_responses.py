"""Tests for reply composition, gating and fallbacks."""

import asyncio

import pytest

from dstealth.core.context import ConversationContext
from dstealth.core.onboarding import SetupStatus, UserProfile
from dstealth.core.responses import GUARANTEED_FALLBACK, GROUP_CHAR_LIMIT

from conftest import ADDRESS, StubCompletion, complete_profile, found


def respond(responder, intents, text, profile=None, *, is_group=False, history=0):
    profile = profile or UserProfile("alice")
    context = ConversationContext(user_id=profile.user_id, conversation_id="dm-1")
    analysis = intents.analyze(text, history)
    return asyncio.run(responder.respond(text, analysis, context, profile, is_group))


class TestIdentityClaim:
    def test_claim_with_successful_lookup(self, responder, intents, api):
        """A bare username resolves, sets the claim and echoes the address."""
        reply = respond(responder, intents, "tantodefi")
        assert ADDRESS in reply.text
        assert "tantodefi.fkey.id" in reply.text
        assert reply.profile.fkey_id == "tantodefi.fkey.id"
        assert reply.profile.setup_status is SetupStatus.FKEY_SET
        assert api.lookup_calls == ["tantodefi.fkey.id"]
        assert [e.kind for e in reply.events] == ["fkey_set"]

    def test_unknown_identity_keeps_state(self, responder, intents):
        profile = UserProfile("alice", SetupStatus.FKEY_PENDING)
        reply = respond(responder, intents, "my username is nobody", profile)
        assert "nobody.fkey.id not found" in reply.text
        assert "app.fluidkey.com" in reply.text
        assert reply.profile is None

    def test_claim_owned_by_someone_else_needs_proof(self, responder, intents, profiles):
        profiles.upsert(complete_profile(user_id="bob"))
        reply = respond(responder, intents, "tantodefi")
        assert "already linked" in reply.text
        assert reply.profile is None

    def test_claim_owned_by_someone_else_with_proof(self, responder, intents, profiles, api):
        profiles.upsert(complete_profile(user_id="bob"))
        api.lookups["tantodefi.fkey.id"] = found(proof={"sig": "0xabc"})
        reply = respond(responder, intents, "tantodefi")
        assert reply.profile.fkey_id == "tantodefi.fkey.id"

    def test_greeting_is_not_a_claim(self, responder, intents, api):
        reply = respond(responder, intents, "hello")
        assert api.lookup_calls == []
        assert "Welcome to dStealth" in reply.text
        assert reply.profile.setup_status is SetupStatus.FKEY_PENDING

    def test_no_identity_declaration_does_not_change_state(self, responder, intents):
        reply = respond(responder, intents, "no", UserProfile("alice", SetupStatus.FKEY_PENDING))
        assert "app.fluidkey.com/?ref=62YNSG" in reply.text
        assert reply.profile is None

    def test_complete_user_saying_dont_have_is_not_onboarded(self, responder, intents):
        reply = respond(responder, intents, "i don't have any links yet", complete_profile())
        assert "Let's get you a fkey.id" not in reply.text
        assert "no_fkey_guidance" not in [e.kind for e in reply.events]
        assert reply.profile is None


class TestGating:
    @pytest.mark.parametrize("text", ["create payment link for $5", "/balance", "/links", "/create a | b | 1 | USD"])
    def test_gated_features_need_complete_setup(self, responder, intents, payments, balances, api, text):
        profile = UserProfile("alice", SetupStatus.FKEY_SET, fkey_id="tantodefi.fkey.id", stealth_address=ADDRESS)
        reply = respond(responder, intents, text, profile)
        assert "requires complete setup" in reply.text
        assert payments.calls == []
        assert balances.calls == []
        assert api.link_calls == []
        assert api.create_calls == []
        assert reply.profile.setup_status is SetupStatus.MINIAPP_PENDING

    def test_setup_complete(self, responder, intents):
        profile = UserProfile("alice", SetupStatus.MINIAPP_PENDING, fkey_id="tantodefi.fkey.id", stealth_address=ADDRESS)
        reply = respond(responder, intents, "/setup complete", profile)
        assert reply.profile.is_complete
        assert "Setup complete" in reply.text

    def test_setup_complete_without_claim(self, responder, intents):
        reply = respond(responder, intents, "/setup complete", UserProfile("alice", SetupStatus.FKEY_PENDING))
        assert "Setup incomplete" in reply.text
        assert reply.profile is None


class TestPayments:
    def test_payment_link_for_complete_user(self, responder, intents, payments):
        reply = respond(responder, intents, "create payment link for $12.50", complete_profile())
        assert payments.calls[0]["amount"] == "12.50"
        assert payments.calls[0]["recipient"] == ADDRESS
        assert "https://pay.daimo.com/checkout?id=abc" in reply.text
        assert "$12.50" in reply.text
        assert reply.events[0].kind == "payment_link_generated"

    def test_metadata_carries_no_nulls(self, responder, intents, payments):
        respond(responder, intents, "create payment link for $3", complete_profile())
        metadata = payments.calls[0]["metadata"]
        assert metadata["zkProof"] == "pending"
        assert None not in metadata.values()

    def test_amount_over_limit(self, responder, intents, payments):
        reply = respond(responder, intents, "create payment link for $5000", complete_profile())
        assert "too large" in reply.text
        assert payments.calls == []

    def test_failed_link(self, responder, intents, payments):
        payments.url = ""
        reply = respond(responder, intents, "create payment link for $5", complete_profile())
        assert "Failed to create payment link" in reply.text


class TestCommands:
    def test_fkey_lookup_uses_local_claim(self, responder, intents, api, profiles):
        profiles.upsert(complete_profile(user_id="bob"))
        reply = respond(responder, intents, "/fkey tantodefi.fkey.id")
        assert api.lookup_calls == []
        assert ADDRESS in reply.text
        assert "cached" in reply.text

    def test_fkey_lookup_goes_to_network(self, responder, intents, api):
        reply = respond(responder, intents, "/fkey TantoDefi")
        assert api.lookup_calls == ["tantodefi.fkey.id"]
        assert ADDRESS in reply.text
        assert reply.profile is None

    def test_unknown_command_names_input(self, responder, intents):
        reply = respond(responder, intents, "/Rewards now")
        assert "Unknown command" in reply.text
        assert "/Rewards" in reply.text
        assert "/help" in reply.text

    def test_command_word_is_case_folded(self, responder, intents):
        assert "dStealth Agent" in respond(responder, intents, "/HELP").text

    def test_scan_before_setup_is_basic(self, responder, intents, api):
        reply = respond(responder, intents, "/scan 0xAbC")
        assert api.scan_calls == ["0xAbC"]
        assert "Basic Address Scan" in reply.text

    def test_balance_for_complete_user(self, responder, intents, balances):
        reply = respond(responder, intents, "/balance", complete_profile())
        assert balances.calls == [ADDRESS]
        assert "12.50" in reply.text

    def test_create_content_format(self, responder, intents, api):
        bad = respond(responder, intents, "/create only a title", complete_profile())
        assert "Invalid format" in bad.text
        good = respond(responder, intents, "/create Guide | How to | 2.5 | usdc", complete_profile())
        assert "Content Created" in good.text
        assert api.create_calls[0]["title"] == "Guide"


class TestAiAndFallbacks:
    def test_empty_ai_falls_back_to_structured_reply(self, api, payments, balances, profiles, intents):
        from dstealth.core.responses import ResponseGenerator

        responder = ResponseGenerator(
            api=api,
            payments=payments,
            balances=balances,
            completion=StubCompletion(text="   "),
            identities=profiles,
        )
        profile = complete_profile()
        reply = respond(responder, intents, "tell me something interesting about the weather today", profile)
        assert reply.text.strip()
        assert "dStealth" in reply.text

    def test_ai_reply_is_used(self, api, payments, balances, profiles, intents):
        from dstealth.core.responses import ResponseGenerator

        completion = StubCompletion(text="Stealth addresses hide the receiver.")
        responder = ResponseGenerator(
            api=api, payments=payments, balances=balances, completion=completion, identities=profiles
        )
        reply = respond(responder, intents, "explain how receivers stay hidden", complete_profile())
        assert reply.text == "Stealth addresses hide the receiver."

    def test_first_contact_gets_welcome(self, responder, intents):
        reply = respond(responder, intents, "tell me something interesting please")
        assert "Welcome to dStealth" in reply.text
        assert reply.profile.setup_status is SetupStatus.FKEY_PENDING

    def test_guaranteed_fallback_is_never_empty(self):
        assert GUARANTEED_FALLBACK.strip()


class TestGroupReplies:
    def test_group_onboarding_is_short(self, responder, intents):
        reply = respond(responder, intents, "hello there", is_group=True)
        assert len(reply.text) <= GROUP_CHAR_LIMIT
        assert "Welcome to dStealth" not in reply.text
        assert reply.profile is None

    def test_group_claim_invites_to_dm(self, responder, intents, api):
        reply = respond(responder, intents, "my username is tantodefi", is_group=True)
        assert "DM me" in reply.text
        assert api.lookup_calls == []

    def test_group_gating_is_short(self, responder, intents):
        reply = respond(responder, intents, "create payment link for $5", is_group=True)
        assert len(reply.text) <= GROUP_CHAR_LIMIT
        assert "needs complete setup" in reply.text

    def test_group_payment_link(self, responder, intents):
        reply = respond(responder, intents, "create payment link for $12.50", complete_profile(), is_group=True)
        assert "https://pay.daimo.com/checkout?id=abc" in reply.text
        assert "$12.50" in reply.text
