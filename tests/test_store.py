"""Tests for the SQLite profile store and the context store."""

import json

from dstealth.core.context import ENTRY_CHARS, HISTORY_LIMIT, ContextStore
from dstealth.core.onboarding import SetupStatus, UserProfile

from conftest import complete_profile


class TestProfileStore:
    def test_upsert_and_fetch(self, profiles):
        profile = complete_profile(user_id="Alice")
        profiles.upsert(profile)
        assert profiles.get_by_user("alice") == profile
        assert profiles.get_by_identity("TantoDefi").user_id == "Alice"

    def test_upsert_replaces(self, profiles):
        profiles.upsert(UserProfile("alice", SetupStatus.FKEY_PENDING))
        profiles.upsert(complete_profile())
        assert profiles.get_by_user("alice").is_complete

    def test_missing_profile(self, profiles):
        assert profiles.get_by_user("nobody") is None
        assert profiles.get_by_identity("nobody") is None

    def test_inconsistent_row_is_downgraded(self, profiles):
        bad = {"user_id": "alice", "setup_status": "complete", "fkey_id": None}
        profiles.conn.execute(
            "INSERT INTO user_profiles(user_id, fkey_id, data) VALUES(?,?,?)",
            ("alice", None, json.dumps(bad)),
        )
        profile = profiles.get_by_user("alice")
        assert profile.setup_status is SetupStatus.NEW

    def test_interactions_are_logged(self, profiles):
        profiles.log_interaction("alice", "fkey_set", {"fkeyId": "tantodefi.fkey.id"})
        entries = profiles.interactions("alice")
        assert entries[0]["kind"] == "fkey_set"
        assert entries[0]["payload"]["fkeyId"] == "tantodefi.fkey.id"

    def test_processed_ids_oldest_first(self, profiles):
        for message_id in ("a", "b", "c"):
            profiles.remember_message_id(message_id)
        assert set(profiles.recent_message_ids(10)) == {"a", "b", "c"}
        assert len(profiles.recent_message_ids(2)) == 2


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestContextStore:
    def test_created_lazily(self):
        store = ContextStore()
        context = store.get("alice", "dm-1")
        assert context.message_count == 0
        assert store.get("ALICE", "dm-1") is context

    def test_history_is_capped_and_truncated(self):
        store = ContextStore()
        context = store.get("alice", "dm-1")
        for i in range(HISTORY_LIMIT + 7):
            context.add("user", f"{i} " + "x" * 500)
        assert len(context.history) == HISTORY_LIMIT
        assert context.history[0].content.startswith("7 ")
        assert all(len(entry.content) <= ENTRY_CHARS for entry in context.history)
        assert context.message_count == HISTORY_LIMIT + 7

    def test_idle_contexts_expire(self):
        clock = FakeClock()
        store = ContextStore(clock=clock)
        context = store.get("alice", "dm-1")
        context.add("user", "hi", now=clock.now)
        clock.now += 24 * 60 * 60 + 1
        assert store.get("alice", "dm-1") is not context

    def test_size_bound_evicts_least_recent(self):
        store = ContextStore(max_contexts=2)
        first = store.get("a", "c")
        store.get("b", "c")
        store.get("c", "c")
        assert len(store) == 2
        assert store.get("a", "c") is not first

    def test_written_through_and_restored(self, profiles):
        store = ContextStore(mirror=profiles)
        context = store.get("alice", "dm-1")
        context.add("user", "hello")
        store.save(context)

        restored = ContextStore(mirror=profiles).get("alice", "dm-1")
        assert [entry.content for entry in restored.history] == ["hello"]

    def test_prune_drops_idle_mirrored_contexts(self, profiles):
        clock = FakeClock()
        store = ContextStore(mirror=profiles, idle_expiry=60, clock=clock)
        idle = store.get("alice", "dm-1")
        store.save(idle)
        clock.now += 120
        fresh = store.get("bob", "dm-2")
        store.save(fresh)

        assert store.prune() == 1
        assert profiles.load_context("alice:dm-1") is None
        assert profiles.load_context("bob:dm-2") is not None
