"""
End-to-end tests for ChatCore.

Tests cover:
- Send, list and conversation stream together
- Cancelling a subscription while sends continue
- Live conversation list and presence streams
- Replay of stored messages ahead of the live stream
- Rebuilding the index after a restart
- Direct and group conversation creation
- Host shutdown closing live streams
"""

import asyncio

import pytest

from chatcore.errors import (
    ConversationNotFound,
    InvalidConversation,
    InvalidParticipant,
    SubscriptionClosed,
    UserNotFound,
)
from chatcore.hub import CONVERSATION
from chatcore.schemas import ConversationType, PresenceState

from conftest import add_users

pytestmark = pytest.mark.anyio


class TestConversationFlow:
    async def test_send_list_and_stream(self, make_core, clock):
        core = make_core()
        await add_users(core, "alice", "bob")
        conversation, _ = await core.open_direct("alice", "bob")
        subscription = await core.subscribe_conversation(conversation.id)

        clock.now = clock.at(1)
        await core.send(conversation.id, "alice", "hi")
        clock.now = clock.at(2)
        await core.send(conversation.id, "alice", "there")

        [listed] = core.list_conversations("alice")
        assert listed.id == conversation.id
        assert listed.last_message.body == "there"
        assert listed.last_activity == clock.at(2)

        assert (await subscription.next(timeout=1)).body == "hi"
        assert (await subscription.next(timeout=1)).body == "there"
        subscription.cancel()

    async def test_cancel_mid_stream(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")
        conversation, _ = await core.open_direct("alice", "bob")
        subscription = await core.subscribe_conversation(conversation.id, viewer_id="bob")

        await core.send(conversation.id, "alice", "one")
        assert (await subscription.next(timeout=1)).body == "one"

        subscription.cancel()
        message = await asyncio.wait_for(core.send(conversation.id, "alice", "two"), timeout=5)

        assert message.id == 2
        assert [item async for item in subscription] == []
        assert core.hub.subscriber_count(CONVERSATION, conversation.id) == 0

    async def test_replay_then_live(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")
        conversation, _ = await core.open_direct("alice", "bob")
        for body in ("one", "two", "three"):
            await core.send(conversation.id, "alice", body)

        subscription = await core.subscribe_conversation(conversation.id, after_id=1)
        await core.send(conversation.id, "bob", "four")

        received = [(await subscription.next(timeout=1)).id for _ in range(3)]
        assert received == [2, 3, 4]
        subscription.cancel()

    async def test_viewer_must_participate(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob", "carol")
        conversation, _ = await core.open_direct("alice", "bob")

        with pytest.raises(InvalidParticipant):
            await core.subscribe_conversation(conversation.id, viewer_id="carol")
        with pytest.raises(ConversationNotFound):
            await core.subscribe_conversation("missing")


class TestLiveLists:
    async def test_conversation_list_stream(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")
        conversation, _ = await core.open_direct("alice", "bob")
        subscription = core.subscribe_conversation_list("bob")

        assert await subscription.next(timeout=1) == []

        await core.send(conversation.id, "alice", "hi")
        [entry] = await subscription.next(timeout=1)
        assert entry.id == conversation.id
        assert entry.title == "Alice"
        assert entry.last_message.body == "hi"

        await core.archive(conversation.id, "bob")
        assert await subscription.next(timeout=1) == []
        subscription.cancel()

    async def test_snapshots_follow_activity_order(self, make_core, clock):
        core = make_core()
        await add_users(core, "alice", "bob", "carol")
        with_bob, _ = await core.open_direct("alice", "bob")
        with_carol, _ = await core.open_direct("alice", "carol")
        subscription = core.subscribe_conversation_list("alice")
        await subscription.next(timeout=1)

        clock.now = clock.at(1)
        await core.send(with_bob.id, "bob", "first")
        clock.now = clock.at(2)
        await core.send(with_carol.id, "carol", "second")

        await subscription.next(timeout=1)
        latest = await subscription.next(timeout=1)
        assert [c.id for c in latest] == [with_carol.id, with_bob.id]
        subscription.cancel()

    async def test_presence_stream(self, make_core):
        core = make_core()
        await add_users(core, "bob")
        subscription = core.subscribe_presence("bob")

        assert (await subscription.next(timeout=1)).state == PresenceState.OFFLINE
        await core.connect("bob")
        await core.connect("bob")
        await core.disconnect("bob")

        assert (await subscription.next(timeout=1)).state == PresenceState.ONLINE
        assert (await subscription.next(timeout=1)).state == PresenceState.OFFLINE
        subscription.cancel()


class TestRestart:
    async def test_index_rebuilt_from_store(self, make_core, clock):
        core = make_core()
        await add_users(core, "alice", "bob", "carol")
        with_bob, _ = await core.open_direct("alice", "bob")
        with_carol, _ = await core.open_direct("alice", "carol")
        clock.now = clock.at(1)
        await core.send(with_bob.id, "alice", "hi bob")
        clock.now = clock.at(2)
        await core.send(with_carol.id, "alice", "hi carol")
        await core.archive(with_carol.id, "carol")
        before = core.list_conversations("alice")

        restarted = make_core()
        await restarted.start(sweep=False)

        assert restarted.list_conversations("alice") == before
        assert restarted.list_conversations("carol") == []
        assert restarted.list_conversations("carol", include_archived=True)[0].archived
        await restarted.stop()

    async def test_warm_up_twice_is_harmless(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")
        conversation, _ = await core.open_direct("alice", "bob")
        await core.send(conversation.id, "alice", "hi")

        restarted = make_core()
        await restarted.warm_up()
        await restarted.warm_up()

        assert len(restarted.list_conversations("bob")) == 1


class TestConversations:
    async def test_open_direct_is_get_or_create(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")

        created, is_new = await core.open_direct("alice", "bob")
        again, is_new_again = await core.open_direct("bob", "alice")

        assert is_new is True
        assert is_new_again is False
        assert again.id == created.id
        assert created.type == ConversationType.DIRECT
        assert created.participants == ["alice", "bob"]

    async def test_direct_with_self(self, make_core):
        core = make_core()
        await add_users(core, "alice")

        with pytest.raises(InvalidConversation):
            await core.open_direct("alice", "alice")

    async def test_direct_with_unknown_user(self, make_core):
        core = make_core()
        await add_users(core, "alice")

        with pytest.raises(UserNotFound):
            await core.open_direct("alice", "ghost")

    async def test_group(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob", "carol")

        group = await core.create_group("alice", ["bob", "carol", "bob"], "Trip")
        message = await core.send(group.id, "carol", "when?")

        assert group.type == ConversationType.GROUP
        assert group.participants == ["alice", "bob", "carol"]
        assert message.id == 1
        assert [c.title for c in core.list_conversations("bob")] == ["Trip"]

    async def test_group_needs_two_members(self, make_core):
        core = make_core()
        await add_users(core, "alice")

        with pytest.raises(InvalidConversation):
            await core.create_group("alice", ["alice"])

    async def test_search(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob", "carol")
        with_bob, _ = await core.open_direct("alice", "bob")
        with_carol, _ = await core.open_direct("alice", "carol")
        await core.send(with_bob.id, "bob", "pizza tonight?")
        await core.send(with_carol.id, "carol", "hello")

        assert [c.id for c in core.search_conversations("alice", "pizza")] == [with_bob.id]
        assert [c.id for c in core.search_conversations("alice", "Carol")] == [with_carol.id]

    async def test_search_hides_archived(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")
        conversation, _ = await core.open_direct("alice", "bob")
        await core.send(conversation.id, "alice", "pizza tonight?")
        await core.archive(conversation.id, "bob")

        assert core.list_conversations("bob") == []
        assert core.search_conversations("bob", "pizza") == []
        found = core.search_conversations("bob", "pizza", include_archived=True)
        assert [c.id for c in found] == [conversation.id]
        assert found[0].archived


class TestShutdown:
    async def test_stop_closes_streams(self, make_core):
        core = make_core()
        await add_users(core, "alice", "bob")
        await core.start()
        subscription = core.subscribe_presence("bob")
        await subscription.next(timeout=1)

        await core.stop()

        with pytest.raises(SubscriptionClosed):
            await subscription.next(timeout=1)
        with pytest.raises(SubscriptionClosed):
            core.subscribe_presence("bob")
