"""
Tests for the presence tracker.

Tests cover:
- connect/disconnect transitions and their idempotence
- Heartbeat timeout moves a user offline and stamps last_seen
- Heartbeats extend the liveness window
- The background sweeper
- Transitions are published and stored in the directory
"""

import asyncio
import time

import pytest

from chatcore.errors import UserNotFound
from chatcore.hub import SubscriptionHub
from chatcore.presence import PresenceTracker
from chatcore.schemas import PresenceState

from conftest import add_users

pytestmark = pytest.mark.anyio


@pytest.fixture
def hub():
    return SubscriptionHub()


@pytest.fixture
def tracker(hub, clock, monotonic):
    return PresenceTracker(hub, timeout=30.0, clock=clock, monotonic=monotonic)


def drain(subscription):
    items = []
    while not subscription._queue.empty():
        items.append(subscription._queue.get_nowait())
    return items


class TestTransitions:
    async def test_unknown_user_is_offline(self, tracker):
        presence = tracker.get("bob")

        assert presence.state == PresenceState.OFFLINE
        assert presence.last_seen is None

    async def test_connect_goes_online(self, tracker, hub):
        subscription = hub.subscribe_presence("bob", tracker.get("bob"))

        presence = await tracker.connect("bob")

        assert presence.state == PresenceState.ONLINE
        assert [p.state for p in drain(subscription)] == [PresenceState.OFFLINE, PresenceState.ONLINE]

    async def test_connect_twice_emits_once(self, tracker, hub):
        await tracker.connect("bob")
        subscription = hub.subscribe_presence("bob", tracker.get("bob"))

        await tracker.connect("bob")

        assert [p.state for p in drain(subscription)] == [PresenceState.ONLINE]

    async def test_disconnect_without_connect_is_noop(self, tracker, hub):
        subscription = hub.subscribe_presence("bob", tracker.get("bob"))

        presence = await tracker.disconnect("bob")

        assert presence.state == PresenceState.OFFLINE
        assert presence.last_seen is None
        assert [p.state for p in drain(subscription)] == [PresenceState.OFFLINE]

    async def test_disconnect_stamps_last_seen(self, tracker, clock):
        await tracker.connect("bob")
        clock.advance(12)

        presence = await tracker.disconnect("bob")

        assert presence.state == PresenceState.OFFLINE
        assert presence.last_seen == clock.now

    async def test_disconnect_twice_emits_once(self, tracker, hub):
        await tracker.connect("bob")
        subscription = hub.subscribe_presence("bob", tracker.get("bob"))

        await tracker.disconnect("bob")
        await tracker.disconnect("bob")

        assert [p.state for p in drain(subscription)] == [PresenceState.ONLINE, PresenceState.OFFLINE]


class TestHeartbeat:
    async def test_timeout_marks_offline(self, tracker, clock, monotonic):
        await tracker.connect("bob")
        monotonic.advance(30)
        clock.advance(30)

        expired = await tracker.expire_stale()

        assert [p.user_id for p in expired] == ["bob"]
        assert tracker.get("bob").state == PresenceState.OFFLINE
        assert tracker.get("bob").last_seen == clock.now

    async def test_within_window_stays_online(self, tracker, monotonic):
        await tracker.connect("bob")
        monotonic.advance(29.9)

        assert await tracker.expire_stale() == []
        assert tracker.get("bob").state == PresenceState.ONLINE

    async def test_heartbeat_extends_window(self, tracker, monotonic):
        await tracker.connect("bob")
        monotonic.advance(20)
        await tracker.heartbeat("bob")
        monotonic.advance(20)

        assert await tracker.expire_stale() == []
        assert tracker.online_users() == ["bob"]

    async def test_heartbeat_reconnects_offline_user(self, tracker):
        presence = await tracker.heartbeat("bob")

        assert presence.state == PresenceState.ONLINE

    async def test_only_stale_users_expire(self, tracker, monotonic):
        await tracker.connect("alice")
        monotonic.advance(20)
        await tracker.connect("bob")
        monotonic.advance(15)

        expired = await tracker.expire_stale()

        assert [p.user_id for p in expired] == ["alice"]
        assert tracker.online_users() == ["bob"]

    async def test_heartbeat_during_sweep_keeps_user_online(self, hub, clock, monotonic):
        tracker = None

        async def listener(presence):
            # Bob's heartbeat arrives while Alice's timeout is being recorded
            if presence.user_id == "alice" and presence.state == PresenceState.OFFLINE:
                await tracker.heartbeat("bob")

        tracker = PresenceTracker(hub, timeout=30.0, clock=clock, monotonic=monotonic, on_transition=listener)
        await tracker.connect("alice")
        await tracker.connect("bob")
        monotonic.advance(30)

        expired = await tracker.expire_stale()

        assert [p.user_id for p in expired] == ["alice"]
        assert tracker.get("alice").state == PresenceState.OFFLINE
        assert tracker.get("bob").state == PresenceState.ONLINE

    async def test_sweeper_runs_in_background(self, hub):
        tracker = PresenceTracker(hub, timeout=0.05, sweep_interval=0.01)
        await tracker.connect("bob")

        sweeper = asyncio.create_task(tracker.run())
        try:
            await asyncio.sleep(0.3)
        finally:
            sweeper.cancel()
            with pytest.raises(asyncio.CancelledError):
                await sweeper

        assert tracker.get("bob").state == PresenceState.OFFLINE

    async def test_invalid_timeout(self, hub):
        with pytest.raises(ValueError):
            PresenceTracker(hub, timeout=0)


class TestCorePresence:
    """Presence through ChatCore: directory writes and user checks."""

    async def test_transition_written_to_directory(self, make_core, clock):
        core = make_core()
        await add_users(core, "bob")

        await core.connect("bob")
        assert core.directory.resolve_user("bob").presence == PresenceState.ONLINE

        clock.advance(5)
        await core.disconnect("bob")
        stored = core.directory.resolve_user("bob")
        assert stored.presence == PresenceState.OFFLINE
        assert stored.last_seen == clock.now

    async def test_resolve_user_reports_live_presence(self, make_core):
        core = make_core()
        await add_users(core, "bob")
        await core.connect("bob")

        assert core.resolve_user("bob").presence == PresenceState.ONLINE

    async def test_connect_unknown_user(self, make_core):
        core = make_core()

        with pytest.raises(UserNotFound):
            await core.connect("ghost")

    async def test_deactivated_user_goes_offline_and_cannot_connect(self, make_core):
        core = make_core()
        await add_users(core, "bob")
        await core.connect("bob")

        await core.deactivate_user("bob")

        assert core.presence_of("bob").state == PresenceState.OFFLINE
        with pytest.raises(UserNotFound):
            await core.connect("bob")

    async def test_quick_connect_disconnect_stored_in_order(self, make_core):
        core = make_core()
        await add_users(core, "bob")
        write_presence = core.directory.set_presence

        def slow_online_write(user_id, state, last_seen):
            if state == PresenceState.ONLINE:
                time.sleep(0.2)
            write_presence(user_id, state, last_seen)

        core.directory.set_presence = slow_online_write
        await asyncio.gather(core.connect("bob"), core.disconnect("bob"))

        assert core.presence_of("bob").state == PresenceState.OFFLINE
        assert core.directory.resolve_user("bob").presence == PresenceState.OFFLINE
