"""
Presence tracking with heartbeat liveness.

Each user is either online or offline. connect() and heartbeat() keep a user
online until `timeout` seconds pass without another heartbeat; the sweeper
(run() / expire_stale()) then moves the user offline and stamps last_seen.
Only real transitions are published: connecting an online user or
disconnecting an offline one emits nothing.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from chatcore.hub import SubscriptionHub
from chatcore.metrics import record_presence_transition
from chatcore.schemas import Presence, PresenceState
from chatcore.storage import utcnow

logger = logging.getLogger(__name__)

TransitionListener = Callable[[Presence], Awaitable[None]]


@dataclass
class _UserPresence:
    state: PresenceState = PresenceState.OFFLINE
    last_seen: Optional[datetime] = None
    deadline: Optional[float] = None  # monotonic seconds


class PresenceTracker:
    def __init__(
        self,
        hub: SubscriptionHub,
        timeout: float = 30.0,
        sweep_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionListener] = None,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._hub = hub
        self._timeout = timeout
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._monotonic = monotonic
        self._on_transition = on_transition
        self._users: dict[str, _UserPresence] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def seed(self, user_id: str, last_seen: Optional[datetime]) -> None:
        """Load a known user as offline with its stored last_seen."""
        self._users.setdefault(user_id, _UserPresence(last_seen=last_seen))

    def get(self, user_id: str) -> Presence:
        record = self._users.get(user_id) or _UserPresence()
        return Presence(user_id=user_id, state=record.state, last_seen=record.last_seen)

    def online_users(self) -> list[str]:
        return sorted(uid for uid, p in self._users.items() if p.state == PresenceState.ONLINE)

    async def connect(self, user_id: str) -> Presence:
        record = self._users.setdefault(user_id, _UserPresence())
        record.deadline = self._monotonic() + self._timeout
        if record.state == PresenceState.ONLINE:
            return self.get(user_id)
        return await self._transition(user_id, record, PresenceState.ONLINE)

    async def heartbeat(self, user_id: str) -> Presence:
        """Extend the liveness window. An offline user is brought back online."""
        return await self.connect(user_id)

    async def disconnect(self, user_id: str) -> Presence:
        record = self._users.get(user_id)
        if record is None or record.state == PresenceState.OFFLINE:
            return self.get(user_id)
        return await self._transition(user_id, record, PresenceState.OFFLINE)

    async def expire_stale(self) -> list[Presence]:
        """Move every user whose heartbeat deadline has passed to offline."""
        now = self._monotonic()
        expired = [
            uid for uid, record in self._users.items()
            if record.state == PresenceState.ONLINE and record.deadline is not None and record.deadline <= now
        ]
        result = []
        for user_id in expired:
            # A heartbeat may have landed while an earlier transition was awaited
            record = self._users[user_id]
            if record.state != PresenceState.ONLINE or record.deadline is None or record.deadline > self._monotonic():
                continue
            logger.info(f"Heartbeat timeout: {user_id}")
            result.append(await self._transition(user_id, record, PresenceState.OFFLINE))
        return result

    async def run(self) -> None:
        """Sweep for missed heartbeats until cancelled."""
        logger.info(f"Presence sweeper started (timeout={self._timeout}s)")
        try:
            while True:
                await asyncio.sleep(self._sweep_interval)
                try:
                    await self.expire_stale()
                except Exception:
                    logger.exception("Presence sweep failed")
        finally:
            logger.info("Presence sweeper stopped")

    async def _transition(self, user_id: str, record: _UserPresence, state: PresenceState) -> Presence:
        record.state = state
        if state == PresenceState.OFFLINE:
            record.last_seen = self._clock()
            record.deadline = None
        presence = Presence(user_id=user_id, state=state, last_seen=record.last_seen)

        record_presence_transition(state.value)
        logger.info(f"Presence changed: user={user_id}, state={state.value}")
        self._hub.publish_presence(presence)

        if self._on_transition is not None:
            try:
                await self._on_transition(presence)
            except Exception:
                logger.exception(f"Presence listener failed for {user_id}")
        return presence
