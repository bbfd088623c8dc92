"""Test doubles shared across the suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from tempadmin.errors import BackendError
from tempadmin.models.events import ChannelEvent
from tempadmin.utils.backend import InMemoryBackend


class ManualClock:
    """Wall clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChannel:
    def __init__(self) -> None:
        self.events: List[ChannelEvent] = []

    async def publish(self, event: ChannelEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type for e in self.events]

    def of_type(self, event_type: str) -> List[ChannelEvent]:
        return [e for e in self.events if e.type == event_type]


class ExplodingChannel:
    async def publish(self, event: ChannelEvent) -> None:
        raise RuntimeError("channel down")


class FlakyBackend(InMemoryBackend):
    """In-memory backend whose grant/revoke fail a set number of times."""

    def __init__(self, grant_failures: int = 0, revoke_failures: int = 0):
        super().__init__()
        self.grant_failures = grant_failures
        self.revoke_failures = revoke_failures

    async def grant(self, identity: str) -> None:
        if self.grant_failures > 0:
            self.grant_failures -= 1
            raise BackendError("dseditgroup exited with code 1", "grant", identity)
        await super().grant(identity)

    async def revoke(self, identity: str) -> None:
        if self.revoke_failures > 0:
            self.revoke_failures -= 1
            raise BackendError("dseditgroup exited with code 1", "revoke", identity)
        await super().revoke(identity)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
