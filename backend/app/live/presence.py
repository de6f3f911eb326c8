"""Presence registry for available responders.

The registry mirrors the messaging bus's authoritative view of the
responder pool.  Local `announce`/`withdraw` calls apply immediately but
are advisory: the next full resync from the bus replaces whatever the
registry holds.
"""

from __future__ import annotations

import inspect
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from .protocol import (
    EVENT_MEMBER_ADDED,
    EVENT_MEMBER_REMOVED,
    EVENT_SUBSCRIPTION_SUCCEEDED,
    PresenceMember,
)


logger = logging.getLogger("sightline")

MembershipListener = Callable[[], Union[Awaitable[None], None]]


@dataclass(frozen=True)
class PresenceEntry:
    """One available responder and the time it became available."""

    id: str
    joined_at: float


class PresenceRegistry:
    """Tracks available responders, ordered oldest-waiting first."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, PresenceEntry] = {}
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._listeners: list[MembershipListener] = []

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def announce(self, participant_id: str, joined_at: Optional[float] = None) -> bool:
        """Add a responder; returns False when it was already present."""
        if participant_id in self._entries:
            return False
        stamp = self._clock() if joined_at is None else joined_at
        self._entries[participant_id] = PresenceEntry(id=participant_id, joined_at=stamp)
        self._order[participant_id] = next(self._sequence)
        return True

    def withdraw(self, participant_id: str) -> bool:
        """Remove a responder; returns False when it was not present."""
        if self._entries.pop(participant_id, None) is None:
            return False
        self._order.pop(participant_id, None)
        return True

    def snapshot(self) -> list[PresenceEntry]:
        return sorted(
            self._entries.values(),
            key=lambda entry: (entry.joined_at, self._order[entry.id]),
        )

    def ids(self) -> list[str]:
        return [entry.id for entry in self.snapshot()]

    def add_listener(self, listener: MembershipListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MembershipListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def resync(self, members: Iterable[PresenceMember]) -> None:
        """Replace the pool with the bus's full membership list.

        Responders already known keep their original join time so a
        resync does not reset anybody's place in the fairness order.
        """
        members = list(members)
        incoming = {member.id for member in members}
        for stale_id in [pid for pid in self._entries if pid not in incoming]:
            self.withdraw(stale_id)
        for member in members:
            self.announce(member.id, member.joined_at)
        logger.info("Presence resync: %d responders available", len(self._entries))
        await self._notify()

    async def on_member_added(self, member: PresenceMember) -> None:
        if self.announce(member.id, member.joined_at):
            logger.info("Responder %s joined the pool", member.id)
            await self._notify()

    async def on_member_removed(self, member: PresenceMember) -> None:
        if self.withdraw(member.id):
            logger.info("Responder %s left the pool", member.id)
            await self._notify()

    def bind(self, channel: Any) -> None:
        """Follow the membership events of a bus presence channel."""
        channel.bind(EVENT_SUBSCRIPTION_SUCCEEDED, self._handle_snapshot)
        channel.bind(EVENT_MEMBER_ADDED, self._handle_added)
        channel.bind(EVENT_MEMBER_REMOVED, self._handle_removed)

    async def _handle_snapshot(self, payload: dict[str, Any]) -> None:
        await self.resync(_members_from_payload(payload))

    async def _handle_added(self, payload: dict[str, Any]) -> None:
        await self.on_member_added(_member_from_payload(payload))

    async def _handle_removed(self, payload: dict[str, Any]) -> None:
        await self.on_member_removed(_member_from_payload(payload))

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Presence listener failed: %s", exc)


def _member_from_payload(payload: Any) -> PresenceMember:
    if isinstance(payload, PresenceMember):
        return payload
    if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
        raise ValueError("Presence member payload must carry a string id")
    info = payload.get("info")
    return PresenceMember(id=payload["id"], info=dict(info) if isinstance(info, dict) else {})


def _members_from_payload(payload: Any) -> list[PresenceMember]:
    if isinstance(payload, dict):
        payload = payload.get("members", [])
    return [_member_from_payload(item) for item in payload or []]
