"""Presence & messaging bus.

`MessageBus` is the contract the controllers consume: subscribe to a named
channel, bind handlers to event names, publish fire-and-forget messages.
Presence channels (names starting with ``presence-``) additionally track
members and emit the subscription-succeeded / member-added / member-removed
events.

`InProcessBus` implements the contract inside one process; the FastAPI
application hosts one instance and every websocket client is wired to it.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from .errors import DeliveryError
from .protocol import (
    EVENT_MEMBER_ADDED,
    EVENT_MEMBER_REMOVED,
    EVENT_SUBSCRIPTION_SUCCEEDED,
    PresenceMember,
)


logger = logging.getLogger("sightline")

Handler = Callable[[Any], Union[Awaitable[None], None]]

PRESENCE_PREFIX = "presence-"


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def publish_safely(
    bus: "MessageBus",
    channel_name: str,
    event: str,
    payload: Any = None,
    origin_id: Optional[str] = None,
) -> bool:
    """Publish and log instead of raising; the caller's retry loop covers losses."""
    try:
        await bus.publish(channel_name, event, payload, origin_id=origin_id)
    except Exception as exc:
        logger.warning("Publishing %s to %s failed: %s", event, channel_name, exc)
        return False
    return True


class Channel(Protocol):
    name: str

    def bind(self, event: str, handler: Handler) -> None: ...

    def unbind(self, event: str, handler: Optional[Handler] = None) -> None: ...


class MessageBus(Protocol):
    async def subscribe(
        self,
        channel_name: str,
        *,
        member: Optional[PresenceMember] = None,
        owner: Optional[str] = None,
    ) -> Channel: ...

    async def unsubscribe(self, channel: Channel) -> None: ...

    async def request_snapshot(self, channel: Channel) -> None: ...

    async def publish(
        self,
        channel_name: str,
        event: str,
        payload: Any = None,
        origin_id: Optional[str] = None,
    ) -> None: ...


@dataclass(eq=False)
class Subscription:
    """One subscriber's handle on a channel."""

    name: str
    owner: Optional[str] = None
    member: Optional[PresenceMember] = None
    handlers: dict[str, list[Handler]] = field(default_factory=lambda: defaultdict(list))
    active: bool = True

    def bind(self, event: str, handler: Handler) -> None:
        self.handlers[event].append(handler)

    def unbind(self, event: str, handler: Optional[Handler] = None) -> None:
        if handler is None:
            self.handlers.pop(event, None)
            return
        bound = self.handlers.get(event, [])
        if handler in bound:
            bound.remove(handler)


class InProcessBus:
    """In-memory channels with presence membership.

    Delivery is sequential and in subscription order.  A failing handler is
    logged and does not stop delivery to the remaining subscribers.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._joined_at: dict[tuple[str, str], float] = {}

    def members(self, channel_name: str) -> list[PresenceMember]:
        seen: dict[str, PresenceMember] = {}
        for sub in self._subscriptions.get(channel_name, []):
            if sub.member is not None and sub.member.id not in seen:
                seen[sub.member.id] = self._stamped(channel_name, sub.member)
        return list(seen.values())

    async def subscribe(
        self,
        channel_name: str,
        *,
        member: Optional[PresenceMember] = None,
        owner: Optional[str] = None,
    ) -> Subscription:
        is_presence = channel_name.startswith(PRESENCE_PREFIX)
        if member is not None and not is_presence:
            raise ValueError(f"Channel {channel_name} does not track presence")
        subscription = Subscription(
            name=channel_name,
            owner=owner or (member.id if member else None),
            member=member,
        )
        newly_joined = member is not None and member.id not in {m.id for m in self.members(channel_name)}
        if newly_joined:
            self._joined_at[(channel_name, member.id)] = self._clock()
        self._subscriptions[channel_name].append(subscription)

        if is_presence:
            # Handlers are bound after subscribe() returns, so the snapshot is
            # delivered through request_snapshot() by the subscriber.
            if newly_joined:
                await self._broadcast(
                    channel_name,
                    EVENT_MEMBER_ADDED,
                    self._member_payload(channel_name, member),
                    exclude=subscription,
                )
        return subscription

    async def request_snapshot(self, subscription: Subscription) -> None:
        """Deliver the full member list to one presence subscription."""
        payload = {
            "members": [
                self._member_payload(subscription.name, member)
                for member in self.members(subscription.name)
            ]
        }
        await self._deliver(subscription, EVENT_SUBSCRIPTION_SUCCEEDED, payload)

    async def unsubscribe(self, channel: Subscription) -> None:
        subscribers = self._subscriptions.get(channel.name, [])
        if channel not in subscribers:
            return
        subscribers.remove(channel)
        channel.active = False
        if not subscribers:
            self._subscriptions.pop(channel.name, None)
        member = channel.member
        if member is None:
            return
        if any(sub.member is not None and sub.member.id == member.id for sub in subscribers):
            return
        payload = self._member_payload(channel.name, member)
        self._joined_at.pop((channel.name, member.id), None)
        await self._broadcast(channel.name, EVENT_MEMBER_REMOVED, payload)

    async def publish(
        self,
        channel_name: str,
        event: str,
        payload: Any = None,
        origin_id: Optional[str] = None,
    ) -> None:
        if not channel_name:
            raise DeliveryError("Cannot publish without a channel name")
        subscribers = list(self._subscriptions.get(channel_name, []))
        if not subscribers:
            logger.debug("Publish of %s to %s reached no subscribers", event, channel_name)
        for subscription in subscribers:
            if origin_id is not None and subscription.owner == origin_id:
                continue
            await self._deliver(subscription, event, payload)

    async def _broadcast(
        self,
        channel_name: str,
        event: str,
        payload: Any,
        exclude: Optional[Subscription] = None,
    ) -> None:
        for subscription in list(self._subscriptions.get(channel_name, [])):
            if subscription is exclude:
                continue
            await self._deliver(subscription, event, payload)

    async def _deliver(self, subscription: Subscription, event: str, payload: Any) -> None:
        if not subscription.active:
            return
        for handler in list(subscription.handlers.get(event, [])):
            try:
                await maybe_await(handler(payload))
            except Exception as exc:
                logger.exception(
                    "Handler for %s on %s failed: %s", event, subscription.name, exc
                )

    def _stamped(self, channel_name: str, member: PresenceMember) -> PresenceMember:
        joined_at = self._joined_at.get((channel_name, member.id))
        if joined_at is None or "joined_at" in member.info:
            return member
        return PresenceMember(id=member.id, info={**member.info, "joined_at": joined_at})

    def _member_payload(self, channel_name: str, member: PresenceMember) -> dict[str, Any]:
        stamped = self._stamped(channel_name, member)
        return {"id": stamped.id, "info": dict(stamped.info)}
