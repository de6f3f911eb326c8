from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest

from app.live.bus import InProcessBus, maybe_await
from app.live.errors import EndpointError, MediaAcquisitionError
from app.live.presence import PresenceRegistry
from app.live.protocol import PRESENCE_CHANNEL
from app.live.requester import RequesterController
from app.live.responder import ResponderController
from app.live.transport import CALL_CLOSE
from app.settings import Settings


class ManualTimer:
    def __init__(self, due: float, callback) -> None:
        self.due = due
        self.callback = callback
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ManualScheduler:
    """Fake clock: timers only fire when a test advances time."""

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, ManualTimer]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback) -> ManualTimer:
        timer = ManualTimer(self.now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (timer.due, next(self._seq), timer))
        return timer

    def active(self) -> list[ManualTimer]:
        return [timer for _due, _seq, timer in self._queue if not timer.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _seq, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self.now = due
            timer.cancel()
            await maybe_await(timer.callback())
        self.now = target


class FakeMedia:
    def __init__(self) -> None:
        self.fail_acquire = False
        self.acquired = 0
        self.stopped = 0
        self.enabled_history: list[bool] = []
        self.torch_history: list[bool] = []
        # When set, the next set_enabled call waits on it before applying.
        self.gate: Optional[asyncio.Event] = None

    @property
    def enabled(self) -> bool:
        return bool(self.enabled_history) and self.enabled_history[-1]

    async def acquire(self) -> None:
        if self.fail_acquire:
            raise MediaAcquisitionError("Permission denied")
        self.acquired += 1

    async def set_enabled(self, enabled: bool) -> None:
        if self.gate is not None:
            gate, self.gate = self.gate, None
            await gate.wait()
        self.enabled_history.append(enabled)

    async def stop(self) -> None:
        self.stopped += 1

    async def set_torch(self, enabled: bool) -> None:
        self.torch_history.append(enabled)


class FakeAttention:
    def __init__(self) -> None:
        self.pulses = 0

    async def pulse(self) -> None:
        self.pulses += 1


class FakeCall:
    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        self.closed = False
        self.remote: Optional["FakeCall"] = None
        self.handlers: dict[str, list] = defaultdict(list)

    def on(self, event: str, handler) -> None:
        self.handlers[event].append(handler)

    async def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self.handlers.get(event, [])):
            await maybe_await(handler(payload))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.remote is not None and not self.remote.closed:
            self.remote.closed = True
            await self.remote.emit(CALL_CLOSE)


class FakeTransport:
    def __init__(self, network: "FakeNetwork", peer_id: str) -> None:
        self.network = network
        self.peer_id = peer_id
        self.fail_endpoint = False
        self.fail_place_call = False
        self.placed: list[FakeCall] = []
        self.answered: list[tuple[FakeCall, Any]] = []
        self.aux_sent: list[tuple[str, dict]] = []
        self._aux_handlers: list = []
        self._incoming_handlers: list = []

    async def create_endpoint(self) -> str:
        if self.fail_endpoint:
            raise EndpointError("Transport unavailable")
        return self.peer_id

    async def place_call(self, target_id: str, media) -> FakeCall:
        if self.fail_place_call:
            raise RuntimeError("Peer unreachable")
        local = FakeCall(target_id)
        remote = FakeCall(self.peer_id)
        local.remote = remote
        remote.remote = local
        self.placed.append(local)
        target = self.network.endpoints.get(target_id)
        if target is not None:
            for handler in list(target._incoming_handlers):
                await maybe_await(handler(remote))
        return local

    async def answer_call(self, call: FakeCall, media) -> None:
        self.answered.append((call, media))

    async def send_auxiliary_message(self, peer_id: str, payload: dict) -> None:
        self.aux_sent.append((peer_id, payload))
        target = self.network.endpoints.get(peer_id)
        if target is not None:
            for handler in list(target._aux_handlers):
                await maybe_await(handler(self.peer_id, payload))

    def on_auxiliary_message(self, handler) -> None:
        self._aux_handlers.append(handler)

    def on_incoming_call(self, handler) -> None:
        self._incoming_handlers.append(handler)


class FakeNetwork:
    def __init__(self) -> None:
        self.endpoints: dict[str, FakeTransport] = {}

    def endpoint(self, peer_id: str) -> FakeTransport:
        transport = FakeTransport(self, peer_id)
        self.endpoints[peer_id] = transport
        return transport


@dataclass
class Participant:
    controller: Any
    transport: FakeTransport
    media: FakeMedia
    attention: Optional[FakeAttention] = None
    events: list[dict] = field(default_factory=list)

    def states(self) -> list[str]:
        return [event["state"] for event in self.events if event.get("type") == "server.status"]

    def summaries(self) -> list[dict]:
        return [event for event in self.events if event.get("type") == "server.summary"]


class World:
    """One bus, one registry and one fake clock shared by every participant."""

    def __init__(self, scheduler: ManualScheduler, config: Settings) -> None:
        self.scheduler = scheduler
        self.config = config
        self.bus = InProcessBus(clock=scheduler.time)
        self.registry = PresenceRegistry(clock=scheduler.time)
        self.network = FakeNetwork()
        self.observer = None

    async def start(self) -> "World":
        self.observer = await self.bus.subscribe(PRESENCE_CHANNEL, owner="observer")
        self.registry.bind(self.observer)
        await self.bus.request_snapshot(self.observer)
        return self

    def requester(self, peer_id: str = "req-1", **kwargs) -> Participant:
        transport = self.network.endpoint(peer_id)
        media = FakeMedia()
        attention = FakeAttention()
        participant = Participant(
            controller=None, transport=transport, media=media, attention=attention
        )
        participant.controller = RequesterController(
            bus=self.bus,
            registry=self.registry,
            transport=transport,
            media=media,
            scheduler=self.scheduler,
            attention=attention,
            emit=participant.events.append,
            config=kwargs.pop("config", self.config),
            **kwargs,
        )
        return participant

    async def responder(self, peer_id: str, *, online: bool = True, **kwargs) -> Participant:
        transport = self.network.endpoint(peer_id)
        media = FakeMedia()
        participant = Participant(controller=None, transport=transport, media=media)
        participant.controller = ResponderController(
            bus=self.bus,
            transport=transport,
            scheduler=self.scheduler,
            media=media,
            emit=participant.events.append,
            config=kwargs.pop("config", self.config),
            **kwargs,
        )
        if online:
            await participant.controller.go_online()
        return participant


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def config() -> Settings:
    return Settings(
        invite_timeout_seconds=30.0,
        no_volunteer_retry_seconds=5.0,
        decline_grace_seconds=1.0,
        pass_limit=2,
        selection_policy="oldest_first",
        ring_timeout_seconds=45.0,
        attention_interval_seconds=0.8,
    )


@pytest.fixture
def world(scheduler: ManualScheduler, config: Settings) -> World:
    return World(scheduler, config)
