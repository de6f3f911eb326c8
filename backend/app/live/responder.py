"""Responder-side controller.

offline -> online -> ringing -> connecting -> connected -> online

A responder is a member of the presence channel only while it can take a
new invitation: it leaves the pool as soon as it accepts and re-joins when
the call is over.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..settings import Settings
from .bus import MessageBus, maybe_await, publish_safely
from .errors import EndpointError, MediaAcquisitionError
from .protocol import (
    AUX_TOGGLE_FLASH,
    EVENT_CALL_REJECTED,
    EVENT_END_CALL,
    EVENT_INCOMING_REQUEST,
    EVENT_RESPONDER_READY,
    PRESENCE_CHANNEL,
    ROLE_RESPONDER,
    SERVER_STATUS,
    CallClosed,
    GoOffline,
    GoOnline,
    Hangup,
    IncomingCall,
    Invitation,
    PresenceMember,
    RemoteEnded,
    Timeout,
    UserAccept,
    UserDecline,
    end_call_payload,
    parse_end_call,
    parse_invitation,
    private_channel,
    ready_payload,
    rejection_payload,
)
from .requester import Emitter
from .scheduler import Scheduler, TimerHandle
from .transport import CALL_CLOSE, CALL_ERROR, CallHandle, CallTransport, LocalMedia


logger = logging.getLogger("sightline")

TIMER_RING = "ring"
TIMER_CONNECT = "connect"


class ResponderState(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    RINGING = "ringing"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ResponderController:
    def __init__(
        self,
        *,
        bus: MessageBus,
        transport: CallTransport,
        scheduler: Scheduler,
        media: Optional[LocalMedia] = None,
        emit: Optional[Emitter] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or Settings()
        self.state = ResponderState.OFFLINE
        self.responder_id: Optional[str] = None
        self.requester_id: Optional[str] = None
        self.attempt: Optional[int] = None
        self.flash_on = False
        self.media_active = False

        self._bus = bus
        self._transport = transport
        self._scheduler = scheduler
        self._media = media
        self._emit_cb = emit

        self._generation = 0
        self._timer: Optional[TimerHandle] = None
        self._call: Optional[CallHandle] = None
        self._private: Any = None
        self._presence: Any = None

        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            GoOnline: self._on_go_online,
            GoOffline: self._on_go_offline,
            Invitation: self._on_invitation,
            UserAccept: self._on_accept,
            UserDecline: self._on_decline,
            IncomingCall: self._on_incoming_call,
            RemoteEnded: self._on_remote_ended,
            Hangup: self._on_hangup,
            CallClosed: self._on_call_closed,
            Timeout: self._on_timeout,
        }
        transport.on_incoming_call(lambda call: self.dispatch(IncomingCall(call=call)))

    @property
    def in_pool(self) -> bool:
        return self._presence is not None

    async def dispatch(self, event: Any) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("Responder ignores %s", type(event).__name__)
            return
        await handler(event)

    async def go_online(self) -> None:
        await self.dispatch(GoOnline())

    async def go_offline(self) -> None:
        await self.dispatch(GoOffline())

    async def accept(self) -> None:
        await self.dispatch(UserAccept())

    async def decline(self, reason: str = "declined") -> None:
        await self.dispatch(UserDecline(reason=reason))

    async def hangup(self) -> None:
        await self.dispatch(Hangup())

    async def toggle_flash(self) -> bool:
        """Ask the requester's device to flip its torch; returns the new value."""
        if self.state is not ResponderState.CONNECTED or self.requester_id is None:
            logger.debug("Torch toggle ignored while %s", self.state.value)
            return self.flash_on
        value = not self.flash_on
        try:
            await self._transport.send_auxiliary_message(
                self.requester_id, {"type": AUX_TOGGLE_FLASH, "value": value}
            )
        except Exception as exc:
            logger.warning("Torch toggle to %s failed: %s", self.requester_id, exc)
            return self.flash_on
        self.flash_on = value
        return value

    async def close(self) -> None:
        await self._on_go_offline(GoOffline())
        if self._private is not None:
            await self._bus.unsubscribe(self._private)
            self._private = None

    # Event handlers

    async def _on_go_online(self, _event: GoOnline) -> None:
        if self.state is not ResponderState.OFFLINE:
            return
        if self.responder_id is None:
            try:
                self.responder_id = await self._transport.create_endpoint()
            except EndpointError as exc:
                logger.warning("Responder endpoint unavailable: %s", exc)
                await self._emit(self.status_event(reason=str(exc)))
                return
        if self._private is None:
            channel = await self._bus.subscribe(
                private_channel(self.responder_id), owner=self.responder_id
            )
            channel.bind(EVENT_INCOMING_REQUEST, self._invitation_from_bus)
            channel.bind(EVENT_END_CALL, self._end_call_from_bus)
            self._private = channel
        # Online before joining so an invitation sent on join is not dropped.
        await self._transition(ResponderState.ONLINE)
        await self._join_pool()

    async def _on_go_offline(self, _event: GoOffline) -> None:
        if self.state is ResponderState.OFFLINE:
            return
        if self.state is ResponderState.RINGING:
            await self._on_decline(UserDecline(reason="offline"))
        elif self.state in (ResponderState.CONNECTING, ResponderState.CONNECTED):
            await self._end_call(notify=True, rejoin=False)
        self._cancel_timer()
        await self._leave_pool()
        await self._transition(ResponderState.OFFLINE)

    async def _on_invitation(self, event: Invitation) -> None:
        if self.state is ResponderState.ONLINE:
            self.requester_id = event.requester_id
            self.attempt = event.attempt
            self._generation += 1
            self._arm_ring_timer(TIMER_RING)
            await self._transition(
                ResponderState.RINGING, requester_id=event.requester_id, attempt=event.attempt
            )
            return

        if self.state is ResponderState.RINGING and event.requester_id == self.requester_id:
            if event.attempt == self.attempt:
                logger.debug("Duplicate invitation from %s", event.requester_id)
                return
            # The same requester came back around on a later pass.
            self.attempt = event.attempt
            self._arm_ring_timer(TIMER_RING)
            await self._emit(self.status_event(requester_id=event.requester_id, attempt=event.attempt))
            return

        logger.info(
            "Busy (%s); rejecting invitation from %s", self.state.value, event.requester_id
        )
        await publish_safely(
            self._bus,
            private_channel(event.requester_id),
            EVENT_CALL_REJECTED,
            rejection_payload(self.responder_id, event.attempt, "busy"),
            origin_id=self.responder_id,
        )

    async def _on_accept(self, _event: UserAccept) -> None:
        if self.state is not ResponderState.RINGING:
            logger.debug("Accept ignored while %s", self.state.value)
            return
        self._cancel_timer()
        requester_id = self.requester_id
        generation = self._generation
        await self._transition(ResponderState.CONNECTING, requester_id=requester_id)

        if self._media is not None:
            try:
                await self._media.acquire()
                self.media_active = True
            except MediaAcquisitionError as exc:
                logger.warning("Microphone unavailable, answering without local audio: %s", exc)
                self.media_active = False
        if generation != self._generation or self.state is not ResponderState.CONNECTING:
            await self._release_media()
            return

        await self._leave_pool()
        self._arm_ring_timer(TIMER_CONNECT)
        await publish_safely(
            self._bus,
            private_channel(requester_id),
            EVENT_RESPONDER_READY,
            ready_payload(self.responder_id, self.attempt),
            origin_id=self.responder_id,
        )

    async def _on_decline(self, event: UserDecline) -> None:
        if self.state is not ResponderState.RINGING:
            logger.debug("Decline ignored while %s", self.state.value)
            return
        self._cancel_timer()
        requester_id = self.requester_id
        attempt = self.attempt
        self.requester_id = None
        self.attempt = None
        self._generation += 1
        await self._transition(ResponderState.ONLINE)
        await publish_safely(
            self._bus,
            private_channel(requester_id),
            EVENT_CALL_REJECTED,
            rejection_payload(self.responder_id, attempt, event.reason),
            origin_id=self.responder_id,
        )

    async def _on_incoming_call(self, event: IncomingCall) -> None:
        call = event.call
        if self.state is not ResponderState.CONNECTING or call.peer_id != self.requester_id:
            logger.warning("Rejecting unexpected call from %s while %s", call.peer_id, self.state.value)
            try:
                await call.close()
            except Exception as exc:
                logger.warning("Closing unexpected call failed: %s", exc)
            return
        self._cancel_timer()
        generation = self._generation
        media = self._media if self.media_active else None
        try:
            await self._transport.answer_call(call, media)
        except Exception as exc:
            logger.warning("Answering the call from %s failed: %s", call.peer_id, exc)
            if generation == self._generation:
                await self._end_call(notify=True)
            return
        if generation != self._generation:
            await call.close()
            return
        self._call = call
        peer_id = call.peer_id
        call.on(CALL_CLOSE, lambda _payload=None: self.dispatch(CallClosed(peer_id=peer_id)))
        call.on(CALL_ERROR, self._on_call_error)
        await self._transition(ResponderState.CONNECTED, requester_id=peer_id)

    async def _on_remote_ended(self, event: RemoteEnded) -> None:
        if self.state not in (
            ResponderState.RINGING,
            ResponderState.CONNECTING,
            ResponderState.CONNECTED,
        ):
            return
        if event.peer_id is not None and event.peer_id != self.requester_id:
            logger.debug("Ignoring end-call from %s", event.peer_id)
            return
        logger.info("Requester %s ended the call", self.requester_id)
        await self._end_call(notify=False)

    async def _on_hangup(self, _event: Hangup) -> None:
        if self.state is ResponderState.RINGING:
            await self._on_decline(UserDecline())
            return
        if self.state not in (ResponderState.CONNECTING, ResponderState.CONNECTED):
            return
        await self._end_call(notify=True)

    async def _on_call_closed(self, event: CallClosed) -> None:
        if self.state is not ResponderState.CONNECTED:
            return
        if event.peer_id is not None and event.peer_id != self.requester_id:
            return
        await self._end_call(notify=False)

    async def _on_timeout(self, event: Timeout) -> None:
        if event.generation != self._generation:
            return
        self._timer = None
        if event.kind == TIMER_RING and self.state is ResponderState.RINGING:
            logger.info("Invitation from %s rang out", self.requester_id)
            await self._on_decline(UserDecline(reason="timeout"))
        elif event.kind == TIMER_CONNECT and self.state is ResponderState.CONNECTING:
            logger.info("Call from %s never arrived", self.requester_id)
            await self._end_call(notify=True)

    # Helpers

    async def _invitation_from_bus(self, payload: Any) -> None:
        try:
            event = parse_invitation(payload or {})
        except ValueError as exc:
            logger.warning("Dropping malformed invitation: %s", exc)
            return
        await self.dispatch(event)

    async def _end_call_from_bus(self, payload: Any) -> None:
        await self.dispatch(parse_end_call(payload))

    async def _on_call_error(self, error: Any) -> None:
        logger.warning("Call error with %s: %s", self.requester_id, error)

    def _arm_ring_timer(self, kind: str) -> None:
        self._cancel_timer()
        if self.config.ring_timeout_seconds <= 0:
            return
        event = Timeout(kind=kind, generation=self._generation, attempt=self.attempt)
        self._timer = self._scheduler.call_later(
            self.config.ring_timeout_seconds, lambda: self.dispatch(event)
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _end_call(self, *, notify: bool, rejoin: bool = True) -> None:
        self._cancel_timer()
        requester_id = self.requester_id
        self.requester_id = None
        self.attempt = None
        self.flash_on = False
        self._generation += 1
        if notify and requester_id:
            await publish_safely(
                self._bus,
                private_channel(requester_id),
                EVENT_END_CALL,
                end_call_payload(ROLE_RESPONDER, self.responder_id),
                origin_id=self.responder_id,
            )
        call = self._call
        self._call = None
        if call is not None:
            try:
                await call.close()
            except Exception as exc:
                logger.warning("Closing call with %s failed: %s", requester_id, exc)
        await self._release_media()
        if rejoin:
            await self._transition(ResponderState.ONLINE)
            await self._join_pool()

    async def _release_media(self) -> None:
        if self._media is None or not self.media_active:
            return
        self.media_active = False
        try:
            await self._media.stop()
        except Exception as exc:
            logger.warning("Stopping local media failed: %s", exc)

    async def _join_pool(self) -> None:
        if self._presence is not None:
            return
        self._presence = await self._bus.subscribe(
            PRESENCE_CHANNEL,
            member=PresenceMember(id=self.responder_id),
            owner=self.responder_id,
        )
        await self._emit(self.status_event())

    async def _leave_pool(self) -> None:
        presence = self._presence
        self._presence = None
        if presence is not None:
            await self._bus.unsubscribe(presence)
            await self._emit(self.status_event())

    def status_event(self, **detail: Any) -> dict[str, Any]:
        event = {
            "type": SERVER_STATUS,
            "role": ROLE_RESPONDER,
            "state": self.state.value,
            "responder_id": self.responder_id,
            "requester_id": self.requester_id,
            "in_pool": self.in_pool,
        }
        event.update(detail)
        return event

    async def _transition(self, state: ResponderState, **detail: Any) -> None:
        previous = self.state
        self.state = state
        if previous is not state:
            logger.info("Responder %s: %s -> %s", self.responder_id, previous.value, state.value)
        await self._emit(self.status_event(**detail))

    async def _emit(self, event: dict[str, Any]) -> None:
        if self._emit_cb is None:
            return
        try:
            await maybe_await(self._emit_cb(event))
        except Exception as exc:
            logger.warning("Status delivery failed: %s", exc)
