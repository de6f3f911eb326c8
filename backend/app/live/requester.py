"""Request lifecycle controller for one requester.

Every input (user action, bus message, call event, timer) becomes an event
dataclass from `protocol` and goes through `dispatch`.  The controller owns
at most one armed timer per session: an invite timeout, the no-volunteer
retry delay, or the short grace period after a decline.  Arming a timer
always cancels the previous one first.

Local media tracks stay disabled from the moment an invitation goes out
until the requester confirms the matched call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from ..settings import Settings
from .bus import MessageBus, maybe_await, publish_safely
from .errors import EndpointError, MediaAcquisitionError
from .matching import MatchOutcome, SelectionPolicy, resolve_policy, select_candidate
from .presence import PresenceRegistry
from .protocol import (
    AUX_TOGGLE_FLASH,
    EVENT_CALL_REJECTED,
    EVENT_END_CALL,
    EVENT_INCOMING_REQUEST,
    EVENT_RESPONDER_READY,
    ROLE_REQUESTER,
    SERVER_STATUS,
    SERVER_SUMMARY,
    Accepted,
    CallClosed,
    Declined,
    Hangup,
    MembershipChanged,
    RemoteEnded,
    StartCall,
    Timeout,
    UserCancel,
    UserConfirm,
    UserRetry,
    end_call_payload,
    invitation_payload,
    parse_accepted,
    parse_declined,
    parse_end_call,
    private_channel,
)
from .scheduler import Scheduler, TimerHandle
from .transport import (
    CALL_CLOSE,
    CALL_ERROR,
    CALL_REMOTE_STREAM,
    AttentionSignal,
    CallHandle,
    CallTransport,
    LocalMedia,
)


logger = logging.getLogger("sightline")

Emitter = Callable[[dict[str, Any]], Union[Awaitable[None], None]]

TIMER_INVITE = "invite"
TIMER_RETRY = "retry"
TIMER_GRACE = "grace"


class RequestState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    WAITING = "waiting"
    NO_VOLUNTEERS = "no-volunteers"
    CONFIRMING = "confirming"
    EXHAUSTED = "exhausted"
    CONNECTED = "connected"


@dataclass
class RequestSession:
    """Matching state for one help request."""

    requester_id: Optional[str] = None
    tried_responders: set[str] = field(default_factory=set)
    loop_count: int = 0
    # Sequence number of the latest invitation; keeps growing across
    # sessions so late replies to an earlier session never match.
    attempt: int = 0
    invitations: int = 0
    pending_responder_id: Optional[str] = None
    connected_responder_id: Optional[str] = None
    previous_responder_id: Optional[str] = None
    requested_at: Optional[float] = None
    connected_at: Optional[float] = None
    ended_at: Optional[float] = None
    outcome: Optional[str] = None

    @property
    def passes(self) -> int:
        # An exhausted session has already counted its last pass as completed.
        if self.outcome == "exhausted":
            return max(self.loop_count, 1)
        return self.loop_count + 1


class RequesterController:
    """Drives one requester through matching, confirmation, and the call."""

    def __init__(
        self,
        *,
        bus: MessageBus,
        registry: PresenceRegistry,
        transport: CallTransport,
        media: LocalMedia,
        scheduler: Scheduler,
        attention: Optional[AttentionSignal] = None,
        emit: Optional[Emitter] = None,
        config: Optional[Settings] = None,
        policy: Optional[SelectionPolicy] = None,
    ) -> None:
        self.config = config or Settings()
        self.state = RequestState.IDLE
        self.session = RequestSession()
        self.media_enabled = False
        self.remote_stream: Any = None

        self._bus = bus
        self._registry = registry
        self._transport = transport
        self._media = media
        self._scheduler = scheduler
        self._attention = attention
        self._emit_cb = emit
        self._policy = policy or resolve_policy(self.config.selection_policy)

        self._generation = 0
        self._timer: Optional[TimerHandle] = None
        self._attention_timer: Optional[TimerHandle] = None
        self._call: Optional[CallHandle] = None
        self._channel: Any = None
        self._channel_owner: Optional[str] = None
        self._closed = False

        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            StartCall: self._on_start,
            UserRetry: self._on_retry,
            Accepted: self._on_accepted,
            Declined: self._on_declined,
            Timeout: self._on_timeout,
            MembershipChanged: self._on_membership_changed,
            UserConfirm: self._on_confirm,
            UserCancel: self._on_cancel,
            Hangup: self._on_hangup,
            RemoteEnded: self._on_remote_ended,
            CallClosed: self._on_call_closed,
        }
        registry.add_listener(self._membership_listener)
        transport.on_auxiliary_message(self._on_auxiliary_message)

    async def dispatch(self, event: Any) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("Requester ignores %s", type(event).__name__)
            return
        await handler(event)

    async def start(self) -> None:
        await self.dispatch(StartCall())

    async def retry(self) -> None:
        await self.dispatch(UserRetry())

    async def confirm(self) -> None:
        await self.dispatch(UserConfirm())

    async def cancel(self) -> None:
        await self.dispatch(UserCancel())

    async def hangup(self) -> None:
        await self.dispatch(Hangup())

    async def close(self) -> None:
        """Tear down on disconnect and release bus subscriptions."""
        if self._closed:
            return
        if self.state is RequestState.EXHAUSTED:
            await self._teardown(notify=False, outcome="exhausted")
        elif self.state is not RequestState.IDLE:
            await self._teardown(notify=True, outcome="disconnected")
        self._closed = True
        self._registry.remove_listener(self._membership_listener)
        if self._channel is not None:
            await self._bus.unsubscribe(self._channel)
            self._channel = None
            self._channel_owner = None

    # Event handlers

    async def _on_start(self, _event: StartCall) -> None:
        if self.state not in (RequestState.IDLE, RequestState.EXHAUSTED):
            logger.info("Start ignored while %s", self.state.value)
            return
        self._cancel_timer()
        self.session = RequestSession(
            previous_responder_id=self.session.previous_responder_id,
            attempt=self.session.attempt,
            requested_at=self._scheduler.time(),
        )
        self._generation += 1
        generation = self._generation
        await self._transition(RequestState.INITIALIZING)

        try:
            await self._media.acquire()
            # Freshly acquired tracks are live until the first invitation mutes them.
            self.media_enabled = True
            identity = await self._transport.create_endpoint()
        except (MediaAcquisitionError, EndpointError) as exc:
            if generation != self._generation:
                return
            logger.warning("Help request could not start: %s", exc)
            await self._teardown(notify=False, outcome="failed", reason=str(exc))
            return

        if generation != self._generation or self.state is not RequestState.INITIALIZING:
            # Cancelled while media was being acquired.
            await self._stop_media()
            return

        self.session.requester_id = identity
        await self._ensure_subscribed(identity)
        await self._transition(RequestState.WAITING)
        await self._request_help()

    async def _on_retry(self, _event: UserRetry) -> None:
        if self.state is not RequestState.EXHAUSTED:
            logger.info("Retry ignored while %s", self.state.value)
            return
        await self._on_start(StartCall())

    async def _on_timeout(self, event: Timeout) -> None:
        if event.generation != self._generation:
            return
        if event.kind == TIMER_INVITE:
            if self.state is not RequestState.WAITING or event.attempt != self.session.attempt:
                return
            self._timer = None
            logger.info(
                "No answer from %s within %.0fs, trying the next responder",
                self.session.pending_responder_id,
                self.config.invite_timeout_seconds,
            )
            self.session.pending_responder_id = None
            await self._request_help()
        elif event.kind == TIMER_RETRY:
            if self.state is not RequestState.NO_VOLUNTEERS:
                return
            self._timer = None
            await self._transition(RequestState.WAITING)
            await self._request_help()
        elif event.kind == TIMER_GRACE:
            if self.state is not RequestState.WAITING:
                return
            self._timer = None
            await self._request_help()

    async def _on_declined(self, event: Declined) -> None:
        pending = self.session.pending_responder_id
        if self.state is not RequestState.WAITING or pending is None:
            logger.debug("Ignoring rejection while %s", self.state.value)
            return
        if event.attempt is not None and event.attempt != self.session.attempt:
            logger.warning("Ignoring stale rejection for attempt %s", event.attempt)
            return
        if event.responder_id is not None and event.responder_id != pending:
            logger.warning("Ignoring rejection from %s; waiting on %s", event.responder_id, pending)
            return
        logger.info("Responder %s %s, trying the next one", pending, event.reason)
        self.session.pending_responder_id = None
        if self.config.decline_grace_seconds > 0:
            self._arm(self.config.decline_grace_seconds, TIMER_GRACE)
        else:
            self._cancel_timer()
            await self._request_help()

    async def _on_accepted(self, event: Accepted) -> None:
        pending = self.session.pending_responder_id
        stale = (
            self.state is not RequestState.WAITING
            or pending is None
            or event.responder_id != pending
            or (event.attempt is not None and event.attempt != self.session.attempt)
        )
        if stale:
            logger.warning(
                "Ignoring stale acceptance from %s while %s", event.responder_id, self.state.value
            )
            if event.responder_id != self.session.connected_responder_id:
                await self._publish_end_call(event.responder_id)
            return

        self._cancel_timer()
        responder_id = event.responder_id
        self.session.pending_responder_id = None
        self.session.connected_responder_id = responder_id
        generation = self._generation
        await self._set_media_enabled(False)
        if generation != self._generation:
            # Teardown already sent end-call to this responder.
            return

        try:
            call = await self._transport.place_call(responder_id, self._media)
        except Exception as exc:
            logger.warning("Placing the call to %s failed: %s", responder_id, exc)
            if generation != self._generation:
                return
            self.session.connected_responder_id = None
            await self._publish_end_call(responder_id)
            await self._request_help()
            return

        if generation != self._generation or self.session.connected_responder_id != responder_id:
            await self._close_call(call)
            return

        self._call = call
        call.on(CALL_REMOTE_STREAM, self._on_remote_stream)
        call.on(CALL_CLOSE, lambda _payload=None: self.dispatch(CallClosed(peer_id=responder_id)))
        call.on(CALL_ERROR, self._on_call_error)
        await self._transition(RequestState.CONFIRMING, responder_id=responder_id)
        await self._start_attention()

    async def _on_confirm(self, _event: UserConfirm) -> None:
        if self.state is not RequestState.CONFIRMING:
            logger.debug("Confirm ignored while %s", self.state.value)
            return
        self._stop_attention()
        generation = self._generation
        await self._set_media_enabled(True)
        if generation != self._generation or self.state is not RequestState.CONFIRMING:
            # The request ended while media was being enabled.
            if self.state is not RequestState.INITIALIZING:
                await self._set_media_enabled(False)
            return
        self.session.connected_at = self._scheduler.time()
        await self._transition(
            RequestState.CONNECTED, responder_id=self.session.connected_responder_id
        )

    async def _on_cancel(self, _event: UserCancel) -> None:
        if self.state is RequestState.IDLE:
            return
        outcome = "exhausted" if self.state is RequestState.EXHAUSTED else "cancelled"
        await self._teardown(notify=True, outcome=outcome)

    async def _on_hangup(self, _event: Hangup) -> None:
        if self.state is RequestState.CONNECTED:
            await self._teardown(notify=True, outcome="completed")
        else:
            await self._on_cancel(UserCancel())

    async def _on_remote_ended(self, event: RemoteEnded) -> None:
        if self.state not in (RequestState.CONFIRMING, RequestState.CONNECTED):
            return
        if event.peer_id is not None and event.peer_id != self.session.connected_responder_id:
            return
        logger.info("Responder %s ended the call", self.session.connected_responder_id)
        await self._teardown(notify=False, outcome=self._ended_outcome())

    async def _on_call_closed(self, event: CallClosed) -> None:
        if self.state not in (RequestState.CONFIRMING, RequestState.CONNECTED):
            return
        if event.peer_id is not None and event.peer_id != self.session.connected_responder_id:
            return
        await self._teardown(notify=False, outcome=self._ended_outcome())

    async def _on_membership_changed(self, _event: MembershipChanged) -> None:
        if self.state is not RequestState.NO_VOLUNTEERS:
            return
        self._cancel_timer()
        await self._transition(RequestState.WAITING)
        await self._request_help()

    # Matching loop

    async def _request_help(self) -> None:
        if self.state not in (RequestState.WAITING, RequestState.NO_VOLUNTEERS):
            return
        requester_id = self.session.requester_id
        result = select_candidate(
            requester_id,
            self._registry.snapshot(),
            self.session.tried_responders,
            self.session.loop_count,
            pass_limit=self.config.pass_limit,
            policy=self._policy,
            avoid=self.session.previous_responder_id,
        )
        self.session.loop_count = result.loop_count

        if result.outcome is MatchOutcome.NO_CANDIDATES:
            logger.info("No responders online for %s, retrying shortly", requester_id)
            await self._transition(RequestState.NO_VOLUNTEERS)
            self._arm(self.config.no_volunteer_retry_seconds, TIMER_RETRY)
            return

        if result.outcome is MatchOutcome.EXHAUSTED:
            logger.info(
                "Tried all %d responders %d times for %s; giving up",
                result.pool_size,
                result.loop_count,
                requester_id,
            )
            self._cancel_timer()
            self.session.pending_responder_id = None
            self.session.outcome = "exhausted"
            await self._stop_media()
            await self._transition(RequestState.EXHAUSTED)
            return

        if result.new_pass:
            logger.info("Every responder tried; starting pass %d", result.loop_count + 1)
        responder_id = result.responder_id
        generation = self._generation
        await self._set_media_enabled(False)
        if generation != self._generation or self.state not in (
            RequestState.WAITING,
            RequestState.NO_VOLUNTEERS,
        ):
            # Cancelled while the camera was being muted.
            return

        self.session.tried_responders = set(result.tried)
        self.session.attempt += 1
        self.session.invitations += 1
        self.session.pending_responder_id = responder_id
        attempt = self.session.attempt
        self._arm(self.config.invite_timeout_seconds, TIMER_INVITE, attempt=attempt)
        await self._transition(RequestState.WAITING, responder_id=responder_id)
        await publish_safely(
            self._bus,
            private_channel(responder_id),
            EVENT_INCOMING_REQUEST,
            invitation_payload(requester_id, attempt),
            origin_id=requester_id,
        )

    # Timers

    def _arm(self, delay: float, kind: str, attempt: Optional[int] = None) -> None:
        self._cancel_timer()
        event = Timeout(kind=kind, generation=self._generation, attempt=attempt)
        self._timer = self._scheduler.call_later(delay, lambda: self.dispatch(event))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _start_attention(self) -> None:
        if self._attention is None:
            return
        await self._pulse()
        self._schedule_attention()

    def _schedule_attention(self) -> None:
        self._attention_timer = self._scheduler.call_later(
            self.config.attention_interval_seconds, self._attention_beat
        )

    async def _attention_beat(self) -> None:
        if self.state is not RequestState.CONFIRMING:
            return
        await self._pulse()
        self._schedule_attention()

    async def _pulse(self) -> None:
        try:
            await self._attention.pulse()
        except Exception as exc:
            logger.warning("Attention signal failed: %s", exc)

    def _stop_attention(self) -> None:
        if self._attention_timer is not None:
            self._attention_timer.cancel()
            self._attention_timer = None

    # Collaborators

    async def _ensure_subscribed(self, identity: str) -> None:
        if self._channel is not None and self._channel_owner == identity:
            return
        if self._channel is not None:
            await self._bus.unsubscribe(self._channel)
        channel = await self._bus.subscribe(private_channel(identity), owner=identity)
        channel.bind(EVENT_RESPONDER_READY, lambda payload: self._from_bus(parse_accepted, payload))
        channel.bind(EVENT_CALL_REJECTED, lambda payload: self._from_bus(parse_declined, payload))
        channel.bind(EVENT_END_CALL, lambda payload: self._from_bus(parse_end_call, payload))
        self._channel = channel
        self._channel_owner = identity

    async def _from_bus(self, parser: Callable[[Any], Any], payload: Any) -> None:
        try:
            event = parser(payload)
        except ValueError as exc:
            logger.warning("Dropping malformed bus message: %s", exc)
            return
        await self.dispatch(event)

    async def _membership_listener(self) -> None:
        await self.dispatch(MembershipChanged())

    async def _on_auxiliary_message(self, peer_id: str, payload: dict[str, Any]) -> None:
        if payload.get("type") != AUX_TOGGLE_FLASH:
            return
        if peer_id != self.session.connected_responder_id:
            return
        try:
            await self._media.set_torch(bool(payload.get("value")))
        except Exception as exc:
            logger.warning("Torch toggle failed: %s", exc)

    async def _on_remote_stream(self, stream: Any) -> None:
        self.remote_stream = stream

    async def _on_call_error(self, error: Any) -> None:
        logger.warning("Call error with %s: %s", self.session.connected_responder_id, error)

    async def _publish_end_call(
        self, responder_id: Optional[str], requester_id: Optional[str] = None
    ) -> None:
        if not responder_id:
            return
        requester_id = requester_id or self.session.requester_id
        await publish_safely(
            self._bus,
            private_channel(responder_id),
            EVENT_END_CALL,
            end_call_payload(ROLE_REQUESTER, requester_id),
            origin_id=requester_id,
        )

    async def _set_media_enabled(self, enabled: bool) -> None:
        if self.media_enabled == enabled:
            return
        try:
            await self._media.set_enabled(enabled)
        except Exception as exc:
            logger.warning("Could not %s local media: %s", "enable" if enabled else "disable", exc)
            return
        self.media_enabled = enabled

    async def _stop_media(self) -> None:
        self.media_enabled = False
        try:
            await self._media.stop()
        except Exception as exc:
            logger.warning("Stopping local media failed: %s", exc)

    async def _close_call(self, call: CallHandle) -> None:
        try:
            await call.close()
        except Exception as exc:
            logger.warning("Closing call with %s failed: %s", call.peer_id, exc)

    # Teardown and reporting

    def _ended_outcome(self) -> str:
        return "completed" if self.state is RequestState.CONNECTED else "cancelled"

    async def _teardown(self, *, notify: bool, outcome: str, reason: Optional[str] = None) -> None:
        self._cancel_timer()
        self._stop_attention()
        session = self.session
        session.outcome = outcome
        session.ended_at = self._scheduler.time()
        summary = self.summary_payload()
        responder_id = session.connected_responder_id
        previous = responder_id if session.connected_at is not None else None

        # Reset before awaiting so echoes from the peer find no live session.
        previous_state = self.state
        self.state = RequestState.IDLE
        self._generation += 1
        self.session = RequestSession(
            requester_id=session.requester_id,
            previous_responder_id=previous or session.previous_responder_id,
            attempt=session.attempt,
        )
        self.remote_stream = None
        call = self._call
        self._call = None

        if notify and responder_id:
            await self._publish_end_call(responder_id, session.requester_id)
        if call is not None:
            await self._close_call(call)
        await self._stop_media()

        logger.info(
            "Requester %s: %s -> idle (%s)", session.requester_id, previous_state.value, outcome
        )
        await self._emit({"type": SERVER_SUMMARY, **summary})
        if reason:
            await self._emit(self.status_event(reason=reason))
        else:
            await self._emit(self.status_event())

    def status_event(self, **detail: Any) -> dict[str, Any]:
        event = {
            "type": SERVER_STATUS,
            "role": ROLE_REQUESTER,
            "state": self.state.value,
            "requester_id": self.session.requester_id,
            "pass": self.session.passes,
            "tried": len(self.session.tried_responders),
            "media_enabled": self.media_enabled,
        }
        event.update(detail)
        return event

    def summary_payload(self) -> dict[str, Any]:
        session = self.session
        wait_seconds = None
        duration_seconds = None
        if session.requested_at is not None:
            matched_at = session.connected_at or session.ended_at
            if matched_at is not None:
                wait_seconds = round(matched_at - session.requested_at, 3)
        if session.connected_at is not None and session.ended_at is not None:
            duration_seconds = round(session.ended_at - session.connected_at, 3)
        responder_id = session.connected_responder_id or session.pending_responder_id
        bullets = [
            f"Outcome: {session.outcome or 'in progress'}.",
            f"Invitations sent: {session.invitations} over {session.passes} pass(es).",
        ]
        if session.connected_at is not None:
            bullets.append(f"Connected with responder {responder_id}.")
        elif session.outcome == "exhausted":
            bullets.append("Every online responder was tried without an answer.")
        return {
            "requester_id": session.requester_id,
            "responder_id": responder_id if session.connected_at is not None else None,
            "outcome": session.outcome,
            "attempts": session.invitations,
            "passes": session.passes,
            "wait_seconds": wait_seconds,
            "duration_seconds": duration_seconds,
            "bullets": bullets,
        }

    async def _transition(self, state: RequestState, **detail: Any) -> None:
        previous = self.state
        self.state = state
        if previous is not state:
            logger.info(
                "Requester %s: %s -> %s", self.session.requester_id, previous.value, state.value
            )
        await self._emit(self.status_event(**detail))

    async def _emit(self, event: dict[str, Any]) -> None:
        if self._emit_cb is None:
            return
        try:
            await maybe_await(self._emit_cb(event))
        except Exception as exc:
            logger.warning("Status delivery failed: %s", exc)
