"""Websocket-backed call transport and local media.

The browser owns the camera, microphone, torch and the peer-to-peer call.
The backend drives them by sending ``server.command`` messages; commands
that need an answer carry an ``id`` and the browser replies with a
``client.media`` message echoing it.  Call lifecycle notifications arrive
as ``client.call`` messages and auxiliary data-channel messages as
``client.aux``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from .bus import maybe_await
from .errors import CallTransportError, EndpointError, MediaAcquisitionError
from .protocol import SERVER_COMMAND
from .transport import (
    CALL_CLOSE,
    AuxiliaryHandler,
    CallEventHandler,
    IncomingCallHandler,
    LocalMedia,
)


logger = logging.getLogger("sightline")

Sender = Callable[[dict[str, Any]], Awaitable[None]]

# Commands understood by the browser client
CMD_CREATE_ENDPOINT = "create_endpoint"
CMD_ACQUIRE_MEDIA = "acquire_media"
CMD_SET_MEDIA_ENABLED = "set_media_enabled"
CMD_STOP_MEDIA = "stop_media"
CMD_SET_TORCH = "set_torch"
CMD_PLACE_CALL = "place_call"
CMD_ANSWER_CALL = "answer_call"
CMD_CLOSE_CALL = "close_call"
CMD_SEND_AUX = "send_aux"
CMD_ATTENTION = "attention"

# Call notifications reported by the browser client
CALL_EVENT_INCOMING = "incoming"

VIDEO_AND_AUDIO = {"video": {"facingMode": "environment"}, "audio": True}
AUDIO_ONLY = {"video": False, "audio": True}


class ClientCallHandle:
    """A media call living in the browser, addressed by the remote peer id."""

    def __init__(self, link: "ClientLink", peer_id: str) -> None:
        self.link = link
        self.peer_id = peer_id
        self.closed = False
        self._handlers: dict[str, list[CallEventHandler]] = defaultdict(list)

    def on(self, event: str, handler: CallEventHandler) -> None:
        self._handlers[event].append(handler)

    async def emit(self, event: str, payload: Any = None) -> None:
        if event == CALL_CLOSE:
            if self.closed:
                return
            self.closed = True
            self.link.forget_call(self)
        for handler in list(self._handlers.get(event, [])):
            try:
                await maybe_await(handler(payload))
            except Exception as exc:
                logger.exception("Call %s handler failed for %s: %s", event, self.peer_id, exc)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.link.forget_call(self)
        await self.link.notify(CMD_CLOSE_CALL, peer_id=self.peer_id)


class ClientLink:
    """Bridges one websocket connection to the controller collaborator contracts.

    Implements `CallTransport`, `LocalMedia` and `AttentionSignal`.
    """

    def __init__(
        self,
        send: Sender,
        *,
        peer_id: Optional[str] = None,
        constraints: Optional[dict[str, Any]] = None,
        reply_timeout: float = 30.0,
    ) -> None:
        self.peer_id = peer_id
        self.constraints = constraints or VIDEO_AND_AUDIO
        self.reply_timeout = reply_timeout
        self._send = send
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._calls: dict[str, ClientCallHandle] = {}
        self._aux_handlers: list[AuxiliaryHandler] = []
        self._incoming_handlers: list[IncomingCallHandler] = []
        self._closed = False

    # Outbound commands

    async def notify(self, action: str, **params: Any) -> None:
        """Send a command that expects no reply."""
        if self._closed:
            return
        await self._send({"type": SERVER_COMMAND, "action": action, **params})

    async def request(self, action: str, **params: Any) -> Any:
        """Send a command and wait for the browser's ``client.media`` reply."""
        if self._closed:
            raise CallTransportError("Client link is closed")
        request_id = str(next(self._ids))
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"type": SERVER_COMMAND, "action": action, "id": request_id, **params})
            return await asyncio.wait_for(future, timeout=self.reply_timeout)
        except asyncio.TimeoutError as exc:
            raise CallTransportError(f"No reply to {action} within {self.reply_timeout:.0f}s") from exc
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, message: dict[str, Any]) -> bool:
        """Complete the pending command a ``client.media`` reply refers to."""
        request_id = str(message.get("id", ""))
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug("Reply %s matches no pending command", request_id)
            return False
        if message.get("ok", True):
            future.set_result(message.get("result"))
        else:
            future.set_exception(CallTransportError(str(message.get("error") or "Command failed")))
        return True

    # CallTransport

    async def create_endpoint(self) -> str:
        if self.peer_id:
            return self.peer_id
        try:
            result = await self.request(CMD_CREATE_ENDPOINT)
        except CallTransportError as exc:
            raise EndpointError(str(exc)) from exc
        peer_id = result.get("peer_id") if isinstance(result, dict) else result
        if not isinstance(peer_id, str) or not peer_id:
            raise EndpointError("Client did not report an endpoint id")
        self.peer_id = peer_id
        return peer_id

    async def place_call(self, target_id: str, media: LocalMedia) -> ClientCallHandle:
        await self.request(CMD_PLACE_CALL, peer_id=target_id)
        return self._track_call(target_id)

    async def answer_call(self, call: ClientCallHandle, media: Optional[LocalMedia]) -> None:
        await self.request(CMD_ANSWER_CALL, peer_id=call.peer_id, with_media=media is not None)

    async def send_auxiliary_message(self, peer_id: str, payload: dict[str, Any]) -> None:
        await self.notify(CMD_SEND_AUX, peer_id=peer_id, payload=payload)

    def on_auxiliary_message(self, handler: AuxiliaryHandler) -> None:
        self._aux_handlers.append(handler)

    def on_incoming_call(self, handler: IncomingCallHandler) -> None:
        self._incoming_handlers.append(handler)

    # LocalMedia

    async def acquire(self) -> None:
        try:
            await self.request(CMD_ACQUIRE_MEDIA, constraints=self.constraints)
        except CallTransportError as exc:
            raise MediaAcquisitionError(str(exc)) from exc

    async def set_enabled(self, enabled: bool) -> None:
        await self.request(CMD_SET_MEDIA_ENABLED, enabled=enabled)

    async def stop(self) -> None:
        await self.notify(CMD_STOP_MEDIA)

    async def set_torch(self, enabled: bool) -> None:
        await self.request(CMD_SET_TORCH, enabled=enabled)

    # AttentionSignal

    async def pulse(self) -> None:
        await self.notify(CMD_ATTENTION)

    # Inbound notifications

    async def handle_call_event(self, message: dict[str, Any]) -> None:
        event = str(message.get("event", "")).strip()
        peer_id = message.get("peer_id")
        if not isinstance(peer_id, str) or not peer_id:
            raise ValueError("Call events must carry a peer_id")
        if event == CALL_EVENT_INCOMING:
            call = self._track_call(peer_id)
            for handler in list(self._incoming_handlers):
                await maybe_await(handler(call))
            return
        call = self._calls.get(peer_id)
        if call is None:
            logger.debug("Call event %s for unknown peer %s", event, peer_id)
            return
        await call.emit(event, message.get("payload"))

    async def handle_auxiliary(self, message: dict[str, Any]) -> None:
        peer_id = message.get("peer_id")
        payload = message.get("payload")
        if not isinstance(peer_id, str) or not isinstance(payload, dict):
            raise ValueError("Auxiliary messages need a peer_id and an object payload")
        for handler in list(self._aux_handlers):
            await maybe_await(handler(peer_id, payload))

    def forget_call(self, call: ClientCallHandle) -> None:
        if self._calls.get(call.peer_id) is call:
            del self._calls[call.peer_id]

    def close(self) -> None:
        """Fail every pending command; the socket is gone."""
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(CallTransportError("Client disconnected"))
        self._pending.clear()

    def _track_call(self, peer_id: str) -> ClientCallHandle:
        call = ClientCallHandle(self, peer_id)
        self._calls[peer_id] = call
        return call
