"""Contracts for the call transport and local media.

The peer-to-peer media stack lives outside this backend (in the browser or
an SDK).  Controllers talk to it through these protocols only; the
websocket client link and the test fakes implement them.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Union


CallEventHandler = Callable[[Any], Union[Awaitable[None], None]]
AuxiliaryHandler = Callable[[str, dict[str, Any]], Union[Awaitable[None], None]]
IncomingCallHandler = Callable[["CallHandle"], Union[Awaitable[None], None]]

CALL_REMOTE_STREAM = "remote_stream"
CALL_CLOSE = "close"
CALL_ERROR = "error"


class CallHandle(Protocol):
    peer_id: str

    def on(self, event: str, handler: CallEventHandler) -> None: ...

    async def close(self) -> None: ...


class LocalMedia(Protocol):
    async def acquire(self) -> None:
        """Acquire camera/microphone tracks; raises MediaAcquisitionError."""

    async def set_enabled(self, enabled: bool) -> None: ...

    async def stop(self) -> None: ...

    async def set_torch(self, enabled: bool) -> None: ...


class CallTransport(Protocol):
    async def create_endpoint(self) -> str:
        """Return this endpoint's identity; raises EndpointError."""

    async def place_call(self, target_id: str, media: LocalMedia) -> CallHandle: ...

    async def answer_call(self, call: CallHandle, media: Optional[LocalMedia]) -> None: ...

    async def send_auxiliary_message(self, peer_id: str, payload: dict[str, Any]) -> None: ...

    def on_auxiliary_message(self, handler: AuxiliaryHandler) -> None: ...

    def on_incoming_call(self, handler: IncomingCallHandler) -> None: ...


class AttentionSignal(Protocol):
    async def pulse(self) -> None:
        """Play one haptic + audio attention beat."""
