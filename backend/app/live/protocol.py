"""Message protocol definitions for Sightline signaling.

This module names the channels and events exchanged over the presence &
messaging bus, the message types used on the client websocket, and the
event dataclasses each controller dispatches through its single state
transition function.

Bus events travel between controllers.  Client messages travel between a
browser and the backend; the backend answers with status events and
commands for the browser's media stack.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


# Channels
PRESENCE_CHANNEL = "presence-volunteers"
PRIVATE_CHANNEL_PREFIX = "private-user-"

# Bus events addressed to a private channel
EVENT_INCOMING_REQUEST = "incoming-request"
EVENT_RESPONDER_READY = "volunteer-ready"
EVENT_CALL_REJECTED = "call-rejected"
EVENT_END_CALL = "end-call"

# Bus events emitted on presence channels
EVENT_SUBSCRIPTION_SUCCEEDED = "presence:subscription_succeeded"
EVENT_MEMBER_ADDED = "presence:member_added"
EVENT_MEMBER_REMOVED = "presence:member_removed"

# Auxiliary (call transport data channel) messages
AUX_TOGGLE_FLASH = "TOGGLE_FLASH"

# Roles
ROLE_REQUESTER = "requester"
ROLE_RESPONDER = "responder"

# Types of messages sent by the client
CLIENT_START = "client.start"
CLIENT_CONFIRM = "client.confirm"
CLIENT_CANCEL = "client.cancel"
CLIENT_RETRY = "client.retry"
CLIENT_HANGUP = "client.hangup"
CLIENT_ONLINE = "client.online"
CLIENT_OFFLINE = "client.offline"
CLIENT_ACCEPT = "client.accept"
CLIENT_DECLINE = "client.decline"
CLIENT_FLASH = "client.flash"
CLIENT_MEDIA = "client.media"
CLIENT_CALL = "client.call"
CLIENT_AUX = "client.aux"

# Types of messages sent by the server
SERVER_STATUS = "server.status"
SERVER_COMMAND = "server.command"
SERVER_SUMMARY = "server.summary"
SERVER_ERROR = "error"


def private_channel(participant_id: str) -> str:
    """Return the private channel addressed to one participant."""
    return f"{PRIVATE_CHANNEL_PREFIX}{participant_id}"


@dataclass(frozen=True)
class PresenceMember:
    """A member of a presence channel as reported by the bus."""

    id: str
    info: dict[str, Any] = field(default_factory=dict)

    @property
    def joined_at(self) -> Optional[float]:
        value = self.info.get("joined_at")
        if isinstance(value, (int, float)):
            return float(value)
        return None


# Events dispatched by the controllers.  Requester and responder share the
# vocabulary; each controller ignores the events that do not apply to it.


@dataclass(frozen=True)
class StartCall:
    """The requester asked for help (or retried after exhaustion)."""


@dataclass(frozen=True)
class Invitation:
    """An invitation arrived on the responder's private channel."""

    requester_id: str
    attempt: Optional[int] = None


@dataclass(frozen=True)
class Accepted:
    """The invited responder is ready to receive the call."""

    responder_id: str
    attempt: Optional[int] = None


@dataclass(frozen=True)
class Declined:
    """The invited responder declined or is busy."""

    responder_id: Optional[str] = None
    attempt: Optional[int] = None
    reason: str = "declined"


@dataclass(frozen=True)
class Timeout:
    """A timer armed by a controller fired.

    `kind` names the timer (``invite``, ``retry``, ``grace``, ``ring``) and
    `generation` ties it to the session that armed it.
    """

    kind: str
    generation: int
    attempt: Optional[int] = None


@dataclass(frozen=True)
class MembershipChanged:
    """The presence pool changed."""


@dataclass(frozen=True)
class UserCancel:
    """The local user cancelled (requester) or declined to continue."""


@dataclass(frozen=True)
class UserConfirm:
    """The requester confirmed they want to proceed with the matched call."""


@dataclass(frozen=True)
class UserRetry:
    """The requester asked to try again after the pool was exhausted."""


@dataclass(frozen=True)
class GoOnline:
    """The responder made themselves available."""


@dataclass(frozen=True)
class GoOffline:
    """The responder stopped volunteering."""


@dataclass(frozen=True)
class UserAccept:
    """The ringing responder accepted the invitation."""


@dataclass(frozen=True)
class UserDecline:
    """The ringing responder declined the invitation."""

    reason: str = "declined"


@dataclass(frozen=True)
class Hangup:
    """The local user ended an established or pending call."""


@dataclass(frozen=True)
class RemoteEnded:
    """The other side published an end-of-call message."""

    initiator_role: Optional[str] = None
    peer_id: Optional[str] = None


@dataclass(frozen=True)
class CallClosed:
    """The call transport reported the media call closed."""

    peer_id: Optional[str] = None


@dataclass(frozen=True)
class IncomingCall:
    """The call transport delivered an inbound media call."""

    call: Any


def invitation_payload(requester_id: str, attempt: int) -> dict[str, Any]:
    return {"requesterId": requester_id, "attempt": attempt}


def ready_payload(responder_id: str, attempt: Optional[int]) -> dict[str, Any]:
    return {"responderId": responder_id, "attempt": attempt}


def rejection_payload(responder_id: str, attempt: Optional[int], reason: str) -> dict[str, Any]:
    return {"responderId": responder_id, "attempt": attempt, "reason": reason}


def end_call_payload(initiator_role: str, participant_id: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"initiatorRole": initiator_role}
    if participant_id:
        payload["participantId"] = participant_id
    return payload


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def parse_invitation(payload: dict[str, Any]) -> Invitation:
    requester_id = payload.get("requesterId")
    if not isinstance(requester_id, str) or not requester_id:
        raise ValueError("Invitation is missing requesterId")
    return Invitation(requester_id=requester_id, attempt=_optional_int(payload.get("attempt")))


def parse_accepted(payload: dict[str, Any]) -> Accepted:
    responder_id = payload.get("responderId")
    if not isinstance(responder_id, str) or not responder_id:
        raise ValueError("Ready acknowledgment is missing responderId")
    return Accepted(responder_id=responder_id, attempt=_optional_int(payload.get("attempt")))


def parse_declined(payload: Optional[dict[str, Any]]) -> Declined:
    payload = payload or {}
    responder_id = payload.get("responderId")
    return Declined(
        responder_id=responder_id if isinstance(responder_id, str) else None,
        attempt=_optional_int(payload.get("attempt")),
        reason=str(payload.get("reason") or "declined"),
    )


def parse_end_call(payload: Optional[dict[str, Any]]) -> RemoteEnded:
    payload = payload or {}
    role = payload.get("initiatorRole")
    peer_id = payload.get("participantId")
    return RemoteEnded(
        initiator_role=role if isinstance(role, str) else None,
        peer_id=peer_id if isinstance(peer_id, str) else None,
    )
