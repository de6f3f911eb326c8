"""Main FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .calls import router as calls_router
from .db import AsyncSessionLocal, init_db
from .live.bus import InProcessBus, Subscription
from .live.client_link import AUDIO_ONLY, VIDEO_AND_AUDIO, ClientLink
from .live.errors import SignalingError
from .live.presence import PresenceRegistry
from .live.protocol import (
    CLIENT_ACCEPT,
    CLIENT_AUX,
    CLIENT_CALL,
    CLIENT_CANCEL,
    CLIENT_CONFIRM,
    CLIENT_DECLINE,
    CLIENT_FLASH,
    CLIENT_HANGUP,
    CLIENT_MEDIA,
    CLIENT_OFFLINE,
    CLIENT_ONLINE,
    CLIENT_RETRY,
    CLIENT_START,
    PRESENCE_CHANNEL,
    ROLE_REQUESTER,
    ROLE_RESPONDER,
    SERVER_ERROR,
    SERVER_SUMMARY,
)
from .live.requester import RequesterController
from .live.responder import ResponderController
from .live.scheduler import AsyncioScheduler
from .models import CallRecord
from .schemas import PresenceOut
from .settings import settings


logger = logging.getLogger("sightline")

app = FastAPI(title="Sightline Signaling Backend", version="0.1.0")
app.include_router(calls_router)

PRESENCE_OBSERVER = "presence-observer"


class SignalingHub:
    """The process-wide bus, responder registry and timer scheduler."""

    def __init__(self) -> None:
        self.bus = InProcessBus()
        self.registry = PresenceRegistry()
        self.scheduler = AsyncioScheduler()
        self._observer: Optional[Subscription] = None

    async def start(self) -> None:
        self.bus = InProcessBus()
        self.registry = PresenceRegistry()
        self.scheduler = AsyncioScheduler()
        self._observer = await self.bus.subscribe(PRESENCE_CHANNEL, owner=PRESENCE_OBSERVER)
        self.registry.bind(self._observer)
        await self.bus.request_snapshot(self._observer)

    async def stop(self) -> None:
        if self._observer is not None:
            await self.bus.unsubscribe(self._observer)
            self._observer = None
        await self.scheduler.shutdown()


hub = SignalingHub()


@app.on_event("startup")
async def startup_event() -> None:
    """Create the call history table and start the signaling hub."""
    await init_db()
    await hub.start()
    logger.info(
        "Signaling hub started; policy=%s; pass limit=%d; invite timeout=%.0fs",
        settings.selection_policy,
        settings.pass_limit,
        settings.invite_timeout_seconds,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await hub.stop()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {"status": "ok"}


@app.get("/api/presence", response_model=PresenceOut)
async def presence() -> PresenceOut:
    """Report the responders currently available for matching."""
    responders = hub.registry.ids()
    return PresenceOut(count=len(responders), responders=responders)


def _call_record_from_summary(summary: dict[str, Any], ended_at: datetime) -> CallRecord:
    duration = summary.get("duration_seconds")
    wait = summary.get("wait_seconds")
    connected_at = ended_at - timedelta(seconds=duration) if duration is not None else None
    anchor = connected_at or ended_at
    requested_at = anchor - timedelta(seconds=wait) if wait is not None else anchor
    return CallRecord(
        requester_id=summary["requester_id"],
        responder_id=summary.get("responder_id"),
        requested_at=requested_at,
        connected_at=connected_at,
        ended_at=ended_at,
        outcome=summary.get("outcome") or "cancelled",
        attempts=int(summary.get("attempts") or 0),
        passes=int(summary.get("passes") or 1),
        summary={"bullets": summary.get("bullets", [])},
    )


async def _persist_call_record(summary: dict[str, Any]) -> None:
    if not summary.get("requester_id"):
        # The request never obtained an identity; nothing to record.
        return
    record = _call_record_from_summary(summary, datetime.now(timezone.utc))
    try:
        async with AsyncSessionLocal() as db:
            db.add(record)
            await db.commit()
    except Exception as exc:
        logger.exception("Failed to persist call record for %s: %s", record.requester_id, exc)


async def _run_client_action(
    send: Callable[[dict[str, Any]], Awaitable[None]],
    action: Awaitable[Any],
    message_type: str,
) -> None:
    try:
        await action
    except ValueError as exc:
        await send({"type": SERVER_ERROR, "message": str(exc)})
    except SignalingError as exc:
        logger.warning("%s failed: %s", message_type, exc)
        await send({"type": SERVER_ERROR, "message": str(exc)})
    except Exception as exc:
        logger.exception("Live websocket message handling failed: %s", exc)
        await send({"type": SERVER_ERROR, "message": "Failed to process live message"})


@app.websocket("/ws/live")
async def websocket_endpoint(ws: WebSocket) -> None:
    """Handle one requester or responder client for the lifetime of its socket."""
    await ws.accept()

    role = ws.query_params.get("role", "").strip().lower()
    peer_id = ws.query_params.get("peer_id", "").strip() or None
    if role not in (ROLE_REQUESTER, ROLE_RESPONDER):
        await ws.send_json({"type": SERVER_ERROR, "message": "role must be requester or responder"})
        await ws.close(code=1008)
        return

    send_lock = asyncio.Lock()
    background: set[asyncio.Task[Any]] = set()

    async def send(message: dict[str, Any]) -> None:
        async with send_lock:
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await ws.send_json(message)

    def spawn(coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    async def emit(event: dict[str, Any]) -> None:
        await send(event)
        if event.get("type") == SERVER_SUMMARY:
            spawn(_persist_call_record(event))

    link = ClientLink(
        send,
        peer_id=peer_id,
        constraints=VIDEO_AND_AUDIO if role == ROLE_REQUESTER else AUDIO_ONLY,
        reply_timeout=settings.media_timeout_seconds,
    )
    actions: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]]
    controller: Union[RequesterController, ResponderController]
    if role == ROLE_REQUESTER:
        controller = RequesterController(
            bus=hub.bus,
            registry=hub.registry,
            transport=link,
            media=link,
            scheduler=hub.scheduler,
            attention=link,
            emit=emit,
            config=settings,
        )
        actions = {
            CLIENT_START: lambda _msg: controller.start(),
            CLIENT_CONFIRM: lambda _msg: controller.confirm(),
            CLIENT_CANCEL: lambda _msg: controller.cancel(),
            CLIENT_RETRY: lambda _msg: controller.retry(),
            CLIENT_HANGUP: lambda _msg: controller.hangup(),
        }
    else:
        controller = ResponderController(
            bus=hub.bus,
            transport=link,
            scheduler=hub.scheduler,
            media=link,
            emit=emit,
            config=settings,
        )
        actions = {
            CLIENT_ONLINE: lambda _msg: controller.go_online(),
            CLIENT_OFFLINE: lambda _msg: controller.go_offline(),
            CLIENT_ACCEPT: lambda _msg: controller.accept(),
            CLIENT_DECLINE: lambda msg: controller.decline(str(msg.get("reason") or "declined")),
            CLIENT_HANGUP: lambda _msg: controller.hangup(),
            CLIENT_FLASH: lambda _msg: controller.toggle_flash(),
        }
    actions[CLIENT_CALL] = link.handle_call_event
    actions[CLIENT_AUX] = link.handle_auxiliary

    try:
        await send(controller.status_event())
        logger.info("Live %s client connected (peer %s)", role, peer_id or "pending")

        while True:
            try:
                message = await ws.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, TypeError):
                await send({"type": SERVER_ERROR, "message": "Malformed JSON message"})
                continue

            if not isinstance(message, dict):
                await send({"type": SERVER_ERROR, "message": "Messages must be JSON objects"})
                continue

            message_type = str(message.get("type", "")).strip()
            if message_type == CLIENT_MEDIA:
                # Replies are resolved inline; the waiting action runs in its own task.
                link.resolve(message)
            elif message_type in actions:
                spawn(_run_client_action(send, actions[message_type](message), message_type))
            else:
                await send({"type": SERVER_ERROR, "message": f"Unsupported message type: {message_type}"})
    except Exception as exc:
        logger.exception("Unexpected error in /ws/live: %s", exc)
        await send({"type": SERVER_ERROR, "message": f"Live session error: {exc}"})
    finally:
        link.close()
        if background:
            await asyncio.gather(*list(background), return_exceptions=True)
        await controller.close()
        if background:
            await asyncio.gather(*list(background), return_exceptions=True)
        logger.info("Live %s client %s disconnected", role, link.peer_id or "without identity")
        with contextlib.suppress(RuntimeError):
            await ws.close()
