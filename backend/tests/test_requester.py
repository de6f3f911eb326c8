from __future__ import annotations

import asyncio

import pytest

from app.live.protocol import (
    EVENT_CALL_REJECTED,
    EVENT_END_CALL,
    EVENT_INCOMING_REQUEST,
    EVENT_RESPONDER_READY,
    Declined,
    private_channel,
    ready_payload,
)
from app.live.requester import RequestState
from app.live.responder import ResponderState
from app.settings import Settings


def quiet_config(**overrides) -> Settings:
    """Responder config without a ring timeout so only the requester arms timers."""
    return Settings(ring_timeout_seconds=0.0, **overrides)


async def spy(world, channel: str) -> list[tuple[str, dict]]:
    received: list[tuple[str, dict]] = []
    subscription = await world.bus.subscribe(channel, owner="spy")
    for event in (EVENT_INCOMING_REQUEST, EVENT_RESPONDER_READY, EVENT_CALL_REJECTED, EVENT_END_CALL):
        subscription.bind(event, lambda payload, event=event: received.append((event, payload)))
    return received


@pytest.mark.asyncio
async def test_end_to_end_timeout_then_accept_then_confirm(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1")
    await scheduler.advance(1)
    v2 = await world.responder("v2")
    req = world.requester("req-1")

    await req.controller.start()

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.pending_responder_id == "v1"
    assert v1.controller.state is ResponderState.RINGING
    assert req.media.enabled is False

    await scheduler.advance(30)

    assert req.controller.session.pending_responder_id == "v2"
    assert req.controller.session.tried_responders == {"v1", "v2"}
    assert v2.controller.state is ResponderState.RINGING

    await v2.controller.accept()

    assert req.controller.state is RequestState.CONFIRMING
    assert v2.controller.state is ResponderState.CONNECTED
    assert "v2" not in world.registry
    assert req.media.enabled is False
    assert req.attention.pulses == 1

    await scheduler.advance(2)
    assert req.attention.pulses == 3

    await req.controller.confirm()

    assert req.controller.state is RequestState.CONNECTED
    assert req.media.enabled_history == [False, True]
    await scheduler.advance(5)
    assert req.attention.pulses == 3

    await req.controller.hangup()

    assert req.controller.state is RequestState.IDLE
    assert v2.controller.state is ResponderState.ONLINE
    assert "v2" in world.registry
    [summary] = req.summaries()
    assert summary["outcome"] == "completed"
    assert summary["responder_id"] == "v2"
    assert summary["attempts"] == 2
    assert summary["passes"] == 1
    assert req.controller.session.previous_responder_id == "v2"


@pytest.mark.asyncio
async def test_late_ring_timeout_from_first_responder_is_ignored(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1")
    v2 = await world.responder("v2")
    req = world.requester("req-1")

    await req.controller.start()
    await scheduler.advance(30)
    await v2.controller.accept()
    await req.controller.confirm()

    # v1 has been ringing since t=0 and now rings out.
    await scheduler.advance(16)

    assert v1.controller.state is ResponderState.ONLINE
    assert req.controller.state is RequestState.CONNECTED


@pytest.mark.asyncio
async def test_at_most_one_timer_through_decline_and_grace(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1", config=quiet_config())
    await world.responder("v2", config=quiet_config())
    req = world.requester("req-1")

    await req.controller.start()
    assert len(scheduler.active()) == 1

    await v1.controller.decline()

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.pending_responder_id is None
    assert len(scheduler.active()) == 1

    await scheduler.advance(1)

    assert req.controller.session.pending_responder_id == "v2"
    assert len(scheduler.active()) == 1


@pytest.mark.asyncio
async def test_no_volunteers_retries_and_wakes_on_membership_change(world, scheduler) -> None:
    await world.start()
    req = world.requester("req-1")

    await req.controller.start()

    assert req.controller.state is RequestState.NO_VOLUNTEERS
    assert len(scheduler.active()) == 1

    await scheduler.advance(5)
    assert req.controller.state is RequestState.NO_VOLUNTEERS
    assert len(scheduler.active()) == 1

    v1 = await world.responder("v1", config=quiet_config())

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.pending_responder_id == "v1"
    assert v1.controller.state is ResponderState.RINGING
    assert len(scheduler.active()) == 1


@pytest.mark.asyncio
async def test_exhaustion_after_two_passes_and_manual_retry(world, scheduler) -> None:
    await world.start()
    await world.responder("v1", config=quiet_config())
    await world.responder("v2", config=quiet_config())
    req = world.requester("req-1")
    invited = []

    await req.controller.start()
    invited.append(req.controller.session.pending_responder_id)
    for _ in range(3):
        await scheduler.advance(30)
        invited.append(req.controller.session.pending_responder_id)
    await scheduler.advance(30)

    assert invited == ["v1", "v2", "v1", "v2"]
    assert req.controller.state is RequestState.EXHAUSTED
    assert scheduler.active() == []
    assert req.media.stopped == 1

    await scheduler.advance(300)
    assert req.controller.state is RequestState.EXHAUSTED

    await req.controller.retry()

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.loop_count == 0
    assert req.controller.session.pending_responder_id == "v1"
    assert req.controller.session.attempt == 5


@pytest.mark.asyncio
async def test_cancel_from_exhausted_reports_exhausted_outcome(world, scheduler) -> None:
    await world.start()
    await world.responder("v1", config=quiet_config())
    req = world.requester("req-1", config=Settings(pass_limit=1))

    await req.controller.start()
    await scheduler.advance(30)
    assert req.controller.state is RequestState.EXHAUSTED

    await req.controller.cancel()

    [summary] = req.summaries()
    assert summary["outcome"] == "exhausted"
    assert summary["passes"] == 1
    assert req.controller.state is RequestState.IDLE


@pytest.mark.asyncio
async def test_cancel_before_acceptance_sends_no_end_call(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1", config=quiet_config())
    received = await spy(world, private_channel("v1"))
    req = world.requester("req-1")

    await req.controller.start()
    await req.controller.cancel()

    assert [event for event, _payload in received] == [EVENT_INCOMING_REQUEST]
    assert req.controller.state is RequestState.IDLE
    assert req.controller.session.tried_responders == set()
    assert req.controller.session.loop_count == 0
    assert scheduler.active() == []
    assert v1.controller.state is ResponderState.RINGING
    assert req.summaries()[0]["outcome"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_while_confirming_ends_the_responder_call(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1")
    req = world.requester("req-1")

    await req.controller.start()
    await v1.controller.accept()
    assert req.controller.state is RequestState.CONFIRMING

    await req.controller.cancel()

    assert req.controller.state is RequestState.IDLE
    assert v1.controller.state is ResponderState.ONLINE
    assert "v1" in world.registry
    assert req.transport.placed[0].closed is True
    # The cancelled call is not remembered as the previous responder.
    assert req.controller.session.previous_responder_id is None


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_cancel_while_muting_for_the_first_invitation_stays_idle(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1", config=quiet_config())
    received = await spy(world, private_channel("v1"))
    req = world.requester("req-1")
    gate = asyncio.Event()
    req.media.gate = gate

    start = asyncio.ensure_future(req.controller.start())
    await settle()
    assert req.controller.state is RequestState.WAITING

    await req.controller.cancel()
    gate.set()
    await start

    assert req.controller.state is RequestState.IDLE
    assert req.controller.session.pending_responder_id is None
    assert received == []
    assert v1.controller.state is ResponderState.ONLINE
    assert scheduler.active() == []

    await scheduler.advance(31)

    assert req.controller.state is RequestState.IDLE
    assert received == []
    assert req.states()[-1] == "idle"


@pytest.mark.asyncio
async def test_cancel_while_enabling_media_on_confirm_leaves_media_off(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1")
    req = world.requester("req-1")

    await req.controller.start()
    await v1.controller.accept()
    assert req.controller.state is RequestState.CONFIRMING

    gate = asyncio.Event()
    req.media.gate = gate
    confirm = asyncio.ensure_future(req.controller.confirm())
    await settle()

    await req.controller.cancel()
    gate.set()
    await confirm

    assert req.controller.state is RequestState.IDLE
    assert req.controller.media_enabled is False
    assert req.media.enabled is False
    assert req.controller.session.connected_at is None
    assert v1.controller.state is ResponderState.ONLINE
    assert req.summaries()[-1]["outcome"] == "cancelled"
    assert req.states()[-1] == "idle"


@pytest.mark.asyncio
async def test_stale_acceptance_is_answered_with_end_call(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1", config=quiet_config())
    v2 = await world.responder("v2", config=quiet_config())
    req = world.requester("req-1")

    await req.controller.start()
    await scheduler.advance(30)
    assert req.controller.session.pending_responder_id == "v2"

    await v1.controller.accept()

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.pending_responder_id == "v2"
    assert req.transport.placed == []
    assert v1.controller.state is ResponderState.ONLINE
    assert "v1" in world.registry
    assert v2.controller.state is ResponderState.RINGING


@pytest.mark.asyncio
async def test_replies_with_a_stale_attempt_are_ignored(world, scheduler) -> None:
    await world.start()
    await world.responder("v1", config=quiet_config())
    req = world.requester("req-1")

    await req.controller.start()
    attempt = req.controller.session.attempt

    await req.controller.dispatch(Declined(responder_id="v1", attempt=attempt - 1))
    await world.bus.publish(
        private_channel("req-1"), EVENT_RESPONDER_READY, ready_payload("v1", attempt - 1)
    )

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.pending_responder_id == "v1"
    assert req.transport.placed == []


@pytest.mark.asyncio
async def test_media_failure_returns_to_idle_with_reason(world) -> None:
    await world.start()
    req = world.requester("req-1")
    req.media.fail_acquire = True

    await req.controller.start()

    assert req.controller.state is RequestState.IDLE
    assert req.states() == ["initializing", "idle"]
    assert "Permission denied" in req.events[-1]["reason"]
    assert req.summaries()[0]["outcome"] == "failed"


@pytest.mark.asyncio
async def test_endpoint_failure_releases_media(world) -> None:
    await world.start()
    req = world.requester("req-1")
    req.transport.fail_endpoint = True

    await req.controller.start()

    assert req.controller.state is RequestState.IDLE
    assert req.media.acquired == 1
    assert req.media.stopped == 1


@pytest.mark.asyncio
async def test_failed_call_placement_moves_on_to_the_next_responder(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1", config=quiet_config())
    await world.responder("v2", config=quiet_config())
    req = world.requester("req-1")
    req.transport.fail_place_call = True

    await req.controller.start()
    await v1.controller.accept()

    assert req.controller.state is RequestState.WAITING
    assert req.controller.session.pending_responder_id == "v2"
    assert v1.controller.state is ResponderState.ONLINE


@pytest.mark.asyncio
async def test_remote_hangup_tears_down_without_notifying(world) -> None:
    await world.start()
    v1 = await world.responder("v1")
    req = world.requester("req-1")

    await req.controller.start()
    await v1.controller.accept()
    await req.controller.confirm()

    await v1.controller.hangup()

    assert req.controller.state is RequestState.IDLE
    assert v1.controller.state is ResponderState.ONLINE
    assert req.summaries()[0]["outcome"] == "completed"


@pytest.mark.asyncio
async def test_next_session_avoids_previous_responder(world, scheduler) -> None:
    await world.start()
    v1 = await world.responder("v1")
    await scheduler.advance(1)
    await world.responder("v2")
    req = world.requester("req-1")

    await req.controller.start()
    await v1.controller.accept()
    await req.controller.confirm()
    await req.controller.hangup()

    # v1 re-joined after v2 anyway; make it the oldest again to prove avoidance.
    world.registry.withdraw("v1")
    world.registry.announce("v1", joined_at=-1.0)
    await req.controller.start()

    assert req.controller.session.pending_responder_id == "v2"


@pytest.mark.asyncio
async def test_toggle_flash_message_sets_the_torch(world) -> None:
    await world.start()
    v1 = await world.responder("v1")
    req = world.requester("req-1")

    await req.controller.start()
    await v1.controller.accept()
    await req.controller.confirm()

    assert await v1.controller.toggle_flash() is True
    assert await v1.controller.toggle_flash() is False

    assert req.media.torch_history == [True, False]
