"""Tests for the participant-side polling and negotiation flow."""
from __future__ import annotations

import asyncio

import pytest
import httpx
from httpx import ASGITransport

from rendezvous.core.config import Settings
from rendezvous.main import create_app
from rendezvous.services.negotiation import (
    BackoffPolicy,
    MediaUnavailable,
    NegotiationCancelled,
    NegotiationOutcome,
    NegotiationSession,
    NegotiationTimeout,
    RelayClient,
    RelayError,
    RoomGone,
    RoomOccupied,
    poll_document,
)


class DummyMedia:
    def __init__(self) -> None:
        self.stopped = 0

    def stop(self) -> None:
        self.stopped += 1


class DummyPeer:
    def __init__(self, media: DummyMedia, name: str) -> None:
        self.media = media
        self.name = name
        self.remote: str | None = None
        self.closed = 0

    async def create_offer(self) -> str:
        return f"v=0...offer-{self.name}"

    async def accept_offer(self, sdp: str) -> str:
        self.remote = sdp
        return f"v=0...answer-{self.name}"

    async def accept_answer(self, sdp: str) -> None:
        self.remote = sdp

    async def close(self) -> None:
        self.closed += 1


class Participant:
    """Bundles the collaborators a session needs and remembers what it built."""

    def __init__(self, name: str, *, media_fails: bool = False) -> None:
        self.name = name
        self.media_fails = media_fails
        self.media: DummyMedia | None = None
        self.peer: DummyPeer | None = None

    async def acquire_media(self) -> DummyMedia:
        if self.media_fails:
            raise MediaUnavailable("permission denied")
        self.media = DummyMedia()
        return self.media

    def peer_factory(self, media: DummyMedia) -> DummyPeer:
        self.peer = DummyPeer(media, self.name)
        return self.peer


def _app(clock=None):
    # polling tests hit the relay in tight loops from a single address
    return create_app(Settings(rate_limit_requests=10_000), clock=clock)


def _relay(app) -> RelayClient:
    return RelayClient("http://testserver", transport=ASGITransport(app=app))


async def _yield(_delay: float) -> None:
    await asyncio.sleep(0)


def test_backoff_doubles_up_to_ceiling():
    delays = BackoffPolicy(base=0.5, ceiling=2.0).delays()

    assert [next(delays) for _ in range(5)] == [0.5, 1.0, 2.0, 2.0, 2.0]


@pytest.mark.asyncio
async def test_poll_finds_document_on_a_scheduled_attempt(clock):
    start = clock()
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)
        clock.advance(delay)

    async def fetch() -> str | None:
        return "v=0...offer" if clock() - start >= 1.5 else None

    document = await poll_document(
        fetch,
        deadline=120,
        policy=BackoffPolicy(base=0.5, ceiling=2.0),
        clock=clock,
        sleep=sleep,
    )

    assert document == "v=0...offer"
    assert sleeps == [0.5, 1.0]
    assert clock() - start == 1.5


@pytest.mark.asyncio
async def test_poll_times_out_at_deadline(clock):
    start = clock()
    sleeps: list[float] = []
    calls = 0

    async def sleep(delay: float) -> None:
        sleeps.append(delay)
        clock.advance(delay)

    async def fetch() -> None:
        nonlocal calls
        calls += 1
        return None

    with pytest.raises(NegotiationTimeout):
        await poll_document(fetch, deadline=5, clock=clock, sleep=sleep)

    assert sleeps == [0.5, 1.0, 2.0, 1.5]
    assert calls == 4
    assert clock() - start == 5


@pytest.mark.asyncio
async def test_poll_aborts_on_definitive_error(clock):
    calls = 0
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    async def fetch() -> None:
        nonlocal calls
        calls += 1
        raise RelayError(500)

    with pytest.raises(RelayError):
        await poll_document(fetch, clock=clock, sleep=sleep)

    assert calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_poll_stops_when_cancelled():
    cancelled = asyncio.Event()

    async def fetch() -> None:
        cancelled.set()
        return None

    with pytest.raises(NegotiationCancelled):
        await poll_document(fetch, cancelled=cancelled, policy=BackoffPolicy(base=30, ceiling=30))


@pytest.mark.asyncio
async def test_relay_client_maps_status_codes(clock):
    app = _app(clock)

    async with _relay(app) as relay:
        room = await relay.create_room()
        assert await relay.fetch_offer(room.token) is None

        await relay.publish_offer(room.token, "offer")
        assert await relay.fetch_offer(room.token) == "offer"
        assert (await relay.fetch_status(room.token)).state.value == "offer_set"

        await relay.publish_answer(room.token, "answer")
        with pytest.raises(RoomOccupied):
            await relay.publish_answer(room.token, "late answer")
        assert await relay.fetch_answer(room.token) == "answer"

        with pytest.raises(RoomGone):
            await relay.publish_offer("missing", "offer")
        with pytest.raises(RoomGone):
            await relay.fetch_status("missing")


@pytest.mark.asyncio
async def test_relay_client_wraps_transport_errors():
    def _refuse(request):
        raise httpx.ConnectError("refused", request=request)

    async with RelayClient("http://relay", transport=httpx.MockTransport(_refuse)) as relay:
        with pytest.raises(RelayError) as exc:
            await relay.fetch_offer("token")

    assert exc.value.status_code is None
    assert exc.value.outcome is NegotiationOutcome.CONNECTION_FAILED


@pytest.mark.asyncio
async def test_initiator_and_responder_complete_exchange():
    app = _app()
    alice, bob = Participant("alice"), Participant("bob")
    created: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    async with _relay(app) as relay:
        initiator = NegotiationSession(
            relay,
            alice.acquire_media,
            alice.peer_factory,
            sleep=_yield,
            on_room_created=lambda room: created.set_result(room.token),
        )
        responder = NegotiationSession(relay, bob.acquire_media, bob.peer_factory, sleep=_yield)

        async def respond():
            return await responder.run_responder(await created)

        first, second = await asyncio.gather(initiator.run_initiator(), respond())

    assert first.outcome is NegotiationOutcome.CONNECTING
    assert second.outcome is NegotiationOutcome.CONNECTING
    assert first.label == "Establishing connection..."
    assert bob.peer.remote == "v=0...offer-alice"
    assert alice.peer.remote == "v=0...answer-bob"
    assert first.peer is alice.peer
    assert alice.media.stopped == 0 and bob.media.stopped == 0


@pytest.mark.asyncio
async def test_late_responder_sees_room_occupied_and_releases(clock):
    app = _app(clock)

    async with _relay(app) as relay:
        room = await relay.create_room()
        await relay.publish_offer(room.token, "offer")
        await relay.publish_answer(room.token, "someone else")

        carol = Participant("carol")
        session = NegotiationSession(relay, carol.acquire_media, carol.peer_factory, sleep=_yield)
        result = await session.run_responder(room.token)

    assert result.outcome is NegotiationOutcome.ROOM_OCCUPIED
    assert result.label == "Room occupied"
    assert carol.media.stopped == 1
    assert carol.peer.closed == 1


@pytest.mark.asyncio
async def test_initiator_reports_link_expired_when_no_answer(clock):
    app = _app(clock)

    async def sleep(delay: float) -> None:
        clock.advance(delay)

    dave = Participant("dave")
    async with _relay(app) as relay:
        session = NegotiationSession(relay, dave.acquire_media, dave.peer_factory, clock=clock, sleep=sleep)
        result = await session.run_initiator()

    assert result.outcome is NegotiationOutcome.LINK_EXPIRED
    assert result.token is not None
    assert dave.media.stopped == 1
    assert dave.peer.closed == 1


@pytest.mark.asyncio
async def test_media_failure_is_terminal():
    app = _app()
    erin = Participant("erin", media_fails=True)

    async with _relay(app) as relay:
        session = NegotiationSession(relay, erin.acquire_media, erin.peer_factory, sleep=_yield)
        result = await session.run_initiator()

    assert result.outcome is NegotiationOutcome.MEDIA_UNAVAILABLE
    assert result.label == "Microphone access required"
    assert erin.peer is None


@pytest.mark.asyncio
async def test_cancel_ends_pending_poll_and_release_is_idempotent(clock):
    app = _app(clock)
    frank = Participant("frank")

    async with _relay(app) as relay:
        room = await relay.create_room()
        session = NegotiationSession(relay, frank.acquire_media, frank.peer_factory, sleep=_yield)

        task = asyncio.create_task(session.run_responder(room.token))
        while frank.media is None:
            await asyncio.sleep(0)
        await session.cancel()
        result = await task

        await session.release()
        await session.release()

    assert result.outcome is NegotiationOutcome.ENDED
    assert session.cancelled
    assert frank.media.stopped == 1
    assert frank.peer is None


@pytest.mark.asyncio
async def test_unexpected_peer_failure_releases_and_propagates():
    app = _app()
    grace = Participant("grace")

    def broken_factory(media: DummyMedia) -> DummyPeer:
        peer = grace.peer_factory(media)

        async def explode() -> str:
            raise ValueError("codec mismatch")

        peer.create_offer = explode
        return peer

    async with _relay(app) as relay:
        session = NegotiationSession(relay, grace.acquire_media, broken_factory, sleep=_yield)
        with pytest.raises(ValueError):
            await session.run_initiator()

    assert grace.media.stopped == 1
    assert grace.peer.closed == 1


@pytest.mark.asyncio
async def test_cancel_during_answer_publish_ends_the_call():
    app = _app()
    heidi = Participant("heidi")

    async with _relay(app) as relay:
        room = await relay.create_room()
        await relay.publish_offer(room.token, "v=0...offer")
        session = NegotiationSession(relay, heidi.acquire_media, heidi.peer_factory, sleep=_yield)

        publish = relay.publish_answer

        async def publish_after_hang_up(token: str, sdp: str) -> None:
            await session.cancel()
            await publish(token, sdp)

        relay.publish_answer = publish_after_hang_up
        result = await session.run_responder(room.token)

    assert result.outcome is NegotiationOutcome.ENDED
    assert result.peer is None
    assert heidi.media.stopped == 1
    assert heidi.peer.closed == 1


@pytest.mark.asyncio
async def test_cancel_while_accepting_answer_ends_the_call():
    app = _app()
    ivan = Participant("ivan")
    session: NegotiationSession | None = None

    def hanging_up_factory(media: DummyMedia) -> DummyPeer:
        peer = ivan.peer_factory(media)

        async def accept_then_hang_up(sdp: str) -> None:
            peer.remote = sdp
            await session.cancel()

        peer.accept_answer = accept_then_hang_up
        return peer

    rooms = []

    async with _relay(app) as relay, _relay(app) as other:
        session = NegotiationSession(
            relay,
            ivan.acquire_media,
            hanging_up_factory,
            sleep=_yield,
            on_room_created=rooms.append,
        )
        task = asyncio.create_task(session.run_initiator())

        while not rooms:
            await asyncio.sleep(0)
        token = rooms[0].token
        while await other.fetch_offer(token) is None:
            await asyncio.sleep(0)
        await other.publish_answer(token, "v=0...answer")
        result = await task

    assert result.outcome is NegotiationOutcome.ENDED
    assert result.peer is None
    assert ivan.peer.remote == "v=0...answer"
    assert ivan.media.stopped == 1
    assert ivan.peer.closed == 1
