"""Participant side of the offer/answer exchange.

A participant publishes its own document once and polls for the peer's
document with capped exponential backoff. Only "not yet available" (a 404
on a read) is retried; any other relay response ends the attempt. Whatever
way a negotiation stops short, the local media handle and peer transport are
released.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, Protocol

import httpx

from ..schemas.rooms import CreateRoomResponse, RoomStatusResponse, SdpPayload

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
Fetch = Callable[[], Awaitable[Optional[str]]]

DEFAULT_DEADLINE_SECONDS = 120.0

logger = logging.getLogger(__name__)


class NegotiationOutcome(str, enum.Enum):
    CONNECTING = "connecting"
    LINK_EXPIRED = "link_expired"
    ROOM_OCCUPIED = "room_occupied"
    CONNECTION_FAILED = "connection_failed"
    MEDIA_UNAVAILABLE = "media_unavailable"
    ENDED = "ended"

    @property
    def label(self) -> str:
        return _OUTCOME_LABELS[self]


_OUTCOME_LABELS = {
    NegotiationOutcome.CONNECTING: "Establishing connection...",
    NegotiationOutcome.LINK_EXPIRED: "Link expired",
    NegotiationOutcome.ROOM_OCCUPIED: "Room occupied",
    NegotiationOutcome.CONNECTION_FAILED: "Connection failed",
    NegotiationOutcome.MEDIA_UNAVAILABLE: "Microphone access required",
    NegotiationOutcome.ENDED: "Call ended",
}


class NegotiationError(Exception):
    """Terminal condition for one participant; ``outcome`` is what the user sees."""

    outcome = NegotiationOutcome.CONNECTION_FAILED


class RelayError(NegotiationError):
    """The relay answered with something other than success or "not yet"."""

    def __init__(self, status_code: int | None, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Relay responded with {status_code}")


class RoomOccupied(RelayError):
    outcome = NegotiationOutcome.ROOM_OCCUPIED


class RoomGone(RelayError):
    outcome = NegotiationOutcome.LINK_EXPIRED


class NegotiationTimeout(NegotiationError):
    outcome = NegotiationOutcome.LINK_EXPIRED


class NegotiationCancelled(NegotiationError):
    outcome = NegotiationOutcome.ENDED


class MediaUnavailable(NegotiationError):
    outcome = NegotiationOutcome.MEDIA_UNAVAILABLE


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Wait ``base`` seconds after the first miss, multiply by ``factor`` up to ``ceiling``."""

    base: float = 0.5
    ceiling: float = 2.0
    factor: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.base
        while True:
            yield delay
            delay = min(delay * self.factor, self.ceiling)


async def _pause(delay: float, cancelled: asyncio.Event | None) -> None:
    """Sleep for ``delay`` seconds, waking early if ``cancelled`` is set."""

    if cancelled is None:
        await asyncio.sleep(delay)
        return
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(cancelled.wait(), timeout=delay)


async def poll_document(
    fetch: Fetch,
    *,
    deadline: float = DEFAULT_DEADLINE_SECONDS,
    policy: BackoffPolicy = BackoffPolicy(),
    cancelled: asyncio.Event | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleep | None = None,
) -> str:
    """Call ``fetch`` until it returns a document.

    ``fetch`` returns ``None`` while the document is not yet available and
    raises ``RelayError`` on anything definitive, which ends polling at once.
    Raises ``NegotiationTimeout`` once ``deadline`` seconds have passed since
    the first attempt and ``NegotiationCancelled`` when ``cancelled`` is set.
    """

    started = clock()
    delays = policy.delays()
    attempts = 0

    while clock() - started < deadline:
        if cancelled is not None and cancelled.is_set():
            raise NegotiationCancelled("Polling cancelled")

        attempts += 1
        document = await fetch()
        if document is not None:
            logger.debug("Document available after %d attempts", attempts)
            return document

        remaining = deadline - (clock() - started)
        if remaining <= 0:
            break
        delay = min(next(delays), remaining)
        if sleep is not None:
            await sleep(delay)
        else:
            await _pause(delay, cancelled)

    raise NegotiationTimeout(f"No document after {attempts} attempts in {deadline:.0f}s")


class RelayClient:
    """Thin async client for the relay's room endpoints."""

    def __init__(
        self,
        base_url: str = "",
        *,
        api_prefix: str = "/v1",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._owns_client = client is None
        self._rooms = f"{api_prefix}/rooms"

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def create_room(self) -> CreateRoomResponse:
        response = await self._send("POST", self._rooms)
        if response.status_code != 201:
            raise RelayError(response.status_code)
        return CreateRoomResponse.model_validate(response.json())

    async def publish_offer(self, token: str, sdp: str) -> None:
        await self._publish(f"{self._rooms}/{token}/offer", sdp)

    async def publish_answer(self, token: str, sdp: str) -> None:
        await self._publish(f"{self._rooms}/{token}/answer", sdp)

    async def fetch_offer(self, token: str) -> Optional[str]:
        return await self._fetch(f"{self._rooms}/{token}/offer")

    async def fetch_answer(self, token: str) -> Optional[str]:
        return await self._fetch(f"{self._rooms}/{token}/answer")

    async def fetch_status(self, token: str) -> RoomStatusResponse:
        response = await self._send("GET", f"{self._rooms}/{token}/status")
        if response.status_code == 404:
            raise RoomGone(404, "Room not found")
        if response.status_code != 200:
            raise RelayError(response.status_code)
        return RoomStatusResponse.model_validate(response.json())

    async def _publish(self, path: str, sdp: str) -> None:
        response = await self._send("PUT", path, json={"sdp": sdp})
        if response.status_code == 409:
            raise RoomOccupied(409, "Document already published")
        if response.status_code == 404:
            raise RoomGone(404, "Room not found")
        if not response.is_success:
            raise RelayError(response.status_code)

    async def _fetch(self, path: str) -> Optional[str]:
        response = await self._send("GET", path)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RelayError(response.status_code)
        return SdpPayload.model_validate(response.json()).sdp

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RelayError(None, f"Relay unreachable: {exc}") from exc


class MediaHandle(Protocol):
    """Acquired local capture (e.g. a microphone stream)."""

    def stop(self) -> None: ...


class PeerTransport(Protocol):
    """The peer-to-peer stack that produces and consumes session descriptions."""

    async def create_offer(self) -> str: ...

    async def accept_offer(self, sdp: str) -> str: ...

    async def accept_answer(self, sdp: str) -> None: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class NegotiationResult:
    outcome: NegotiationOutcome
    token: Optional[str] = None
    join_reference: Optional[str] = None
    peer: Optional[PeerTransport] = None

    @property
    def label(self) -> str:
        return self.outcome.label


class NegotiationSession:
    """Drive one participant through the exchange.

    ``acquire_media`` raises ``MediaUnavailable`` when capture cannot start;
    ``peer_factory`` builds a transport around the acquired media. On success
    the live transport is handed back in the result and stays owned by the
    session until ``release`` or ``cancel``.
    """

    def __init__(
        self,
        relay: RelayClient,
        acquire_media: Callable[[], Awaitable[MediaHandle]],
        peer_factory: Callable[[MediaHandle], PeerTransport],
        *,
        policy: BackoffPolicy = BackoffPolicy(),
        deadline: float = DEFAULT_DEADLINE_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleep | None = None,
        on_room_created: Callable[[CreateRoomResponse], None] | None = None,
    ) -> None:
        self._relay = relay
        self._acquire_media = acquire_media
        self._peer_factory = peer_factory
        self._policy = policy
        self._deadline = deadline
        self._clock = clock
        self._sleep = sleep
        self._on_room_created = on_room_created
        self._cancelled = asyncio.Event()
        self._media: MediaHandle | None = None
        self._peer: PeerTransport | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run_initiator(self) -> NegotiationResult:
        """Create a room, publish an offer and wait for the answer."""

        token: str | None = None
        join_reference: str | None = None
        try:
            room = await self._relay.create_room()
            token, join_reference = room.token, room.join_reference
            if self._on_room_created is not None:
                self._on_room_created(room)

            peer = await self._prepare_peer()
            offer = await peer.create_offer()
            self._check_cancelled()
            await self._relay.publish_offer(token, offer)

            answer = await self._poll(lambda: self._relay.fetch_answer(room.token), room.ttl_seconds)
            await peer.accept_answer(answer)
            self._check_cancelled()
        except NegotiationError as exc:
            return await self._abort(exc, token, join_reference)
        except (Exception, asyncio.CancelledError):
            await self.release()
            raise

        return NegotiationResult(NegotiationOutcome.CONNECTING, token, join_reference, peer)

    async def run_responder(self, token: str) -> NegotiationResult:
        """Wait for the offer behind ``token``, then publish an answer once."""

        try:
            await self._acquire()
            offer = await self._poll(lambda: self._relay.fetch_offer(token), self._deadline)

            peer = await self._prepare_peer()
            answer = await peer.accept_offer(offer)
            self._check_cancelled()
            await self._relay.publish_answer(token, answer)
            self._check_cancelled()
        except NegotiationError as exc:
            return await self._abort(exc, token)
        except (Exception, asyncio.CancelledError):
            await self.release()
            raise

        return NegotiationResult(NegotiationOutcome.CONNECTING, token, peer=peer)

    async def cancel(self) -> None:
        """End the call from the user's side; pending polls stop at their next pause."""

        self._cancelled.set()
        await self.release()

    async def release(self) -> None:
        """Stop local media and close the transport. Safe to call repeatedly."""

        peer, self._peer = self._peer, None
        media, self._media = self._media, None
        if peer is not None:
            await peer.close()
        if media is not None:
            media.stop()

    async def _acquire(self) -> MediaHandle:
        if self._media is None:
            self._media = await self._acquire_media()
        self._check_cancelled()
        return self._media

    async def _prepare_peer(self) -> PeerTransport:
        media = await self._acquire()
        if self._peer is None:
            self._peer = self._peer_factory(media)
        return self._peer

    async def _poll(self, fetch: Fetch, deadline: float) -> str:
        return await poll_document(
            fetch,
            deadline=deadline,
            policy=self._policy,
            cancelled=self._cancelled,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise NegotiationCancelled("Negotiation cancelled")

    async def _abort(
        self,
        exc: NegotiationError,
        token: str | None,
        join_reference: str | None = None,
    ) -> NegotiationResult:
        await self.release()
        logger.info("Negotiation stopped: %s (%s)", exc.outcome.label, exc)
        return NegotiationResult(exc.outcome, token, join_reference)
