"""In-memory room registry with TTL expiry."""
from __future__ import annotations

import asyncio
import enum
import logging
import math
import time
from dataclasses import dataclass
from secrets import token_urlsafe
from typing import Callable, Dict, Optional, TypeVar

from ..core.exceptions import RoomNotFound

Clock = Callable[[], float]
T = TypeVar("T")

# 16 random bytes -> 128-bit token space.
TOKEN_BYTES = 16

logger = logging.getLogger(__name__)


class RoomState(str, enum.Enum):
    CREATED = "created"
    OFFER_SET = "offer_set"
    ANSWER_SET = "answer_set"


class RoomPhase(str, enum.Enum):
    """Stored state plus the clock-derived ``GONE`` outcome."""

    CREATED = "created"
    OFFER_SET = "offer_set"
    ANSWER_SET = "answer_set"
    GONE = "gone"


class _Lifetime:
    """Clock arithmetic shared by stored rooms and their snapshots."""

    __slots__ = ()

    token: str
    created_at: float
    ttl: float
    state: RoomState

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    def expires_in(self, now: float) -> int:
        """Whole seconds left before expiry, never negative."""

        return max(0, math.floor(self.created_at + self.ttl - now))

    def phase(self, now: float) -> RoomPhase:
        if self.is_expired(now):
            return RoomPhase.GONE
        return RoomPhase(self.state.value)


@dataclass(frozen=True, slots=True)
class RoomSnapshot(_Lifetime):
    """Read-only view of a room at the moment it was read."""

    token: str
    created_at: float
    ttl: float
    state: RoomState
    offer_sdp: Optional[str]
    answer_sdp: Optional[str]


@dataclass(slots=True)
class Room(_Lifetime):
    token: str
    created_at: float
    ttl: float
    state: RoomState = RoomState.CREATED
    offer_sdp: Optional[str] = None
    answer_sdp: Optional[str] = None

    def snapshot(self) -> RoomSnapshot:
        return RoomSnapshot(
            token=self.token,
            created_at=self.created_at,
            ttl=self.ttl,
            state=self.state,
            offer_sdp=self.offer_sdp,
            answer_sdp=self.answer_sdp,
        )


@dataclass(slots=True)
class RoomTicket:
    """What the creator of a room gets back."""

    token: str
    join_reference: str
    ttl_seconds: int


def _generate_token() -> str:
    return token_urlsafe(TOKEN_BYTES)


def _short(token: str) -> str:
    return f"{token[:6]}…"


class RoomStore:
    """Own every room and serialize all access to them behind one lock.

    Rooms never leave the store: ``get`` hands out frozen snapshots and
    ``apply`` runs a caller-supplied transition against the live room while
    the lock is held, which makes check-and-set sequences atomic.
    """

    def __init__(
        self,
        ttl_seconds: float = 120,
        *,
        clock: Clock | None = None,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._new_token = token_factory or _generate_token
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._rooms)

    async def create(self, origin: str) -> RoomTicket:
        """Allocate a room in ``created`` state and return its join details."""

        async with self._lock:
            token = self._new_token()
            while token in self._rooms:
                logger.warning("Room token collision detected, regenerating")
                token = self._new_token()
            self._rooms[token] = Room(token=token, created_at=self._clock(), ttl=self._ttl)

        logger.info("Created room %s (ttl=%ss)", _short(token), self._ttl)
        return RoomTicket(
            token=token,
            join_reference=f"{origin.rstrip('/')}/room/{token}",
            ttl_seconds=int(self._ttl),
        )

    async def get(self, token: str) -> Optional[RoomSnapshot]:
        """Return a snapshot of the live room, or ``None`` if absent or expired."""

        async with self._lock:
            room = self._live(token, self._clock())
            return room.snapshot() if room is not None else None

    async def apply(self, token: str, transition: Callable[[Room, float], T]) -> T:
        """Run ``transition(room, now)`` atomically against the live room.

        Raises ``RoomNotFound`` when the token is unknown or expired. The
        transition must not keep a reference to the room after it returns.
        """

        async with self._lock:
            now = self._clock()
            room = self._live(token, now)
            if room is None:
                raise RoomNotFound(token)
            return transition(room, now)

    async def sweep(self) -> int:
        """Drop every expired room and return how many were removed."""

        async with self._lock:
            now = self._clock()
            expired = [
                token for token, room in self._rooms.items() if room.phase(now) is RoomPhase.GONE
            ]
            for token in expired:
                self._rooms.pop(token, None)

        if expired:
            logger.debug("Swept %d expired rooms", len(expired))
        return len(expired)

    async def close(self) -> None:
        async with self._lock:
            self._rooms.clear()

    def _live(self, token: str, now: float) -> Optional[Room]:
        room = self._rooms.get(token)
        if room is None:
            return None
        if room.phase(now) is RoomPhase.GONE:
            self._rooms.pop(token, None)
            logger.debug("Evicted expired room %s on access", _short(token))
            return None
        return room
