"""Offer/answer exchange rules applied to rooms held by the store.

Every write is a single ``RoomStore.apply`` call, so the state check and the
write happen under the same lock. Two responders racing to answer the same
offer therefore get exactly one success and one ``StateConflict``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..core.exceptions import NotYetAvailable, StateConflict
from .room_store import Room, RoomState, RoomStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RoomStatus:
    state: RoomState
    expires_in_sec: int


def _require_offer_slot(room: Room) -> None:
    if room.state is not RoomState.CREATED:
        raise StateConflict(room.token, room.state.value, "publish offer")


def _require_answer_slot(room: Room) -> None:
    if room.state is not RoomState.OFFER_SET or room.answer_sdp is not None:
        raise StateConflict(room.token, room.state.value, "publish answer")


async def ensure_can_publish_offer(store: RoomStore, token: str) -> None:
    """Fail fast before reading a body that could never be accepted.

    Advisory only: ``publish_offer`` repeats the check atomically.
    """

    await store.apply(token, lambda room, _now: _require_offer_slot(room))


async def ensure_can_publish_answer(store: RoomStore, token: str) -> None:
    """Advisory counterpart of ``ensure_can_publish_offer`` for answers."""

    await store.apply(token, lambda room, _now: _require_answer_slot(room))


async def publish_offer(store: RoomStore, token: str, sdp: str) -> None:
    """Store the offer and move ``created -> offer_set``."""

    def _transition(room: Room, _now: float) -> None:
        _require_offer_slot(room)
        room.offer_sdp = sdp
        room.state = RoomState.OFFER_SET

    try:
        await store.apply(token, _transition)
    except StateConflict as exc:
        logger.warning("Rejected duplicate offer (room is %s)", exc.state)
        raise


async def publish_answer(store: RoomStore, token: str, sdp: str) -> None:
    """Store the answer and move ``offer_set -> answer_set``."""

    def _transition(room: Room, _now: float) -> None:
        _require_answer_slot(room)
        room.answer_sdp = sdp
        room.state = RoomState.ANSWER_SET

    try:
        await store.apply(token, _transition)
    except StateConflict as exc:
        logger.warning("Rejected answer (room is %s)", exc.state)
        raise


async def read_offer(store: RoomStore, token: str) -> str:
    def _read(room: Room, _now: float) -> str:
        if room.state is RoomState.CREATED or room.offer_sdp is None:
            raise NotYetAvailable(room.token, "offer")
        return room.offer_sdp

    return await store.apply(token, _read)


async def read_answer(store: RoomStore, token: str) -> str:
    def _read(room: Room, _now: float) -> str:
        if room.state is not RoomState.ANSWER_SET or room.answer_sdp is None:
            raise NotYetAvailable(room.token, "answer")
        return room.answer_sdp

    return await store.apply(token, _read)


async def status(store: RoomStore, token: str) -> RoomStatus:
    """Current state and whole seconds left before the room expires."""

    return await store.apply(
        token,
        lambda room, now: RoomStatus(state=room.state, expires_in_sec=room.expires_in(now)),
    )
