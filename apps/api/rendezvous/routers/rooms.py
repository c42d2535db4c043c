"""Room creation and offer/answer exchange endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import ValidationError

from ..core.config import Settings
from ..core.exceptions import MalformedPayload, PayloadTooLarge
from ..schemas.rooms import CreateRoomResponse, RoomStatusResponse, SdpPayload
from ..services import exchange
from ..services.room_store import RoomStore

router = APIRouter()


def get_store(request: Request) -> RoomStore:
    """FastAPI dependency returning the application's room store."""

    return request.app.state.room_store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def read_sdp(request: Request, limit: int) -> str:
    """Read a bounded JSON body and return its ``sdp`` field verbatim."""

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge(limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge(limit)

    try:
        return SdpPayload.model_validate_json(bytes(body)).sdp
    except ValidationError as exc:
        raise MalformedPayload("Body must be a JSON object with a non-empty 'sdp' string") from exc


@router.post("", status_code=status.HTTP_201_CREATED, response_model=CreateRoomResponse)
async def create_room(
    request: Request,
    store: RoomStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> CreateRoomResponse:
    """Open a room and return its token and join link."""

    origin = settings.public_base_url or str(request.base_url)
    ticket = await store.create(origin)
    return CreateRoomResponse(
        token=ticket.token,
        join_reference=ticket.join_reference,
        ttl_seconds=ticket.ttl_seconds,
    )


@router.put("/{token}/offer", status_code=status.HTTP_204_NO_CONTENT)
async def put_offer(
    token: str,
    request: Request,
    store: RoomStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Publish the initiator's offer; only the first one is accepted."""

    await exchange.ensure_can_publish_offer(store, token)
    sdp = await read_sdp(request, settings.max_body_bytes)
    await exchange.publish_offer(store, token, sdp)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{token}/offer", response_model=SdpPayload)
async def get_offer(token: str, store: RoomStore = Depends(get_store)) -> SdpPayload:
    return SdpPayload(sdp=await exchange.read_offer(store, token))


@router.put("/{token}/answer", status_code=status.HTTP_204_NO_CONTENT)
async def put_answer(
    token: str,
    request: Request,
    store: RoomStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Publish the responder's answer; a second responder gets 409."""

    await exchange.ensure_can_publish_answer(store, token)
    sdp = await read_sdp(request, settings.max_body_bytes)
    await exchange.publish_answer(store, token, sdp)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{token}/answer", response_model=SdpPayload)
async def get_answer(token: str, store: RoomStore = Depends(get_store)) -> SdpPayload:
    return SdpPayload(sdp=await exchange.read_answer(store, token))


@router.get("/{token}/status", response_model=RoomStatusResponse)
async def get_status(token: str, store: RoomStore = Depends(get_store)) -> RoomStatusResponse:
    """Report the room's state and seconds left before it expires."""

    current = await exchange.status(store, token)
    return RoomStatusResponse(state=current.state, expires_in_sec=current.expires_in_sec)
