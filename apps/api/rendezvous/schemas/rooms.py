"""Data contracts for room endpoints."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..services.room_store import RoomState


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateRoomResponse(_CamelModel):
    token: str = Field(..., description="Bearer token identifying the room")
    join_reference: str = Field(..., alias="joinReference", description="Shareable link for the second participant")
    ttl_seconds: int = Field(..., alias="ttlSeconds", ge=1, description="Seconds until the room expires")


class SdpPayload(BaseModel):
    sdp: str = Field(..., min_length=1, description="Opaque session description, stored verbatim")


class RoomStatusResponse(_CamelModel):
    state: RoomState
    expires_in_sec: int = Field(..., alias="expiresInSec", ge=0)
