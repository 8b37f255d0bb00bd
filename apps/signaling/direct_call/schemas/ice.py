"""ICE server configuration handed to registered clients."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IceServer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    urls: list[str] = Field(..., min_length=1, description="TURN/STUN URIs")
    username: str | None = None
    credential: str | None = None


class IceConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ice_servers: list[IceServer] = Field(default_factory=list, alias="iceServers")
    ice_transport_policy: Literal["all", "relay"] = Field(default="all", alias="iceTransportPolicy")
