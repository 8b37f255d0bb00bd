"""Wire contracts for the one-to-one call signaling protocol."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..services.errors import Malformed
from .ice import IceConfiguration

ACCEPTED = "accepted"
REJECTED = "rejected"
ACCEPT = "accept"


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Inbound


class RegisterMessage(_Message):
    id: Literal["register"]
    name: str | None = None


class CallMessage(_Message):
    id: Literal["call"]
    to: str
    from_: str | None = Field(default=None, alias="from")
    sdp_offer: Any = Field(..., alias="sdpOffer")


class IncomingCallResponseMessage(_Message):
    id: Literal["incomingCallResponse"]
    from_: str | None = Field(default=None, alias="from")
    call_response: str | None = Field(default=None, alias="callResponse")
    sdp_answer: Any = Field(default=None, alias="sdpAnswer")


class StopMessage(_Message):
    id: Literal["stop"]


class OnIceCandidateMessage(_Message):
    id: Literal["onIceCandidate"]
    candidate: Any


InboundMessage = Annotated[
    Union[
        RegisterMessage,
        CallMessage,
        IncomingCallResponseMessage,
        StopMessage,
        OnIceCandidateMessage,
    ],
    Field(discriminator="id"),
]

_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)
INBOUND_IDS = frozenset({"register", "call", "incomingCallResponse", "stop", "onIceCandidate"})


def parse_inbound(payload: object) -> InboundMessage:
    """Validate a decoded frame, raising ``Malformed`` for anything unrecognised."""

    if not isinstance(payload, dict):
        raise Malformed(f"Invalid message {payload!r}")
    message_id = payload.get("id")
    if message_id not in INBOUND_IDS:
        raise Malformed(f"Invalid message {message_id!r}")
    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()})
        raise Malformed(f"Invalid {message_id} message: {', '.join(fields) or 'bad shape'}") from exc


# Outbound


class OutboundMessage(_Message):
    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class RegisterResponse(OutboundMessage):
    id: Literal["registerResponse"] = "registerResponse"
    response: str
    message: str | None = None
    ice_configuration: IceConfiguration | None = Field(default=None, alias="iceConfiguration")


class CallResponse(OutboundMessage):
    id: Literal["callResponse"] = "callResponse"
    response: str
    message: str | None = None
    sdp_answer: Any = Field(default=None, alias="sdpAnswer")


class IncomingCall(OutboundMessage):
    id: Literal["incomingCall"] = "incomingCall"
    from_: str = Field(..., alias="from")
    sdp_offer: Any = Field(default=None, alias="sdpOffer")


class StopCommunication(OutboundMessage):
    id: Literal["stopCommunication"] = "stopCommunication"
    message: str | None = None


class IceCandidate(OutboundMessage):
    id: Literal["iceCandidate"] = "iceCandidate"
    candidate: Any


class ErrorMessage(OutboundMessage):
    id: Literal["error"] = "error"
    message: str


class SignalingStats(BaseModel):
    registered: int = Field(..., ge=0)
    states: dict[str, int]
    pending_candidate_queues: int = Field(..., ge=0)
