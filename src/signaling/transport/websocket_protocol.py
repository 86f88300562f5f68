"""WebSocket message protocol definitions.

Defines Pydantic models for signaling message serialization/deserialization.
Messages are JSON objects discriminated by their ``type`` field; field names
on the wire are camelCase (``roomId``, ``displayName``, ``youId``...).

The parser fails closed: a frame whose ``type`` is not one of the known
client message kinds is rejected, never passed through.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from src.signaling.errors import ProtocolError, SignalingErrorCode


class WireModel(BaseModel):
    """Base for all protocol models: accept both alias and field names."""

    model_config = ConfigDict(populate_by_name=True)


class ParticipantInfo(WireModel):
    """Participant descriptor ``{id, displayName?}``."""

    id: str = Field(..., min_length=1)
    display_name: str | None = Field(default=None, alias="displayName")


class IceServer(WireModel):
    """STUN/TURN server entry handed to clients in ``joined``."""

    urls: str | list[str]
    username: str | None = None
    credential: str | None = None


# ===== Client -> Server =====


class JoinMessage(WireModel):
    """Client → Server: Join (or create) a room."""

    type: Literal["join"] = "join"
    room_id: str = Field(..., min_length=1, alias="roomId")
    display_name: str | None = Field(default=None, alias="displayName")

    @field_validator("room_id")
    @classmethod
    def validate_room_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("roomId must not be blank")
        return v


class RelayedMessage(WireModel):
    """Base for peer-to-peer negotiation messages.

    Relayed verbatim, so unknown extra fields are preserved.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    to: str = Field(..., min_length=1)
    from_: str = Field(..., min_length=1, alias="from")


class OfferMessage(RelayedMessage):
    """Client ↔ Client (relayed): SDP offer."""

    type: Literal["offer"] = "offer"
    sdp: str


class AnswerMessage(RelayedMessage):
    """Client ↔ Client (relayed): SDP answer."""

    type: Literal["answer"] = "answer"
    sdp: str


class IceCandidateMessage(RelayedMessage):
    """Client ↔ Client (relayed): ICE candidate.

    ``candidate`` follows RTCIceCandidateInit
    (``candidate``, ``sdpMid``, ``sdpMLineIndex``, ``usernameFragment``).
    """

    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: dict[str, Any]


class LeaveMessage(WireModel):
    """Client → Server: Explicit leave."""

    type: Literal["leave"] = "leave"
    from_: str = Field(..., alias="from")


class UpdateDisplayNameMessage(WireModel):
    """Client → Server: Rename a participant."""

    type: Literal["update-display-name"] = "update-display-name"
    from_: str = Field(..., min_length=1, alias="from")
    display_name: str = Field(..., alias="displayName")


# ===== Server -> Client =====


class JoinedMessage(WireModel):
    """Server → Client: Join confirmation with the pre-join membership."""

    type: Literal["joined"] = "joined"
    you_id: str = Field(..., alias="youId")
    participants: list[ParticipantInfo] = Field(default_factory=list)
    ice_servers: list[IceServer] = Field(default_factory=list, alias="iceServers")


class ParticipantJoinedMessage(WireModel):
    """Server → Client: Another participant joined."""

    type: Literal["participant-joined"] = "participant-joined"
    participant: ParticipantInfo


class ParticipantLeftMessage(WireModel):
    """Server → Client: Another participant left."""

    type: Literal["participant-left"] = "participant-left"
    id: str


class DisplayNameUpdatedMessage(WireModel):
    """Server → Client: A participant's display name changed."""

    type: Literal["display-name-updated"] = "display-name-updated"
    participant_id: str = Field(..., alias="participantId")
    display_name: str = Field(..., alias="displayName")


class ErrorMessage(WireModel):
    """Server → Client: Error notification."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str | None = Field(default=None, description="Error code")


RELAYABLE_TYPES = frozenset({"offer", "answer", "ice-candidate"})

# Union type for relayed negotiation messages
SignalMessage = OfferMessage | AnswerMessage | IceCandidateMessage

# Union type for all client → server messages
ClientMessage = Annotated[
    JoinMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | LeaveMessage
    | UpdateDisplayNameMessage,
    Field(discriminator="type"),
]

# Union type for all server → client messages
ServerMessage = Annotated[
    JoinedMessage
    | ParticipantJoinedMessage
    | ParticipantLeftMessage
    | DisplayNameUpdatedMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = frozenset(
    {"join", "offer", "answer", "ice-candidate", "leave", "update-display-name"}
)
SERVER_MESSAGE_TYPES = frozenset(
    {
        "joined",
        "participant-joined",
        "participant-left",
        "display-name-updated",
        "offer",
        "answer",
        "ice-candidate",
        "error",
    }
)

_client_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[Any] = TypeAdapter(ServerMessage)


def _decode_frame(raw: str | bytes) -> dict[str, Any]:
    if not isinstance(raw, str):
        raise ProtocolError(SignalingErrorCode.MALFORMED_FRAME, "Binary frames are not supported")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(SignalingErrorCode.MALFORMED_FRAME, f"Invalid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError(SignalingErrorCode.MALFORMED_FRAME, "Invalid message format")

    return data


def _validate(adapter: TypeAdapter[Any], data: dict[str, Any]) -> Any:
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        errors = ", ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ProtocolError(
            SignalingErrorCode.MALFORMED_FRAME,
            f"Invalid {data['type']} message: {errors}",
        ) from e


def parse_client_message(raw: str | bytes) -> Any:
    """Parse an inbound frame into a typed client message.

    Args:
        raw: Raw WebSocket frame

    Returns:
        One of the ``ClientMessage`` models

    Raises:
        ProtocolError: MALFORMED_FRAME for undecodable or invalid frames,
            UNKNOWN_MESSAGE_TYPE for a ``type`` outside the client protocol
    """
    data = _decode_frame(raw)
    if data["type"] not in CLIENT_MESSAGE_TYPES:
        raise ProtocolError(
            SignalingErrorCode.UNKNOWN_MESSAGE_TYPE,
            f"Unknown message type: {data['type']}",
        )
    return _validate(_client_adapter, data)


def parse_server_message(raw: str | bytes) -> Any:
    """Parse a frame received by a client into a typed server message.

    Raises:
        ProtocolError: Same semantics as ``parse_client_message``
    """
    data = _decode_frame(raw)
    if data["type"] not in SERVER_MESSAGE_TYPES:
        raise ProtocolError(
            SignalingErrorCode.UNKNOWN_MESSAGE_TYPE,
            f"Unknown message type: {data['type']}",
        )
    return _validate(_server_adapter, data)


def encode_message(message: BaseModel) -> str:
    """Serialize a protocol model to its JSON wire form.

    Relayed messages are emitted as received (including null fields and
    extras); server-originated messages omit unset optional fields.
    """
    if isinstance(message, RelayedMessage):
        return message.model_dump_json(by_alias=True)
    return message.model_dump_json(by_alias=True, exclude_none=True)
