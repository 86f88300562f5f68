"""Signaling error taxonomy.

Every failure the signaling core can report to a client maps to one
``SignalingErrorCode``. Codes travel on the wire inside ``error`` messages
(``{"type": "error", "message": ..., "code": "ROOM_FULL"}``) and are never
fatal for the server or for other connections.
"""

from enum import Enum


class SignalingErrorCode(str, Enum):
    """Recoverable signaling failures reported to the originating client."""

    ROOM_FULL = "ROOM_FULL"
    DUPLICATE_PARTICIPANT = "DUPLICATE_PARTICIPANT"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    PARTICIPANT_NOT_FOUND = "PARTICIPANT_NOT_FOUND"
    SENDER_NOT_IN_ROOM = "SENDER_NOT_IN_ROOM"
    RECIPIENT_NOT_IN_ROOM = "RECIPIENT_NOT_IN_ROOM"
    INVALID_MESSAGE_TYPE = "INVALID_MESSAGE_TYPE"
    NOT_IN_ROOM = "NOT_IN_ROOM"
    ALREADY_IN_ROOM = "ALREADY_IN_ROOM"
    EMPTY_NAME = "EMPTY_NAME"
    NAME_TOO_LONG = "NAME_TOO_LONG"
    MALFORMED_FRAME = "MALFORMED_FRAME"
    UNKNOWN_MESSAGE_TYPE = "UNKNOWN_MESSAGE_TYPE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


DEFAULT_ERROR_MESSAGES: dict[SignalingErrorCode, str] = {
    SignalingErrorCode.ROOM_FULL: "Room is full",
    SignalingErrorCode.DUPLICATE_PARTICIPANT: "Participant already in room",
    SignalingErrorCode.ROOM_NOT_FOUND: "Room not found",
    SignalingErrorCode.PARTICIPANT_NOT_FOUND: "Participant not found in room",
    SignalingErrorCode.SENDER_NOT_IN_ROOM: "Sender not in room",
    SignalingErrorCode.RECIPIENT_NOT_IN_ROOM: "Recipient not in room",
    SignalingErrorCode.INVALID_MESSAGE_TYPE: "Invalid signaling message type",
    SignalingErrorCode.NOT_IN_ROOM: "Not in a room",
    SignalingErrorCode.ALREADY_IN_ROOM: "Already in a room",
    SignalingErrorCode.EMPTY_NAME: "Display name cannot be empty",
    SignalingErrorCode.NAME_TOO_LONG: "Display name is too long",
    SignalingErrorCode.MALFORMED_FRAME: "Invalid message format",
    SignalingErrorCode.UNKNOWN_MESSAGE_TYPE: "Unknown message type",
    SignalingErrorCode.INTERNAL_ERROR: "Internal server error",
}


def default_message(code: SignalingErrorCode) -> str:
    """Human-readable default text for an error code."""
    return DEFAULT_ERROR_MESSAGES[code]


class SignalingError(Exception):
    """Base class for signaling errors carrying a wire error code."""

    code: SignalingErrorCode = SignalingErrorCode.INTERNAL_ERROR

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or default_message(self.code))

    @property
    def message(self) -> str:
        return str(self)


class RoomFullError(SignalingError):
    """Raised when adding a participant to a room at capacity."""

    code = SignalingErrorCode.ROOM_FULL


class DuplicateParticipantError(SignalingError):
    """Raised when a participant id is already a room member."""

    code = SignalingErrorCode.DUPLICATE_PARTICIPANT


class ProtocolError(SignalingError):
    """Raised by the wire parser for frames that cannot be accepted.

    The code is either ``MALFORMED_FRAME`` or ``UNKNOWN_MESSAGE_TYPE``.
    """

    def __init__(self, code: SignalingErrorCode, message: str | None = None) -> None:
        self.code = code
        super().__init__(message)
