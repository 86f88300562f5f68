"""Room operations: join, leave, relay and display-name update.

Pure logic over the RoomStore. Each operation returns a result dataclass
instead of raising; failures carry a ``SignalingErrorCode``. No operation
knows anything about connections or sockets.

Each operation runs inside ``RoomStore.locked()`` so the membership check and
mutation for a room form one atomic step.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from src.signaling.errors import (
    DuplicateParticipantError,
    RoomFullError,
    SignalingErrorCode,
    default_message,
)
from src.signaling.room import MAX_DISPLAY_NAME_LENGTH, Participant, Room
from src.signaling.store import RoomStore
from src.signaling.transport.websocket_protocol import RELAYABLE_TYPES

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Common result fields."""

    success: bool
    error: SignalingErrorCode | None = None
    error_message: str | None = None

    def _fail(self, code: SignalingErrorCode, message: str | None = None) -> None:
        self.success = False
        self.error = code
        self.error_message = message or default_message(code)


@dataclass
class JoinResult(OperationResult):
    room_id: str = ""
    participant_id: str = ""
    room: Room | None = None
    # Members before the join, in join order
    existing_participants: list[Participant] = field(default_factory=list)


@dataclass
class LeaveResult(OperationResult):
    room_id: str = ""
    participant_id: str = ""
    remaining_participants: list[Participant] = field(default_factory=list)
    room_deleted: bool = False


@dataclass
class RelayResult(OperationResult):
    recipient_id: str = ""
    message: Any = None


@dataclass
class DisplayNameResult(OperationResult):
    room_id: str = ""
    participant_id: str = ""
    display_name: str = ""


def normalize_display_name(name: str | None) -> tuple[str | None, SignalingErrorCode | None]:
    """Trim a display name and check its length.

    Returns:
        (trimmed name or None when blank, error code or None)
    """
    if name is None:
        return None, None

    trimmed = name.strip()
    if not trimmed:
        return None, SignalingErrorCode.EMPTY_NAME
    if len(trimmed) > MAX_DISPLAY_NAME_LENGTH:
        return trimmed, SignalingErrorCode.NAME_TOO_LONG
    return trimmed, None


class JoinRoom:
    """Add a participant to a room, creating the room on first join."""

    def __init__(self, store: RoomStore) -> None:
        self._store = store

    def execute(
        self, room_id: str, participant_id: str, display_name: str | None = None
    ) -> JoinResult:
        result = JoinResult(success=True, room_id=room_id, participant_id=participant_id)

        # Blank names join unnamed; overlong names are refused before any mutation
        name, name_error = normalize_display_name(display_name)
        if name_error is SignalingErrorCode.NAME_TOO_LONG:
            result._fail(
                name_error,
                f"Display name is too long (max {MAX_DISPLAY_NAME_LENGTH} characters)",
            )
            return result

        participant = Participant(participant_id, name)

        with self._store.locked():
            room = self._store.create_room(room_id)
            result.room = room

            if room.is_full():
                result._fail(
                    SignalingErrorCode.ROOM_FULL,
                    f"Room is full (maximum {room.max_participants} participants)",
                )
                return result

            existing = room.all_participants()
            try:
                room.add_participant(participant)
            except (DuplicateParticipantError, RoomFullError) as e:
                result._fail(e.code, e.message)
                return result

            result.existing_participants = existing

        return result


class LeaveRoom:
    """Remove a participant; delete the room once it is empty."""

    def __init__(self, store: RoomStore) -> None:
        self._store = store

    def execute(self, room_id: str, participant_id: str) -> LeaveResult:
        result = LeaveResult(success=True, room_id=room_id, participant_id=participant_id)

        with self._store.locked():
            room = self._store.find_room(room_id)
            if room is None:
                result._fail(SignalingErrorCode.ROOM_NOT_FOUND)
                return result

            room.remove_participant(participant_id)
            result.remaining_participants = room.all_participants()

            if room.is_empty():
                self._store.delete_room(room_id)
                result.room_deleted = True

        return result


class RelaySignal:
    """Authorize and route an offer/answer/ICE message between two members.

    The payload is never inspected or rewritten.
    """

    def __init__(self, store: RoomStore) -> None:
        self._store = store

    def execute(self, room_id: str, message: Any) -> RelayResult:
        result = RelayResult(success=True, message=message)

        if getattr(message, "type", None) not in RELAYABLE_TYPES:
            result._fail(SignalingErrorCode.INVALID_MESSAGE_TYPE)
            return result

        result.recipient_id = message.to

        with self._store.locked():
            room = self._store.find_room(room_id)
            if room is None:
                result._fail(SignalingErrorCode.ROOM_NOT_FOUND)
                return result

            if not room.has_participant(message.from_):
                result._fail(SignalingErrorCode.SENDER_NOT_IN_ROOM)
                return result

            if not room.has_participant(message.to):
                result._fail(SignalingErrorCode.RECIPIENT_NOT_IN_ROOM)
                return result

        return result


class UpdateDisplayName:
    """Rename a room member in place."""

    def __init__(self, store: RoomStore) -> None:
        self._store = store

    def execute(self, room_id: str, participant_id: str, display_name: str) -> DisplayNameResult:
        result = DisplayNameResult(success=True, room_id=room_id, participant_id=participant_id)

        name, name_error = normalize_display_name(display_name)
        if name_error is not None:
            message = None
            if name_error is SignalingErrorCode.NAME_TOO_LONG:
                message = f"Display name is too long (max {MAX_DISPLAY_NAME_LENGTH} characters)"
            result._fail(name_error, message)
            return result

        with self._store.locked():
            room = self._store.find_room(room_id)
            if room is None:
                result._fail(SignalingErrorCode.ROOM_NOT_FOUND)
                return result

            participant = room.get_participant(participant_id)
            if participant is None:
                result._fail(SignalingErrorCode.PARTICIPANT_NOT_FOUND)
                return result

            participant.display_name = name

        result.display_name = name or ""
        return result
