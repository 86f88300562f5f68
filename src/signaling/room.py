"""Room and participant entities.

In-memory only. A Room exclusively owns its Participants, keyed by id, and
enforces the two membership invariants: ids are unique within the room and
membership never exceeds the room capacity.
"""

from dataclasses import dataclass
from typing import Any

from src.signaling.errors import DuplicateParticipantError, RoomFullError

# Hard upper bound on mesh size
ROOM_CAPACITY = 5

MAX_DISPLAY_NAME_LENGTH = 50


@dataclass
class Participant:
    """One connected user identity within a room.

    ``display_name`` is mutable in place while the participant is a member.
    """

    id: str
    display_name: str | None = None

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("Participant ID cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        """Wire descriptor ``{"id", "displayName"?}``."""
        data: dict[str, Any] = {"id": self.id}
        if self.display_name is not None:
            data["displayName"] = self.display_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Participant":
        return cls(id=data["id"], display_name=data.get("displayName"))


class Room:
    """A bounded group of participants identified by a shared token."""

    def __init__(self, room_id: str, max_participants: int = ROOM_CAPACITY) -> None:
        """Initialize room.

        Args:
            room_id: Caller-supplied room token (non-empty)
            max_participants: Capacity, clamped to ``ROOM_CAPACITY``

        Raises:
            ValueError: If room_id is empty or capacity is below 1
        """
        if not room_id or not room_id.strip():
            raise ValueError("Room ID cannot be empty")
        if max_participants < 1:
            raise ValueError(f"max_participants must be >= 1, got {max_participants}")

        self.id = room_id
        self.max_participants = min(max_participants, ROOM_CAPACITY)
        # Insertion ordered
        self._participants: dict[str, Participant] = {}

    def add_participant(self, participant: Participant) -> None:
        """Add a participant.

        Raises:
            DuplicateParticipantError: If the id is already a member
            RoomFullError: If the room is at capacity
        """
        if participant.id in self._participants:
            raise DuplicateParticipantError(f"Participant {participant.id} already in room")

        if self.is_full():
            raise RoomFullError(f"Room is full (max {self.max_participants} participants)")

        self._participants[participant.id] = participant

    def remove_participant(self, participant_id: str) -> Participant | None:
        """Remove a participant. No-op returning None if absent."""
        return self._participants.pop(participant_id, None)

    def get_participant(self, participant_id: str) -> Participant | None:
        return self._participants.get(participant_id)

    def has_participant(self, participant_id: str) -> bool:
        return participant_id in self._participants

    def all_participants(self) -> list[Participant]:
        """Snapshot of members in join order."""
        return list(self._participants.values())

    def other_participants(self, exclude_id: str) -> list[Participant]:
        return [p for p in self._participants.values() if p.id != exclude_id]

    def is_empty(self) -> bool:
        return not self._participants

    def is_full(self) -> bool:
        return len(self._participants) >= self.max_participants

    @property
    def participant_count(self) -> int:
        return len(self._participants)

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._participants

    def __repr__(self) -> str:
        return f"Room(id={self.id!r}, participants={list(self._participants)})"
