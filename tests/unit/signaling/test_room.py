"""Unit tests for Room and Participant entities."""

import pytest

from src.signaling.errors import (
    DuplicateParticipantError,
    RoomFullError,
    SignalingErrorCode,
)
from src.signaling.room import ROOM_CAPACITY, Participant, Room


class TestParticipant:
    """Test Participant value object."""

    def test_empty_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="Participant ID cannot be empty"):
            Participant("")

    def test_whitespace_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="Participant ID cannot be empty"):
            Participant("   ")

    def test_to_dict_omits_missing_display_name(self) -> None:
        assert Participant("u1").to_dict() == {"id": "u1"}

    def test_dict_round_trip(self) -> None:
        """Test (id, displayName) survives serialization."""
        original = Participant("u1", "Alice")
        restored = Participant.from_dict(original.to_dict())

        assert restored == original
        assert restored.to_dict() == {"id": "u1", "displayName": "Alice"}


class TestRoom:
    """Test Room membership invariants."""

    def test_empty_room_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="Room ID cannot be empty"):
            Room(" ")

    def test_invalid_capacity_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_participants"):
            Room("R1", max_participants=0)

    def test_capacity_clamped_to_mesh_limit(self) -> None:
        room = Room("R1", max_participants=50)
        assert room.max_participants == ROOM_CAPACITY

    def test_add_and_lookup(self) -> None:
        room = Room("R1")
        room.add_participant(Participant("u1", "Alice"))

        assert room.has_participant("u1")
        assert "u1" in room
        assert room.get_participant("u1") == Participant("u1", "Alice")
        assert room.participant_count == 1
        assert len(room) == 1

    def test_duplicate_rejected(self) -> None:
        room = Room("R1")
        room.add_participant(Participant("u1"))

        with pytest.raises(DuplicateParticipantError) as exc_info:
            room.add_participant(Participant("u1", "Again"))

        assert exc_info.value.code == SignalingErrorCode.DUPLICATE_PARTICIPANT
        assert room.participant_count == 1
        assert room.get_participant("u1").display_name is None

    def test_sixth_participant_rejected(self) -> None:
        room = Room("R1")
        for i in range(ROOM_CAPACITY):
            room.add_participant(Participant(f"u{i}"))

        assert room.is_full()
        with pytest.raises(RoomFullError):
            room.add_participant(Participant("u-extra"))

        assert room.participant_count == ROOM_CAPACITY
        assert not room.has_participant("u-extra")

    def test_duplicate_checked_before_capacity(self) -> None:
        """A member rejoining a full room is reported as a duplicate."""
        room = Room("R1")
        for i in range(ROOM_CAPACITY):
            room.add_participant(Participant(f"u{i}"))

        with pytest.raises(DuplicateParticipantError):
            room.add_participant(Participant("u0"))

    def test_remove_is_idempotent(self) -> None:
        room = Room("R1")
        room.add_participant(Participant("u1"))

        assert room.remove_participant("u1") == Participant("u1")
        assert room.remove_participant("u1") is None
        assert room.is_empty()

    def test_participants_in_join_order(self) -> None:
        room = Room("R1")
        for pid in ("c", "a", "b"):
            room.add_participant(Participant(pid))

        assert [p.id for p in room.all_participants()] == ["c", "a", "b"]
        assert [p.id for p in room.other_participants("a")] == ["c", "b"]

    def test_snapshot_is_a_copy(self) -> None:
        room = Room("R1")
        room.add_participant(Participant("u1"))

        snapshot = room.all_participants()
        room.add_participant(Participant("u2"))

        assert [p.id for p in snapshot] == ["u1"]
