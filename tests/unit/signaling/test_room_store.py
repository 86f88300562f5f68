"""Unit tests for the in-memory RoomStore."""

import threading

from src.signaling.room import Participant
from src.signaling.store import RoomStore


class TestRoomStore:
    """Test room lifecycle in the store."""

    def test_create_room_is_get_or_create(self) -> None:
        store = RoomStore()
        first = store.create_room("R1")
        second = store.create_room("R1")

        assert first is second
        assert store.count() == 1

    def test_find_missing_room(self) -> None:
        assert RoomStore().find_room("nope") is None

    def test_delete_room(self) -> None:
        store = RoomStore()
        store.create_room("R1")
        store.delete_room("R1")

        assert not store.room_exists("R1")
        assert store.find_room("R1") is None

    def test_delete_missing_room_is_noop(self) -> None:
        store = RoomStore()
        store.delete_room("ghost")
        assert store.count() == 0

    def test_list_room_ids(self) -> None:
        store = RoomStore()
        store.create_room("R1")
        store.create_room("R2")

        assert store.list_room_ids() == {"R1", "R2"}

    def test_rooms_use_store_capacity(self) -> None:
        store = RoomStore(max_participants=3)
        assert store.create_room("R1").max_participants == 3

    def test_snapshot_reports_counts(self) -> None:
        store = RoomStore()
        room = store.create_room("R1")
        room.add_participant(Participant("u1"))
        room.add_participant(Participant("u2"))
        store.create_room("R2")

        assert sorted(store.snapshot()) == [("R1", 2), ("R2", 0)]

    def test_clear(self) -> None:
        store = RoomStore()
        store.create_room("R1")
        store.clear()
        assert store.count() == 0

    def test_concurrent_create_yields_single_room(self) -> None:
        """Test get-or-create from many threads produces one room."""
        store = RoomStore()
        rooms = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            rooms.append(store.create_room("shared"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count() == 1
        assert all(room is rooms[0] for room in rooms)
