"""In-memory room store.

The single authority over room existence. All operations are synchronous and
serialized through one re-entrant lock; callers that need a multi-step
atomic section (check capacity, snapshot, insert) hold ``locked()`` around it.

Thread-safety: All public methods are thread-safe via mutex.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from src.signaling.room import ROOM_CAPACITY, Room

logger = logging.getLogger(__name__)


class RoomStore:
    """Keyed lookup, creation and deletion of rooms."""

    def __init__(self, max_participants: int = ROOM_CAPACITY) -> None:
        """Initialize room store.

        Args:
            max_participants: Capacity applied to rooms created by this store
        """
        self._lock = threading.RLock()
        self._rooms: dict[str, Room] = {}
        self._max_participants = max_participants

    @contextmanager
    def locked(self) -> Iterator["RoomStore"]:
        """Hold the store lock for a compound operation."""
        with self._lock:
            yield self

    def create_room(self, room_id: str) -> Room:
        """Get-or-create. Never raises for an existing id."""
        with self._lock:
            room = self._rooms.get(room_id)
            if room is not None:
                return room

            room = Room(room_id, max_participants=self._max_participants)
            self._rooms[room_id] = room
            logger.info("Room created", extra={"room_id": room_id})
            return room

    def find_room(self, room_id: str) -> Room | None:
        with self._lock:
            return self._rooms.get(room_id)

    def delete_room(self, room_id: str) -> None:
        """Delete a room. No-op if absent."""
        with self._lock:
            if self._rooms.pop(room_id, None) is not None:
                logger.info("Room deleted", extra={"room_id": room_id})

    def room_exists(self, room_id: str) -> bool:
        with self._lock:
            return room_id in self._rooms

    def list_room_ids(self) -> set[str]:
        with self._lock:
            return set(self._rooms)

    def count(self) -> int:
        with self._lock:
            return len(self._rooms)

    def snapshot(self) -> list[tuple[str, int]]:
        """(room_id, participant_count) pairs for monitoring."""
        with self._lock:
            return [(room_id, len(room)) for room_id, room in self._rooms.items()]

    def clear(self) -> None:
        with self._lock:
            self._rooms.clear()
