"""Client-side room orchestration.

Wires the SignalingClient to the PeerNegotiationEngine and the local audio
track, and exposes the room state consumed by user interfaces:
``join_room``, ``leave_room``, ``toggle_mute``, ``switch_input_device``,
``get_room_state`` and ``on_state_change``.

Mesh formation: the newcomer offers to every existing participant listed in
``joined``; existing participants never offer to a newcomer, they answer.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from src.client.audio_level import LEVEL_CHANGE_THRESHOLD
from src.client.negotiation import PeerConnection, PeerNegotiationEngine
from src.client.rtc_adapter import AiortcPeerConnection, LocalAudioTrack
from src.client.signaling_client import SignalingClient
from src.signaling.transport.websocket_protocol import (
    AnswerMessage,
    DisplayNameUpdatedMessage,
    ErrorMessage,
    IceCandidateMessage,
    IceServer,
    JoinedMessage,
    OfferMessage,
    ParticipantJoinedMessage,
    ParticipantLeftMessage,
)

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, list[IceServer]], PeerConnection]
StateCallback = Callable[["RoomState"], None]

LEVEL_POLL_INTERVAL_S = 0.1


@dataclass(frozen=True)
class ParticipantView:
    """Participant as seen by the local client."""

    id: str
    display_name: str | None = None
    is_local: bool = False

    def display_label(self) -> str:
        if self.is_local:
            return f"{self.display_name} (You)" if self.display_name else "You"
        return self.display_name or f"User {self.id[:6]}"


@dataclass(frozen=True)
class RoomState:
    """Snapshot of the local client's room."""

    room_id: str = ""
    local_participant_id: str = ""
    participants: list[ParticipantView] = field(default_factory=list)
    is_connected: bool = False
    is_muted: bool = False
    local_audio_level: float = 0.0
    last_error: str | None = None


def _default_connection_factory(peer_id: str, ice_servers: list[IceServer]) -> PeerConnection:
    return AiortcPeerConnection(ice_servers)


class RoomManager:
    """Joins a room and maintains one peer connection per remote participant."""

    def __init__(
        self,
        signaling: SignalingClient,
        server_url: str,
        connection_factory: ConnectionFactory | None = None,
        local_track: LocalAudioTrack | None = None,
    ) -> None:
        """Initialize room manager.

        Args:
            signaling: Signaling client (connected lazily by ``join_room``)
            server_url: Signaling server WebSocket URL
            connection_factory: Builds a PeerConnection for (peer_id, ice_servers)
            local_track: Outgoing audio track (silence when omitted)
        """
        self._signaling = signaling
        self._server_url = server_url
        self._connection_factory = connection_factory or _default_connection_factory
        self._local_track = local_track
        self._relay = MediaRelay()

        self._engine = PeerNegotiationEngine(
            self._create_connection, on_peer_state_change=self._on_peer_state_change
        )

        self._pending_room_id: str | None = None
        self._display_name: str | None = None
        self._room_id: str | None = None
        self._local_id: str | None = None
        self._participants: dict[str, ParticipantView] = {}
        self._ice_servers: list[IceServer] = []
        self._remote_tracks: dict[str, MediaStreamTrack] = {}
        self._is_muted = False
        self._last_error: str | None = None
        self._notified_level = 0.0

        self._joined = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._level_task: asyncio.Task[None] | None = None
        self._callbacks: list[StateCallback] = []

        signaling.on_message(self._handle_message)
        signaling.on_connection_state_change(self._on_signaling_state_change)

    @property
    def engine(self) -> PeerNegotiationEngine:
        return self._engine

    @property
    def local_track(self) -> LocalAudioTrack | None:
        return self._local_track

    # ===== Collaborator interface =====

    async def join_room(self, room_id: str, display_name: str | None = None) -> None:
        """Connect to signaling (if needed) and request to join ``room_id``.

        Confirmation arrives asynchronously; see ``wait_joined``.

        Raises:
            RuntimeError: If already in a room
        """
        if self._room_id is not None:
            raise RuntimeError(f"Already in room {self._room_id}")

        if self._local_track is None:
            self._local_track = LocalAudioTrack()

        self._pending_room_id = room_id
        self._display_name = display_name
        self._last_error = None
        self._joined.clear()

        if not self._signaling.is_connected:
            await self._signaling.connect(self._server_url)

        await self._signaling.join_room(room_id, display_name)
        logger.info("Joining room", extra={"room_id": room_id})

    async def wait_joined(self, timeout: float | None = None) -> None:
        """Wait for the server's ``joined`` confirmation.

        Raises:
            asyncio.TimeoutError: If not joined within ``timeout``
        """
        await asyncio.wait_for(self._joined.wait(), timeout)

    async def leave_room(self) -> None:
        """Leave the room, close every peer connection and disconnect."""
        if self._local_id is not None:
            await self._signaling.leave_room(self._local_id)

        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._stop_level_polling()

        await self._engine.close_all()

        if self._local_track is not None:
            self._local_track.stop()
            self._local_track = None

        await self._signaling.disconnect()

        room_id = self._room_id
        self._reset_room()
        self._pending_room_id = None

        logger.info("Left room", extra={"room_id": room_id})
        self._notify_state_change()

    def toggle_mute(self) -> bool:
        """Flip local mute. Returns the new muted state."""
        if self._local_track is None:
            return self._is_muted

        self._is_muted = not self._is_muted
        self._local_track.muted = self._is_muted

        logger.info("Audio muted" if self._is_muted else "Audio unmuted")
        self._notify_state_change()
        return self._is_muted

    def switch_input_device(self, source: MediaStreamTrack) -> None:
        """Feed the outgoing track from a different capture source.

        Peers keep their negotiated senders; no renegotiation happens.
        """
        if self._local_track is None:
            self._local_track = LocalAudioTrack(source)
        else:
            self._local_track.replace_source(source)
        logger.info("Input device switched")

    async def update_display_name(self, display_name: str) -> None:
        if self._local_id is None:
            raise RuntimeError("Not in a room")
        await self._signaling.update_display_name(self._local_id, display_name)

    def get_room_state(self) -> RoomState:
        return RoomState(
            room_id=self._room_id or "",
            local_participant_id=self._local_id or "",
            participants=list(self._participants.values()),
            is_connected=self._room_id is not None and self._signaling.is_connected,
            is_muted=self._is_muted,
            local_audio_level=self._local_track.level if self._local_track else 0.0,
            last_error=self._last_error,
        )

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Subscribe to state changes. Returns an unsubscribe callable."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def get_remote_track(self, participant_id: str) -> MediaStreamTrack | None:
        return self._remote_tracks.get(participant_id)

    # ===== Signaling message handling =====

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, JoinedMessage):
            await self._handle_joined(message)
        elif isinstance(message, ParticipantJoinedMessage):
            self._handle_participant_joined(message)
        elif isinstance(message, ParticipantLeftMessage):
            await self._handle_participant_left(message)
        elif isinstance(message, OfferMessage):
            await self._handle_offer(message)
        elif isinstance(message, AnswerMessage):
            await self._handle_answer(message)
        elif isinstance(message, IceCandidateMessage):
            await self._engine.handle_incoming_ice_candidate(message.from_, message.candidate)
        elif isinstance(message, DisplayNameUpdatedMessage):
            self._handle_display_name_updated(message)
        elif isinstance(message, ErrorMessage):
            logger.error(
                "Server error",
                extra={"error_code": message.code, "error": message.message},
            )
            self._last_error = message.message
            self._notify_state_change()

    async def _handle_joined(self, message: JoinedMessage) -> None:
        self._room_id = self._pending_room_id or ""
        self._local_id = message.you_id
        self._engine.local_id = message.you_id
        self._ice_servers = list(message.ice_servers)

        self._participants = {
            message.you_id: ParticipantView(message.you_id, self._display_name, is_local=True)
        }
        for info in message.participants:
            self._participants[info.id] = ParticipantView(info.id, info.display_name)

        logger.info(
            "Joined room",
            extra={
                "room_id": self._room_id,
                "participant_id": message.you_id,
                "existing": len(message.participants),
            },
        )

        self._joined.set()
        self._start_level_polling()
        self._notify_state_change()

        # Newcomer offers to everyone already present
        for info in message.participants:
            self._spawn(self._offer_to(info.id))

    def _handle_participant_joined(self, message: ParticipantJoinedMessage) -> None:
        if self._room_id is None:
            return

        participant = message.participant
        self._participants[participant.id] = ParticipantView(participant.id, participant.display_name)
        logger.info("Participant joined", extra={"participant_id": participant.id})
        self._notify_state_change()

    async def _handle_participant_left(self, message: ParticipantLeftMessage) -> None:
        if self._room_id is None:
            return

        self._participants.pop(message.id, None)
        self._remote_tracks.pop(message.id, None)
        await self._engine.close(message.id)

        logger.info("Participant left", extra={"participant_id": message.id})
        self._notify_state_change()

    async def _handle_offer(self, message: OfferMessage) -> None:
        if self._room_id is None or self._local_id is None:
            return

        try:
            answer = await self._engine.handle_incoming_offer(message.from_, message.sdp)
        except Exception as e:
            logger.error(
                "Error handling offer",
                extra={"peer_id": message.from_, "error": str(e)},
                exc_info=True,
            )
            return

        if answer is not None:
            await self._signaling.send_answer(message.from_, self._local_id, answer.sdp)

    async def _handle_answer(self, message: AnswerMessage) -> None:
        try:
            await self._engine.handle_incoming_answer(message.from_, message.sdp)
        except Exception as e:
            logger.error(
                "Error handling answer",
                extra={"peer_id": message.from_, "error": str(e)},
                exc_info=True,
            )

    def _handle_display_name_updated(self, message: DisplayNameUpdatedMessage) -> None:
        current = self._participants.get(message.participant_id)
        if current is None:
            return

        self._participants[message.participant_id] = ParticipantView(
            current.id, message.display_name, current.is_local
        )
        if current.is_local:
            self._display_name = message.display_name
        self._notify_state_change()

    # ===== Peer connections =====

    def _create_connection(self, peer_id: str) -> PeerConnection:
        connection = self._connection_factory(peer_id, self._ice_servers)

        if self._local_track is not None:
            connection.add_track(self._relay.subscribe(self._local_track, buffered=False))

        connection.on_ice_candidate(
            lambda candidate: self._on_local_candidate(peer_id, candidate)
        )
        connection.on_track(lambda track: self._on_remote_track(peer_id, track))
        return connection

    async def _offer_to(self, peer_id: str) -> None:
        try:
            offer = await self._engine.create_offer(peer_id)
        except Exception as e:
            logger.error(
                "Error creating offer",
                extra={"peer_id": peer_id, "error": str(e)},
                exc_info=True,
            )
            return

        if offer is not None and self._local_id is not None:
            await self._signaling.send_offer(peer_id, self._local_id, offer.sdp)

    def _on_local_candidate(self, peer_id: str, candidate: dict[str, Any] | None) -> None:
        if candidate is None or self._local_id is None:
            return
        self._spawn(self._signaling.send_ice_candidate(peer_id, self._local_id, candidate))

    def _on_remote_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        logger.info("Received remote track", extra={"peer_id": peer_id, "kind": track.kind})
        self._remote_tracks[peer_id] = track
        self._notify_state_change()

    def _on_peer_state_change(self, peer_id: str, state: str) -> None:
        logger.info("Peer connection state", extra={"peer_id": peer_id, "state": state})
        if state in ("failed", "closed"):
            self._remote_tracks.pop(peer_id, None)

    # ===== Signaling connection =====

    def _on_signaling_state_change(self, connected: bool) -> None:
        if not connected:
            if self._room_id is not None:
                logger.warning("Lost connection to signaling server")
            self._notify_state_change()
            return

        # The server assigned a new identity; rejoin under it
        if self._room_id is not None:
            self._spawn(self._rejoin())

    async def _rejoin(self) -> None:
        room_id = self._room_id
        if room_id is None:
            return

        logger.info("Rejoining room after reconnect", extra={"room_id": room_id})
        await self._engine.close_all()
        self._remote_tracks.clear()
        self._reset_room()
        self._pending_room_id = room_id
        self._joined.clear()
        await self._signaling.join_room(room_id, self._display_name)

    # ===== Helpers =====

    def _reset_room(self) -> None:
        self._room_id = None
        self._local_id = None
        self._engine.local_id = None
        self._participants = {}
        self._ice_servers = []
        self._remote_tracks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _start_level_polling(self) -> None:
        if self._level_task is None or self._level_task.done():
            self._level_task = asyncio.create_task(self._poll_audio_level())

    async def _stop_level_polling(self) -> None:
        if self._level_task is None:
            return
        self._level_task.cancel()
        try:
            await self._level_task
        except asyncio.CancelledError:
            pass
        self._level_task = None

    async def _poll_audio_level(self) -> None:
        while True:
            await asyncio.sleep(LEVEL_POLL_INTERVAL_S)
            if self._local_track is None:
                continue
            level = self._local_track.level
            if abs(level - self._notified_level) > LEVEL_CHANGE_THRESHOLD:
                self._notified_level = level
                self._notify_state_change()

    def _notify_state_change(self) -> None:
        state = self.get_room_state()
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.error("State callback failed", extra={"error": str(e)}, exc_info=True)
