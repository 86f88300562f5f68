"""Signaling controller: protocol dispatch for room membership and relay.

Maps ``(sender connection id, inbound message, sender's current room)`` to a
list of outbound ``(recipient id, message)`` pairs. The controller never
touches sockets; the gateway delivers what it returns.

Every validation failure produces exactly one ``error`` reply to the sender
and leaves room state unchanged.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from src.signaling.errors import SignalingErrorCode, default_message
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.operations import JoinRoom, LeaveRoom, RelaySignal, UpdateDisplayName
from src.signaling.room import Participant
from src.signaling.store import RoomStore
from src.signaling.transport.websocket_protocol import (
    RELAYABLE_TYPES,
    DisplayNameUpdatedMessage,
    ErrorMessage,
    IceServer,
    JoinedMessage,
    JoinMessage,
    LeaveMessage,
    ParticipantInfo,
    ParticipantJoinedMessage,
    ParticipantLeftMessage,
    UpdateDisplayNameMessage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outbound:
    """One message addressed to one connection."""

    recipient_id: str
    message: BaseModel


@dataclass
class Dispatch:
    """Outcome of handling one inbound message.

    ``room_id`` is the sender's room association after handling; the gateway
    stores it on the connection record.
    """

    outbound: list[Outbound] = field(default_factory=list)
    room_id: str | None = None


def error_message(code: SignalingErrorCode, message: str | None = None) -> ErrorMessage:
    """Build the wire ``error`` reply for a taxonomy code."""
    return ErrorMessage(message=message or default_message(code), code=code.value)


def participant_info(participant: Participant) -> ParticipantInfo:
    return ParticipantInfo(id=participant.id, display_name=participant.display_name)


class SignalingController:
    """Dispatches client messages to room operations.

    Stateless apart from the shared RoomStore.
    """

    def __init__(
        self,
        store: RoomStore,
        ice_servers: list[IceServer] | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize controller.

        Args:
            store: Shared room store
            ice_servers: STUN/TURN entries handed to clients in ``joined``
            metrics: Metrics collector (defaults to the process singleton)
        """
        self._store = store
        self._ice_servers = list(ice_servers or [])
        self._metrics = metrics or get_metrics_collector()

        self._join = JoinRoom(store)
        self._leave = LeaveRoom(store)
        self._relay = RelaySignal(store)
        self._rename = UpdateDisplayName(store)

    @property
    def store(self) -> RoomStore:
        return self._store

    @property
    def ice_servers(self) -> list[IceServer]:
        return list(self._ice_servers)

    def handle_message(self, client_id: str, message: Any, room_id: str | None) -> Dispatch:
        """Handle one parsed client message.

        Args:
            client_id: Sender's connection (and participant) id
            message: Parsed client message model
            room_id: Room the sender is currently associated with, if any

        Returns:
            Dispatch with messages to deliver and the sender's room association
        """
        message_type = getattr(message, "type", None)

        if isinstance(message, JoinMessage):
            return self._handle_join(client_id, message, room_id)

        if message_type in RELAYABLE_TYPES:
            return self._handle_relay(client_id, message, room_id)

        if isinstance(message, UpdateDisplayNameMessage):
            return self._handle_update_display_name(client_id, message, room_id)

        if isinstance(message, LeaveMessage):
            return self._handle_leave(client_id, room_id)

        logger.warning(
            "Unknown message type",
            extra={"connection_id": client_id, "message_type": message_type},
        )
        return self._reject(client_id, room_id, SignalingErrorCode.UNKNOWN_MESSAGE_TYPE)

    def handle_disconnect(self, client_id: str, room_id: str | None) -> list[Outbound]:
        """Run leave cleanup for a connection that went away.

        Args:
            client_id: Departed connection id
            room_id: Last room the connection joined, if any

        Returns:
            ``participant-left`` notices for the remaining members
        """
        if room_id is None:
            return []

        result = self._leave.execute(room_id, client_id)
        if not result.success:
            logger.warning(
                "Leave cleanup failed",
                extra={
                    "connection_id": client_id,
                    "room_id": room_id,
                    "error_code": result.error.value if result.error else None,
                },
            )
            return []

        self._metrics.record_leave()
        self._metrics.set_rooms_active(self._store.count())

        logger.info(
            "Participant left room",
            extra={
                "participant_id": client_id,
                "room_id": room_id,
                "remaining": len(result.remaining_participants),
                "room_deleted": result.room_deleted,
            },
        )

        notice = ParticipantLeftMessage(id=client_id)
        return [Outbound(p.id, notice) for p in result.remaining_participants]

    # ===== Handlers =====

    def _handle_join(self, client_id: str, message: JoinMessage, room_id: str | None) -> Dispatch:
        if room_id is not None:
            return self._reject(client_id, room_id, SignalingErrorCode.ALREADY_IN_ROOM)

        result = self._join.execute(message.room_id, client_id, message.display_name)
        if not result.success:
            assert result.error is not None
            return self._reject(client_id, None, result.error, result.error_message)

        self._metrics.record_join()
        self._metrics.set_rooms_active(self._store.count())

        logger.info(
            "Participant joined room",
            extra={
                "participant_id": client_id,
                "room_id": message.room_id,
                "existing": len(result.existing_participants),
            },
        )

        assert result.room is not None
        newcomer = result.room.get_participant(client_id)
        assert newcomer is not None

        joined = JoinedMessage(
            you_id=client_id,
            participants=[participant_info(p) for p in result.existing_participants],
            ice_servers=self._ice_servers,
        )
        notice = ParticipantJoinedMessage(participant=participant_info(newcomer))

        outbound = [Outbound(client_id, joined)]
        outbound.extend(Outbound(p.id, notice) for p in result.existing_participants)
        return Dispatch(outbound=outbound, room_id=message.room_id)

    def _handle_relay(self, client_id: str, message: Any, room_id: str | None) -> Dispatch:
        if room_id is None:
            return self._reject(client_id, None, SignalingErrorCode.NOT_IN_ROOM)
        if message.from_ != client_id:
            return self._reject(client_id, room_id, SignalingErrorCode.SENDER_NOT_IN_ROOM)

        result = self._relay.execute(room_id, message)
        if not result.success:
            assert result.error is not None
            return self._reject(client_id, room_id, result.error, result.error_message)

        self._metrics.record_relay(message.type)

        logger.debug(
            "Relaying message",
            extra={
                "message_type": message.type,
                "room_id": room_id,
                "from": message.from_,
                "to": result.recipient_id,
            },
        )
        return Dispatch(outbound=[Outbound(result.recipient_id, result.message)], room_id=room_id)

    def _handle_update_display_name(
        self, client_id: str, message: UpdateDisplayNameMessage, room_id: str | None
    ) -> Dispatch:
        if room_id is None:
            return self._reject(client_id, None, SignalingErrorCode.NOT_IN_ROOM)
        # A connection may only speak for itself
        if message.from_ != client_id:
            return self._reject(client_id, room_id, SignalingErrorCode.SENDER_NOT_IN_ROOM)

        result = self._rename.execute(room_id, message.from_, message.display_name)
        if not result.success:
            assert result.error is not None
            return self._reject(client_id, room_id, result.error, result.error_message)

        logger.info(
            "Display name updated",
            extra={"participant_id": message.from_, "room_id": room_id},
        )

        room = self._store.find_room(room_id)
        members = room.all_participants() if room is not None else []
        notice = DisplayNameUpdatedMessage(
            participant_id=result.participant_id,
            display_name=result.display_name,
        )
        return Dispatch(outbound=[Outbound(p.id, notice) for p in members], room_id=room_id)

    def _handle_leave(self, client_id: str, room_id: str | None) -> Dispatch:
        if room_id is None:
            return self._reject(client_id, None, SignalingErrorCode.NOT_IN_ROOM)

        # Association is cleared so the later transport close is a no-op
        return Dispatch(outbound=self.handle_disconnect(client_id, room_id), room_id=None)

    def _reject(
        self,
        client_id: str,
        room_id: str | None,
        code: SignalingErrorCode,
        message: str | None = None,
    ) -> Dispatch:
        self._metrics.record_error(code.value)
        logger.warning(
            "Rejected client message",
            extra={"connection_id": client_id, "room_id": room_id, "error_code": code.value},
        )
        return Dispatch(outbound=[Outbound(client_id, error_message(code, message))], room_id=room_id)
