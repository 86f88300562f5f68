"""WebSocket signaling client.

Sends protocol messages to the signaling server and dispatches parsed server
messages to registered handlers, one at a time and in arrival order. On an
unexpected close it reconnects with exponential backoff; once the attempts
are exhausted it stays disconnected.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from pydantic import BaseModel
from websockets.asyncio.client import ClientConnection

from src.signaling.errors import ProtocolError
from src.signaling.transport.websocket_protocol import (
    AnswerMessage,
    IceCandidateMessage,
    JoinMessage,
    LeaveMessage,
    OfferMessage,
    UpdateDisplayNameMessage,
    encode_message,
    parse_server_message,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None]]
ConnectionStateHandler = Callable[[bool], None]

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BASE_DELAY_S = 1.0
RECONNECT_MAX_DELAY_S = 10.0


def reconnect_delay(
    attempt: int,
    base_delay_s: float = RECONNECT_BASE_DELAY_S,
    max_delay_s: float = RECONNECT_MAX_DELAY_S,
) -> float:
    """Backoff before reconnect attempt ``attempt`` (0-based)."""
    return float(min(base_delay_s * 2**attempt, max_delay_s))


class SignalingClient:
    """Client side of the signaling protocol."""

    def __init__(
        self,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        base_delay_s: float = RECONNECT_BASE_DELAY_S,
        max_delay_s: float = RECONNECT_MAX_DELAY_S,
    ) -> None:
        """Initialize signaling client.

        Args:
            max_reconnect_attempts: Reconnect attempts after an unexpected close
            base_delay_s: First backoff delay
            max_delay_s: Backoff ceiling
        """
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s

        self._url: str | None = None
        self._websocket: ClientConnection | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._connected = False
        self._closing = False

        self._message_handlers: list[MessageHandler] = []
        self._state_handlers: list[ConnectionStateHandler] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_message(self, handler: MessageHandler) -> None:
        """Register an async handler for parsed server messages."""
        self._message_handlers.append(handler)

    def on_connection_state_change(self, handler: ConnectionStateHandler) -> None:
        self._state_handlers.append(handler)

    async def connect(self, url: str) -> None:
        """Connect to the signaling server and start reading.

        Raises:
            OSError: If the server is unreachable
            websockets.exceptions.InvalidHandshake: If the upgrade is refused
        """
        if self._run_task is not None and not self._run_task.done():
            raise RuntimeError("Signaling client is already connected")

        self._url = url
        self._closing = False
        self._websocket = await websockets.connect(url)
        self._set_connected(True)

        logger.info("Connected to signaling server", extra={"url": url})
        self._run_task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True

        if self._websocket is not None:
            await self._websocket.close()

        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None

        self._websocket = None
        self._set_connected(False)
        logger.info("Disconnected from signaling server")

    # ===== Outbound =====

    async def join_room(self, room_id: str, display_name: str | None = None) -> None:
        await self._send(JoinMessage(room_id=room_id, display_name=display_name))

    async def send_offer(self, to: str, from_: str, sdp: str) -> None:
        await self._send(OfferMessage(to=to, from_=from_, sdp=sdp))

    async def send_answer(self, to: str, from_: str, sdp: str) -> None:
        await self._send(AnswerMessage(to=to, from_=from_, sdp=sdp))

    async def send_ice_candidate(self, to: str, from_: str, candidate: dict[str, Any]) -> None:
        await self._send(IceCandidateMessage(to=to, from_=from_, candidate=candidate))

    async def leave_room(self, participant_id: str) -> None:
        await self._send(LeaveMessage(from_=participant_id))

    async def update_display_name(self, participant_id: str, display_name: str) -> None:
        await self._send(UpdateDisplayNameMessage(from_=participant_id, display_name=display_name))

    async def _send(self, message: BaseModel) -> None:
        websocket = self._websocket
        if websocket is None or not self._connected:
            logger.warning(
                "Not connected, dropping message",
                extra={"message_type": getattr(message, "type", None)},
            )
            return

        try:
            await websocket.send(encode_message(message))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(
                "Failed to send message, connection closed",
                extra={"message_type": getattr(message, "type", None), "error": str(e)},
            )

    # ===== Inbound =====

    async def _run(self) -> None:
        while True:
            websocket = self._websocket
            if websocket is not None:
                await self._read(websocket)

            self._set_connected(False)
            if self._closing:
                return

            logger.warning("Lost connection to signaling server")
            if not await self._reconnect():
                logger.error(
                    "Giving up on signaling server",
                    extra={"attempts": self._max_reconnect_attempts},
                )
                return

    async def _read(self, websocket: ClientConnection) -> None:
        try:
            async for raw in websocket:
                try:
                    message = parse_server_message(raw)
                except ProtocolError as e:
                    logger.warning(
                        "Ignoring invalid server message",
                        extra={"error_code": e.code.value, "error": e.message},
                    )
                    continue

                await self._dispatch(message)
        except websockets.exceptions.ConnectionClosed:
            pass

    async def _dispatch(self, message: Any) -> None:
        for handler in list(self._message_handlers):
            try:
                await handler(message)
            except Exception as e:
                logger.error(
                    "Message handler failed",
                    extra={"message_type": message.type, "error": str(e)},
                    exc_info=True,
                )

    async def _reconnect(self) -> bool:
        assert self._url is not None

        for attempt in range(self._max_reconnect_attempts):
            delay = reconnect_delay(attempt, self._base_delay_s, self._max_delay_s)
            logger.info(
                "Reconnecting to signaling server",
                extra={"attempt": attempt + 1, "delay_s": delay},
            )
            await asyncio.sleep(delay)

            if self._closing:
                return False

            try:
                self._websocket = await websockets.connect(self._url)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning(
                    "Reconnect attempt failed",
                    extra={"attempt": attempt + 1, "error": str(e)},
                )
                continue

            self._set_connected(True)
            logger.info("Reconnected to signaling server", extra={"attempt": attempt + 1})
            return True

        self._websocket = None
        return False

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return

        self._connected = connected
        for handler in list(self._state_handlers):
            handler(connected)
