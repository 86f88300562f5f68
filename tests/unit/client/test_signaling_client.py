"""Unit tests for SignalingClient with a patched websockets.connect."""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import websockets

from src.client.signaling_client import SignalingClient, reconnect_delay
from src.signaling.transport.websocket_protocol import JoinedMessage
from tests.helpers.rtc_fakes import settle

URL = "ws://signaling.test:8081"


class FakeClientWebSocket:
    """Client connection double fed through a queue; None ends the stream."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()

    def push(self, frame: str | None) -> None:
        self._inbound.put_nowait(frame)

    async def send(self, data: str) -> None:
        if self.closed:
            raise websockets.exceptions.ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self.push(None)

    def __aiter__(self) -> "FakeClientWebSocket":
        return self

    async def __anext__(self) -> str:
        frame = await self._inbound.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


def test_reconnect_delay_backoff() -> None:
    assert [reconnect_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert reconnect_delay(3, base_delay_s=0.5, max_delay_s=30.0) == 4.0


class TestSending:
    """Test outbound message encoding."""

    @pytest.mark.asyncio
    async def test_messages_use_wire_names(self) -> None:
        ws = FakeClientWebSocket()
        client = SignalingClient()

        with patch.object(websockets, "connect", AsyncMock(return_value=ws)):
            await client.connect(URL)

        await client.join_room("R1", "Al")
        await client.send_offer("b", "a", "v=0 offer")
        await client.send_answer("b", "a", "v=0 answer")
        await client.send_ice_candidate("b", "a", {"candidate": "candidate:1", "sdpMid": "0"})
        await client.update_display_name("a", "Ann")
        await client.leave_room("a")

        assert ws.sent == [
            {"type": "join", "roomId": "R1", "displayName": "Al"},
            {"type": "offer", "to": "b", "from": "a", "sdp": "v=0 offer"},
            {"type": "answer", "to": "b", "from": "a", "sdp": "v=0 answer"},
            {
                "type": "ice-candidate",
                "to": "b",
                "from": "a",
                "candidate": {"candidate": "candidate:1", "sdpMid": "0"},
            },
            {"type": "update-display-name", "from": "a", "displayName": "Ann"},
            {"type": "leave", "from": "a"},
        ]

        await client.disconnect()

    @pytest.mark.asyncio
    async def test_send_while_disconnected_is_dropped(self) -> None:
        client = SignalingClient()
        await client.join_room("R1")
        assert client.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self) -> None:
        client = SignalingClient()

        with patch.object(websockets, "connect", AsyncMock(return_value=FakeClientWebSocket())):
            await client.connect(URL)
            with pytest.raises(RuntimeError, match="already connected"):
                await client.connect(URL)

        await client.disconnect()


class TestReceiving:
    """Test inbound dispatch."""

    @pytest.mark.asyncio
    async def test_handlers_receive_parsed_messages_in_order(self) -> None:
        ws = FakeClientWebSocket()
        client = SignalingClient()
        received: list[Any] = []

        async def failing(message: Any) -> None:
            raise RuntimeError("handler bug")

        async def recording(message: Any) -> None:
            received.append(message)

        client.on_message(failing)
        client.on_message(recording)

        with patch.object(websockets, "connect", AsyncMock(return_value=ws)):
            await client.connect(URL)

        ws.push("not json")
        ws.push(json.dumps({"type": "joined", "youId": "me", "participants": []}))
        ws.push(json.dumps({"type": "participant-left", "id": "x"}))
        await settle()

        assert [m.type for m in received] == ["joined", "participant-left"]
        assert isinstance(received[0], JoinedMessage)

        await client.disconnect()


class TestReconnect:
    """Test reconnection after an unexpected close."""

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self) -> None:
        first, second = FakeClientWebSocket(), FakeClientWebSocket()
        client = SignalingClient(max_reconnect_attempts=3, base_delay_s=0, max_delay_s=0)
        states: list[bool] = []
        client.on_connection_state_change(states.append)
        connect = AsyncMock(side_effect=[first, second])

        with patch.object(websockets, "connect", connect):
            await client.connect(URL)
            first.push(None)
            await settle(10)

        assert states == [True, False, True]
        assert connect.await_count == 2
        assert client.is_connected

        await client.join_room("R1")
        assert second.sent == [{"type": "join", "roomId": "R1"}]

        await client.disconnect()
        assert states[-1] is False

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        first = FakeClientWebSocket()
        client = SignalingClient(max_reconnect_attempts=2, base_delay_s=0, max_delay_s=0)
        states: list[bool] = []
        client.on_connection_state_change(states.append)
        connect = AsyncMock(side_effect=[first, OSError("refused"), OSError("refused")])

        with patch.object(websockets, "connect", connect):
            await client.connect(URL)
            first.push(None)
            await settle(10)

        assert states == [True, False]
        assert connect.await_count == 3
        assert not client.is_connected

        await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_does_not_reconnect(self) -> None:
        ws = FakeClientWebSocket()
        client = SignalingClient(base_delay_s=0, max_delay_s=0)
        connect = AsyncMock(return_value=ws)

        with patch.object(websockets, "connect", connect):
            await client.connect(URL)
            await client.disconnect()
            await settle()

        assert connect.await_count == 1
        assert ws.closed
        assert not client.is_connected
