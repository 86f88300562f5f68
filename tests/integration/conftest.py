"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Free port allocation
- Signaling server (ConnectionGateway) lifecycle on a real socket
- Raw WebSocket protocol clients
- JSON receive helpers with timeouts
"""

import asyncio
import json
import logging
import socket
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest_asyncio
import websockets
from websockets.asyncio.client import ClientConnection

from src.signaling.controller import SignalingController
from src.signaling.metrics import MetricsCollector
from src.signaling.store import RoomStore
from src.signaling.transport.gateway import ConnectionGateway
from src.signaling.transport.websocket_protocol import IceServer

logger = logging.getLogger(__name__)

RECV_TIMEOUT_S = 5.0


# ============================================================================
# Utility Functions for Port Allocation
# ============================================================================


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Returns:
        Available port number

    Notes:
        Uses ephemeral port allocation (port=0) to avoid conflicts.
        The port is freed immediately after discovery, so there's a small
        race condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


# ============================================================================
# Signaling Server Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def signaling_server() -> AsyncIterator[ConnectionGateway]:
    """Start a signaling gateway on an ephemeral localhost port."""
    controller = SignalingController(
        RoomStore(),
        ice_servers=[IceServer(urls="stun:stun.example.org:3478")],
        metrics=MetricsCollector(),
    )
    gateway = ConnectionGateway(controller, host="127.0.0.1", port=0, metrics=MetricsCollector())
    await gateway.start()
    logger.info(f"Signaling server started on port {gateway.port}")

    yield gateway

    await gateway.stop()


@pytest_asyncio.fixture
async def connect(
    signaling_server: ConnectionGateway,
) -> AsyncIterator[Callable[[], Awaitable[ClientConnection]]]:
    """Factory fixture opening raw protocol clients; all are closed at teardown."""
    clients: list[ClientConnection] = []

    async def _connect() -> ClientConnection:
        ws = await websockets.connect(f"ws://127.0.0.1:{signaling_server.port}")
        clients.append(ws)
        return ws

    yield _connect

    for ws in clients:
        await ws.close()


# ============================================================================
# Protocol Helpers
# ============================================================================


async def send_json(ws: ClientConnection, payload: dict[str, Any]) -> None:
    await ws.send(json.dumps(payload))


async def recv_json(ws: ClientConnection, timeout_s: float = RECV_TIMEOUT_S) -> dict[str, Any]:
    """Receive one JSON frame or fail after ``timeout_s``."""
    raw = await asyncio.wait_for(ws.recv(), timeout_s)
    data: dict[str, Any] = json.loads(raw)
    return data


async def recv_type(
    ws: ClientConnection, message_type: str, timeout_s: float = RECV_TIMEOUT_S
) -> dict[str, Any]:
    """Receive frames until one of ``message_type`` arrives."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while True:
        message = await recv_json(ws, max(deadline - loop.time(), 0.01))
        if message["type"] == message_type:
            return message
        logger.debug(f"Skipping {message['type']} while waiting for {message_type}")


async def assert_silent(ws: ClientConnection, timeout_s: float = 0.2) -> None:
    """Assert no frame arrives within ``timeout_s``."""
    try:
        raw = await asyncio.wait_for(ws.recv(), timeout_s)
    except asyncio.TimeoutError:
        return
    raise AssertionError(f"Unexpected frame: {raw}")


async def join(
    ws: ClientConnection, room_id: str, display_name: str | None = None
) -> dict[str, Any]:
    """Send join and return the ``joined`` (or ``error``) reply."""
    payload: dict[str, Any] = {"type": "join", "roomId": room_id}
    if display_name is not None:
        payload["displayName"] = display_name
    await send_json(ws, payload)
    return await recv_json(ws)
