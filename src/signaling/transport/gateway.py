"""WebSocket connection gateway.

Accepts signaling connections, assigns each a fresh identity, parses frames
into typed messages, hands them to the SignalingController and delivers the
resulting outbound messages. A background heartbeat task terminates
connections that stop answering pings.

Socket handles never leave this module: the ConnectionRegistry is the only
place that maps connection ids to websockets.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection

from src.signaling.controller import Outbound, SignalingController, error_message
from src.signaling.errors import ProtocolError, SignalingErrorCode
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.transport.websocket_protocol import encode_message, parse_client_message

logger = logging.getLogger(__name__)

# RFC 6455 close codes
CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


@dataclass
class ConnectionRecord:
    """Per-connection session record."""

    connection_id: str
    websocket: ServerConnection
    room_id: str | None = None
    is_alive: bool = True


class ConnectionRegistry:
    """Connection id -> ConnectionRecord, guarded by one asyncio.Lock.

    The lock covers registry mutation and snapshots only; it is never held
    while sending.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, ConnectionRecord] = {}

    async def add(self, record: ConnectionRecord) -> None:
        async with self._lock:
            self._records[record.connection_id] = record

    async def remove(self, connection_id: str) -> ConnectionRecord | None:
        """Remove a record. Returns None if it was already gone."""
        async with self._lock:
            return self._records.pop(connection_id, None)

    async def get(self, connection_id: str) -> ConnectionRecord | None:
        async with self._lock:
            return self._records.get(connection_id)

    async def set_room(self, connection_id: str, room_id: str | None) -> bool:
        """Record the room association. Returns False if the record is gone."""
        async with self._lock:
            record = self._records.get(connection_id)
            if record is None:
                return False
            record.room_id = room_id
            return True

    async def snapshot(self) -> list[ConnectionRecord]:
        async with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)


class ConnectionGateway:
    """WebSocket signaling server.

    Manages the server lifecycle, per-connection read loops and the
    heartbeat task.
    """

    def __init__(
        self,
        controller: SignalingController,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8081,
        max_connections: int = 500,
        max_message_size: int = 64 * 1024,
        heartbeat_interval_s: float = 30.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize gateway.

        Args:
            controller: Protocol dispatcher
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            max_message_size: Maximum inbound frame size in bytes
            heartbeat_interval_s: Seconds between liveness probes
            metrics: Metrics collector (defaults to the process singleton)
        """
        self._controller = controller
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_size = max_message_size
        self._heartbeat_interval_s = heartbeat_interval_s
        self._metrics = metrics or get_metrics_collector()

        self._registry = ConnectionRegistry()
        self._server: Any = None  # websockets.Server type
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._running = False

        logger.info(
            "Connection gateway initialized",
            extra={
                "host": host,
                "port": port,
                "max_connections": max_connections,
                "heartbeat_interval_s": heartbeat_interval_s,
            },
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        """Bound port (the configured one until the server has started)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    @property
    def connection_count(self) -> int:
        return len(self._registry)

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def controller(self) -> SignalingController:
        return self._controller

    async def start(self) -> None:
        """Start the WebSocket server and the heartbeat task.

        Raises:
            RuntimeError: If the gateway is already running
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("Connection gateway is already running")

        logger.info("Starting signaling server", extra={"host": self._host, "port": self._port})

        try:
            # Liveness is driven by our own heartbeat, not the library's keepalive
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_size,
                ping_interval=None,
            )
        except OSError as e:
            logger.error(
                "Failed to bind signaling server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise

        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        logger.info("Signaling server started", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        """Stop heartbeat, close all connections (1001) and the server."""
        if not self._running:
            return

        logger.info("Stopping signaling server")
        self._running = False

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        records = await self._registry.snapshot()
        await asyncio.gather(
            *(r.websocket.close(CLOSE_GOING_AWAY, "Server shutting down") for r in records),
            return_exceptions=True,
        )

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Signaling server stopped")

    # ===== Connection handling =====

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Serve one WebSocket connection until it closes.

        Args:
            websocket: WebSocket connection
        """
        if len(self._registry) >= self._max_connections:
            self._metrics.record_connection_rejected()
            logger.warning(
                "Connection limit reached, rejecting connection",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "Server at capacity")
            return

        connection_id = str(uuid.uuid4())
        record = ConnectionRecord(connection_id=connection_id, websocket=websocket)
        await self._registry.add(record)
        self._metrics.record_connection_open()

        logger.info(
            "Client connected",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

        try:
            async for raw in websocket:
                await self.handle_frame(record, raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        except Exception as e:
            logger.error(
                "Error in connection read loop",
                extra={"connection_id": connection_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            await self._cleanup(connection_id)

    async def handle_frame(self, record: ConnectionRecord, raw: str | bytes) -> None:
        """Parse and dispatch one inbound frame.

        Bad frames are answered with an ``error`` and never close the
        connection.

        Frames still queued after the connection was cleaned up are dropped.
        """
        if await self._registry.get(record.connection_id) is None:
            logger.debug(
                "Dropping frame for removed connection",
                extra={"connection_id": record.connection_id},
            )
            return

        start = time.perf_counter()

        try:
            message = parse_client_message(raw)
        except ProtocolError as e:
            self._metrics.record_error(e.code.value)
            logger.warning(
                "Rejected inbound frame",
                extra={"connection_id": record.connection_id, "error_code": e.code.value},
            )
            await self._send(record.connection_id, error_message(e.code, e.message))
            return

        try:
            dispatch = self._controller.handle_message(
                record.connection_id, message, record.room_id
            )
        except Exception as e:
            self._metrics.record_error(SignalingErrorCode.INTERNAL_ERROR.value)
            logger.error(
                "Error handling message",
                extra={
                    "connection_id": record.connection_id,
                    "message_type": message.type,
                    "error": str(e),
                },
                exc_info=True,
            )
            await self._send(
                record.connection_id, error_message(SignalingErrorCode.INTERNAL_ERROR)
            )
            return

        if not await self._registry.set_room(record.connection_id, dispatch.room_id):
            # Cleaned up while dispatching; undo the membership it just gained
            outbound = self._controller.handle_disconnect(record.connection_id, dispatch.room_id)
            await self._deliver(outbound)
            return

        await self._deliver(dispatch.outbound)

        self._metrics.observe_message_handling(time.perf_counter() - start)

    async def _deliver(self, outbound: list[Outbound]) -> None:
        """Send concurrently so one slow recipient does not stall the others."""
        results = await asyncio.gather(
            *(self._send(item.recipient_id, item.message) for item in outbound),
            return_exceptions=True,
        )
        for item, result in zip(outbound, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(
                    "Failed to deliver message",
                    extra={"connection_id": item.recipient_id, "error": str(result)},
                )

    async def _send(self, recipient_id: str, message: Any) -> None:
        """Fire-and-forget delivery; vanished recipients are a warning."""
        record = await self._registry.get(recipient_id)
        if record is None:
            logger.warning(
                "Recipient connection not found, dropping message",
                extra={"connection_id": recipient_id, "message_type": message.type},
            )
            return

        try:
            await record.websocket.send(encode_message(message))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(
                "Failed to deliver message, connection closed",
                extra={
                    "connection_id": recipient_id,
                    "message_type": message.type,
                    "error": str(e),
                },
            )

    async def _cleanup(self, connection_id: str) -> None:
        """Disconnect cleanup. Runs at most once per connection."""
        record = await self._registry.remove(connection_id)
        if record is None:
            return

        self._metrics.record_connection_closed()
        logger.info(
            "Client disconnected",
            extra={"connection_id": connection_id, "room_id": record.room_id},
        )

        outbound = self._controller.handle_disconnect(connection_id, record.room_id)
        await self._deliver(outbound)

    # ===== Heartbeat =====

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            try:
                await self.heartbeat_tick()
            except Exception as e:
                logger.error("Heartbeat tick failed", extra={"error": str(e)}, exc_info=True)

    async def heartbeat_tick(self) -> None:
        """One liveness round over a snapshot of current connections.

        Connections that did not answer the previous ping are terminated
        first; everyone else is marked pending and pinged concurrently.
        """
        records = await self._registry.snapshot()

        stale = [r for r in records if not r.is_alive]
        live = [r for r in records if r.is_alive]

        for record in stale:
            logger.info(
                "Terminating unresponsive connection",
                extra={"connection_id": record.connection_id, "room_id": record.room_id},
            )
            self._metrics.record_heartbeat_termination()
            record.websocket.transport.abort()
            await self._cleanup(record.connection_id)

        for record in live:
            record.is_alive = False

        await asyncio.gather(*(self._ping(r) for r in live), return_exceptions=True)

    async def _ping(self, record: ConnectionRecord) -> None:
        try:
            pong_waiter = await record.websocket.ping()
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Ping on closed connection", extra={"connection_id": record.connection_id})
            return

        def on_pong(future: "asyncio.Future[Any]") -> None:
            if not future.cancelled() and future.exception() is None:
                record.is_alive = True

        pong_waiter.add_done_callback(on_pong)
