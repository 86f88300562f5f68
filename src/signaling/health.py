"""Health check endpoints for the signaling server.

Provides HTTP health check endpoints for load balancers, monitoring systems,
and orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe),
plus Prometheus metrics and a room occupancy listing.
"""

import logging
import time
from typing import Any

from aiohttp import web

from src.signaling.metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the signaling server.

    Provides /health endpoint that checks:
    - Gateway is accepting connections
    - Current room and connection counts
    - Service uptime
    """

    def __init__(
        self,
        gateway: Any = None,
        store: Any = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            gateway: ConnectionGateway instance (optional)
            store: RoomStore instance (optional)
            metrics_collector: Metrics collector (defaults to the process singleton)
        """
        self.gateway = gateway
        self.store = store
        self.start_time = time.time()
        self.metrics_collector = metrics_collector or get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Gateway is running
            503 Service Unavailable: Gateway is stopped or missing

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "rooms": int,
            "connections": int
        }
        """
        gateway_ok = self.gateway is not None and bool(self.gateway.is_running)
        status_code = 200 if gateway_ok else 503

        response_data = {
            "status": "healthy" if gateway_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "rooms": self.store.count() if self.store is not None else 0,
            "connections": self.gateway.connection_count if self.gateway is not None else 0,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=status_code)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint.

        Returns:
            200 OK: Service is ready
            503 Service Unavailable: Service is not ready
        """
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even when the gateway is not.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
            Content-Type: text/plain; version=0.0.4
        """
        try:
            metrics_text = self.metrics_collector.export_prometheus()

            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )

        except Exception as e:
            logger.error(
                "Failed to export metrics",
                extra={"error": str(e)},
                exc_info=True,
            )
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Metrics summary in JSON for dashboards and debugging."""
        try:
            summary = self.metrics_collector.get_summary()

            return web.json_response(
                {
                    "status": "ok",
                    "uptime_seconds": time.time() - self.start_time,
                    "metrics": summary,
                },
                status=200,
            )

        except Exception as e:
            logger.error(
                "Failed to generate metrics summary",
                extra={"error": str(e)},
                exc_info=True,
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)

    async def list_rooms(self, request: web.Request) -> web.Response:
        """Room occupancy listing.

        Response format:
        {"rooms": [{"roomId": str, "participants": int}]}
        """
        rooms = self.store.snapshot() if self.store is not None else []
        return web.json_response(
            {"rooms": [{"roomId": room_id, "participants": count} for room_id, count in rooms]}
        )


def setup_health_routes(
    app: web.Application,
    gateway: Any = None,
    store: Any = None,
    metrics_collector: MetricsCollector | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        gateway: ConnectionGateway instance (optional)
        store: RoomStore instance (optional)
        metrics_collector: Metrics collector (optional)
    """
    handler = HealthCheckHandler(gateway=gateway, store=store, metrics_collector=metrics_collector)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    app.router.add_get("/rooms", handler.list_rooms)

    logger.info(
        "Health check endpoints configured: "
        "/health, /readiness, /liveness, /metrics, /metrics/summary, /rooms"
    )
