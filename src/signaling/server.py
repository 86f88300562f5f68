"""Signaling server main entry point.

Composition root: loads configuration, builds the room store, controller and
WebSocket gateway, serves health endpoints, and runs until interrupted.
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite
from dotenv import load_dotenv

from src.signaling.config import SignalingConfig
from src.signaling.controller import SignalingController
from src.signaling.health import setup_health_routes
from src.signaling.ice import build_ice_servers
from src.signaling.metrics import get_metrics_collector
from src.signaling.store import RoomStore
from src.signaling.transport.gateway import ConnectionGateway

logger = logging.getLogger(__name__)


def build_gateway(config: SignalingConfig) -> ConnectionGateway:
    """Wire store, controller and gateway from configuration.

    Args:
        config: Loaded signaling configuration

    Returns:
        Gateway ready to ``start()``
    """
    metrics = get_metrics_collector()
    store = RoomStore(max_participants=config.rooms.max_participants)
    controller = SignalingController(
        store,
        ice_servers=build_ice_servers(config.ice),
        metrics=metrics,
    )

    ws_config = config.transport.websocket
    return ConnectionGateway(
        controller,
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
        max_message_size=ws_config.max_message_size,
        heartbeat_interval_s=ws_config.heartbeat_interval_s,
        metrics=metrics,
    )


async def start_server(config_path: Path | None = None, gateway: ConnectionGateway | None = None) -> None:
    """Start the signaling server and run until cancelled.

    Args:
        config_path: Path to YAML config file (defaults apply when missing)
        gateway: Optional pre-built gateway (for testing)

    Raises:
        OSError: If the WebSocket or health port cannot be bound
        pydantic.ValidationError: If configuration is invalid
    """
    config = SignalingConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(
        "Loaded configuration",
        extra={"config_path": str(config_path) if config_path else None},
    )

    if gateway is None:
        gateway = build_gateway(config)

    await gateway.start()

    runner: AppRunner | None = None
    try:
        if config.health.enabled:
            assert config.health.port is not None
            health_app = Application()
            setup_health_routes(health_app, gateway=gateway, store=gateway.controller.store)

            runner = AppRunner(health_app)
            await runner.setup()
            site = TCPSite(runner, config.health.host, config.health.port)
            await site.start()
            logger.info(
                "Health check server started",
                extra={"host": config.health.host, "port": config.health.port},
            )

        logger.info("Signaling server ready", extra={"port": gateway.port})
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
        raise
    finally:
        logger.info("Shutting down signaling server")

        await gateway.stop()

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        logger.info("Signaling server stopped")


def main() -> None:
    """Entry point for signaling server."""
    parser = argparse.ArgumentParser(description="WebRTC signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "signaling.yaml",
        help="Path to signaling config YAML file",
    )
    args = parser.parse_args()

    load_dotenv()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")


if __name__ == "__main__":
    main()
