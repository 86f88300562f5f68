"""ICE server list assembly.

The list is built once at startup and handed to every joining client in the
``joined`` message. The server itself never contacts STUN/TURN.
"""

import logging

from src.signaling.config import IceConfig
from src.signaling.transport.websocket_protocol import IceServer

logger = logging.getLogger(__name__)


def build_ice_servers(config: IceConfig) -> list[IceServer]:
    """Build client-facing ICE server entries.

    One entry per STUN URL, plus one TURN entry when ``turn_url`` is set.
    TURN credentials are included only when configured.

    Args:
        config: ICE configuration section

    Returns:
        ICE server entries in wire form
    """
    servers = [IceServer(urls=url) for url in config.stun_urls]

    if config.turn_url:
        servers.append(
            IceServer(
                urls=config.turn_url,
                username=config.turn_username,
                credential=config.turn_credential,
            )
        )
        if config.turn_username is None or config.turn_credential is None:
            logger.warning(
                "TURN server configured without full credentials",
                extra={"turn_url": config.turn_url},
            )

    logger.info(
        "ICE servers configured",
        extra={"stun_count": len(config.stun_urls), "turn": config.turn_url is not None},
    )
    return servers
