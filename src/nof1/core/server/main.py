"""nof1 server entry point: ``python -m nof1.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from nof1.core.config.settings import get_settings
from nof1.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the nof1 MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.nof1_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.nof1_allow_insecure_bind and not _is_loopback_host(settings.nof1_host):
        raise RuntimeError(
            "Refusing to bind nof1 server to a non-loopback host without an auth layer. "
            "Set NOF1_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting nof1 experiment server on %s:%d",
        settings.nof1_host,
        settings.nof1_port,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.nof1_host,
        port=settings.nof1_port,
    )


if __name__ == "__main__":
    run()
