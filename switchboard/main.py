"""
Signaling service entrypoint.

Resolves configuration, initialises logging and serves the FastAPI app with
uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from .api.server import create_app
from .config import IceSettings
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve(ice: IceSettings, host: str = "0.0.0.0", port: int = 8080) -> None:
    """
    Run the signaling server inside an asyncio loop.

    Parameters
    ----------
    ice:
        STUN/TURN settings handed to clients on ``appConfig``.
    host, port:
        Bind address for the uvicorn server.
    """

    import uvicorn

    app = create_app(ice=ice)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    LOG.info("Signaling server listening on ws://%s:%s/ws", host, port)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Switchboard call-signaling server")
    parser.add_argument("--host", default="0.0.0.0", help="bind host for the server")
    parser.add_argument("--port", type=int, default=8080, help="bind port for the server")
    parser.add_argument("--config", default=None, help="YAML file with ICE server settings")
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    ice = IceSettings.load(args.config)

    try:
        asyncio.run(serve(ice, host=args.host, port=args.port))
    except KeyboardInterrupt:
        LOG.info("Signaling server interrupted by user.")


if __name__ == "__main__":
    run()
