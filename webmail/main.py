"""Command-line entry point: serve the webmail API with uvicorn."""

import argparse
import logging
import os

import uvicorn

from webmail.api import create_app
from webmail.config import load_config
from webmail.service import build_services

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the webmail gateway."""
    parser = argparse.ArgumentParser(description="Webmail Gateway")
    parser.add_argument(
        "--config",
        help="Path to configuration file",
        default=os.environ.get("WEBMAIL_CONFIG"),
    )
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    level = "DEBUG" if args.debug else os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(args.config)
    host = args.host or config.web.host
    port = args.port or config.web.port

    logger.info(
        f"Starting webmail gateway on {host}:{port} "
        f"(database: {config.database.backend.value}, auth: {config.web.auth_enabled})"
    )
    app = create_app(build_services(config))
    try:
        uvicorn.run(app, host=host, port=port, log_level=level.lower())
    finally:
        app.state.services.close()


if __name__ == "__main__":
    main()
