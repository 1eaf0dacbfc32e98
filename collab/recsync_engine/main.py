"""
Main entry point for the RecSync gateway.

This module wires configuration, logging and the HTTP gateway together and
runs it under uvicorn.

Usage:
    recsync-gateway

Environment:
    RECSYNC_STORAGE, RECSYNC_DATA_DIR, RECSYNC_QUIET_PERIOD_MS, ... (EngineConfig)
    RECSYNC_GATEWAY_HOST, RECSYNC_GATEWAY_PORT, ... (GatewaySettings)
    LOG_LEVEL, LOG_FORMAT

Invariants:
    - Configuration errors exit with status 1 before anything starts
    - Dirty drafts of every session are flushed on shutdown
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api.app import create_app
from .api.settings import GatewaySettings
from .config import EngineConfig, ObservabilityConfig

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Logging configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = EngineConfig.from_env()
        settings = GatewaySettings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.observability)
    config.log_config()

    app = create_app(settings=settings, engine_config=config)
    logger.info("Starting gateway", extra={"host": settings.host, "port": settings.port})
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
