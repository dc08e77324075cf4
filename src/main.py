"""
Main application entry point for the diagram tool server.

Loads configuration, builds the shared components, runs the startup
self-check and serves every transport from one uvicorn process.
"""

# Standard library imports
import argparse
import sys
from pathlib import Path

import uvicorn

# Third-party imports
from dotenv import load_dotenv

# Local imports
from common.config import Config, load_config
from common.errors import CatalogLoadError
from common.logging import get_logger, setup_logging
from gateway.websocket import create_gateway_app
from toolserver.components import Components, build_components

# Load environment variables from .env file at module level
load_dotenv()

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Diagram tool server")
    parser.add_argument("--port", type=int, help="Override the port to run on")
    parser.add_argument("--host", type=str, help="Override the host to run on")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    return parser.parse_args(argv)


def startup_checks(config: Config) -> Components:
    """
    Build components and run the self-check.
    Fail fast if the catalog cannot be loaded or any check fails.

    Raises:
        SystemExit: If any startup check fails
    """
    logger.info(event="startup_checks_begin")
    try:
        components = build_components(config)
    except CatalogLoadError as e:
        logger.critical(
            event="startup_failed", reason="Template catalog failed to load", error=e.to_dict()
        )
        sys.exit(1)

    problems = components.self_check()
    if problems:
        logger.critical(
            event="startup_failed",
            reason="Self-check failed",
            problems=problems,
        )
        sys.exit(1)

    logger.info(event="startup_checks_passed")
    return components


def main(argv=None) -> None:
    """Main entry point."""
    try:
        args = parse_args(argv)
        config = load_config(args.config)
        setup_logging(config)

        host = args.host or config.gateway.host
        port = args.port or config.gateway.port
        logger.info(event="application_starting", host=host, port=port)

        components = startup_checks(config)
        app = create_gateway_app(config, components)

        logger.info(event="starting_server", host=host, port=port)

        # Run uvicorn synchronously (it creates its own event loop)
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_config=None,  # Use our custom logging setup
            access_log=False,  # Disable default access logs
        )

    except KeyboardInterrupt:
        logger.info(event="application_shutdown", reason="Keyboard interrupt")
    except SystemExit as e:
        if e.code == 1:
            logger.critical(event="application_failed", reason="Startup checks failed")
        raise
    except Exception as e:
        logger.critical(event="application_crashed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
