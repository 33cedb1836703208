#!/usr/bin/env python3
"""
Portfolio Risk Engine Startup Script

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    API_PORT: Port to run the service on (default: 8001)
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
"""

import argparse
import sys

import uvicorn
import structlog

from portfolio_engine.config import settings

logger = structlog.get_logger()


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Portfolio Risk Engine - DeFi risk monitoring and strategy optimization"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.API_PORT,
        help=f"Port to run the service on (default: {settings.API_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV,
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()


def main():
    """Main entry point"""
    args = parse_arguments()

    # Monitoring state lives in process memory, so a single worker serves it
    uvicorn_config = {
        "app": "portfolio_engine.main:app",
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level.lower(),
        "access_log": True,
        "reload": args.reload or args.env == "development",
        "workers": 1,
    }

    try:
        logger.info("Starting Portfolio Risk Engine",
                    host=args.host,
                    port=args.port,
                    env=args.env)

        uvicorn.run(**uvicorn_config)

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error("Failed to start server", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
