#!/usr/bin/env python3
"""
SSE forwarder.

Main entry point. Subscribes to every configured source channel and
forwards its webhook events to the matching target.

Usage:
    python -m ssefwd --source https://smee.io/abc123 --target http://localhost:3000/webhook
    python -m ssefwd --config ~/.config/fwd/fwd.json
    python -m ssefwd --target http://localhost:3000/webhook   # allocates a new channel

Environment variables:
    FWD_SOURCE: Source channel URL
    FWD_TARGET: Forwarding target URL
    FWD_DEBUG: Enable debug logging (true/false)
    FWD_CONFIG: Path to config file
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from typing import List, Optional

from ssefwd.channel import create_channel
from ssefwd.config import DEFAULT_CONFIG_PATH, RelaySettings, Route
from ssefwd.errors import ChannelError, ConfigError
from ssefwd.supervisor import RouteSupervisor

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False, format_str: Optional[str] = None) -> None:
    """Configure logging."""
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = format_str or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level, format=log_format, handlers=[logging.StreamHandler(sys.stdout)]
    )

    # Set aiohttp/httpx logging level
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ssefwd",
        description="Forward server-sent events from a channel to HTTP endpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Single route
    %(prog)s --source https://smee.io/abc123 --target http://localhost:3000/webhook

    # Routing table from a config file
    %(prog)s --config fwd.json

    # With environment variables
    export FWD_SOURCE=https://smee.io/abc123
    export FWD_TARGET=http://localhost:3000/webhook
    %(prog)s
        """,
    )

    parser.add_argument("--source", help="smee.io channel url")

    parser.add_argument("--target", help="forwarding target")

    parser.add_argument(
        "--config",
        "-c",
        help=f"path to config (default: {DEFAULT_CONFIG_PATH})",
    )

    parser.add_argument("--debug", action="store_true", help="debug logging")

    parser.add_argument(
        "--read-timeout",
        type=float,
        help="seconds without data before a source is reconnected",
    )

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> RelaySettings:
    """Build settings from arguments, config file and environment."""
    settings = RelaySettings.load(
        config_path=args.config,
        source=args.source,
        target=args.target,
        debug=args.debug,
    )

    if args.read_timeout is not None:
        settings = replace(settings, read_timeout=args.read_timeout)

    return settings


def pending_target(args: argparse.Namespace) -> Optional[str]:
    """Target configured without a source, which needs a new channel."""
    source = os.environ.get("FWD_SOURCE") or args.source
    target = os.environ.get("FWD_TARGET") or args.target
    if target and not source:
        return target
    return None


async def main_async(settings: RelaySettings, target: Optional[str] = None) -> None:
    """Async main function."""
    if target:
        source = await create_channel()
        logger.info(f"Forwarding new channel {source} to {target}")
        settings = settings.with_routes([Route(source, target), *settings.routes])

    supervisor = RouteSupervisor(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    # Start supervisor in background
    supervisor_task = asyncio.create_task(supervisor.serve())
    stop_task = asyncio.create_task(stop_event.wait())

    # Wait for shutdown signal, or for the supervisor to die on its own
    await asyncio.wait({supervisor_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    await supervisor.stop()
    stop_task.cancel()

    # serve() returns once stop() has completed; re-raises if it failed
    await supervisor_task


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        settings = build_settings(args)
    except ConfigError as e:
        setup_logging(debug=args.debug)
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(debug=settings.debug, format_str=settings.log_format)

    target = pending_target(args)

    # Validate configuration
    errors = settings.validate()
    if not settings.routes and not target:
        errors.append("No routes configured: set --source/--target or a config file")
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    try:
        asyncio.run(main_async(settings, target))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ChannelError as e:
        logger.error(f"Could not create a channel: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
