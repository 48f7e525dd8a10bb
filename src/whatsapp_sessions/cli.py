"""
Command-line entry point.

Usage:
    whatsapp-sessions serve [--host HOST] [--port PORT] [--config FILE]
    whatsapp-sessions pair NUMBER [--config FILE]
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import get_config_manager
from .exceptions import WhatsAppSessionError
from .logging import configure_logging
from .manager import SessionManager
from .models import PairStatus

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whatsapp-sessions",
        description="Multi-session WhatsApp bot session manager",
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address (default from config)")
    serve.add_argument("--port", type=int, help="Port (default from config)")

    pair = subparsers.add_parser("pair", help="Pair one number and keep it running")
    pair.add_argument("number", help="Phone number with country code")

    return parser


def _load_config(config_file: Optional[str]):
    manager = get_config_manager()
    if config_file:
        manager.load_config(config_file)
    manager.load_config_from_env()
    config = manager.get_config()
    configure_logging(config.log_level, config.log_file)
    return config


async def _serve(config, host: Optional[str], port: Optional[int]) -> None:
    from .api import start_server

    manager = SessionManager(config)
    runner = await start_server(manager, host, port)
    if config.auto_reconnect:
        await manager.start_auto_reconnect()
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await manager.close()


async def _pair(config, number: str) -> int:
    async with SessionManager(config) as manager:
        result = await manager.pair(number)
        if result.status == PairStatus.ERROR:
            print(f"Pairing failed: {result.error}", file=sys.stderr)
            return 1
        if result.status == PairStatus.CODE:
            print(f"Pairing code for {result.key}: {result.code}")
        else:
            print(f"{result.key}: {result.status.value}")

        # Keep the session alive until interrupted
        await asyncio.Event().wait()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = _load_config(args.config)
        if args.command == "serve":
            asyncio.run(_serve(config, args.host, args.port))
            return 0
        return asyncio.run(_pair(config, args.number))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    except (WhatsAppSessionError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
