# -*- coding: utf-8 -*-
"""
Gateway Supervisor CLI: bring the gateway up and keep it running.

Usage:
    python -m gateway_supervisor            # Start (or adopt) the gateway, run until signaled
    python -m gateway_supervisor --auth     # Also run the headless login
    python -m gateway_supervisor --check    # Validate settings and exit
"""

import argparse
import asyncio
import json
import logging
import sys

from .config import load_settings, validate_settings
from .errors import GatewayError
from .logging_mask import install_secret_mask_filter
from .supervisor import Supervisor


async def run(args: argparse.Namespace) -> int:
    logger = logging.getLogger("gateway_supervisor")
    settings = load_settings(args.env_file)

    supervisor = Supervisor(settings)
    supervisor.install_signal_handlers()
    supervisor.install_exit_handlers()
    if args.watch_parent:
        supervisor.watch_parent()

    try:
        port = await supervisor.ensure_gateway_ready()
        logger.info(f"🌐 Gateway URL: https://{settings.host}:{port}")

        if args.auth:
            result = await supervisor.ensure_authenticated()
            logger.info(f"🔐 {result.message}")
            if not result.success:
                return 2

        print(json.dumps(supervisor.status_snapshot(), indent=2))

        if args.once:
            return 0
        await supervisor.wait_closed()
        return 0
    except GatewayError as e:
        logger.error(f"❌ {e.kind.value}: {e}")
        return 1
    finally:
        await supervisor.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="IB Client Portal gateway supervisor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env-file", default=None, help="Path to .env file")
    parser.add_argument("--auth", action="store_true", help="Run headless authentication after startup")
    parser.add_argument("--once", action="store_true", help="Exit after startup (stops the gateway)")
    parser.add_argument("--check", action="store_true", help="Validate settings and exit")
    parser.add_argument("--watch-parent", action="store_true", help="Exit when the parent process goes away")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [gateway] %(levelname)s: %(message)s",
    )
    install_secret_mask_filter()

    if args.check:
        problems = validate_settings(load_settings(args.env_file))
        for problem in problems:
            print(f"❌ {problem}")
        if not problems:
            print("✅ Settings OK")
        sys.exit(1 if problems else 0)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
