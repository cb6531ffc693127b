"""fleetpush agent entry point.

Usage:
    python -m fleetpush_agent [--config CONFIG_PATH]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from .agent import PackageAgent
from .config import AgentConfig

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="fleetpush agent")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ~/.fleetpush-agent/config.json)",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="Server WebSocket URL (overrides config)",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Shared agent secret (overrides config)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config_path = args.config or str(Path.home() / ".fleetpush-agent" / "config.json")
    config = AgentConfig.load(config_path)

    # Persist a generated ID so reconnects keep the same identity.
    if not config.agent_id:
        config.agent_id = config.generate_id()
        config.save(config_path)
        logger.info("Generated agent ID %s", config.agent_id)

    if args.server:
        config.server_url = args.server
    if args.token:
        config.token = args.token
    config.fill_defaults()

    run(PackageAgent(config))


def run(agent: PackageAgent) -> None:
    """Run *agent* until SIGINT/SIGTERM, then shut it down cleanly."""
    loop = asyncio.new_event_loop()
    main_task = loop.create_task(agent.start())

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(main_task)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        if not main_task.done():
            main_task.cancel()
            loop.run_until_complete(asyncio.gather(main_task, return_exceptions=True))
        loop.run_until_complete(agent.stop())
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        loop.close()


if __name__ == "__main__":
    main()
