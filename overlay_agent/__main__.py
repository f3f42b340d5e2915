"""Command-line entry point: ``python -m overlay_agent``.

Modes:
  (default)    run the convergence loop with the local status API
  --no-api     run the convergence loop without HTTP
  --once       initialize, run one cycle, exit 0 unless Critical
  --diagnose   print a read-only JSON dump of local and store state
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import socket
import sys
from typing import Optional

from overlay_agent.config import settings
from overlay_agent.errors import ConfigurationError
from overlay_agent.logging_config import setup_agent_logging
from overlay_agent.registry import get_agent

logger = logging.getLogger("overlay_agent")

EXIT_CONFIG_ERROR = 2


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="overlay-agent", description="Per-host VXLAN overlay convergence agent")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    mode.add_argument("--diagnose", action="store_true", help="Print diagnostics as JSON and exit")
    p.add_argument("--no-api", action="store_true", help="Run the daemon loop without the status API")
    return p.parse_args(argv)


async def _run_without_api() -> None:
    agent = get_agent()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)
    try:
        await agent.run_forever(stop_event)
    finally:
        await agent.close()


async def _run_once() -> int:
    agent = get_agent()
    try:
        return await agent.run_once()
    finally:
        await agent.close()


async def _diagnose() -> dict:
    agent = get_agent()
    try:
        return await agent.diagnose()
    finally:
        await agent.close()


def _serve_api() -> None:
    import uvicorn

    uvicorn.run(
        "overlay_agent.main:app",
        host=settings.status_host,
        port=settings.status_port,
        log_config=None,
        reload=False,
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    setup_agent_logging(settings.hostname or socket.gethostname())

    try:
        if args.diagnose:
            print(json.dumps(asyncio.run(_diagnose()), indent=2, default=str))
            return 0
        if args.once:
            return asyncio.run(_run_once())

        get_agent().check_capabilities()
        if args.no_api or not settings.enable_status_api:
            asyncio.run(_run_without_api())
        else:
            _serve_api()
        return 0
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
