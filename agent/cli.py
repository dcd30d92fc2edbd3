"""
letsync-agent — certificate sync agent entry point.

Usage:
  letsync-agent https://letsync.example.com/agent/<uuid>/<signature>
  letsync-agent --once <url>        # Run one sync cycle and exit
  letsync-agent -v <url>            # Debug logging
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import structlog

from agent.client import AGENT_VERSION, AgentClient
from agent.deployer import Deployer
from agent.reloader import Reloader
from agent.runner import SyncRunner
from agent.state import LocalState

log = logging.getLogger("letsync.agent")


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_runner(server_url: str) -> SyncRunner:
    from config import AgentSettings  # noqa: PLC0415

    agent_settings = AgentSettings()
    return SyncRunner(
        client=AgentClient(server_url, timeout=agent_settings.HTTP_TIMEOUT),
        state=LocalState(agent_settings.STATE_PATH),
        deployer=Deployer(agent_settings.ALLOWED_PATHS),
        reloader=Reloader(timeout=agent_settings.RELOAD_TIMEOUT),
        poll_interval=agent_settings.DEFAULT_POLL_INTERVAL,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="letsync-agent",
        description="Pull certificates from a letsync server and deploy them on this host",
    )
    parser.add_argument("server_url", help="Connect URL shown when the agent was created")
    parser.add_argument("--once", action="store_true", help="Run one sync cycle and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    log.info("letsync agent v%s starting", AGENT_VERSION)

    runner = build_runner(args.server_url)

    if args.once:
        runner.run_cycle()
        return 0

    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        log.info("Received %s, finishing current cycle", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    runner.run_forever(stop)
    return 0


if __name__ == "__main__":
    sys.exit(main())
