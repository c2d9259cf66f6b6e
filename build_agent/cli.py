"""Command-line entry point: connect to the master and serve build sessions."""

import argparse
import asyncio
import logging

import uvicorn

from build_agent import __version__
from build_agent.config import AgentConfig
from build_agent.logging_config import setup_logging
from build_agent.main import create_app
from build_agent.services.events import EventChannel
from build_agent.services.registry import SessionRegistry
from build_agent.services.transport import MasterConnection

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="build-agent", description="Remote build agent for a build master"
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--master-host", "-H", help="Master host, e.g. https://ci.example.com")
    parser.add_argument("--socket-path", "-p", help="Socket path on the master")
    parser.add_argument("--socket-namespace", "-n", help="Socket namespace")
    parser.add_argument("--token", "-t", help="Cluster token")
    parser.add_argument("--workspace-root", help="Directory holding job workspaces")
    parser.add_argument("--install-command", help="Default dependency install command")
    parser.add_argument("--subprocess-timeout", type=float,
                        help="Kill install/script subprocesses after this many seconds")
    parser.add_argument("--status-port", type=int, help="Serve the status API on this port")
    parser.add_argument("--status-host", help="Bind address for the status API")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-format", choices=["text", "json"])
    return parser


async def serve(config: AgentConfig) -> None:
    """Run the agent until the process is stopped.

    Sessions are only shut down here, on exit; a dropped master connection is
    retried by the transport without touching them.
    """
    channel = EventChannel()
    registry = SessionRegistry(config, channel)
    connection = MasterConnection(config, registry, channel)

    server: uvicorn.Server | None = None
    status_task: asyncio.Task | None = None
    if config.status_port:
        server = uvicorn.Server(uvicorn.Config(
            create_app(registry),
            host=config.status_host,
            port=config.status_port,
            log_config=None,
        ))
        status_task = asyncio.create_task(server.serve())
        logger.info("Status API on http://%s:%d", config.status_host, config.status_port)

    try:
        await connection.run()
    finally:
        await registry.shutdown()
        if server is not None and status_task is not None:
            server.should_exit = True
            await status_task


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = AgentConfig.from_sources(vars(args))
    setup_logging(config.log_level, config.log_format)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Agent interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
