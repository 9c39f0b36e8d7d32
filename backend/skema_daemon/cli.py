"""Command line entry point: ``skema-daemon [serve|status] ...``."""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import httpx
import uvicorn
from pydantic import ValidationError

from skema_daemon import __version__
from skema_daemon.config import DEFAULT_PORT, load_config
from skema_daemon.control_client import ControlClient
from skema_daemon.logging_config import configure_logging

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="skema-daemon", description="Skema annotation daemon")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the daemon (default)")
    _add_serve_args(serve)
    _add_serve_args(parser)

    status = sub.add_parser("status", help="Query a running daemon")
    status.add_argument("-p", "--port", type=int, default=DEFAULT_PORT)
    status.add_argument("--host", default="127.0.0.1")
    return parser


def _add_serve_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-p", "--port", type=int, default=None, help=f"Port to listen on (default {DEFAULT_PORT})")
    parser.add_argument("--host", default=None)
    parser.add_argument("-d", "--dir", dest="cwd", default=None, help="Project directory the agent edits")
    parser.add_argument("--provider", choices=["gemini", "claude", "command"], default=None)
    parser.add_argument("--mode", choices=["auto", "queue"], default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--timeout", dest="agent_timeout_s", type=float, default=None,
                        help="Agent run timeout in seconds")
    parser.add_argument("--log-level", dest="log_level", default=None)


def serve(args: argparse.Namespace) -> int:
    try:
        config = load_config(
            port=args.port,
            host=args.host,
            cwd=args.cwd,
            provider=args.provider,
            mode=args.mode,
            model=args.model,
            agent_timeout_s=args.agent_timeout_s,
            log_level=args.log_level,
        )
    except (ValidationError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    configure_logging(config.log_level)

    from skema_daemon.api import create_app

    app = create_app(config)
    if not app.state.dispatcher.invoker.provider.is_available():
        log.warning("Agent executable for provider '%s' not found on PATH", config.provider)
    print(f"Skema daemon listening on ws://{config.host}:{config.port}/ws "
          f"(mode={config.mode}, provider={config.provider}, cwd={config.cwd})")

    server = uvicorn.Server(uvicorn.Config(app, host=config.host, port=config.port, log_level=config.log_level.lower()))
    server.run()
    # uvicorn reports a failed startup (e.g. a corrupt annotation store) by not starting.
    return 0 if server.started else 1


def status(args: argparse.Namespace) -> int:
    client = ControlClient(f"http://{args.host}:{args.port}")
    try:
        data = asyncio.run(client.status())
    except httpx.HTTPError as exc:
        print(f"Daemon not reachable at {client.base_url}: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(data, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "status":
        return status(args)
    return serve(args)


if __name__ == "__main__":
    sys.exit(main())
