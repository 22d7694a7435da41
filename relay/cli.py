"""
CLI entry point for the relay server.

Run:  python -m relay [--port 4722] [--provider claude-code] [--dir /path/to/project]
"""

import argparse
import logging
import os

from config import get_credentials_info, relay_config


def _configure_logging(level: str) -> None:
    # uvicorn's log_level only affects its own loggers; ours need a handler
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [relay] %(message)s"))
    for name in ("relay", "providers", "sessions", "bedrock_service"):
        log = logging.getLogger(name)
        log.setLevel(getattr(logging, level.upper(), logging.INFO))
        if not log.handlers:
            log.addHandler(handler)


def main(argv=None):
    import uvicorn

    parser = argparse.ArgumentParser(description="Inspector Relay: agent relay server")
    parser.add_argument("--port", type=int, default=relay_config.port,
                        help=f"Server port (default: {relay_config.port})")
    parser.add_argument("--host", default=relay_config.host,
                        help=f"Server host (default: {relay_config.host})")
    parser.add_argument("--provider", default=relay_config.providers,
                        help="Comma-separated agent providers (claude-code, bedrock)")
    parser.add_argument("--dir", default=relay_config.working_directory,
                        help="Working directory for the agent")
    parser.add_argument("--log-level", default=relay_config.log_level, help="Log level (default: INFO)")
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    working_directory = os.path.abspath(os.path.expanduser(args.dir))
    if not os.path.isdir(working_directory):
        print(f"\n  Error: directory not found: {working_directory}\n")
        raise SystemExit(1)

    from providers import build_providers
    names = [n.strip() for n in args.provider.split(",") if n.strip()]
    providers = build_providers(names, working_directory=working_directory)

    print(f"\n  Inspector Relay")
    print(f"  ws://{args.host}:{args.port}")
    print(f"  Working directory: {working_directory}")
    if any(p.name == "bedrock" for p in providers):
        print(f"  AWS: {get_credentials_info()}")
    print(f"  Registered agents: {', '.join(p.name for p in providers) or 'none'}\n")

    from relay.app import create_app
    uvicorn.run(create_app(providers), host=args.host, port=args.port, log_level="warning")
