"""Command-line entrypoint for running the dchook listener."""

from __future__ import annotations

import argparse
import sys
from typing import Any, Optional, Sequence

from pydantic import ValidationError
import uvicorn

from ..common.secrets import SecretFileError, load_secret
from ..common.settings import BuildSettings, ListenerSettings
from .app import create_app
from .deploy import ComposeDeployer

EPILOG = """\
Environment variables:
  DCHOOK_SECRET_FILE         *  Path to webhook secret file
  DCHOOK_COMPOSE_FILE        *  Path to docker-compose.yml to manage
  DCHOOK_BIND_ADDRESS           Bind address (default: 127.0.0.1)
  DCHOOK_PORT                   HTTP port to listen on (default: 7999)
  DCHOOK_ALLOWED_ALGORITHMS     Comma-separated HMAC algorithms (default: sha256,sha384,sha512)
  DCHOOK_TRUSTED_PROXY_CIDRS    Proxies whose X-Forwarded-For is trusted

Endpoints:
  POST /deploy    Trigger deployment (requires valid signature)
  GET  /health    Health check
  GET  /version   Version information (only if enabled)
  GET  /metrics   Prometheus metrics (token or localhost only)
"""


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dchook",
        description="Secure webhook receiver for Docker Compose deployments.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-s", dest="secret_file", help="Path to webhook secret file")
    parser.add_argument("-c", dest="compose_file", help="Path to docker-compose.yml")
    parser.add_argument("-b", dest="bind_address", help="Bind address")
    parser.add_argument("-p", dest="port", type=int, help="HTTP port to listen on")
    parser.add_argument("--algorithms", dest="allowed_algorithms", help="Comma-separated list of allowed HMAC algorithms")
    parser.add_argument(
        "--enable-version-endpoint",
        dest="enable_version_endpoint",
        action="store_true",
        default=None,
        help="Enable /version endpoint",
    )
    parser.add_argument("--version", dest="show_version", action="store_true", help="Show version information")
    return parser.parse_args(argv)


def settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Flags take precedence over environment variables; unset flags defer to them."""
    fields = ("secret_file", "compose_file", "bind_address", "port", "allowed_algorithms", "enable_version_endpoint")
    return {name: getattr(args, name) for name in fields if getattr(args, name) is not None}


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    if args.show_version:
        build = BuildSettings()
        print(f"dchook v{build.build_version} (commit: {build.build_commit})")
        return

    try:
        settings = ListenerSettings(**settings_overrides(args))
    except ValidationError as exc:
        sys.exit(f"Invalid configuration: {exc}")

    try:
        secret = load_secret(settings.secret_file)
    except SecretFileError as exc:
        sys.exit(str(exc))

    deployer = ComposeDeployer(settings.compose_file, docker_binary=settings.docker_binary)
    app = create_app(settings=settings, deployer=deployer, secret=secret)
    uvicorn.run(app, host=settings.bind_address, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
