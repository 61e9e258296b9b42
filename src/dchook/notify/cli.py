"""Send an authenticated deployment webhook to a dchook listener."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, BinaryIO, Optional, Sequence

import httpx
from pydantic import ValidationError

from ..common.payload import MAX_PAYLOAD_SIZE, PayloadError, build_envelope, coerce_payload, serialize_envelope
from ..common.secrets import SecretFileError, read_secret
from ..common.settings import BuildSettings, NotifySettings
from ..common.signature import generate_signature

SIGNATURE_HEADER = "Dchook-Signature"

EXIT_SUCCESS = 0

# Pre-send errors
EXIT_CONFIG_ERROR = 1
EXIT_PAYLOAD_ERROR = 2
EXIT_REQUEST_ERROR = 3

# Response errors, mapped from the HTTP status where possible
EXIT_BAD_REQUEST = 40
EXIT_UNAUTHORIZED = 41
EXIT_FORBIDDEN = 43
EXIT_PAYLOAD_TOO_LARGE = 13
EXIT_RATE_LIMITED = 29
EXIT_SERVER_ERROR = 50
EXIT_UNKNOWN_STATUS = 99

STATUS_EXIT_CODES = {
    400: EXIT_BAD_REQUEST,
    401: EXIT_UNAUTHORIZED,
    403: EXIT_FORBIDDEN,
    413: EXIT_PAYLOAD_TOO_LARGE,
    429: EXIT_RATE_LIMITED,
    500: EXIT_SERVER_ERROR,
}

EPILOG = """\
Environment variables:
  DCHOOK_URL           *  Webhook endpoint URL
  DCHOOK_SECRET_FILE   *  Path to webhook secret file
  DCHOOK_ALGORITHM        Hash algorithm: sha256, sha384, sha512 (default: sha256)

DCHOOK_ALGORITHM must be allowed by the listener.

Examples:
  echo '{"image":"app:latest"}' | dchook-notify -
  dchook-notify -u https://hook.example.com/deploy -s /path/to/secret payload.json
  dchook-notify -s <(pass show webhook-secret) payload.json
"""


class NotifyError(Exception):
    def __init__(self, exit_code: int, message: str) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.message = message


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dchook-notify",
        description="Send authenticated webhook to dchook listener.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("body_file", nargs="?", help="Path to JSON payload file (use '-' for stdin)")
    parser.add_argument("-u", dest="url", help="Webhook endpoint URL")
    parser.add_argument("-s", dest="secret_file", help="Path to webhook secret file")
    parser.add_argument("-a", dest="algorithm", help="Hash algorithm (sha256, sha384, sha512)")
    parser.add_argument("-q", dest="quiet", action="store_true", help="Quiet mode (suppress output, return only exit code)")
    parser.add_argument("--version", dest="show_version", action="store_true", help="Show version information")
    return parser


def load_settings(args: argparse.Namespace) -> NotifySettings:
    overrides = {
        name: getattr(args, name)
        for name in ("url", "secret_file", "algorithm")
        if getattr(args, name)
    }
    try:
        return NotifySettings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors())
        raise NotifyError(EXIT_CONFIG_ERROR, f"Error: {problems}") from exc


def _read_limited(stream: BinaryIO, source: str) -> bytes:
    data = stream.read(MAX_PAYLOAD_SIZE + 1)
    if len(data) > MAX_PAYLOAD_SIZE:
        raise NotifyError(EXIT_PAYLOAD_ERROR, f"Error: {source} payload exceeds 1MiB limit")
    return data


def read_payload(body_file: str) -> bytes:
    if body_file == "-":
        try:
            return _read_limited(sys.stdin.buffer, "Stdin")
        except OSError as exc:
            raise NotifyError(EXIT_PAYLOAD_ERROR, f"Error reading stdin: {exc}") from exc

    path = Path(body_file)
    try:
        info = path.stat()
        if path.is_file() and info.st_size > MAX_PAYLOAD_SIZE:
            raise NotifyError(
                EXIT_PAYLOAD_ERROR,
                f"Error: Payload file too large ({info.st_size} bytes, max 1MiB)",
            )
        with path.open("rb") as handle:
            return _read_limited(handle, "File")
    except OSError as exc:
        raise NotifyError(EXIT_PAYLOAD_ERROR, f"Error reading file: {exc}") from exc


def prepare_request(raw_payload: bytes, *, secret: str, algorithm: str, version: str, commit: str) -> tuple[bytes, str]:
    """Wrap the payload in a timestamped envelope and sign it."""
    try:
        payload: Any = coerce_payload(raw_payload)
    except PayloadError as exc:
        raise NotifyError(EXIT_PAYLOAD_ERROR, f"Error: {exc}") from exc
    body = serialize_envelope(build_envelope(payload, version=version, commit=commit))
    return body, generate_signature(body, secret, algorithm)


async def send_webhook(url: str, body: bytes, signature: str, *, timeout: float) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout) as client:
        try:
            return await client.post(
                url,
                content=body,
                headers={"Content-Type": "application/json", SIGNATURE_HEADER: signature},
            )
        except httpx.HTTPError as exc:
            raise NotifyError(EXIT_REQUEST_ERROR, f"Error sending webhook: {exc}") from exc


def exit_code_for_status(status_code: int) -> int:
    if status_code == 202:
        return EXIT_SUCCESS
    return STATUS_EXIT_CODES.get(status_code, EXIT_UNKNOWN_STATUS)


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    try:
        secret = read_secret(settings.secret_file)
    except SecretFileError as exc:
        raise NotifyError(EXIT_CONFIG_ERROR, f"Error reading secret file: {exc}") from exc

    raw_payload = read_payload(args.body_file)
    body, signature = prepare_request(
        raw_payload,
        secret=secret,
        algorithm=settings.algorithm,
        version=settings.build_version,
        commit=settings.build_commit,
    )
    response = await send_webhook(settings.url, body, signature, timeout=settings.timeout_seconds)

    code = exit_code_for_status(response.status_code)
    text = response.text.strip()
    if code == EXIT_SUCCESS:
        if not args.quiet:
            print(f"✓ Webhook accepted (status: {response.status_code})")
            if text:
                print(f"Response: {text}")
        return code

    message = f"✗ Webhook rejected (status: {response.status_code})"
    if text:
        message += f"\nResponse: {text}"
    raise NotifyError(code, message)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.show_version:
        build = BuildSettings()
        print(f"dchook-notify v{build.build_version} (commit: {build.build_commit})")
        return
    if not args.body_file:
        parser.print_usage(sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        code = asyncio.run(run(args))
    except NotifyError as exc:
        if not args.quiet:
            print(exc.message, file=sys.stderr)
        sys.exit(exc.exit_code)
    sys.exit(code)


if __name__ == "__main__":
    main()
