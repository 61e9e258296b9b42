"""Payload classification and envelope encoding shared by sender and listener."""

from __future__ import annotations

import json
import re
import time
from typing import Any, Optional

from .schemas import Envelope, EnvelopeHeader

MAX_PAYLOAD_SIZE = 1 << 20  # 1 MiB
MAX_REQUEST_BODY_SIZE = MAX_PAYLOAD_SIZE + (1 << 8)  # room for the envelope wrapper

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_TIMESTAMP_RE = re.compile(r"[+-]?[0-9]+")
_ALLOWED_CONTROLS = frozenset("\t\n\r")


class PayloadError(ValueError):
    """Raised when a payload is neither JSON nor printable text."""


class TimestampError(ValueError):
    """Raised when an envelope timestamp is not a 64-bit decimal integer."""


def is_printable_text(data: bytes) -> bool:
    """Return True if ``data`` is UTF-8 text free of control characters other than tab/LF/CR."""
    text = data.decode("utf-8", errors="replace")
    for char in text:
        if char == "\ufffd" or char == "\x7f":
            return False
        if char < " " and char not in _ALLOWED_CONTROLS:
            return False
    return True


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def coerce_payload(raw: bytes) -> Any:
    """Interpret raw sender input as a JSON value, falling back to printable text."""
    try:
        return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError):
        pass
    if not is_printable_text(raw):
        raise PayloadError("Payload must be valid JSON or printable UTF-8 text")
    return raw.decode("utf-8")


def current_timestamp_micros() -> int:
    return time.time_ns() // 1_000


def build_envelope(
    payload: Any,
    *,
    version: str,
    commit: str,
    timestamp: Optional[int] = None,
) -> Envelope:
    if timestamp is None:
        timestamp = current_timestamp_micros()
    header = EnvelopeHeader(version=version, commit=commit, timestamp=str(timestamp))
    return Envelope(dchook=header, payload=payload)


def serialize_envelope(envelope: Envelope) -> bytes:
    """Serialize compactly with sorted keys; these are the bytes that get signed."""
    return json.dumps(
        envelope.model_dump(mode="json"),
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")


def parse_timestamp(raw: str) -> int:
    if not _TIMESTAMP_RE.fullmatch(raw):
        raise TimestampError(f"invalid timestamp {raw!r}")
    value = int(raw)
    if value < _INT64_MIN or value > _INT64_MAX:
        raise TimestampError(f"timestamp {raw!r} out of range")
    return value
