"""HMAC signing and verification for webhook envelopes."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Collection

SUPPORTED_ALGORITHMS: tuple[str, ...] = ("sha256", "sha384", "sha512")

_DIGESTS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}


class SignatureError(ValueError):
    """Base class for signature verification failures."""


class MalformedSignature(SignatureError):
    pass


class AlgorithmNotAllowed(SignatureError):
    pass


class BadMAC(SignatureError):
    pass


def generate_signature(payload: bytes, secret: str, algorithm: str) -> str:
    """
    Sign ``payload`` and render the result as ``"<algorithm>:<hex>"``.

    Returns an empty string when ``algorithm`` is not supported.
    """
    digest = _DIGESTS.get(algorithm)
    if digest is None:
        return ""
    mac = hmac.new(secret.encode("utf-8"), payload, digest).hexdigest()
    return f"{algorithm}:{mac}"


def require_valid_signature(
    payload: bytes,
    signature: str | None,
    secret: str,
    allowed_algorithms: Collection[str],
) -> str:
    """
    Verify ``signature`` against ``payload`` and return the algorithm used.

    Raises a :class:`SignatureError` subclass naming the failed check.
    """
    algorithm, sep, provided = (signature or "").partition(":")
    if not sep or not algorithm or not provided:
        raise MalformedSignature("signature must look like '<algorithm>:<hex>'")

    if algorithm not in allowed_algorithms:
        raise AlgorithmNotAllowed(f"algorithm {algorithm!r} is not allowed")

    expected = generate_signature(payload, secret, algorithm)
    if not expected:
        raise AlgorithmNotAllowed(f"algorithm {algorithm!r} is not supported")

    _, _, expected_mac = expected.partition(":")
    if not hmac.compare_digest(provided.encode("utf-8"), expected_mac.encode("utf-8")):
        raise BadMAC("signature does not match payload")
    return algorithm


def verify_signature(
    payload: bytes,
    signature: str | None,
    secret: str,
    allowed_algorithms: Collection[str],
) -> bool:
    try:
        require_valid_signature(payload, signature, secret, allowed_algorithms)
    except SignatureError:
        return False
    return True
