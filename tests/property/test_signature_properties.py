"""Property-based tests for webhook signing and envelope handling."""

from __future__ import annotations

import json

from hypothesis import given, strategies as st

from dchook.common.compat import is_version_compatible
from dchook.common.payload import build_envelope, coerce_payload, serialize_envelope
from dchook.common.signature import SUPPORTED_ALGORITHMS, generate_signature, verify_signature

secrets = st.text(max_size=64)
payloads = st.binary(max_size=2048)
algorithms = st.sampled_from(SUPPORTED_ALGORITHMS)

json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=8), children, max_size=4),
    max_leaves=16,
)


@given(payloads, secrets, algorithms)
def test_generated_signature_always_verifies(payload: bytes, secret: str, algorithm: str) -> None:
    signature = generate_signature(payload, secret, algorithm)
    assert verify_signature(payload, signature, secret, {algorithm})


@given(payloads, secrets, algorithms)
def test_signature_rejected_when_algorithm_not_allowed(payload: bytes, secret: str, algorithm: str) -> None:
    others = set(SUPPORTED_ALGORITHMS) - {algorithm}
    assert not verify_signature(payload, generate_signature(payload, secret, algorithm), secret, others)


@given(payloads, secrets, st.integers(min_value=0), st.integers(min_value=0, max_value=7))
def test_any_bit_flip_breaks_signature(payload: bytes, secret: str, index: int, bit: int) -> None:
    original = payload + b"!"
    signature = generate_signature(original, secret, "sha256")
    position = index % len(original)
    tampered = bytearray(original)
    tampered[position] ^= 1 << bit
    assert not verify_signature(bytes(tampered), signature, secret, {"sha256"})


@given(json_values)
def test_json_payload_survives_envelope(value) -> None:
    raw = json.dumps(value).encode()
    envelope = build_envelope(coerce_payload(raw), version="v1.0.0", commit="abc", timestamp=1)
    decoded = json.loads(serialize_envelope(envelope))
    assert decoded["payload"] == value
    assert decoded["dchook"] == {"version": "v1.0.0", "commit": "abc", "timestamp": "1"}


@given(st.text(), st.text(), st.text())
def test_dev_version_always_compatible(version: str, client_commit: str, server_commit: str) -> None:
    assert is_version_compatible("dev", version, client_commit, server_commit)
    assert is_version_compatible(version, "dev", client_commit, server_commit)


@given(st.integers(min_value=0, max_value=99), st.integers(min_value=0, max_value=99), st.integers(min_value=0, max_value=99))
def test_patch_level_never_matters(major: int, minor: int, patch: int) -> None:
    assert is_version_compatible(f"v{major}.{minor}.{patch}", f"v{major}.{minor}.{patch + 1}", "a", "b")
