from __future__ import annotations

import json

import pytest

from dchook.common.payload import build_envelope, serialize_envelope
from dchook.common.ratelimit import AbuseController
from dchook.common.signature import generate_signature
from dchook.listener import pipeline as pipeline_module
from dchook.listener.pipeline import RejectionReason, RequestValidationPipeline, WebhookRejected

SECRET = "pipeline-secret"
SERVER_VERSION = "v1.2.3"
SERVER_COMMIT = "abc123"
CLIENT = "192.0.2.10"


class DummyLogger:
    def __init__(self) -> None:
        self.warning_calls: list[tuple[tuple, dict]] = []

    def info(self, *args, **kwargs) -> None:  # noqa: ANN001
        return None

    def warning(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.warning_calls.append((args, kwargs))


@pytest.fixture
def logger(monkeypatch) -> DummyLogger:
    dummy = DummyLogger()
    monkeypatch.setattr(pipeline_module, "LOGGER", dummy)
    return dummy


@pytest.fixture
def controller(clock) -> AbuseController:
    return AbuseController(
        success_limit=1,
        success_window=60.0,
        fail_limit=2,
        ban_duration=3600.0,
        replay_retention=600.0,
        clock=clock,
    )


@pytest.fixture
def pipeline(controller) -> RequestValidationPipeline:
    return RequestValidationPipeline(
        secret=SECRET,
        allowed_algorithms={"sha256", "sha384"},
        controller=controller,
        server_version=SERVER_VERSION,
        server_commit=SERVER_COMMIT,
    )


def _signed(clock, *, payload=None, version=SERVER_VERSION, commit=SERVER_COMMIT, offset_us=0, algorithm="sha256"):
    envelope = build_envelope(payload, version=version, commit=commit, timestamp=clock.micros() + offset_us)
    body = serialize_envelope(envelope)
    return body, generate_signature(body, SECRET, algorithm)


def _reject(pipeline, body, signature) -> WebhookRejected:
    with pytest.raises(WebhookRejected) as exc_info:
        pipeline.validate(CLIENT, body, signature)
    return exc_info.value


def test_valid_request_is_accepted(pipeline, clock, logger) -> None:
    body, signature = _signed(clock, payload={"image": "app:latest"})

    envelope = pipeline.validate(CLIENT, body, signature)

    assert envelope.payload == {"image": "app:latest"}
    assert envelope.dchook.version == SERVER_VERSION
    assert logger.warning_calls == []


@pytest.mark.parametrize(
    ("signature", "reason"),
    [
        (None, RejectionReason.MALFORMED_SIGNATURE),
        ("garbage", RejectionReason.MALFORMED_SIGNATURE),
        ("sha512:00", RejectionReason.ALGORITHM_NOT_ALLOWED),
        ("sha256:00", RejectionReason.BAD_MAC),
    ],
)
def test_signature_failures_are_unauthorized(pipeline, clock, logger, signature, reason) -> None:
    body, _ = _signed(clock)

    rejected = _reject(pipeline, body, signature)

    assert rejected.reason is reason
    assert rejected.status_code == 401
    assert rejected.detail == "Unauthorized"
    _, fields = logger.warning_calls[-1]
    assert fields["client_ip"] == CLIENT
    assert fields["reason"] == reason.value
    assert SECRET not in json.dumps(fields)


def test_malformed_envelope(pipeline, logger) -> None:
    body = b'{"payload": {"no": "header"}}'
    rejected = _reject(pipeline, body, generate_signature(body, SECRET, "sha256"))
    assert rejected.reason is RejectionReason.MALFORMED_ENVELOPE
    assert rejected.status_code == 400


def test_non_json_body_is_malformed_envelope(pipeline, logger) -> None:
    body = b"just text"
    rejected = _reject(pipeline, body, generate_signature(body, SECRET, "sha384"))
    assert rejected.reason is RejectionReason.MALFORMED_ENVELOPE


def test_malformed_timestamp(pipeline, logger) -> None:
    body = json.dumps(
        {"dchook": {"version": SERVER_VERSION, "commit": SERVER_COMMIT, "timestamp": "12abc"}, "payload": None}
    ).encode()
    rejected = _reject(pipeline, body, generate_signature(body, SECRET, "sha256"))
    assert rejected.reason is RejectionReason.MALFORMED_TIMESTAMP
    assert rejected.status_code == 400


def test_replayed_request_rejected(pipeline, clock, logger) -> None:
    body, signature = _signed(clock)
    pipeline.validate(CLIENT, body, signature)

    rejected = _reject(pipeline, body, signature)

    assert rejected.reason is RejectionReason.REPLAYED_TIMESTAMP
    assert rejected.status_code == 400
    assert rejected.detail == "Invalid or replayed timestamp"


def test_stale_timestamp_rejected(pipeline, clock, logger) -> None:
    body, signature = _signed(clock, offset_us=-(5 * 60 * 1_000_000 + 1))
    assert _reject(pipeline, body, signature).reason is RejectionReason.REPLAYED_TIMESTAMP


def test_version_mismatch(pipeline, clock, logger) -> None:
    body, signature = _signed(clock, version="v2.0.0")
    rejected = _reject(pipeline, body, signature)
    assert rejected.reason is RejectionReason.VERSION_INCOMPATIBLE
    assert rejected.detail == "Version mismatch"


def test_exact_version_requires_matching_commit(pipeline, clock, logger) -> None:
    body, signature = _signed(clock, commit="other")
    assert _reject(pipeline, body, signature).reason is RejectionReason.VERSION_INCOMPATIBLE


def test_failures_lead_to_ban(pipeline, clock, logger) -> None:
    body, _ = _signed(clock)
    _reject(pipeline, body, "sha256:00")
    pipeline.check_access(CLIENT)
    _reject(pipeline, body, "bogus")

    with pytest.raises(WebhookRejected) as exc_info:
        pipeline.check_access(CLIENT)
    assert exc_info.value.reason is RejectionReason.BANNED
    assert exc_info.value.status_code == 403


def test_rate_limit_never_escalates_to_ban(pipeline, controller, clock, logger) -> None:
    body, signature = _signed(clock)
    pipeline.validate(CLIENT, body, signature)

    for offset in range(1, 5):
        body, signature = _signed(clock, offset_us=offset)
        rejected = _reject(pipeline, body, signature)
        assert rejected.reason is RejectionReason.RATE_LIMITED
        assert rejected.status_code == 429

    assert controller.is_banned(CLIENT) is False


def test_oversized_body_counts_as_failure(pipeline, controller, logger) -> None:
    first = pipeline.reject_oversized(CLIENT, 10)
    assert first.status_code == 413
    pipeline.reject_oversized(CLIENT, 10)
    assert controller.is_banned(CLIENT) is True


def _malformed_envelope(clock, attempt: int) -> tuple[bytes, str]:
    body = b'{"payload": {"attempt": %d}}' % attempt
    return body, generate_signature(body, SECRET, "sha256")


def _malformed_timestamp(clock, attempt: int) -> tuple[bytes, str]:
    body = json.dumps(
        {"dchook": {"version": SERVER_VERSION, "commit": SERVER_COMMIT, "timestamp": f"{attempt}x"}, "payload": None}
    ).encode()
    return body, generate_signature(body, SECRET, "sha256")


def _version_mismatch(clock, attempt: int) -> tuple[bytes, str]:
    return _signed(clock, version="v9.0.0", offset_us=attempt)


def _stale_timestamp(clock, attempt: int) -> tuple[bytes, str]:
    return _signed(clock, offset_us=-(10 * 60 * 1_000_000) - attempt)


@pytest.mark.parametrize(
    ("make_request", "reason"),
    [
        (_malformed_envelope, RejectionReason.MALFORMED_ENVELOPE),
        (_malformed_timestamp, RejectionReason.MALFORMED_TIMESTAMP),
        (_stale_timestamp, RejectionReason.REPLAYED_TIMESTAMP),
        (_version_mismatch, RejectionReason.VERSION_INCOMPATIBLE),
    ],
)
def test_authenticated_but_invalid_requests_count_toward_ban(pipeline, clock, logger, make_request, reason) -> None:
    for attempt in range(2):
        pipeline.check_access(CLIENT)
        body, signature = make_request(clock, attempt)
        assert _reject(pipeline, body, signature).reason is reason

    with pytest.raises(WebhookRejected) as exc_info:
        pipeline.check_access(CLIENT)
    assert exc_info.value.reason is RejectionReason.BANNED


def test_banned_check_does_not_extend_failures(pipeline, controller, clock, logger) -> None:
    body, _ = _signed(clock)
    _reject(pipeline, body, "bogus")
    for _ in range(3):
        pipeline.check_access(CLIENT)
    assert controller.is_banned(CLIENT) is False
