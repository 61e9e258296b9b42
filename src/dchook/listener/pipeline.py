"""Ordered validation of inbound deploy webhooks."""

from __future__ import annotations

from collections.abc import Collection
from enum import Enum
from typing import Optional

from fastapi import status
from pydantic import ValidationError
import structlog

from ..common.compat import is_version_compatible
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.payload import TimestampError, parse_timestamp
from ..common.ratelimit import AbuseController
from ..common.schemas import Envelope
from ..common.signature import AlgorithmNotAllowed, BadMAC, MalformedSignature, SignatureError, require_valid_signature

LOGGER = structlog.get_logger("dchook.listener.pipeline")

ACCEPTED_COUNTER = GLOBAL_REGISTRY.register(Counter("dchook_webhooks_accepted_total", "Deploy webhooks accepted"))
REJECTED_COUNTER = GLOBAL_REGISTRY.register(Counter("dchook_webhooks_rejected_total", "Deploy webhooks rejected"))


class RejectionReason(str, Enum):
    BANNED = "banned"
    BODY_TOO_LARGE = "body_too_large"
    MALFORMED_SIGNATURE = "malformed_signature"
    ALGORITHM_NOT_ALLOWED = "algorithm_not_allowed"
    BAD_MAC = "bad_mac"
    MALFORMED_ENVELOPE = "malformed_envelope"
    MALFORMED_TIMESTAMP = "malformed_timestamp"
    REPLAYED_TIMESTAMP = "replayed_or_out_of_window_timestamp"
    VERSION_INCOMPATIBLE = "version_incompatible"
    RATE_LIMITED = "rate_limited"


_RESPONSES: dict[RejectionReason, tuple[int, str]] = {
    RejectionReason.BANNED: (status.HTTP_403_FORBIDDEN, "Forbidden"),
    RejectionReason.BODY_TOO_LARGE: (status.HTTP_413_CONTENT_TOO_LARGE, "Payload too large"),
    RejectionReason.MALFORMED_SIGNATURE: (status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    RejectionReason.ALGORITHM_NOT_ALLOWED: (status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    RejectionReason.BAD_MAC: (status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    RejectionReason.MALFORMED_ENVELOPE: (status.HTTP_400_BAD_REQUEST, "Bad request"),
    RejectionReason.MALFORMED_TIMESTAMP: (status.HTTP_400_BAD_REQUEST, "Bad request"),
    RejectionReason.REPLAYED_TIMESTAMP: (status.HTTP_400_BAD_REQUEST, "Invalid or replayed timestamp"),
    RejectionReason.VERSION_INCOMPATIBLE: (status.HTTP_400_BAD_REQUEST, "Version mismatch"),
    RejectionReason.RATE_LIMITED: (status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded"),
}

_SIGNATURE_REASONS: dict[type[SignatureError], RejectionReason] = {
    MalformedSignature: RejectionReason.MALFORMED_SIGNATURE,
    AlgorithmNotAllowed: RejectionReason.ALGORITHM_NOT_ALLOWED,
    BadMAC: RejectionReason.BAD_MAC,
}


class WebhookRejected(Exception):
    """A single request failed validation; carries the HTTP status and a minimal message."""

    def __init__(self, reason: RejectionReason) -> None:
        self.reason = reason
        self.status_code, self.detail = _RESPONSES[reason]
        super().__init__(reason.value)


class RequestValidationPipeline:
    """
    Runs the checks for one deploy request in a fixed order.

    Failed proofs of authenticity (signature, envelope, timestamp, replay,
    version) count toward the client's ban threshold. A banned client and
    a throttled but otherwise valid client do not add to it.
    """

    def __init__(
        self,
        *,
        secret: str,
        allowed_algorithms: Collection[str],
        controller: AbuseController,
        server_version: str,
        server_commit: str,
    ) -> None:
        self._secret = secret
        self._allowed_algorithms = frozenset(allowed_algorithms)
        self.controller = controller
        self.server_version = server_version
        self.server_commit = server_commit

    def _reject(self, identity: str, reason: RejectionReason, *, count_failure: bool, **details) -> WebhookRejected:
        if count_failure:
            self.controller.record_failure(identity)
        REJECTED_COUNTER.inc()
        LOGGER.warning("webhook_rejected", client_ip=identity, reason=reason.value, **details)
        return WebhookRejected(reason)

    def check_access(self, identity: str) -> None:
        if self.controller.is_banned(identity):
            raise self._reject(identity, RejectionReason.BANNED, count_failure=False)

    def reject_oversized(self, identity: str, limit: int) -> WebhookRejected:
        return self._reject(identity, RejectionReason.BODY_TOO_LARGE, count_failure=True, limit=limit)

    def validate(self, identity: str, body: bytes, signature: Optional[str]) -> Envelope:
        """Authenticate ``body`` and return the decoded envelope, or raise :class:`WebhookRejected`."""
        try:
            algorithm = require_valid_signature(body, signature, self._secret, self._allowed_algorithms)
        except SignatureError as exc:
            raise self._reject(identity, _SIGNATURE_REASONS[type(exc)], count_failure=True) from exc

        try:
            envelope = Envelope.model_validate_json(body)
        except ValidationError as exc:
            raise self._reject(
                identity,
                RejectionReason.MALFORMED_ENVELOPE,
                count_failure=True,
                errors=exc.error_count(),
            ) from exc

        header = envelope.dchook
        try:
            timestamp = parse_timestamp(header.timestamp)
        except TimestampError as exc:
            raise self._reject(identity, RejectionReason.MALFORMED_TIMESTAMP, count_failure=True) from exc

        if not self.controller.check_replay(timestamp):
            raise self._reject(
                identity,
                RejectionReason.REPLAYED_TIMESTAMP,
                count_failure=True,
                timestamp=header.timestamp,
            )

        if not is_version_compatible(header.version, self.server_version, header.commit, self.server_commit):
            raise self._reject(
                identity,
                RejectionReason.VERSION_INCOMPATIBLE,
                count_failure=True,
                client_version=header.version,
                client_commit=header.commit,
                server_version=self.server_version,
                server_commit=self.server_commit,
            )

        if not self.controller.record_success(identity):
            raise self._reject(identity, RejectionReason.RATE_LIMITED, count_failure=False)

        ACCEPTED_COUNTER.inc()
        LOGGER.info(
            "webhook_accepted",
            client_ip=identity,
            algorithm=algorithm,
            client_version=header.version,
            client_commit=header.commit,
        )
        return envelope
