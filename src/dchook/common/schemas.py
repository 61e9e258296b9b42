"""Wire models for signed deployment webhooks."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, StrictStr


class EnvelopeHeader(BaseModel):
    """Sender metadata covered by the envelope signature."""

    version: StrictStr
    commit: StrictStr
    timestamp: StrictStr  # decimal microseconds since the epoch


class Envelope(BaseModel):
    """Signed unit posted to the listener's deploy endpoint."""

    dchook: EnvelopeHeader
    payload: Any = None


class VersionInfo(BaseModel):
    """Body served by the optional version endpoint."""

    version: str
    commit: str
    supported_algorithms: list[str]
