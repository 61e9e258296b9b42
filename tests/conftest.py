from __future__ import annotations

import os
from pathlib import Path

import pytest


class FakeClock:
    """Manually advanced wall clock (seconds since the epoch)."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def micros(self, offset_seconds: float = 0.0) -> int:
        return int((self.now + offset_seconds) * 1_000_000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def secret_file(tmp_path: Path) -> Path:
    path = tmp_path / "secret"
    path.write_text("test-secret\n", encoding="utf-8")
    os.chmod(path, 0o600)
    return path


@pytest.fixture
def compose_file(tmp_path: Path) -> Path:
    path = tmp_path / "docker-compose.yml"
    path.write_text("services: {}\n", encoding="utf-8")
    return path
