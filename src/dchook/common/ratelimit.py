"""Per-client abuse control: replay detection, success throttling and fail2ban."""

from __future__ import annotations

import threading
import time
from typing import Callable

import structlog

from .metrics import GLOBAL_REGISTRY, Counter, Gauge

LOGGER = structlog.get_logger("dchook.ratelimit")

BANS_COUNTER = GLOBAL_REGISTRY.register(Counter("dchook_clients_banned_total", "Clients banned after repeated failures"))
REPLAYS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dchook_replays_blocked_total", "Envelope timestamps rejected as stale, future or replayed")
)

MICROSECONDS = 1_000_000
MAX_TIMESTAMP_AGE_SECONDS = 5 * 60
MAX_TIMESTAMP_SKEW_SECONDS = 60


class AbuseController:
    """
    In-memory abuse state for the deploy endpoint.

    Success history, failure counters and bans are keyed by client identity;
    seen envelope timestamps are shared across all clients. Every public
    method takes the same lock, so each call observes and updates all four
    structures as one unit. Expired entries are swept when they are touched
    rather than by a background task.
    """

    def __init__(
        self,
        *,
        success_limit: int,
        success_window: float,
        fail_limit: int,
        ban_duration: float,
        replay_retention: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if success_limit < 1 or fail_limit < 1:
            raise ValueError("success_limit and fail_limit must be at least 1")
        if min(success_window, ban_duration, replay_retention) < 0:
            raise ValueError("windows and durations must not be negative")
        self.success_limit = success_limit
        self.success_window = success_window
        self.fail_limit = fail_limit
        self.ban_duration = ban_duration
        self.replay_retention = replay_retention
        self._clock = clock
        self._lock = threading.Lock()
        self._successes: dict[str, list[float]] = {}
        self._failures: dict[str, int] = {}
        self._banned_until: dict[str, float] = {}
        self._seen_timestamps: dict[int, float] = {}
        GLOBAL_REGISTRY.register(
            Gauge(
                "dchook_seen_timestamps",
                "Envelope timestamps remembered for replay detection",
                supplier=lambda: float(len(self._seen_timestamps)),
            )
        )

    def is_banned(self, identity: str) -> bool:
        with self._lock:
            banned_until = self._banned_until.get(identity)
            if banned_until is None:
                return False
            if self._clock() < banned_until:
                return True
            del self._banned_until[identity]
            self._failures.pop(identity, None)
            LOGGER.info("client_ban_expired", client_ip=identity)
            return False

    def check_replay(self, timestamp: int) -> bool:
        """Accept ``timestamp`` (microseconds since the epoch) at most once."""
        with self._lock:
            now = self._clock()
            now_micros = int(now * MICROSECONDS)
            oldest = now_micros - MAX_TIMESTAMP_AGE_SECONDS * MICROSECONDS
            newest = now_micros + MAX_TIMESTAMP_SKEW_SECONDS * MICROSECONDS
            if timestamp < oldest or timestamp > newest:
                REPLAYS_COUNTER.inc()
                return False

            if timestamp in self._seen_timestamps:
                REPLAYS_COUNTER.inc()
                return False

            cutoff = now - self.replay_retention
            expired = [ts for ts, seen_at in self._seen_timestamps.items() if seen_at < cutoff]
            for ts in expired:
                del self._seen_timestamps[ts]

            self._seen_timestamps[timestamp] = now
            return True

    def record_success(self, identity: str) -> bool:
        """Count an accepted request; returns False once the client is over its success limit."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.success_window
            recent = [at for at in self._successes.get(identity, ()) if at > cutoff]
            if len(recent) >= self.success_limit:
                return False

            recent.append(now)
            self._successes[identity] = recent
            self._failures.pop(identity, None)
            return True

    def record_failure(self, identity: str) -> None:
        with self._lock:
            failures = self._failures.get(identity, 0) + 1
            self._failures[identity] = failures
            if failures >= self.fail_limit:
                self._banned_until[identity] = self._clock() + self.ban_duration
                BANS_COUNTER.inc()
                LOGGER.warning(
                    "client_banned",
                    client_ip=identity,
                    ban_seconds=self.ban_duration,
                    failures=failures,
                )
