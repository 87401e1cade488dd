"""Consecutive-failure circuit breaker guarding new entries."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures and holds for ``cooldown_minutes``.

    Any success closes it immediately. An open breaker closes itself (and resets
    the counter) once the cooldown has elapsed.
    """

    def __init__(self, threshold: int, cooldown_minutes: float) -> None:
        self.threshold = max(1, int(threshold))
        self.cooldown_seconds = max(0.0, float(cooldown_minutes) * 60.0)
        self.consecutive_failures = 0
        self.opened_at: float | None = None

    def record_failure(self, now: float | None = None) -> None:
        ts = time.time() if now is None else float(now)
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold and self.opened_at is None:
            self.opened_at = ts
            logger.warning(
                "CIRCUIT_OPEN failures=%s cooldown_seconds=%.0f",
                self.consecutive_failures,
                self.cooldown_seconds,
            )

    def record_success(self) -> None:
        if self.opened_at is not None:
            logger.info("CIRCUIT_CLOSED reason=success")
        self.consecutive_failures = 0
        self.opened_at = None

    def is_open(self, now: float | None = None) -> bool:
        if self.opened_at is None:
            return False
        ts = time.time() if now is None else float(now)
        if ts - self.opened_at >= self.cooldown_seconds:
            logger.info("CIRCUIT_CLOSED reason=cooldown_elapsed")
            self.opened_at = None
            self.consecutive_failures = 0
            return False
        return True

    def reopen_at(self) -> float | None:
        if self.opened_at is None:
            return None
        return self.opened_at + self.cooldown_seconds

    def state(self, now: float | None = None) -> dict[str, Any]:
        open_now = self.is_open(now)
        reopen_ts = self.reopen_at() if open_now else None
        return {
            "is_open": open_now,
            "consecutive_failures": int(self.consecutive_failures),
            "reopen_at": (
                datetime.fromtimestamp(reopen_ts, tz=timezone.utc).isoformat() if reopen_ts is not None else None
            ),
            "reopen_at_ts": reopen_ts,
        }

    def to_state(self) -> dict[str, Any]:
        return {"consecutive_failures": int(self.consecutive_failures), "opened_at": self.opened_at}

    def load_state(self, payload: dict[str, Any] | None) -> None:
        if not isinstance(payload, dict):
            return
        try:
            self.consecutive_failures = max(0, int(payload.get("consecutive_failures", 0) or 0))
            opened_at = payload.get("opened_at")
            self.opened_at = float(opened_at) if opened_at is not None else None
        except (TypeError, ValueError):
            logger.warning("CIRCUIT_STATE_INVALID payload=%s", payload)
            self.consecutive_failures = 0
            self.opened_at = None
