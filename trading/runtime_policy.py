"""Pure policy helpers for the orchestrator loop and execution engine."""

from __future__ import annotations

import config

TRANSIENT_ERROR_MARKERS = (
    "blockhash",
    "429",
    "rate limit",
    "timeout",
    "route",
    "expired",
    "too many requests",
)

SCANNER_RATE_LIMIT_MARKERS = ("(429)", "rate limit", 'error_code":429')


def is_transient_error(message: str) -> bool:
    lower = str(message or "").lower()
    return any(marker in lower for marker in TRANSIENT_ERROR_MARKERS)


def is_scanner_rate_limited(message: str) -> bool:
    lower = str(message or "").lower()
    return any(marker in lower for marker in SCANNER_RATE_LIMIT_MARKERS)


def next_scanner_backoff_seconds(current_seconds: float) -> float:
    """Double the previous backoff (or start at the base), capped."""
    base = float(getattr(config, "SCANNER_BACKOFF_BASE_SECONDS", 20.0) or 20.0)
    cap = max(base, float(getattr(config, "SCANNER_BACKOFF_MAX_SECONDS", 300.0) or 300.0))
    proposed = float(current_seconds) * 2.0 if current_seconds > 0 else base
    return min(proposed, cap)


def compute_trade_size(score: float) -> float:
    if not bool(getattr(config, "DYNAMIC_POSITION_SIZING", False)):
        return float(config.TRADE_SIZE_SOL)
    low = float(config.TRADE_SIZE_SOL_MIN)
    high = float(config.TRADE_SIZE_SOL_MAX)
    if score >= 90:
        ratio = 1.0
    elif score >= 80:
        ratio = 0.8
    elif score >= 70:
        ratio = 0.6
    else:
        ratio = 0.0
    return low + (high - low) * ratio


def policy_state(*, source_stats: dict[str, dict[str, int | float]]) -> tuple[str, str]:
    """Summarize upstream data health from HTTP source stats."""
    degraded_at = float(getattr(config, "DATA_POLICY_DEGRADED_ERROR_PERCENT", 35.0) or 35.0)
    worst_source = ""
    worst_err = 0.0
    for source, row in (source_stats or {}).items():
        total = int((row or {}).get("total", 0) or 0)
        if total <= 0:
            continue
        err = float((row or {}).get("error_percent", 0.0) or 0.0)
        if err > worst_err:
            worst_source, worst_err = source, err
    if worst_err >= degraded_at:
        return "DEGRADED", f"source_errors_high source={worst_source} err={worst_err:.1f}%"
    return "OK", "healthy"


def scanner_state(*, backoff_until: float, now: float) -> tuple[str, str]:
    if backoff_until > now:
        return "BACKOFF", f"wait={max(0.0, backoff_until - now):.0f}s"
    return "OK", "ready"
