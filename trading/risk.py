"""Risk governor: decides whether a new entry is allowed this cycle."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable

import config
from trading.models import Position, as_utc, utc_now

REASON_KILL_SWITCH = "KILL_SWITCH_ACTIVE"
REASON_CIRCUIT_OPEN = "CIRCUIT_BREAKER_OPEN"
REASON_TOKEN_COOLDOWN = "TOKEN_COOLDOWN_ACTIVE"
REASON_MAX_TRADES = "MAX_TRADES_PER_HOUR_REACHED"
REASON_MAX_AT_RISK = "MAX_SOL_AT_RISK_EXCEEDED"


@dataclass(frozen=True)
class RiskCaps:
    max_trades_per_hour: int
    max_sol_at_risk: float

    @classmethod
    def from_config(cls) -> "RiskCaps":
        return cls(
            max_trades_per_hour=int(config.MAX_TRADES_PER_HOUR),
            max_sol_at_risk=float(config.MAX_SOL_AT_RISK),
        )


@dataclass(frozen=True)
class RiskSnapshot:
    kill_switch_active: bool = False
    at_risk_sol: float = 0.0
    trades_last_hour: int = 0
    cooldown_active: bool = False
    circuit_open: bool = False
    circuit_reopen_at: str | None = None
    consecutive_failures: int = 0
    max_sol_at_risk: float = 0.0
    max_trades_per_hour: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RiskDecision:
    allow: bool
    reasons: list[str] = field(default_factory=list)


def kill_switch_active(path: str | None = None) -> bool:
    target = str(path if path is not None else getattr(config, "KILL_SWITCH_FILE_PATH", "") or "")
    if not target:
        return False
    return os.path.exists(target)


def compute_at_risk_sol(positions: Iterable[Position]) -> float:
    """Entry notional weighted by the fraction of quantity still held."""
    total = 0.0
    for position in positions:
        initial = int(position.quantity_raw or 0)
        remaining = int(position.quantity_remaining_raw or 0)
        if initial <= 0:
            continue
        total += float(position.entry_notional_sol or 0.0) * (remaining / initial)
    return total


def token_cooldown_active(
    last_trade_at: datetime | None,
    *,
    cooldown_minutes: float,
    now: datetime | None = None,
) -> bool:
    if last_trade_at is None or cooldown_minutes <= 0:
        return False
    ref = as_utc(now) if now is not None else utc_now()
    age_minutes = (ref - as_utc(last_trade_at)).total_seconds() / 60.0
    return age_minutes < float(cooldown_minutes)


def can_open_new_position(caps: RiskCaps, snapshot: RiskSnapshot, planned_notional_sol: float) -> RiskDecision:
    """Evaluate every rule independently; allow only when none fired."""
    reasons: list[str] = []
    if snapshot.kill_switch_active:
        reasons.append(REASON_KILL_SWITCH)
    if snapshot.circuit_open:
        reasons.append(REASON_CIRCUIT_OPEN)
    if snapshot.cooldown_active:
        reasons.append(REASON_TOKEN_COOLDOWN)
    if snapshot.trades_last_hour >= caps.max_trades_per_hour:
        reasons.append(REASON_MAX_TRADES)
    if snapshot.at_risk_sol + float(planned_notional_sol) > caps.max_sol_at_risk:
        reasons.append(REASON_MAX_AT_RISK)
    return RiskDecision(allow=not reasons, reasons=reasons)
