"""Value types shared by the evaluator, executor, position manager and store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

MODE_PAPER = "paper"
MODE_LIVE = "live"

SIDE_BUY = "BUY"
SIDE_SELL = "SELL"

TRADE_FAILED = "FAILED"
TRADE_PAPER_FILLED = "PAPER_FILLED"
TRADE_PAPER_EXIT = "PAPER_EXIT"
TRADE_CONFIRMED = "CONFIRMED"
# Statuses that count as a real fill for the hourly trade cap.
FILLED_TRADE_STATUSES = (TRADE_CONFIRMED, TRADE_PAPER_FILLED, TRADE_PAPER_EXIT)

EXEC_PAPER = "PAPER"
EXEC_CONFIRMED = "CONFIRMED"

POSITION_OPEN = "OPEN"
POSITION_CLOSED = "CLOSED"

LAMPORTS_PER_SOL = 1_000_000_000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PoolCandidate:
    pool_id: str
    dex_id: str
    base_mint: str
    quote_mint: str
    trade_mint: str
    created_at: datetime
    reserve_usd: float = 0.0
    liquidity_sol: float = 0.0
    tx_buys_m5: int = 0
    tx_sells_m5: int = 0
    tx_buys_m15: int = 0
    tx_sells_m15: int = 0
    tx_buys_m30: int = 0
    tx_sells_m30: int = 0
    tx_buys_h1: int = 0
    tx_sells_h1: int = 0
    volume_m5_usd: float = 0.0
    volume_m15_usd: float = 0.0
    volume_h1_usd: float = 0.0
    price_change_m5_pct: float = 0.0
    price_change_h1_pct: float = 0.0
    market_cap_usd: float = 0.0
    fdv_usd: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def tx_total_m5(self) -> int:
        return int(self.tx_buys_m5 + self.tx_sells_m5)

    @property
    def tx_total_m15(self) -> int:
        return int(self.tx_buys_m15 + self.tx_sells_m15)

    @property
    def tx_total_m30(self) -> int:
        return int(self.tx_buys_m30 + self.tx_sells_m30)

    @property
    def effective_market_cap_usd(self) -> float:
        return float(self.market_cap_usd) if self.market_cap_usd > 0 else float(self.fdv_usd)

    def age_minutes(self, now: datetime | None = None) -> float:
        ref = as_utc(now) if now is not None else utc_now()
        return (ref - as_utc(self.created_at)).total_seconds() / 60.0

    def summary(self) -> dict[str, Any]:
        out = asdict(self)
        out.pop("raw", None)
        out["created_at"] = as_utc(self.created_at).isoformat()
        return out


@dataclass(frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float = 0.0
    route_plan: list[dict[str, Any]] = field(default_factory=list)
    slippage_bps: int = 0
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def hops(self) -> int:
        return len(self.route_plan)


@dataclass(frozen=True)
class MintAuthorityStatus:
    mint: str
    mint_authority: str | None = None
    freeze_authority: str | None = None
    is_initialized: bool = True

    @property
    def has_any_authority(self) -> bool:
        return bool(self.mint_authority or self.freeze_authority)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["has_any_authority"] = self.has_any_authority
        return out


@dataclass
class HardFilterResult:
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    quote_stability_pct: float | None = None
    price_impact_pct: float | None = None
    authority: MintAuthorityStatus | None = None
    holder_count: int | None = None

    @property
    def passed(self) -> bool:
        return not self.reasons

    def reject(self, code: str) -> None:
        self.reasons.append(code)

    def warn(self, code: str) -> None:
        self.warnings.append(code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "quote_stability_pct": self.quote_stability_pct,
            "price_impact_pct": self.price_impact_pct,
            "authority": self.authority.to_dict() if self.authority else None,
            "holder_count": self.holder_count,
        }


@dataclass(frozen=True)
class ScoreResult:
    total: float
    freshness: float
    flow: float
    route: float
    penalties: float
    flow_detail: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StrategyDecision:
    candidate: PoolCandidate
    score: ScoreResult
    filters: HardFilterResult
    should_trade: bool
    reason_summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate.summary(),
            "score": self.score.to_dict(),
            "filters": self.filters.to_dict(),
            "should_trade": self.should_trade,
            "reason_summary": self.reason_summary,
        }


@dataclass
class Position:
    token_mint: str
    entry_price_sol: float
    entry_notional_sol: float
    quantity_raw: int
    quantity_remaining_raw: int
    decimals: int
    stop_loss_pct: float
    take_profit1_pct: float
    take_profit2_pct: float
    take_profit3_pct: float
    tp_sell_ratio: float
    trailing_stop_pct: float
    time_stop_minutes: float
    id: int = 0
    opened_at: datetime = field(default_factory=utc_now)
    closed_at: datetime | None = None
    status: str = POSITION_OPEN
    tp1_hit: bool = False
    tp2_hit: bool = False
    tp3_hit: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status == POSITION_OPEN

    def remaining_ratio(self) -> float:
        if self.quantity_raw <= 0:
            return 0.0
        return float(self.quantity_remaining_raw) / float(self.quantity_raw)

    def elapsed_minutes(self, now: datetime | None = None) -> float:
        ref = as_utc(now) if now is not None else utc_now()
        return (ref - as_utc(self.opened_at)).total_seconds() / 60.0


@dataclass(frozen=True)
class TradeRecord:
    side: str
    mode: str
    input_mint: str
    output_mint: str
    in_amount: int
    status: str
    out_amount: int | None = None
    expected_out: int | None = None
    signature: str | None = None
    error: str | None = None
    quote: dict[str, Any] | None = None
    tx_meta: dict[str, Any] | None = None


@dataclass(frozen=True)
class ExitAction:
    reason: str
    sell_amount_raw: int
    mark_tp1: bool
    mark_tp2: bool
    mark_tp3: bool


@dataclass(frozen=True)
class SwapExecutionResult:
    status: str
    in_amount_raw: int
    out_amount_raw: int
    expected_out_raw: int
    route_summary: list[str] = field(default_factory=list)
    quote: dict[str, Any] | None = None
    signature: str | None = None
    simulation_logs: list[str] = field(default_factory=list)
    confirmation_ms: int | None = None
    balances: dict[str, str] | None = None


@dataclass
class CachedValue:
    value: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return self.value > 0 and now < self.expires_at
