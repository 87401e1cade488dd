"""Position lifecycle: entry fills, tiered take-profits, trailing/stop-loss/time exits."""

from __future__ import annotations

import logging
from typing import Any

import config
from trading.circuit_breaker import CircuitBreaker
from trading.jupiter_client import JupiterClient, JupiterError
from trading.live_executor import SwapExecutor
from trading.models import (
    EXEC_PAPER,
    LAMPORTS_PER_SOL,
    MODE_LIVE,
    SIDE_BUY,
    SIDE_SELL,
    TRADE_CONFIRMED,
    TRADE_FAILED,
    TRADE_PAPER_EXIT,
    TRADE_PAPER_FILLED,
    ExitAction,
    PoolCandidate,
    Position,
    Quote,
    SwapExecutionResult,
    TradeRecord,
    utc_now,
)
from trading.solana_rpc import WSOL_MINT, SolanaRpc

logger = logging.getLogger(__name__)

EXIT_TP1 = "TP1"
EXIT_TP2 = "TP2"
EXIT_TP3 = "TP3"
EXIT_TRAILING_STOP = "TRAILING_STOP"
EXIT_STOP_LOSS = "STOP_LOSS"
EXIT_TIME_STOP = "TIME_STOP"
CLOSE_ZERO_REMAINING = "ZERO_REMAINING"

TX_META_LOG_LINES = 12


def compute_fraction_raw(quantity_raw: int, ratio: float) -> int:
    """Fraction of a raw quantity in whole basis points, rounded down."""
    safe_ratio = max(0.0, min(1.0, float(ratio)))
    ratio_bps = int(safe_ratio * 10_000)
    return (int(quantity_raw) * ratio_bps) // 10_000


def _tier_sell_amount(position: Position) -> int:
    remaining = int(position.quantity_remaining_raw)
    sell = compute_fraction_raw(position.quantity_raw, position.tp_sell_ratio)
    if sell <= 0 or sell > remaining:
        return remaining
    return sell


def determine_exit_action(position: Position, pnl_pct: float, elapsed_minutes: float) -> ExitAction | None:
    """Ordered tier / stop-loss / time-stop selection. Trailing stop is checked by the caller first."""
    remaining = int(position.quantity_remaining_raw)
    if remaining <= 0:
        return None

    if not position.tp1_hit and pnl_pct >= position.take_profit1_pct:
        return ExitAction(EXIT_TP1, _tier_sell_amount(position), True, False, False)

    if position.tp1_hit and not position.tp2_hit and pnl_pct >= position.take_profit2_pct:
        return ExitAction(EXIT_TP2, _tier_sell_amount(position), True, True, False)

    if position.tp2_hit and not position.tp3_hit and pnl_pct >= position.take_profit3_pct:
        return ExitAction(EXIT_TP3, remaining, True, True, True)

    if pnl_pct <= -position.stop_loss_pct:
        return ExitAction(EXIT_STOP_LOSS, remaining, position.tp1_hit, position.tp2_hit, position.tp3_hit)

    if elapsed_minutes >= position.time_stop_minutes:
        return ExitAction(EXIT_TIME_STOP, remaining, position.tp1_hit, position.tp2_hit, position.tp3_hit)

    return None


def evaluate_trailing_stop(position: Position, current_price_sol: float) -> tuple[float, float, bool]:
    """Return (high_water_price, drop_from_hwm_pct, triggered).

    The high-water mark only moves once TP1 has fired; before that the stop is unarmed.
    """
    high_water = float(position.metadata.get("high_water_price_sol", position.entry_price_sol) or 0.0)
    if not position.tp1_hit:
        return high_water, 0.0, False
    high_water = max(high_water, float(current_price_sol))
    drop_pct = ((high_water - current_price_sol) / high_water) * 100 if high_water > 0 else 0.0
    trailing = float(position.trailing_stop_pct)
    return high_water, drop_pct, trailing > 0 and drop_pct >= trailing


def trailing_exit_action(position: Position) -> ExitAction:
    return ExitAction(
        EXIT_TRAILING_STOP,
        int(position.quantity_remaining_raw),
        position.tp1_hit,
        position.tp2_hit,
        position.tp3_hit,
    )


def _trade_status(execution: SwapExecutionResult, side: str) -> str:
    if execution.status == EXEC_PAPER:
        return TRADE_PAPER_FILLED if side == SIDE_BUY else TRADE_PAPER_EXIT
    return TRADE_CONFIRMED


def _tx_meta(execution: SwapExecutionResult, **extra: Any) -> dict[str, Any]:
    meta: dict[str, Any] = dict(extra)
    meta.update(
        {
            "route_summary": list(execution.route_summary),
            "simulation_logs": list(execution.simulation_logs[:TX_META_LOG_LINES]),
            "confirmation_ms": execution.confirmation_ms,
            "balances": execution.balances,
        }
    )
    return meta


class PositionManager:
    def __init__(
        self,
        store: Any,
        jupiter: JupiterClient,
        executor: SwapExecutor,
        mint_info: SolanaRpc,
        circuit_breaker: CircuitBreaker,
    ) -> None:
        self.store = store
        self.jupiter = jupiter
        self.executor = executor
        self.mint_info = mint_info
        self.circuit_breaker = circuit_breaker

    async def open_position(
        self,
        candidate: PoolCandidate,
        quote: Quote,
        score: float,
        trade_size_sol: float,
    ) -> bool:
        in_amount_raw = int(trade_size_sol * LAMPORTS_PER_SOL)
        mode = str(config.MODE)
        try:
            execution = await self.executor.execute_swap(
                WSOL_MINT,
                candidate.trade_mint,
                in_amount_raw,
                SIDE_BUY,
                fallback_quote=quote,
            )
            decimals = await self.mint_info.mint_decimals(candidate.trade_mint)
            token_amount_ui = float(execution.out_amount_raw) / float(10 ** int(decimals))
            if token_amount_ui <= 0:
                raise ValueError("Bought token amount is zero")
            entry_price_sol = float(trade_size_sol) / token_amount_ui

            position = Position(
                token_mint=candidate.trade_mint,
                entry_price_sol=entry_price_sol,
                entry_notional_sol=float(trade_size_sol),
                quantity_raw=int(execution.out_amount_raw),
                quantity_remaining_raw=int(execution.out_amount_raw),
                decimals=int(decimals),
                stop_loss_pct=float(config.SL_PCT),
                take_profit1_pct=float(config.TP1_PCT),
                take_profit2_pct=float(config.TP2_PCT),
                take_profit3_pct=float(config.TP3_PCT),
                tp_sell_ratio=float(config.TP1_SELL_RATIO),
                trailing_stop_pct=float(config.TRAILING_STOP_PCT),
                time_stop_minutes=float(config.TIME_STOP_MINUTES),
                metadata={
                    "pool_id": candidate.pool_id,
                    "dex_id": candidate.dex_id,
                    "route_summary": list(execution.route_summary),
                    "opened_by": "AUTO_ENTRY",
                    "entry_score": float(score),
                    "planned_trade_size_sol": float(trade_size_sol),
                    "realized_returned_sol": 0.0,
                    "realized_pnl_sol": 0.0,
                    "high_water_price_sol": entry_price_sol,
                },
            )
            position_id = self.store.open_position(position)
            self.store.record_trade(
                TradeRecord(
                    side=SIDE_BUY,
                    mode=mode,
                    input_mint=WSOL_MINT,
                    output_mint=candidate.trade_mint,
                    in_amount=in_amount_raw,
                    out_amount=int(execution.out_amount_raw),
                    expected_out=int(execution.expected_out_raw),
                    status=_trade_status(execution, SIDE_BUY),
                    signature=execution.signature,
                    quote=execution.quote,
                    tx_meta=_tx_meta(execution, position_id=position_id),
                )
            )

            if mode == MODE_LIVE:
                await self._check_exit_route(candidate.trade_mint, int(execution.out_amount_raw), position_id)

            logger.info(
                "ENTRY_OPENED mint=%s position_id=%s qty_raw=%s trade_size_sol=%.4f score=%.1f mode=%s",
                candidate.trade_mint,
                position_id,
                execution.out_amount_raw,
                trade_size_sol,
                score,
                mode,
            )
            return True
        except Exception as exc:
            self.circuit_breaker.record_failure()
            self.store.record_trade(
                TradeRecord(
                    side=SIDE_BUY,
                    mode=mode,
                    input_mint=WSOL_MINT,
                    output_mint=candidate.trade_mint,
                    in_amount=in_amount_raw,
                    expected_out=int(quote.out_amount),
                    status=TRADE_FAILED,
                    error=str(exc) or exc.__class__.__name__,
                    quote=quote.raw,
                )
            )
            logger.error("ENTRY_FAIL mint=%s error=%s", candidate.trade_mint, exc)
            return False

    async def _check_exit_route(self, mint: str, amount_raw: int, position_id: int) -> None:
        try:
            await self.jupiter.get_quote_with_retries(
                mint,
                WSOL_MINT,
                amount_raw,
                int(config.SLIPPAGE_BPS),
                max_attempts=int(config.SELL_ROUTE_PROBE_ATTEMPTS),
                backoff_seconds=float(config.SELL_ROUTE_PROBE_BACKOFF_SECONDS),
            )
            logger.info("SELL_ROUTE_OK mint=%s position_id=%s", mint, position_id)
        except JupiterError as exc:
            logger.warning("SELL_ROUTE_WARN mint=%s position_id=%s error=%s", mint, position_id, exc)

    async def monitor_positions(self) -> None:
        for position in self.store.list_active_positions():
            if int(position.quantity_remaining_raw) <= 0:
                try:
                    self.store.close_position(position.id, {"close_reason": CLOSE_ZERO_REMAINING})
                    logger.info("POSITION_CLOSED position_id=%s reason=%s", position.id, CLOSE_ZERO_REMAINING)
                except Exception as exc:
                    logger.error("POSITION_CLOSE_FAIL position_id=%s error=%s", position.id, exc)
                continue
            try:
                await self._monitor_one(position)
            except Exception as exc:
                self.circuit_breaker.record_failure()
                logger.error(
                    "EXIT_FAIL position_id=%s mint=%s error=%s",
                    position.id,
                    position.token_mint,
                    exc,
                )
                self._record_failed_exit(position, exc)

    def _record_failed_exit(self, position: Position, error: Exception) -> None:
        try:
            self.store.record_trade(
                TradeRecord(
                    side=SIDE_SELL,
                    mode=str(config.MODE),
                    input_mint=position.token_mint,
                    output_mint=WSOL_MINT,
                    in_amount=int(position.quantity_remaining_raw),
                    status=TRADE_FAILED,
                    error=str(error) or error.__class__.__name__,
                )
            )
        except Exception as exc:
            logger.error("TRADE_RECORD_FAIL position_id=%s side=%s error=%s", position.id, SIDE_SELL, exc)

    async def _monitor_one(self, position: Position) -> None:
        remaining = int(position.quantity_remaining_raw)
        quote = await self.jupiter.get_quote_with_retries(
            position.token_mint,
            WSOL_MINT,
            remaining,
            int(config.SLIPPAGE_BPS),
        )
        current_value_sol = float(quote.out_amount) / LAMPORTS_PER_SOL
        entry_remaining_sol = float(position.entry_notional_sol) * position.remaining_ratio()
        pnl_pct = (
            ((current_value_sol - entry_remaining_sol) / entry_remaining_sol) * 100
            if entry_remaining_sol > 0
            else 0.0
        )
        elapsed_minutes = position.elapsed_minutes()
        remaining_ui = float(remaining) / float(10 ** int(position.decimals))
        current_price_sol = current_value_sol / remaining_ui if remaining_ui > 0 else 0.0
        high_water, drop_pct, trailing_hit = evaluate_trailing_stop(position, current_price_sol)

        metadata = dict(position.metadata)
        metadata.update(
            {
                "current_value_sol": current_value_sol,
                "current_price_sol": current_price_sol,
                "pnl_pct": pnl_pct,
                "elapsed_minutes": elapsed_minutes,
                "high_water_price_sol": high_water,
                "drop_from_hwm_pct": drop_pct,
                "trailing_armed": bool(position.tp1_hit and position.trailing_stop_pct > 0),
                "last_quote_ts": utc_now().isoformat(),
            }
        )
        self.store.update_position(position.id, metadata=metadata)
        position.metadata = metadata

        if trailing_hit:
            action = trailing_exit_action(position)
        else:
            action = determine_exit_action(position, pnl_pct, elapsed_minutes)
        if action is None:
            return

        logger.info(
            "EXIT_SIGNAL position_id=%s mint=%s reason=%s pnl_pct=%.2f sell_raw=%s",
            position.id,
            position.token_mint,
            action.reason,
            pnl_pct,
            action.sell_amount_raw,
        )
        execution = await self.executor.execute_swap(
            position.token_mint,
            WSOL_MINT,
            action.sell_amount_raw,
            SIDE_SELL,
        )
        self.store.record_trade(
            TradeRecord(
                side=SIDE_SELL,
                mode=str(config.MODE),
                input_mint=position.token_mint,
                output_mint=WSOL_MINT,
                in_amount=int(action.sell_amount_raw),
                out_amount=int(execution.out_amount_raw),
                expected_out=int(execution.expected_out_raw),
                status=_trade_status(execution, SIDE_SELL),
                signature=execution.signature,
                quote=execution.quote,
                tx_meta=_tx_meta(execution, reason=action.reason, position_id=position.id),
            )
        )
        self._apply_exit(position, action, execution, metadata)

    def _apply_exit(
        self,
        position: Position,
        action: ExitAction,
        execution: SwapExecutionResult,
        metadata: dict[str, Any],
    ) -> None:
        sell_ratio = float(action.sell_amount_raw) / float(max(1, int(position.quantity_raw)))
        entry_portion_sol = float(position.entry_notional_sol) * sell_ratio
        returned_sol = float(execution.out_amount_raw) / LAMPORTS_PER_SOL
        merged = dict(metadata)
        merged.update(
            {
                "last_exit_reason": action.reason,
                "last_exit_ts": utc_now().isoformat(),
                "realized_returned_sol": float(metadata.get("realized_returned_sol", 0.0) or 0.0) + returned_sol,
                "realized_pnl_sol": float(metadata.get("realized_pnl_sol", 0.0) or 0.0)
                + (returned_sol - entry_portion_sol),
            }
        )
        # Ledger tracks the token leg: decrement by the requested sell amount.
        new_remaining = int(position.quantity_remaining_raw) - int(action.sell_amount_raw)
        tp1 = action.mark_tp1 or position.tp1_hit
        tp2 = action.mark_tp2 or position.tp2_hit
        tp3 = action.mark_tp3 or position.tp3_hit
        if new_remaining <= 0:
            merged["close_reason"] = action.reason
            self.store.close_position(position.id, merged, tp1_hit=tp1, tp2_hit=tp2, tp3_hit=tp3)
            logger.info("POSITION_CLOSED position_id=%s reason=%s", position.id, action.reason)
            return
        self.store.update_position(
            position.id,
            quantity_remaining_raw=new_remaining,
            tp1_hit=tp1,
            tp2_hit=tp2,
            tp3_hit=tp3,
            metadata=merged,
        )
        logger.info(
            "POSITION_REDUCED position_id=%s reason=%s remaining_raw=%s",
            position.id,
            action.reason,
            new_remaining,
        )
