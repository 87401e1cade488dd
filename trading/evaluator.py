"""Candidate evaluation: hard filters, quote stability, routes, authority, holders, scoring."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import config
from monitor.token_checker import TokenChecker
from monitor.token_scorer import TokenScorer
from trading.jupiter_client import JupiterClient, JupiterError
from trading.models import (
    LAMPORTS_PER_SOL,
    HardFilterResult,
    PoolCandidate,
    Quote,
    StrategyDecision,
    utc_now,
)
from trading.solana_rpc import WSOL_MINT
from utils.addressing import short_name, short_symbol

logger = logging.getLogger(__name__)

REASON_POOL_TOO_OLD = "POOL_TOO_OLD"
REASON_LIQUIDITY_BELOW_MIN = "LIQUIDITY_BELOW_MIN"
REASON_MC_TOO_LOW = "MC_TOO_LOW"
REASON_MC_TOO_HIGH = "MC_TOO_HIGH"
REASON_VOLUME_M5_TOO_LOW = "VOLUME_M5_TOO_LOW"
REASON_SELL_DOMINATED_M5 = "SELL_DOMINATED_M5"
REASON_NO_BUY_ROUTE = "NO_BUY_ROUTE"
REASON_QUOTE_INSTABILITY = "QUOTE_INSTABILITY"
REASON_PRICE_IMPACT_TOO_HIGH = "PRICE_IMPACT_TOO_HIGH"
REASON_NO_SELL_ROUTE = "NO_SELL_ROUTE"
REASON_HOLDER_COUNT_TOO_LOW = "HOLDER_COUNT_TOO_LOW"
REASON_AUTHORITY_STRICT = "AUTHORITY_ENABLED_STRICT_REJECT"
REASON_SCORE_BELOW_THRESHOLD = "SCORE_BELOW_THRESHOLD"

WARN_MC_UNAVAILABLE = "MC_UNAVAILABLE"
WARN_HOLDER_CHECK_SKIPPED = "HOLDER_CHECK_SKIPPED"
WARN_AUTHORITY_PERMISSIVE = "AUTHORITY_ENABLED_PERMISSIVE_WARNING"
WARN_AUTHORITY_CHECK_FAILED = "AUTHORITY_CHECK_FAILED"
WARN_HOLDER_CONCENTRATION = "HOLDER_CONCENTRATION_NOT_ENFORCED"

SELL_DOMINANCE_MIN_TXS = 10
ROUTE_FAILURE_REASONS = (REASON_NO_BUY_ROUTE, REASON_NO_SELL_ROUTE)


@dataclass(frozen=True)
class EvaluatedCandidate:
    decision: StrategyDecision
    quote: Quote | None


def quote_stability_pct(out_amounts: list[int]) -> float:
    """Spread of quote outputs as a percent of their mean; 100 when the mean is zero."""
    if not out_amounts:
        return 100.0
    values = [float(v) for v in out_amounts]
    avg = sum(values) / len(values)
    if avg <= 0:
        return 100.0
    return ((max(values) - min(values)) / avg) * 100


def apply_cheap_filters(candidate: PoolCandidate, filters: HardFilterResult, age_minutes: float) -> None:
    if age_minutes > float(config.FRESH_POOL_WINDOW_MINUTES):
        filters.reject(REASON_POOL_TOO_OLD)
    if candidate.liquidity_sol < float(config.MIN_LIQUIDITY_SOL):
        filters.reject(REASON_LIQUIDITY_BELOW_MIN)

    effective_mc = candidate.effective_market_cap_usd
    if effective_mc > 0:
        if effective_mc < float(config.MIN_MC_USD):
            filters.reject(REASON_MC_TOO_LOW)
        if effective_mc > float(config.MAX_MC_USD):
            filters.reject(REASON_MC_TOO_HIGH)
    else:
        filters.warn(WARN_MC_UNAVAILABLE)
        logger.warning("MC_UNAVAILABLE pool=%s mint=%s", candidate.pool_id, candidate.trade_mint)

    if candidate.volume_m5_usd < float(config.MIN_VOLUME_M5_USD):
        filters.reject(REASON_VOLUME_M5_TOO_LOW)

    m5_total = candidate.tx_total_m5
    if m5_total >= SELL_DOMINANCE_MIN_TXS and (candidate.tx_buys_m5 / m5_total) < 0.5:
        filters.reject(REASON_SELL_DOMINATED_M5)


class CandidateEvaluator:
    def __init__(
        self,
        jupiter: JupiterClient,
        authority_provider: TokenChecker,
        holder_provider: TokenChecker | None,
        store: Any,
        scorer: TokenScorer | None = None,
    ) -> None:
        self.jupiter = jupiter
        self.authority_provider = authority_provider
        self.holder_provider = holder_provider
        self.store = store
        self.scorer = scorer or TokenScorer()

    async def evaluate(self, candidate: PoolCandidate, now: datetime | None = None) -> EvaluatedCandidate:
        filters = HardFilterResult()
        age_minutes = candidate.age_minutes(now or utc_now())

        apply_cheap_filters(candidate, filters, age_minutes)
        cheap_passed = filters.passed

        final_quote: Quote | None = None
        if cheap_passed:
            final_quote = await self._sample_buy_quotes(candidate, filters)
        if final_quote is not None:
            await self._check_sell_route(candidate, final_quote, filters)

        if cheap_passed:
            await self._check_holders(candidate, filters)

        await self._check_authority(candidate, filters)
        filters.warn(WARN_HOLDER_CONCENTRATION)

        score = self.scorer.calculate_score(candidate, final_quote, filters, age_minutes)
        if score.total < float(config.SCORE_THRESHOLD):
            filters.reject(REASON_SCORE_BELOW_THRESHOLD)

        decision = StrategyDecision(
            candidate=candidate,
            score=score,
            filters=filters,
            should_trade=filters.passed,
            reason_summary=",".join(filters.reasons) if filters.reasons else "PASS",
        )
        self._log_decision(decision)
        self.store.record_decision(decision, mode=str(config.MODE))
        return EvaluatedCandidate(decision=decision, quote=final_quote)

    async def _sample_buy_quotes(self, candidate: PoolCandidate, filters: HardFilterResult) -> Quote | None:
        samples = max(1, int(config.QUOTE_SAMPLE_COUNT))
        spacing = float(config.QUOTE_SAMPLE_SPACING_SECONDS)
        amount_raw = int(float(config.TRADE_SIZE_SOL) * LAMPORTS_PER_SOL)
        quotes: list[Quote] = []
        for idx in range(samples):
            try:
                quote = await self.jupiter.get_quote_with_retries(
                    WSOL_MINT,
                    candidate.trade_mint,
                    amount_raw,
                    int(config.SLIPPAGE_BPS),
                )
            except JupiterError as exc:
                filters.reject(REASON_NO_BUY_ROUTE)
                logger.warning("FILTER_NO_BUY_ROUTE mint=%s error=%s", candidate.trade_mint, exc)
                return None
            quotes.append(quote)
            if idx < samples - 1 and spacing > 0:
                await asyncio.sleep(spacing)

        stability = quote_stability_pct([q.out_amount for q in quotes])
        filters.quote_stability_pct = stability
        if stability > float(config.QUOTE_STABILITY_PCT_CAP):
            filters.reject(REASON_QUOTE_INSTABILITY)

        # Second sample by fetch order, not by value.
        final_quote = quotes[1] if len(quotes) > 1 else quotes[0]
        impact = float(final_quote.price_impact_pct)
        if 0 < impact < 0.0001:
            impact = 0.0
        filters.price_impact_pct = impact
        if impact > float(config.PRICE_IMPACT_PCT_CAP):
            filters.reject(REASON_PRICE_IMPACT_TOO_HIGH)
        return final_quote

    async def _check_sell_route(self, candidate: PoolCandidate, quote: Quote, filters: HardFilterResult) -> None:
        try:
            await self.jupiter.get_quote_with_retries(
                candidate.trade_mint,
                WSOL_MINT,
                int(quote.out_amount),
                int(config.SLIPPAGE_BPS),
                max_attempts=int(config.SELL_ROUTE_PROBE_ATTEMPTS),
                backoff_seconds=float(config.SELL_ROUTE_PROBE_BACKOFF_SECONDS),
            )
        except JupiterError as exc:
            filters.reject(REASON_NO_SELL_ROUTE)
            logger.warning("FILTER_NO_SELL_ROUTE mint=%s error=%s", candidate.trade_mint, exc)

    async def _check_holders(self, candidate: PoolCandidate, filters: HardFilterResult) -> None:
        min_holders = int(config.MIN_HOLDER_COUNT)
        if self.holder_provider is None or min_holders <= 0:
            return
        holder_count = await self.holder_provider.get_holder_count(candidate.trade_mint)
        if holder_count is None:
            filters.warn(WARN_HOLDER_CHECK_SKIPPED)
            logger.warning("HOLDER_CHECK_SKIPPED pool=%s mint=%s", candidate.pool_id, candidate.trade_mint)
            return
        filters.holder_count = holder_count
        if holder_count < min_holders:
            filters.reject(REASON_HOLDER_COUNT_TOO_LOW)

    async def _check_authority(self, candidate: PoolCandidate, filters: HardFilterResult) -> None:
        try:
            authority = await self.authority_provider.get_authority_status(candidate.trade_mint)
            filters.authority = authority
            if authority.has_any_authority:
                if str(config.AUTHORITY_POLICY) == "strict":
                    filters.reject(REASON_AUTHORITY_STRICT)
                else:
                    filters.warn(WARN_AUTHORITY_PERMISSIVE)
            self.store.upsert_token(
                mint=candidate.trade_mint,
                symbol=short_symbol(candidate.trade_mint),
                name=short_name(candidate.trade_mint),
                authority=authority.to_dict(),
                raw=candidate.raw,
            )
        except Exception as exc:
            # Token upsert failures also end up here.
            filters.warn(WARN_AUTHORITY_CHECK_FAILED)
            logger.warning("AUTH_CHECK_FAIL mint=%s error=%s", candidate.trade_mint, exc)

    @staticmethod
    def _log_decision(decision: StrategyDecision) -> None:
        filters = decision.filters
        args = (
            decision.candidate.trade_mint,
            decision.score.total,
            ",".join(filters.reasons) or "-",
            ",".join(filters.warnings) or "-",
        )
        fmt = "DECISION mint=%s score=%.1f reasons=%s warnings=%s"
        if filters.passed:
            logger.info(fmt, *args)
        elif any(code in filters.reasons for code in ROUTE_FAILURE_REASONS):
            logger.warning(fmt, *args)
        else:
            logger.debug(fmt, *args)
