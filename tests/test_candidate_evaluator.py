from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

import config
from trading import evaluator as ev
from trading.jupiter_client import QuoteUnavailable
from trading.models import MintAuthorityStatus, PoolCandidate, Quote
from trading.solana_rpc import WSOL_MINT

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MINT = "MintEVAL1111111111111111111111111111111111"


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class FakeJupiter:
    def __init__(
        self,
        buy_outs: list[int] | None = None,
        buy_error: bool = False,
        sell_error: bool = False,
        impact: float = 0.5,
    ) -> None:
        self.buy_outs = list(buy_outs or [1_000_000, 1_000_000, 1_000_000])
        self.buy_error = buy_error
        self.sell_error = sell_error
        self.impact = impact
        self.buy_calls = 0
        self.sell_calls: list[dict[str, Any]] = []

    async def get_quote_with_retries(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> Quote:
        if input_mint == WSOL_MINT:
            self.buy_calls += 1
            if self.buy_error:
                raise QuoteUnavailable("Jupiter quote failed (400): no route")
            out = self.buy_outs[(self.buy_calls - 1) % len(self.buy_outs)]
            return Quote(
                input_mint=input_mint,
                output_mint=output_mint,
                in_amount=amount,
                out_amount=out,
                price_impact_pct=self.impact,
                route_plan=[{"swapInfo": {"label": "Raydium"}}],
                raw={"sample": self.buy_calls},
            )
        self.sell_calls.append({"amount": amount, "max_attempts": max_attempts})
        if self.sell_error:
            raise QuoteUnavailable("Jupiter quote failed (400): no sell route")
        return Quote(input_mint=input_mint, output_mint=output_mint, in_amount=amount, out_amount=19_000_000)


class FakeAuthority:
    def __init__(self, status: MintAuthorityStatus | None = None, error: Exception | None = None) -> None:
        self.status = status or MintAuthorityStatus(mint=MINT)
        self.error = error

    async def get_authority_status(self, mint: str) -> MintAuthorityStatus:
        if self.error is not None:
            raise self.error
        return self.status


class FakeHolders:
    def __init__(self, count: int | None) -> None:
        self.count = count
        self.calls = 0

    async def get_holder_count(self, mint: str) -> int | None:
        self.calls += 1
        return self.count


class FakeStore:
    def __init__(self) -> None:
        self.decisions: list[Any] = []
        self.tokens: list[dict[str, Any]] = []

    def record_decision(self, decision: Any, mode: str) -> int:
        self.decisions.append((decision, mode))
        return len(self.decisions)

    def upsert_token(self, **kwargs: Any) -> None:
        self.tokens.append(kwargs)


class LockedTokenStore(FakeStore):
    def upsert_token(self, **kwargs: Any) -> None:
        raise RuntimeError("database is locked")


def _candidate(**overrides: object) -> PoolCandidate:
    fields: dict[str, object] = {
        "pool_id": "solana_evalpool",
        "dex_id": "raydium",
        "base_mint": MINT,
        "quote_mint": WSOL_MINT,
        "trade_mint": MINT,
        "created_at": NOW - timedelta(minutes=5),
        "reserve_usd": 3000.0,
        "liquidity_sol": 20.0,
        "tx_buys_m5": 12,
        "tx_sells_m5": 4,
        "volume_m5_usd": 1500.0,
        "fdv_usd": 100_000.0,
    }
    fields.update(overrides)
    return PoolCandidate(**fields)  # type: ignore[arg-type]


class CandidateEvaluatorTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            MODE="paper",
            FRESH_POOL_WINDOW_MINUTES=60,
            MIN_LIQUIDITY_SOL=8.0,
            MIN_MC_USD=0.0,
            MAX_MC_USD=5_000_000.0,
            MIN_VOLUME_M5_USD=0.0,
            MIN_HOLDER_COUNT=0,
            QUOTE_SAMPLE_COUNT=3,
            QUOTE_SAMPLE_SPACING_SECONDS=0.0,
            QUOTE_STABILITY_PCT_CAP=8.0,
            PRICE_IMPACT_PCT_CAP=5.0,
            SELL_ROUTE_PROBE_ATTEMPTS=2,
            SELL_ROUTE_PROBE_BACKOFF_SECONDS=0.0,
            TRADE_SIZE_SOL=0.02,
            SLIPPAGE_BPS=100,
            SCORE_THRESHOLD=0.0,
            AUTHORITY_POLICY="permissive",
        )
        self.store = FakeStore()

    def _evaluate(
        self,
        candidate: PoolCandidate,
        jupiter: FakeJupiter,
        authority: FakeAuthority | None = None,
        holders: FakeHolders | None = None,
    ) -> ev.EvaluatedCandidate:
        evaluator = ev.CandidateEvaluator(
            jupiter,  # type: ignore[arg-type]
            authority or FakeAuthority(),  # type: ignore[arg-type]
            holders,  # type: ignore[arg-type]
            self.store,
        )
        return asyncio.run(evaluator.evaluate(candidate, now=NOW))

    def test_clean_candidate_passes_with_second_quote(self) -> None:
        jupiter = FakeJupiter(buy_outs=[1_000_000, 1_010_000, 1_005_000])
        result = self._evaluate(_candidate(), jupiter)
        self.assertTrue(result.decision.should_trade)
        self.assertEqual(result.decision.filters.reasons, [])
        self.assertEqual(result.decision.reason_summary, "PASS")
        assert result.quote is not None
        self.assertEqual(result.quote.out_amount, 1_010_000)
        self.assertEqual(jupiter.buy_calls, 3)
        self.assertEqual(jupiter.sell_calls[0]["amount"], 1_010_000)
        self.assertEqual(jupiter.sell_calls[0]["max_attempts"], 2)
        self.assertIn(ev.WARN_HOLDER_CONCENTRATION, result.decision.filters.warnings)
        self.assertEqual(len(self.store.decisions), 1)
        self.assertEqual(self.store.decisions[0][1], "paper")
        self.assertEqual(self.store.tokens[0]["mint"], MINT)

    def test_low_liquidity_rejects_without_quoting(self) -> None:
        jupiter = FakeJupiter()
        result = self._evaluate(_candidate(liquidity_sol=2.0), jupiter)
        self.assertFalse(result.decision.should_trade)
        self.assertIn(ev.REASON_LIQUIDITY_BELOW_MIN, result.decision.filters.reasons)
        self.assertIsNone(result.quote)
        self.assertEqual(jupiter.buy_calls, 0)
        self.assertEqual(jupiter.sell_calls, [])
        self.assertEqual(len(self.store.decisions), 1)

    def test_unstable_quotes_reject(self) -> None:
        jupiter = FakeJupiter(buy_outs=[100, 100, 130])
        result = self._evaluate(_candidate(), jupiter)
        filters = result.decision.filters
        self.assertIn(ev.REASON_QUOTE_INSTABILITY, filters.reasons)
        assert filters.quote_stability_pct is not None
        self.assertAlmostEqual(filters.quote_stability_pct, 27.2727, places=3)
        self.assertFalse(result.decision.should_trade)

    def test_stability_helper(self) -> None:
        self.assertAlmostEqual(ev.quote_stability_pct([100, 100, 130]), 30 / 110 * 100)
        self.assertEqual(ev.quote_stability_pct([]), 100.0)
        self.assertEqual(ev.quote_stability_pct([0, 0]), 100.0)

    def test_no_buy_route_skips_sell_route_check(self) -> None:
        jupiter = FakeJupiter(buy_error=True)
        result = self._evaluate(_candidate(), jupiter)
        self.assertEqual(result.decision.filters.reasons, [ev.REASON_NO_BUY_ROUTE])
        self.assertIsNone(result.quote)
        self.assertEqual(jupiter.buy_calls, 1)
        self.assertEqual(jupiter.sell_calls, [])

    def test_no_sell_route_rejects(self) -> None:
        result = self._evaluate(_candidate(), FakeJupiter(sell_error=True))
        self.assertEqual(result.decision.filters.reasons, [ev.REASON_NO_SELL_ROUTE])
        self.assertIsNotNone(result.quote)

    def test_price_impact_cap(self) -> None:
        result = self._evaluate(_candidate(), FakeJupiter(impact=7.5))
        self.assertIn(ev.REASON_PRICE_IMPACT_TOO_HIGH, result.decision.filters.reasons)
        self.assertEqual(result.decision.filters.price_impact_pct, 7.5)

    def test_authority_strict_rejects(self) -> None:
        self.patch_cfg(AUTHORITY_POLICY="strict")
        authority = FakeAuthority(MintAuthorityStatus(mint=MINT, mint_authority="Auth1111111"))
        result = self._evaluate(_candidate(), FakeJupiter(), authority)
        self.assertIn(ev.REASON_AUTHORITY_STRICT, result.decision.filters.reasons)
        self.assertFalse(result.decision.should_trade)

    def test_authority_permissive_warns(self) -> None:
        authority = FakeAuthority(MintAuthorityStatus(mint=MINT, freeze_authority="Auth1111111"))
        result = self._evaluate(_candidate(), FakeJupiter(), authority)
        self.assertTrue(result.decision.should_trade)
        self.assertIn(ev.WARN_AUTHORITY_PERMISSIVE, result.decision.filters.warnings)

    def test_authority_lookup_failure_is_a_warning(self) -> None:
        authority = FakeAuthority(error=RuntimeError("rpc down"))
        result = self._evaluate(_candidate(), FakeJupiter(), authority)
        self.assertTrue(result.decision.should_trade)
        self.assertIn(ev.WARN_AUTHORITY_CHECK_FAILED, result.decision.filters.warnings)
        self.assertEqual(self.store.tokens, [])

    def test_token_upsert_failure_still_records_decision(self) -> None:
        self.store = LockedTokenStore()
        with self.assertLogs("trading.evaluator", level="WARNING") as logs:
            result = self._evaluate(_candidate(), FakeJupiter())
        self.assertIn(ev.WARN_AUTHORITY_CHECK_FAILED, result.decision.filters.warnings)
        self.assertEqual(len(self.store.decisions), 1)
        self.assertIs(self.store.decisions[0][0], result.decision)
        self.assertTrue(any("database is locked" in line for line in logs.output))

    def test_holder_lookup_failure_fails_open(self) -> None:
        self.patch_cfg(MIN_HOLDER_COUNT=50)
        holders = FakeHolders(None)
        result = self._evaluate(_candidate(), FakeJupiter(), holders=holders)
        self.assertTrue(result.decision.should_trade)
        self.assertIn(ev.WARN_HOLDER_CHECK_SKIPPED, result.decision.filters.warnings)
        self.assertEqual(holders.calls, 1)

    def test_holder_count_below_minimum_rejects(self) -> None:
        self.patch_cfg(MIN_HOLDER_COUNT=50)
        result = self._evaluate(_candidate(), FakeJupiter(), holders=FakeHolders(12))
        self.assertIn(ev.REASON_HOLDER_COUNT_TOO_LOW, result.decision.filters.reasons)
        self.assertEqual(result.decision.filters.holder_count, 12)

    def test_holder_check_disabled_when_minimum_is_zero(self) -> None:
        holders = FakeHolders(1)
        self._evaluate(_candidate(), FakeJupiter(), holders=holders)
        self.assertEqual(holders.calls, 0)

    def test_cheap_filters_collect_every_reason(self) -> None:
        self.patch_cfg(MIN_VOLUME_M5_USD=5000.0, MAX_MC_USD=50_000.0)
        candidate = _candidate(
            created_at=NOW - timedelta(minutes=90),
            tx_buys_m5=2,
            tx_sells_m5=10,
        )
        result = self._evaluate(candidate, FakeJupiter())
        self.assertEqual(
            result.decision.filters.reasons[:4],
            [
                ev.REASON_POOL_TOO_OLD,
                ev.REASON_MC_TOO_HIGH,
                ev.REASON_VOLUME_M5_TOO_LOW,
                ev.REASON_SELL_DOMINATED_M5,
            ],
        )

    def test_missing_market_cap_is_a_warning(self) -> None:
        result = self._evaluate(_candidate(fdv_usd=0.0), FakeJupiter())
        self.assertIn(ev.WARN_MC_UNAVAILABLE, result.decision.filters.warnings)
        self.assertTrue(result.decision.should_trade)

    def test_score_threshold(self) -> None:
        self.patch_cfg(SCORE_THRESHOLD=100.0)
        result = self._evaluate(_candidate(), FakeJupiter())
        self.assertEqual(result.decision.filters.reasons, [ev.REASON_SCORE_BELOW_THRESHOLD])
        self.assertFalse(result.decision.should_trade)


if __name__ == "__main__":
    unittest.main()
