from __future__ import annotations

import unittest
from datetime import datetime, timezone

import config
from monitor.token_scorer import TokenScorer
from trading.models import HardFilterResult, MintAuthorityStatus, PoolCandidate, Quote


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


def _candidate(pool_id: str = "solana_pool1", **overrides: object) -> PoolCandidate:
    fields: dict[str, object] = {
        "pool_id": pool_id,
        "dex_id": "raydium",
        "base_mint": "Mint111",
        "quote_mint": "So11111111111111111111111111111111111111112",
        "trade_mint": "Mint111",
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return PoolCandidate(**fields)  # type: ignore[arg-type]


def _hot_candidate() -> PoolCandidate:
    return _candidate(
        tx_buys_m5=40,
        tx_sells_m5=0,
        tx_buys_m30=50,
        tx_sells_m30=10,
        volume_m5_usd=5000.0,
        volume_h1_usd=12000.0,
        price_change_m5_pct=30.0,
    )


def _quote(hops: int, impact: float) -> Quote:
    return Quote(
        input_mint="So11111111111111111111111111111111111111112",
        output_mint="Mint111",
        in_amount=20_000_000,
        out_amount=1_000_000,
        price_impact_pct=impact,
        route_plan=[{"swapInfo": {"label": f"amm{i}"}} for i in range(hops)],
    )


class TokenScorerTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(FRESH_POOL_WINDOW_MINUTES=60, AUTHORITY_POLICY="permissive", QUOTE_STABILITY_PCT_CAP=8.0)
        self.scorer = TokenScorer()

    def test_saturated_components_hit_caps(self) -> None:
        score = self.scorer.calculate_score(_hot_candidate(), _quote(1, 0.0), HardFilterResult(), age_minutes=0.0)
        self.assertEqual(score.freshness, 25)
        self.assertEqual(score.flow, 40)
        self.assertEqual(score.route, 25)
        self.assertEqual(score.penalties, 0)
        self.assertEqual(score.total, 90)

    def test_extremes_clamp_to_zero(self) -> None:
        filters = HardFilterResult(quote_stability_pct=50.0)
        candidate = _candidate(price_change_m5_pct=-80.0)
        score = self.scorer.calculate_score(candidate, None, filters, age_minutes=10_000.0)
        self.assertEqual(score.freshness, 0)
        self.assertEqual(score.flow, 0)
        self.assertEqual(score.route, 0)
        self.assertEqual(score.penalties, 12)
        self.assertEqual(score.total, 0)

    def test_total_is_clamped_sum_minus_penalties(self) -> None:
        filters = HardFilterResult(authority=MintAuthorityStatus(mint="Mint111", mint_authority="Auth111"))
        score = self.scorer.calculate_score(_hot_candidate(), _quote(2, 1.0), filters, age_minutes=30.0)
        expected = max(0.0, min(100.0, score.freshness + score.flow + score.route - score.penalties))
        self.assertAlmostEqual(score.total, expected)
        self.assertEqual(score.route, 9 + 10)
        self.assertEqual(score.penalties, 12)

    def test_strict_authority_penalty_is_heavier(self) -> None:
        self.patch_cfg(AUTHORITY_POLICY="strict")
        filters = HardFilterResult(authority=MintAuthorityStatus(mint="Mint111", freeze_authority="Auth111"))
        score = self.scorer.calculate_score(_hot_candidate(), _quote(1, 0.0), filters, age_minutes=0.0)
        self.assertEqual(score.penalties, 30)
        self.assertEqual(score.total, 60)

    def test_sell_pressure_penalty(self) -> None:
        candidate = _candidate(tx_buys_m5=3, tx_sells_m5=9)
        score = self.scorer.calculate_score(candidate, None, HardFilterResult(), age_minutes=0.0)
        self.assertEqual(score.penalties, 8)

    def test_pre_score_and_rank(self) -> None:
        quiet = _candidate("solana_quiet")
        busy = _candidate("solana_busy", tx_buys_m5=9, tx_sells_m5=1, tx_buys_m15=5, tx_sells_m15=1)
        pumping = _candidate("solana_pump", price_change_m5_pct=12.0)
        self.assertEqual(TokenScorer.pre_score(quiet), 10.0)
        self.assertEqual(TokenScorer.pre_score(pumping), 20.0)
        ranked = self.scorer.rank([quiet, pumping, busy], limit=2)
        self.assertEqual([c.pool_id for c in ranked], ["solana_busy", "solana_pump"])
        self.assertEqual(self.scorer.rank([quiet], limit=0), [])


if __name__ == "__main__":
    unittest.main()
