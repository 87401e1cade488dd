"""Candidate scoring: composite score in [0, 100] plus a cheap pre-rank heuristic."""

from __future__ import annotations

import config
from trading.models import HardFilterResult, PoolCandidate, Quote, ScoreResult


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class TokenScorer:
    def calculate_score(
        self,
        candidate: PoolCandidate,
        quote: Quote | None,
        filters: HardFilterResult,
        age_minutes: float,
    ) -> ScoreResult:
        freshness = self._score_freshness(age_minutes)

        accel_score = self._score_tx_acceleration(candidate)
        buy_ratio_score = self._score_buy_ratio(candidate)
        vol_accel_score = self._score_volume_acceleration(candidate)
        momentum_score = self._score_momentum(candidate.price_change_m5_pct)
        flow = clamp(accel_score + buy_ratio_score + vol_accel_score + momentum_score, 0, 40)

        route = self._score_route(quote)
        penalties = self._penalties(candidate, filters)

        total = clamp(freshness + flow + route - penalties, 0, 100)
        return ScoreResult(
            total=total,
            freshness=freshness,
            flow=flow,
            route=route,
            penalties=penalties,
            flow_detail={
                "accel_score": accel_score,
                "buy_ratio_score": buy_ratio_score,
                "vol_accel_score": vol_accel_score,
                "momentum_score": momentum_score,
            },
        )

    @staticmethod
    def pre_score(candidate: PoolCandidate) -> float:
        """Network-free rank used to pick which unseen pools get the expensive evaluation."""
        m5_total = candidate.tx_total_m5
        m15_total = candidate.tx_total_m15
        baseline_per5 = m15_total / 3 if m15_total > 0 else 1
        accel = m5_total / baseline_per5 if baseline_per5 > 0 else 0
        buy_ratio = candidate.tx_buys_m5 / m5_total if m5_total >= 5 else 0.5
        price_signal = 1 if candidate.price_change_m5_pct > 5 else 0
        return accel * 10 + buy_ratio * 20 + price_signal * 10

    def rank(self, candidates: list[PoolCandidate], limit: int) -> list[PoolCandidate]:
        scored = [(self.pre_score(c), c) for c in candidates]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [c for _, c in scored[: max(0, int(limit))]]

    @staticmethod
    def _score_freshness(age_minutes: float) -> float:
        window = max(1.0, float(config.FRESH_POOL_WINDOW_MINUTES))
        return clamp(25 - (age_minutes / window) * 25, 0, 25)

    @staticmethod
    def _score_tx_acceleration(candidate: PoolCandidate) -> float:
        m5_total = candidate.tx_total_m5
        m15_total = candidate.tx_total_m15
        m30_total = candidate.tx_total_m30
        if m30_total > 0:
            baseline_per5 = m30_total / 6
        elif m15_total > 0:
            baseline_per5 = m15_total / 3
        else:
            baseline_per5 = 1
        accel = m5_total / baseline_per5 if baseline_per5 > 0 else 0
        return clamp((accel - 1) * 4, 0, 12)

    @staticmethod
    def _buy_ratio(candidate: PoolCandidate) -> float:
        m5_total = candidate.tx_total_m5
        return candidate.tx_buys_m5 / m5_total if m5_total >= 5 else 0.5

    def _score_buy_ratio(self, candidate: PoolCandidate) -> float:
        return clamp(((self._buy_ratio(candidate) - 0.5) / 0.35) * 10, 0, 10)

    @staticmethod
    def _score_volume_acceleration(candidate: PoolCandidate) -> float:
        h1_baseline_per5 = candidate.volume_h1_usd / 12 if candidate.volume_h1_usd > 0 else 0
        if h1_baseline_per5 > 100:
            vol_accel = candidate.volume_m5_usd / h1_baseline_per5
        else:
            vol_accel = 2.0 if candidate.volume_m5_usd > 1000 else 0
        return clamp((vol_accel - 1) * 5, 0, 10)

    @staticmethod
    def _score_momentum(price_change_m5_pct: float) -> float:
        if price_change_m5_pct <= 0:
            return 0
        return clamp((price_change_m5_pct / 15) * 8, 0, 8)

    @staticmethod
    def _score_route(quote: Quote | None) -> float:
        if quote is None:
            return 0
        hops = quote.hops
        if hops <= 1:
            hop_score = 13
        elif hops == 2:
            hop_score = 9
        else:
            hop_score = 5
        impact_score = clamp(12 - float(quote.price_impact_pct) * 2, 0, 12)
        return clamp(hop_score + impact_score, 0, 25)

    def _penalties(self, candidate: PoolCandidate, filters: HardFilterResult) -> float:
        penalties = 0.0
        if filters.authority is not None and filters.authority.has_any_authority:
            penalties += 30 if str(config.AUTHORITY_POLICY) == "strict" else 12
        if (
            filters.quote_stability_pct is not None
            and filters.quote_stability_pct > float(config.QUOTE_STABILITY_PCT_CAP)
        ):
            penalties += 12
        if candidate.tx_total_m5 >= 10 and self._buy_ratio(candidate) < 0.4:
            penalties += 8
        return penalties
