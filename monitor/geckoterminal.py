"""New-pool scanner backed by GeckoTerminal."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import config
from trading.models import PoolCandidate, utc_now
from trading.solana_rpc import WSOL_MINT
from utils.addressing import mint_from_gecko_id
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERzD8u6rK53iBLmks5n5G9N8mP8oJwWuj"
USDH_MINT = "USDH1SM1s8B8m8AN4x9Q8A56hAew5s9wVnDXnq4fV6D"

EXCLUDED_MINTS = frozenset({WSOL_MINT, USDC_MINT, USDT_MINT, USDH_MINT})


class ScannerError(RuntimeError):
    pass


class ScannerRateLimited(ScannerError):
    pass


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    return int(_to_float(value))


def _parse_created_at(value: Any) -> datetime:
    raw = str(value or "").strip()
    if not raw:
        return utc_now()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return utc_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _relationship_id(relationships: dict[str, Any], key: str) -> str:
    node = relationships.get(key) or {}
    data = node.get("data") if isinstance(node, dict) else None
    return str((data or {}).get("id") or "")


def parse_pool(pool: dict[str, Any], sol_price_usd: float) -> PoolCandidate | None:
    attrs = pool.get("attributes") or {}
    relationships = pool.get("relationships") or {}
    base_mint = mint_from_gecko_id(_relationship_id(relationships, "base_token"))
    quote_mint = mint_from_gecko_id(_relationship_id(relationships, "quote_token"))
    dex_id = _relationship_id(relationships, "dex") or "unknown"

    trade_mint = quote_mint if base_mint in EXCLUDED_MINTS else base_mint
    if not trade_mint or trade_mint in EXCLUDED_MINTS:
        return None

    reserve_usd = _to_float(attrs.get("reserve_in_usd"))
    liquidity_sol = reserve_usd / sol_price_usd if sol_price_usd > 0 else 0.0
    txs = attrs.get("transactions") or {}
    m5 = txs.get("m5") or {}
    m15 = txs.get("m15") or {}
    m30 = txs.get("m30") or {}
    h1 = txs.get("h1") or {}
    volume = attrs.get("volume_usd") or {}
    change = attrs.get("price_change_percentage") or {}

    return PoolCandidate(
        pool_id=str(pool.get("id") or ""),
        dex_id=dex_id,
        base_mint=base_mint,
        quote_mint=quote_mint,
        trade_mint=trade_mint,
        created_at=_parse_created_at(attrs.get("pool_created_at")),
        reserve_usd=reserve_usd,
        liquidity_sol=liquidity_sol,
        tx_buys_m5=_to_int(m5.get("buys")),
        tx_sells_m5=_to_int(m5.get("sells")),
        tx_buys_m15=_to_int(m15.get("buys")),
        tx_sells_m15=_to_int(m15.get("sells")),
        tx_buys_m30=_to_int(m30.get("buys")),
        tx_sells_m30=_to_int(m30.get("sells")),
        tx_buys_h1=_to_int(h1.get("buys")),
        tx_sells_h1=_to_int(h1.get("sells")),
        volume_m5_usd=_to_float(volume.get("m5")),
        volume_m15_usd=_to_float(volume.get("m15")),
        volume_h1_usd=_to_float(volume.get("h1")),
        price_change_m5_pct=_to_float(change.get("m5")),
        price_change_h1_pct=_to_float(change.get("h1")),
        market_cap_usd=_to_float(attrs.get("market_cap_usd")),
        fdv_usd=_to_float(attrs.get("fdv_usd")),
        raw={"id": pool.get("id"), "attributes": attrs, "relationships": relationships},
    )


def parse_pools(payload: dict[str, Any], sol_price_usd: float) -> list[PoolCandidate]:
    out: list[PoolCandidate] = []
    for pool in payload.get("data") or []:
        if not isinstance(pool, dict):
            continue
        candidate = parse_pool(pool, sol_price_usd)
        if candidate is not None:
            out.append(candidate)
    out.sort(key=lambda c: c.pool_id)
    out.sort(key=lambda c: c.created_at, reverse=True)
    return out


class GeckoTerminalScanner:
    def __init__(
        self,
        http: ResilientHttpClient,
        base_url: str | None = None,
        network: str | None = None,
    ) -> None:
        self._http = http
        self.base_url = str(base_url or config.GECKO_TERMINAL_BASE_URL).rstrip("/")
        self.network = str(network or config.GECKO_NETWORK or "solana")

    async def fetch_pool_candidates(self, sol_price_usd: float) -> list[PoolCandidate]:
        url = f"{self.base_url}/networks/{self.network}/new_pools"
        result = await self._http.get_json(
            url,
            source="geckoterminal",
            params={"page": "1"},
            headers={"Accept": "application/json"},
            max_attempts=1,
        )
        if result.status == 429:
            raise ScannerRateLimited(f"GeckoTerminal new_pools failed (429): {result.text}")
        if not result.ok or not isinstance(result.data, dict):
            detail = (result.text or result.error or "").strip()
            raise ScannerError(f"GeckoTerminal new_pools failed ({result.status}): {detail}")

        candidates = parse_pools(result.data, sol_price_usd)
        logger.debug(
            "SCANNER_FETCH fetched=%s candidates=%s",
            len(result.data.get("data") or []),
            len(candidates),
        )
        if candidates:
            sample = candidates[0]
            logger.debug(
                "SCANNER_SAMPLE pool=%s mint=%s buys_m30=%s change_m5=%.2f mc=%.0f fdv=%.0f",
                sample.pool_id,
                sample.trade_mint,
                sample.tx_buys_m30,
                sample.price_change_m5_pct,
                sample.market_cap_usd,
                sample.fdv_usd,
            )
        return candidates
