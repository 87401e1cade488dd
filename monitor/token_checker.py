"""Mint authority lookups and optional Helius holder counts (both fail-open)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import config
from trading.models import MintAuthorityStatus
from trading.solana_rpc import SolanaRpc
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class TokenChecker:
    def __init__(self, rpc: SolanaRpc, http: ResilientHttpClient) -> None:
        self._rpc = rpc
        self._http = http
        self._authority_checks = 0
        self._authority_fail = 0
        self._holder_checks = 0
        self._holder_skipped = 0
        self._fail_reasons: dict[str, int] = {}
        self._authority_cache: dict[str, tuple[float, MintAuthorityStatus]] = {}

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        top_reason = "none"
        top_count = 0
        if self._fail_reasons:
            top_reason, top_count = max(self._fail_reasons.items(), key=lambda kv: int(kv[1]))
        out = {
            "authority_checks": int(self._authority_checks),
            "authority_fail": int(self._authority_fail),
            "holder_checks": int(self._holder_checks),
            "holder_skipped": int(self._holder_skipped),
            "fail_reason_top": top_reason,
            "fail_reason_top_count": int(top_count),
        }
        if reset:
            self._authority_checks = 0
            self._authority_fail = 0
            self._holder_checks = 0
            self._holder_skipped = 0
            self._fail_reasons = {}
        return out

    def _mark_fail_reason(self, reason: str) -> None:
        key = str(reason or "unknown").strip().lower() or "unknown"
        self._fail_reasons[key] = int(self._fail_reasons.get(key, 0)) + 1

    def _cached_authority(self, mint: str) -> MintAuthorityStatus | None:
        entry = self._authority_cache.get(mint)
        if not entry:
            return None
        ts, status = entry
        ttl = max(0, int(getattr(config, "AUTHORITY_CACHE_TTL_SECONDS", 300) or 0))
        if (time.time() - ts) > ttl:
            self._authority_cache.pop(mint, None)
            return None
        return status

    async def get_authority_status(self, mint: str) -> MintAuthorityStatus:
        """Raises on lookup failure; the evaluator records that as a warning."""
        cached = self._cached_authority(mint)
        if cached is not None:
            return cached
        self._authority_checks += 1
        try:
            status = await self._rpc.mint_authority_status(mint)
        except Exception as exc:
            self._authority_fail += 1
            self._mark_fail_reason(exc.__class__.__name__)
            raise
        # Revoked authorities cannot come back; only cache the terminal state.
        if not status.has_any_authority:
            self._authority_cache[mint] = (time.time(), status)
            if len(self._authority_cache) > 5000:
                oldest = min(self._authority_cache.items(), key=lambda kv: kv[1][0])[0]
                self._authority_cache.pop(oldest, None)
        return status

    async def get_holder_count(self, mint: str) -> int | None:
        """Holder count from Helius, or None on timeout/error/missing key."""
        api_key = str(getattr(config, "HELIUS_API_KEY", "") or "")
        if not api_key:
            return None
        self._holder_checks += 1
        timeout = float(getattr(config, "HOLDER_CHECK_TIMEOUT_SECONDS", 0.6) or 0.6)
        url = str(config.HELIUS_RPC_URL_TEMPLATE).format(api_key=api_key)
        body = {
            "jsonrpc": "2.0",
            "id": "holder-count",
            "method": "getTokenAccounts",
            "params": {"mint": mint, "limit": 1000, "options": {"showZeroBalance": False}},
        }
        try:
            result = await asyncio.wait_for(
                self._http.post_json(url, json_body=body, source="helius", max_attempts=1),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._holder_skipped += 1
            self._mark_fail_reason("holder_timeout")
            return None
        if not result.ok or not isinstance(result.data, dict):
            self._holder_skipped += 1
            self._mark_fail_reason(result.error or "holder_http_fail")
            return None
        payload = result.data.get("result") or {}
        total = payload.get("total")
        if isinstance(total, int):
            return total
        accounts = payload.get("token_accounts")
        if isinstance(accounts, list):
            return len(accounts)
        self._holder_skipped += 1
        self._mark_fail_reason("holder_payload")
        return None
