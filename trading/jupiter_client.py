"""Jupiter swap API: quotes, quote retries, and swap transaction building."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import config
from trading.models import Quote
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)


class JupiterError(RuntimeError):
    pass


class QuoteUnavailable(JupiterError):
    """No route, or the quote request failed in transport."""


class SwapBuildError(JupiterError):
    pass


@dataclass
class SwapTransaction:
    swap_transaction_b64: str
    last_valid_block_height: int
    raw: dict[str, Any]


def _to_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _failure_text(prefix: str, result: HttpResult) -> str:
    detail = (result.text or result.error or "").strip()
    return f"{prefix} ({result.status}): {detail}"


def parse_quote(payload: dict[str, Any]) -> Quote:
    route_plan = payload.get("routePlan") or []
    return Quote(
        input_mint=str(payload.get("inputMint") or ""),
        output_mint=str(payload.get("outputMint") or ""),
        in_amount=_to_int(payload.get("inAmount")),
        out_amount=_to_int(payload.get("outAmount")),
        price_impact_pct=_to_float(payload.get("priceImpactPct")),
        route_plan=[row for row in route_plan if isinstance(row, dict)],
        slippage_bps=_to_int(payload.get("slippageBps")),
        raw=dict(payload),
    )


def parse_route_summary(quote: Quote) -> list[str]:
    """Unique AMM labels in route order."""
    labels: list[str] = []
    for part in quote.route_plan:
        label = str((part.get("swapInfo") or {}).get("label") or "").strip()
        if label and label not in labels:
            labels.append(label)
    return labels


class JupiterClient:
    def __init__(self, http: ResilientHttpClient, base_url: str | None = None) -> None:
        self._http = http
        self.base_url = str(base_url or config.JUPITER_BASE_URL).rstrip("/")

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
            "swapMode": "ExactIn",
        }
        result = await self._http.get_json(
            f"{self.base_url}/quote",
            source="jupiter",
            params=params,
            headers={"Accept": "application/json"},
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict):
            raise QuoteUnavailable(_failure_text("Jupiter quote failed", result))
        quote = parse_quote(result.data)
        if quote.out_amount <= 0:
            raise QuoteUnavailable(f"Jupiter quote returned no route output for {output_mint}")
        return quote

    async def get_quote_with_retries(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> Quote:
        attempts = max(1, int(max_attempts or getattr(config, "QUOTE_RETRY_ATTEMPTS", 3) or 3))
        backoff = (
            float(backoff_seconds)
            if backoff_seconds is not None
            else float(getattr(config, "QUOTE_RETRY_BACKOFF_SECONDS", 0.3))
        )
        last_error: QuoteUnavailable | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.get_quote(input_mint, output_mint, amount, slippage_bps)
            except QuoteUnavailable as exc:
                last_error = exc
                logger.warning(
                    "QUOTE_RETRY attempt=%s/%s input=%s output=%s error=%s",
                    attempt,
                    attempts,
                    input_mint,
                    output_mint,
                    exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(backoff * attempt)
        raise last_error or QuoteUnavailable("Jupiter quote failed after retries")

    async def build_swap_transaction(
        self,
        user_public_key: str,
        quote: Quote,
        priority_fee_lamports: int = 0,
    ) -> SwapTransaction:
        body: dict[str, Any] = {
            "userPublicKey": user_public_key,
            "quoteResponse": quote.raw,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        if int(priority_fee_lamports) > 0:
            body["prioritizationFeeLamports"] = int(priority_fee_lamports)

        result = await self._http.post_json(
            f"{self.base_url}/swap",
            json_body=body,
            source="jupiter",
            headers={"Accept": "application/json"},
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict):
            raise SwapBuildError(_failure_text("Jupiter swap build failed", result))
        payload = result.data
        tx_b64 = str(payload.get("swapTransaction") or "")
        if not tx_b64:
            raise SwapBuildError("Jupiter swap build returned no transaction")
        return SwapTransaction(
            swap_transaction_b64=tx_b64,
            last_valid_block_height=_to_int(payload.get("lastValidBlockHeight")),
            raw=dict(payload),
        )
