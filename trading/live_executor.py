"""Swap execution engine: paper fills, or quote -> build -> simulate -> send -> confirm -> verify."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from solders.keypair import Keypair

import config
from trading.circuit_breaker import CircuitBreaker
from trading.jupiter_client import JupiterClient, parse_route_summary
from trading.models import EXEC_CONFIRMED, EXEC_PAPER, MODE_PAPER, Quote, SwapExecutionResult
from trading.runtime_policy import is_transient_error
from trading.solana_rpc import SolanaRpc, deserialize_transaction, sign_transaction

logger = logging.getLogger(__name__)

SIMULATION_LOG_EXCERPT = 20


class ExecutionError(RuntimeError):
    pass


class BalanceVerificationError(ExecutionError):
    def __init__(self, message: str = "Balance delta verification failed") -> None:
        super().__init__(message)


def verify_balance_deltas(
    input_before: int,
    input_after: int,
    output_before: int,
    output_after: int,
) -> tuple[int, int]:
    """Return (input_spent, output_received); both must be strictly positive."""
    input_delta = int(input_before) - int(input_after)
    output_delta = int(output_after) - int(output_before)
    if input_delta <= 0 or output_delta <= 0:
        raise BalanceVerificationError()
    return input_delta, output_delta


class SwapExecutor:
    def __init__(
        self,
        jupiter: JupiterClient,
        rpc: SolanaRpc | None,
        wallet: Keypair | None,
        circuit_breaker: CircuitBreaker,
        mode: str | None = None,
    ) -> None:
        self.jupiter = jupiter
        self.rpc = rpc
        self.wallet = wallet
        self.circuit_breaker = circuit_breaker
        self._mode = mode

    @property
    def mode(self) -> str:
        return str(self._mode or config.MODE)

    async def _quote(self, input_mint: str, output_mint: str, amount_raw: int) -> Quote:
        return await self.jupiter.get_quote_with_retries(
            input_mint,
            output_mint,
            amount_raw,
            int(config.SLIPPAGE_BPS),
        )

    async def execute_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount_raw: int,
        side: str,
        fallback_quote: Quote | None = None,
    ) -> SwapExecutionResult:
        quote = fallback_quote or await self._quote(input_mint, output_mint, amount_raw)
        route_summary = parse_route_summary(quote)
        logger.info(
            "GET_QUOTE side=%s input=%s output=%s in_raw=%s expected_out_raw=%s impact_pct=%s route=%s",
            side,
            input_mint,
            output_mint,
            amount_raw,
            quote.out_amount,
            quote.price_impact_pct,
            ",".join(route_summary) or "-",
        )

        if self.mode == MODE_PAPER:
            logger.info(
                "WOULD_TRADE side=%s in_raw=%s out_raw=%s",
                side,
                amount_raw,
                quote.out_amount,
            )
            self.circuit_breaker.record_success()
            return SwapExecutionResult(
                status=EXEC_PAPER,
                in_amount_raw=int(amount_raw),
                out_amount_raw=int(quote.out_amount),
                expected_out_raw=int(quote.out_amount),
                route_summary=route_summary,
                quote=quote.raw,
            )

        if self.wallet is None or self.rpc is None:
            raise ExecutionError("LIVE mode requires loaded wallet")

        attempts = max(1, int(getattr(config, "EXECUTION_MAX_ATTEMPTS", 3) or 3))
        backoff = float(getattr(config, "EXECUTION_BACKOFF_SECONDS", 0.4))
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                attempt_quote = quote if attempt == 1 else await self._quote(input_mint, output_mint, amount_raw)
                result = await self._execute_live_attempt(
                    input_mint, output_mint, amount_raw, side, attempt, attempt_quote
                )
                self.circuit_breaker.record_success()
                return result
            except Exception as exc:
                last_error = exc
                logger.warning("EXEC_RETRY attempt=%s side=%s error=%s", attempt, side, exc)
                if attempt >= attempts or not is_transient_error(str(exc)):
                    break
                await asyncio.sleep(backoff * attempt)

        raise last_error or ExecutionError("Execution failed with unknown error")

    async def _execute_live_attempt(
        self,
        input_mint: str,
        output_mint: str,
        amount_raw: int,
        side: str,
        attempt: int,
        quote: Quote,
    ) -> SwapExecutionResult:
        wallet = self.wallet
        rpc = self.rpc
        if wallet is None or rpc is None:
            raise ExecutionError("LIVE mode requires loaded wallet")
        owner = wallet.pubkey()
        route = parse_route_summary(quote)

        swap = await self.jupiter.build_swap_transaction(
            str(owner),
            quote,
            priority_fee_lamports=int(getattr(config, "PRIORITY_FEE_LAMPORTS", 0) or 0),
        )
        unsigned = deserialize_transaction(swap.swap_transaction_b64)
        simulation = await rpc.simulate(unsigned)
        if not simulation.ok:
            raise ExecutionError(f"Simulation failed: {simulation.error or 'unknown error'}")

        input_before = await rpc.asset_balance(owner, input_mint)
        output_before = await rpc.asset_balance(owner, output_mint)

        signed = sign_transaction(unsigned, wallet)
        send_started = time.monotonic()
        signature = await rpc.send(signed)
        logger.info("TX_SENT side=%s signature=%s attempt=%s", side, signature, attempt)

        confirmed = await rpc.confirm(
            signature,
            str(signed.message.recent_blockhash),
            swap.last_valid_block_height,
        )
        if not confirmed.ok:
            raise ExecutionError(f"Confirmation failed: {confirmed.error or 'unknown error'}")

        input_after = await rpc.asset_balance(owner, input_mint)
        output_after = await rpc.asset_balance(owner, output_mint)
        input_delta, output_delta = verify_balance_deltas(
            input_before.amount_raw,
            input_after.amount_raw,
            output_before.amount_raw,
            output_after.amount_raw,
        )

        confirmation_ms = int((time.monotonic() - send_started) * 1000)
        logger.info(
            "CONFIRMED side=%s signature=%s confirmation_ms=%s in_delta_raw=%s out_delta_raw=%s",
            side,
            signature,
            confirmation_ms,
            input_delta,
            output_delta,
        )
        balances: dict[str, Any] = {
            "input_before": str(input_before.amount_raw),
            "input_after": str(input_after.amount_raw),
            "output_before": str(output_before.amount_raw),
            "output_after": str(output_after.amount_raw),
        }
        return SwapExecutionResult(
            status=EXEC_CONFIRMED,
            in_amount_raw=input_delta,
            out_amount_raw=output_delta,
            expected_out_raw=int(quote.out_amount),
            route_summary=route,
            quote=quote.raw,
            signature=signature,
            simulation_logs=simulation.logs[:SIMULATION_LOG_EXCERPT],
            confirmation_ms=confirmation_ms,
            balances=balances,
        )
