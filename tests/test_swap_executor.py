from __future__ import annotations

import asyncio
import base64
import unittest
from typing import Any

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

import config
from trading.circuit_breaker import CircuitBreaker
from trading.jupiter_client import SwapTransaction
from trading.live_executor import (
    BalanceVerificationError,
    ExecutionError,
    SwapExecutor,
    verify_balance_deltas,
)
from trading.models import EXEC_CONFIRMED, EXEC_PAPER, SIDE_BUY, Quote
from trading.solana_rpc import WSOL_MINT, AssetBalance, ConfirmResult, SimulationResult

MINT = "MintEXEC111111111111111111111111111111111111"


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


def _unsigned_tx_b64(payer: Keypair) -> str:
    message = MessageV0.try_compile(payer.pubkey(), [], [], Hash.default())
    return base64.b64encode(bytes(VersionedTransaction(message, [payer]))).decode("ascii")


class FakeJupiter:
    def __init__(self, tx_b64: str) -> None:
        self.tx_b64 = tx_b64
        self.quote_calls = 0
        self.build_calls = 0

    async def get_quote_with_retries(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> Quote:
        self.quote_calls += 1
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=5000,
            route_plan=[{"swapInfo": {"label": "Orca"}}, {"swapInfo": {"label": "Orca"}}],
            raw={"outAmount": "5000"},
        )

    async def build_swap_transaction(
        self,
        user_public_key: str,
        quote: Quote,
        priority_fee_lamports: int = 0,
    ) -> SwapTransaction:
        self.build_calls += 1
        return SwapTransaction(swap_transaction_b64=self.tx_b64, last_valid_block_height=321, raw={})


class FakeRpc:
    def __init__(self, balances: dict[str, list[int]], simulate_errors: list[str] | None = None) -> None:
        self.balances = {mint: list(values) for mint, values in balances.items()}
        self.simulate_errors = list(simulate_errors or [])
        self.sent: list[bytes] = []
        self.confirm_args: list[tuple[str, str, int]] = []

    async def simulate(self, transaction: VersionedTransaction) -> SimulationResult:
        if self.simulate_errors:
            return SimulationResult(ok=False, logs=["Program log: fail"], error=self.simulate_errors.pop(0))
        return SimulationResult(ok=True, logs=[f"Program log: {i}" for i in range(30)])

    async def asset_balance(self, owner: Any, mint: str) -> AssetBalance:
        return AssetBalance(amount_raw=self.balances[mint].pop(0), decimals=6)

    async def send(self, transaction: VersionedTransaction) -> str:
        self.sent.append(bytes(transaction))
        return "5igSig111"

    async def confirm(self, signature: str, blockhash: str, last_valid_block_height: int) -> ConfirmResult:
        self.confirm_args.append((signature, blockhash, last_valid_block_height))
        return ConfirmResult(ok=True)


class BalanceVerificationTests(unittest.TestCase):
    def test_positive_deltas(self) -> None:
        self.assertEqual(verify_balance_deltas(100, 60, 0, 7), (40, 7))

    def test_zero_or_negative_deltas_rejected(self) -> None:
        with self.assertRaises(BalanceVerificationError):
            verify_balance_deltas(100, 100, 0, 7)
        with self.assertRaises(BalanceVerificationError) as ctx:
            verify_balance_deltas(100, 60, 7, 7)
        self.assertEqual(str(ctx.exception), "Balance delta verification failed")


class SwapExecutorTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(EXECUTION_MAX_ATTEMPTS=3, EXECUTION_BACKOFF_SECONDS=0.0, SLIPPAGE_BPS=100, PRIORITY_FEE_LAMPORTS=0)
        self.wallet = Keypair()
        self.jupiter = FakeJupiter(_unsigned_tx_b64(self.wallet))
        self.breaker = CircuitBreaker(threshold=3, cooldown_minutes=30)

    def _live(self, rpc: FakeRpc) -> SwapExecutor:
        return SwapExecutor(self.jupiter, rpc, self.wallet, self.breaker, mode="live")  # type: ignore[arg-type]

    def test_paper_fill_uses_quote_and_records_success(self) -> None:
        self.breaker.record_failure(now=1.0)
        executor = SwapExecutor(self.jupiter, None, None, self.breaker, mode="paper")  # type: ignore[arg-type]
        result = asyncio.run(executor.execute_swap(WSOL_MINT, MINT, 20_000_000, SIDE_BUY))
        self.assertEqual(result.status, EXEC_PAPER)
        self.assertEqual(result.in_amount_raw, 20_000_000)
        self.assertEqual(result.out_amount_raw, 5000)
        self.assertEqual(result.route_summary, ["Orca"])
        self.assertIsNone(result.signature)
        self.assertEqual(self.breaker.consecutive_failures, 0)
        self.assertEqual(self.jupiter.build_calls, 0)

    def test_live_fill_reports_measured_deltas(self) -> None:
        rpc = FakeRpc({WSOL_MINT: [1_000_000_000, 979_000_000], MINT: [0, 4_900]})
        fallback = Quote(input_mint=WSOL_MINT, output_mint=MINT, in_amount=20_000_000, out_amount=5000)
        result = asyncio.run(self._live(rpc).execute_swap(WSOL_MINT, MINT, 20_000_000, SIDE_BUY, fallback_quote=fallback))
        self.assertEqual(result.status, EXEC_CONFIRMED)
        self.assertEqual(result.in_amount_raw, 21_000_000)
        self.assertEqual(result.out_amount_raw, 4_900)
        self.assertEqual(result.expected_out_raw, 5000)
        self.assertEqual(result.signature, "5igSig111")
        self.assertEqual(len(result.simulation_logs), 20)
        self.assertEqual(result.balances["output_after"], "4900")  # type: ignore[index]
        self.assertEqual(self.jupiter.quote_calls, 0)
        self.assertEqual(rpc.confirm_args[0][2], 321)
        self.assertEqual(len(rpc.sent), 1)

    def test_live_first_attempt_reuses_logged_quote(self) -> None:
        rpc = FakeRpc({WSOL_MINT: [1_000_000_000, 980_000_000], MINT: [0, 5_000]})
        result = asyncio.run(self._live(rpc).execute_swap(WSOL_MINT, MINT, 20_000_000, SIDE_BUY))
        self.assertEqual(result.status, EXEC_CONFIRMED)
        self.assertEqual(result.expected_out_raw, 5000)
        self.assertEqual(self.jupiter.quote_calls, 1)
        self.assertEqual(self.jupiter.build_calls, 1)

    def test_zero_output_delta_is_a_hard_failure(self) -> None:
        rpc = FakeRpc({WSOL_MINT: [1_000_000_000, 980_000_000], MINT: [0, 0]})
        with self.assertRaises(BalanceVerificationError):
            asyncio.run(self._live(rpc).execute_swap(WSOL_MINT, MINT, 20_000_000, SIDE_BUY))
        self.assertEqual(len(rpc.sent), 1)

    def test_transient_failure_retries_with_fresh_quote(self) -> None:
        rpc = FakeRpc(
            {WSOL_MINT: [1_000_000_000, 980_000_000], MINT: [0, 5_000]},
            simulate_errors=["Blockhash not found"],
        )
        fallback = Quote(input_mint=WSOL_MINT, output_mint=MINT, in_amount=20_000_000, out_amount=5000)
        result = asyncio.run(self._live(rpc).execute_swap(WSOL_MINT, MINT, 20_000_000, SIDE_BUY, fallback_quote=fallback))
        self.assertEqual(result.status, EXEC_CONFIRMED)
        self.assertEqual(self.jupiter.build_calls, 2)
        self.assertEqual(self.jupiter.quote_calls, 1)

    def test_non_transient_failure_is_not_retried(self) -> None:
        rpc = FakeRpc({WSOL_MINT: [], MINT: []}, simulate_errors=["InstructionError custom program error 0x1771"])
        with self.assertRaises(ExecutionError) as ctx:
            asyncio.run(self._live(rpc).execute_swap(WSOL_MINT, MINT, 20_000_000, SIDE_BUY))
        self.assertIn("Simulation failed", str(ctx.exception))
        self.assertEqual(self.jupiter.build_calls, 1)
        self.assertEqual(rpc.sent, [])

    def test_live_without_wallet_is_rejected(self) -> None:
        executor = SwapExecutor(self.jupiter, None, None, self.breaker, mode="live")  # type: ignore[arg-type]
        with self.assertRaises(ExecutionError) as ctx:
            asyncio.run(executor.execute_swap(WSOL_MINT, MINT, 1_000, SIDE_BUY))
        self.assertIn("wallet", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
