"""Orchestrator: one tick = status refresh, candidate evaluation, gated entry, position monitoring."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from solders.keypair import Keypair

import config
from database.db import Store
from monitor.geckoterminal import USDC_MINT, GeckoTerminalScanner, ScannerRateLimited
from monitor.token_checker import TokenChecker
from monitor.token_scorer import TokenScorer
from trading.circuit_breaker import CircuitBreaker
from trading.evaluator import CandidateEvaluator
from trading.jupiter_client import JupiterClient
from trading.live_executor import SwapExecutor
from trading.models import LAMPORTS_PER_SOL, MODE_LIVE, CachedValue, PoolCandidate
from trading.position_manager import PositionManager
from trading.risk import (
    RiskCaps,
    RiskSnapshot,
    can_open_new_position,
    compute_at_risk_sol,
    kill_switch_active,
    token_cooldown_active,
)
from trading.runtime_policy import (
    compute_trade_size,
    is_scanner_rate_limited,
    next_scanner_backoff_seconds,
    policy_state,
    scanner_state,
)
from trading.solana_rpc import WSOL_MINT, SolanaRpc, load_keypair
from utils.addressing import mask_pubkey
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

STATE_SYSTEM = "system_status"
STATE_SCANNER = "scanner_status"
STATE_RISK = "risk_status"
STATE_CIRCUIT = "circuit_breaker"

SOL_PRICE_SLIPPAGE_BPS = 30
USDC_DECIMALS_FACTOR = 1_000_000


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _read_wallet() -> Keypair | None:
    path = str(getattr(config, "WALLET_KEYPAIR_PATH", "") or "")
    if not path:
        return None
    try:
        return load_keypair(path)
    except Exception as exc:
        logger.warning("WALLET_READ_FAIL path=%s error=%s", path, exc)
        return None


class AutoTrader:
    def __init__(
        self,
        store: Store,
        *,
        http: ResilientHttpClient | None = None,
        rpc: SolanaRpc | None = None,
        jupiter: JupiterClient | None = None,
        scanner: GeckoTerminalScanner | None = None,
        token_checker: TokenChecker | None = None,
        evaluator: CandidateEvaluator | None = None,
        executor: SwapExecutor | None = None,
        position_manager: PositionManager | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        wallet: Keypair | None = None,
        scorer: TokenScorer | None = None,
    ) -> None:
        self.store = store
        self.http = http or ResilientHttpClient(
            timeout_seconds=float(config.HTTP_TIMEOUT_SECONDS),
            source_limits={"geckoterminal": 2, "jupiter": 4, "helius": 2},
        )
        self.rpc = rpc or SolanaRpc()
        self.jupiter = jupiter or JupiterClient(self.http)
        self.scanner = scanner or GeckoTerminalScanner(self.http)
        self.token_checker = token_checker or TokenChecker(self.rpc, self.http)
        self.scorer = scorer or TokenScorer()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            int(config.FAILURE_CIRCUIT_BREAKER_N),
            float(config.CIRCUIT_BREAKER_COOLDOWN_MINUTES),
        )

        # The status wallet is read in every mode; only live mode hands it to the executor.
        self.status_wallet = wallet if wallet is not None else _read_wallet()
        live_wallet = self.status_wallet if str(config.MODE) == MODE_LIVE else None

        self.evaluator = evaluator or CandidateEvaluator(
            self.jupiter,
            authority_provider=self.token_checker,
            holder_provider=self.token_checker if config.HELIUS_API_KEY else None,
            store=self.store,
            scorer=self.scorer,
        )
        self.executor = executor or SwapExecutor(self.jupiter, self.rpc, live_wallet, self.circuit_breaker)
        self.position_manager = position_manager or PositionManager(
            self.store,
            self.jupiter,
            self.executor,
            self.rpc,
            self.circuit_breaker,
        )

        self.running = False
        self.scanner_backoff_seconds = 0.0
        self.scanner_backoff_until = 0.0
        self.sol_price = CachedValue(value=0.0, expires_at=0.0)
        self.total_ticks = 0
        self.total_opened = 0

        self.store.snapshot_config(str(config.MODE), config.snapshot())
        self._restore_circuit_state()

    def _restore_circuit_state(self) -> None:
        if not bool(getattr(config, "CIRCUIT_BREAKER_PERSIST", False)):
            return
        row = self.store.get_runtime_state(STATE_CIRCUIT)
        if not row:
            return
        self.circuit_breaker.load_state(row.get("value"))
        logger.info(
            "CIRCUIT_RESTORED failures=%s open=%s",
            self.circuit_breaker.consecutive_failures,
            self.circuit_breaker.is_open(),
        )

    def _persist_circuit_state(self) -> None:
        if bool(getattr(config, "CIRCUIT_BREAKER_PERSIST", False)):
            self.store.set_runtime_state(STATE_CIRCUIT, self.circuit_breaker.to_state())

    def risk_snapshot(self, target_mint: str | None = None, kill_switch: bool | None = None) -> RiskSnapshot:
        positions = self.store.list_active_positions()
        circuit = self.circuit_breaker.state()
        cooldown = False
        if target_mint:
            cooldown = token_cooldown_active(
                self.store.last_trade_ts_for_mint(target_mint),
                cooldown_minutes=float(config.TOKEN_COOLDOWN_MINUTES),
            )
        return RiskSnapshot(
            kill_switch_active=kill_switch_active() if kill_switch is None else bool(kill_switch),
            at_risk_sol=compute_at_risk_sol(positions),
            trades_last_hour=self.store.trades_last_hour(),
            cooldown_active=cooldown,
            circuit_open=bool(circuit["is_open"]),
            circuit_reopen_at=circuit["reopen_at"],
            consecutive_failures=int(circuit["consecutive_failures"]),
            max_sol_at_risk=float(config.MAX_SOL_AT_RISK),
            max_trades_per_hour=int(config.MAX_TRADES_PER_HOUR),
        )

    async def sol_price_usd(self) -> float:
        now = time.time()
        if self.sol_price.is_fresh(now):
            return self.sol_price.value
        try:
            quote = await self.jupiter.get_quote_with_retries(
                WSOL_MINT,
                USDC_MINT,
                LAMPORTS_PER_SOL,
                SOL_PRICE_SLIPPAGE_BPS,
            )
            price = float(quote.out_amount) / USDC_DECIMALS_FACTOR
            if price > 0:
                self.sol_price = CachedValue(value=price, expires_at=now + float(config.SOL_PRICE_CACHE_SECONDS))
                return price
        except Exception as exc:
            logger.warning("SOL_PRICE_FALLBACK error=%s", exc)

        if self.sol_price.value > 0:
            return self.sol_price.value
        fallback = float(config.SOL_PRICE_FALLBACK_USD)
        self.sol_price = CachedValue(value=fallback, expires_at=now + float(config.SOL_PRICE_FALLBACK_TTL_SECONDS))
        return fallback

    async def _write_system_status(self) -> None:
        health = await self.rpc.health()
        pubkey = str(self.status_wallet.pubkey()) if self.status_wallet is not None else "N/A"
        balance = 0.0
        if self.status_wallet is not None:
            try:
                balance = await self.rpc.sol_balance(self.status_wallet.pubkey())
            except Exception as exc:
                logger.warning("WALLET_BALANCE_FAIL wallet=%s error=%s", mask_pubkey(pubkey), exc)
        self.store.set_runtime_state(
            STATE_SYSTEM,
            {
                "mode": str(config.MODE),
                "rpcOk": bool(health.ok),
                "rpcSlot": health.slot,
                "rpcError": health.error,
                "walletPubkey": pubkey,
                "walletMasked": mask_pubkey(pubkey) if self.status_wallet is not None else "N/A",
                "walletBalanceSol": balance,
                "heartbeatTs": _iso_now(),
            },
        )

    def _write_scanner_status(
        self,
        *,
        evaluated: int,
        new_pools: int,
        backoff_active: bool,
        last_error: str | None = None,
    ) -> None:
        stats = self.store.scanner_stats()
        payload: dict[str, Any] = {
            "lastScanTime": _iso_now(),
            "poolsSeenCount": stats["pools_seen_count"],
            "candidatesCount": stats["candidates_count"],
            "evaluatedThisScan": int(evaluated),
            "newPoolsThisScan": int(new_pools),
            "backoffActive": bool(backoff_active),
            "backoffUntilTs": _iso_ts(self.scanner_backoff_until) if backoff_active else None,
        }
        if last_error:
            payload["lastError"] = last_error
        data_state, data_reason = policy_state(source_stats=self.http.snapshot_stats(reset=True))
        payload["dataPolicy"] = data_state
        payload["dataPolicyReason"] = data_reason
        state, state_reason = scanner_state(backoff_until=self.scanner_backoff_until, now=time.time())
        payload["scannerState"] = state
        payload["scannerStateReason"] = state_reason
        payload["tokenChecks"] = self.token_checker.runtime_stats(reset=True)
        self.store.set_runtime_state(STATE_SCANNER, payload)

    async def tick(self) -> None:
        self.total_ticks += 1
        kill_switch = kill_switch_active()
        await self._write_system_status()

        now = time.time()
        if now < self.scanner_backoff_until:
            logger.warning(
                "SCANNER_BACKOFF wait_s=%.0f backoff_s=%.0f",
                self.scanner_backoff_until - now,
                self.scanner_backoff_seconds,
            )
            await self.position_manager.monitor_positions()
            self._write_scanner_status(evaluated=0, new_pools=0, backoff_active=True)
            self._persist_circuit_state()
            return

        sol_price = await self.sol_price_usd()
        try:
            candidates = await self.scanner.fetch_pool_candidates(sol_price)
            self.scanner_backoff_seconds = 0.0
            self.scanner_backoff_until = 0.0
        except Exception as exc:
            message = str(exc)
            if not isinstance(exc, ScannerRateLimited) and not is_scanner_rate_limited(message):
                raise
            self.scanner_backoff_seconds = next_scanner_backoff_seconds(self.scanner_backoff_seconds)
            self.scanner_backoff_until = time.time() + self.scanner_backoff_seconds
            logger.warning(
                "SCANNER_RATE_LIMIT backoff_s=%.0f until=%s error=%s",
                self.scanner_backoff_seconds,
                _iso_ts(self.scanner_backoff_until),
                message,
            )
            await self.position_manager.monitor_positions()
            self._write_scanner_status(evaluated=0, new_pools=0, backoff_active=True, last_error=message)
            self._persist_circuit_state()
            return

        fetch_window = candidates[: int(config.MAX_SCAN_POOL_FETCH)]
        unseen = [c for c in fetch_window if not self.store.has_seen_pool(c.pool_id)]
        to_evaluate = self.scorer.rank(unseen, int(config.MAX_CANDIDATES_PER_SCAN))
        if len(fetch_window) > len(to_evaluate):
            logger.debug(
                "SCAN_LIMIT fetched=%s window=%s unseen=%s evaluating=%s",
                len(candidates),
                len(fetch_window),
                len(unseen),
                len(to_evaluate),
            )

        evaluated = 0
        opened_this_tick = False
        for candidate in to_evaluate:
            try:
                evaluated += 1
                if await self._process_candidate(candidate, kill_switch, allow_entry=not opened_this_tick):
                    opened_this_tick = True
            except Exception as exc:
                logger.exception("EVAL_FAIL pool=%s mint=%s error=%s", candidate.pool_id, candidate.trade_mint, exc)

        await self.position_manager.monitor_positions()

        self._write_scanner_status(evaluated=evaluated, new_pools=len(unseen), backoff_active=False)
        self.store.set_runtime_state(STATE_RISK, self.risk_snapshot(kill_switch=kill_switch).to_dict())
        self._persist_circuit_state()
        logger.info(
            "TICK_DONE fetched=%s unseen=%s evaluated=%s opened=%s sol_usd=%.2f",
            len(candidates),
            len(unseen),
            evaluated,
            int(opened_this_tick),
            sol_price,
        )

    async def _process_candidate(self, candidate: PoolCandidate, kill_switch: bool, *, allow_entry: bool) -> bool:
        self.store.upsert_seen_pool(candidate)
        evaluated = await self.evaluator.evaluate(candidate)
        decision = evaluated.decision
        if not decision.should_trade or not allow_entry:
            return False

        trade_size = compute_trade_size(decision.score.total)
        snapshot = self.risk_snapshot(candidate.trade_mint, kill_switch)
        self.store.set_runtime_state(STATE_RISK, snapshot.to_dict())
        risk = can_open_new_position(RiskCaps.from_config(), snapshot, trade_size)
        if not risk.allow:
            logger.warning(
                "RISK_BLOCK mint=%s planned_sol=%.4f reasons=%s",
                candidate.trade_mint,
                trade_size,
                ",".join(risk.reasons),
            )
            return False
        if evaluated.quote is None:
            logger.warning("NO_QUOTE mint=%s", candidate.trade_mint)
            return False

        opened = await self.position_manager.open_position(candidate, evaluated.quote, decision.score.total, trade_size)
        if opened:
            self.total_opened += 1
        return opened

    async def run(self) -> None:
        self.running = True
        logger.info(
            "BOOT mode=%s poll_s=%s db=%s wallet=%s",
            config.MODE,
            config.BOT_POLL_SECONDS,
            config.DB_PATH,
            mask_pubkey(str(self.status_wallet.pubkey())) if self.status_wallet is not None else "N/A",
        )
        while self.running:
            started = time.monotonic()
            try:
                await self.tick()
            except Exception as exc:
                self.circuit_breaker.record_failure()
                logger.exception("LOOP_ERROR error=%s circuit=%s", exc, self.circuit_breaker.state())
            elapsed = time.monotonic() - started
            wait = max(0.0, float(config.BOT_POLL_SECONDS) - elapsed)
            if wait > 0 and self.running:
                await asyncio.sleep(wait)

    def stop(self) -> None:
        self.running = False
        logger.warning("STOP_SIGNAL running=false")

    async def close(self) -> None:
        self._persist_circuit_state()
        await self.http.close()
        await self.rpc.close()
