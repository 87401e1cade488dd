"""Chain execution adapter: balances, mint info, simulate/send/confirm over solana-py."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Processed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

import config
from trading.models import LAMPORTS_PER_SOL, MintAuthorityStatus

logger = logging.getLogger(__name__)

WSOL_MINT = "So11111111111111111111111111111111111111112"


@dataclass
class RpcHealth:
    ok: bool
    slot: int | None = None
    error: str | None = None


@dataclass
class AssetBalance:
    amount_raw: int
    decimals: int


@dataclass
class SimulationResult:
    ok: bool
    logs: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class ConfirmResult:
    ok: bool
    error: str | None = None


def load_keypair(path: str) -> Keypair:
    """Read a JSON secret-key array (solana-keygen format)."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, list) or not payload:
        raise ValueError(f"keypair file is not a JSON byte array: {path}")
    return Keypair.from_bytes(bytes(int(b) for b in payload))


def deserialize_transaction(payload_b64: str) -> VersionedTransaction:
    return VersionedTransaction.from_bytes(base64.b64decode(payload_b64))


def sign_transaction(transaction: VersionedTransaction, keypair: Keypair) -> VersionedTransaction:
    return VersionedTransaction(transaction.message, [keypair])


def atomic_to_ui(amount_raw: int, decimals: int) -> float:
    return float(amount_raw) / float(10 ** int(decimals))


def ui_to_atomic(amount_ui: float, decimals: int) -> int:
    return int(float(amount_ui) * (10 ** int(decimals)))


def _parsed_info(account: Any) -> dict[str, Any] | None:
    data = getattr(account, "data", None)
    parsed = getattr(data, "parsed", None)
    if not isinstance(parsed, dict):
        return None
    info = parsed.get("info")
    return info if isinstance(info, dict) else None


class SolanaRpc:
    def __init__(self, rpc_url: str | None = None, timeout_seconds: float | None = None) -> None:
        url = str(rpc_url or config.RPC_URL or "").strip()
        if not url:
            raise ValueError("RPC_URL is empty")
        timeout = float(timeout_seconds or getattr(config, "RPC_TIMEOUT_SECONDS", 20.0) or 20.0)
        self.client = AsyncClient(url, commitment=Confirmed, timeout=timeout)

    async def close(self) -> None:
        await self.client.close()

    async def health(self) -> RpcHealth:
        try:
            resp = await self.client.get_latest_blockhash(Processed)
            return RpcHealth(ok=True, slot=int(resp.value.last_valid_block_height))
        except Exception as exc:
            logger.warning("RPC_HEALTH_FAIL error=%s", exc)
            return RpcHealth(ok=False, error=str(exc) or exc.__class__.__name__)

    async def sol_balance(self, owner: Pubkey) -> float:
        resp = await self.client.get_balance(owner, commitment=Confirmed)
        return int(resp.value) / LAMPORTS_PER_SOL

    async def asset_balance(self, owner: Pubkey, mint: str) -> AssetBalance:
        if mint == WSOL_MINT:
            resp = await self.client.get_balance(owner, commitment=Confirmed)
            return AssetBalance(amount_raw=int(resp.value), decimals=9)

        resp = await self.client.get_token_accounts_by_owner_json_parsed(
            owner,
            TokenAccountOpts(mint=Pubkey.from_string(mint)),
            commitment=Confirmed,
        )
        total = 0
        decimals = 0
        for item in resp.value or []:
            info = _parsed_info(item.account) or {}
            token_amount = info.get("tokenAmount") or {}
            total += int(token_amount.get("amount") or 0)
            decimals = int(token_amount.get("decimals") or decimals)
        return AssetBalance(amount_raw=total, decimals=decimals)

    async def _mint_info(self, mint: str) -> dict[str, Any]:
        resp = await self.client.get_account_info_json_parsed(Pubkey.from_string(mint), commitment=Confirmed)
        if resp.value is None:
            raise ValueError(f"Mint account not found: {mint}")
        info = _parsed_info(resp.value)
        if info is None:
            raise ValueError(f"Mint account not parsable: {mint}")
        return info

    async def mint_decimals(self, mint: str) -> int:
        info = await self._mint_info(mint)
        decimals = info.get("decimals")
        if not isinstance(decimals, int):
            raise ValueError(f"Mint decimals missing for {mint}")
        return decimals

    async def mint_authority_status(self, mint: str) -> MintAuthorityStatus:
        info = await self._mint_info(mint)
        return MintAuthorityStatus(
            mint=mint,
            mint_authority=info.get("mintAuthority") or None,
            freeze_authority=info.get("freezeAuthority") or None,
            is_initialized=bool(info.get("isInitialized", False)),
        )

    async def simulate(self, transaction: VersionedTransaction) -> SimulationResult:
        resp = await self.client.simulate_transaction(transaction, sig_verify=False, commitment=Processed)
        logs = [str(line) for line in (resp.value.logs or [])]
        if resp.value.err is not None:
            return SimulationResult(ok=False, logs=logs, error=str(resp.value.err))
        return SimulationResult(ok=True, logs=logs)

    async def send(self, transaction: VersionedTransaction) -> str:
        resp = await self.client.send_raw_transaction(
            bytes(transaction),
            opts=TxOpts(skip_preflight=True, max_retries=2),
        )
        return str(resp.value)

    async def confirm(self, signature: str, blockhash: str, last_valid_block_height: int) -> ConfirmResult:
        try:
            resp = await self.client.confirm_transaction(
                Signature.from_string(signature),
                commitment=Confirmed,
                last_valid_block_height=int(last_valid_block_height),
            )
        except Exception as exc:
            logger.warning(
                "CONFIRM_FAIL signature=%s blockhash=%s error=%s",
                signature,
                blockhash,
                exc,
            )
            return ConfirmResult(ok=False, error=str(exc) or exc.__class__.__name__)
        statuses = list(resp.value or [])
        status = statuses[0] if statuses else None
        if status is None:
            return ConfirmResult(ok=False, error="signature status unavailable (expired)")
        if status.err is not None:
            return ConfirmResult(ok=False, error=str(status.err))
        return ConfirmResult(ok=True)
