"""Mint/address helpers. Solana base58 keys are case-sensitive, so never lowercase them."""

from __future__ import annotations


def normalize_mint(value: str | None) -> str:
    """Normalize a mint/pubkey string for internal maps/dedup."""
    return str(value or "").strip()


def mint_from_gecko_id(value: object) -> str:
    """GeckoTerminal ids look like ``solana_<mint>``; return the mint part."""
    if not isinstance(value, str):
        return ""
    idx = value.find("_")
    return normalize_mint(value if idx == -1 else value[idx + 1 :])


def mask_pubkey(pubkey: str | None) -> str:
    key = normalize_mint(pubkey)
    if len(key) < 10:
        return "N/A"
    return f"{key[:4]}...{key[-4:]}"


def short_symbol(mint: str) -> str:
    return normalize_mint(mint)[:6]


def short_name(mint: str) -> str:
    key = normalize_mint(mint)
    if len(key) < 8:
        return key
    return f"{key[:4]}...{key[-4:]}"
