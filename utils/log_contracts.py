"""Stable audit contracts for persisted decisions and trades."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-03-01.v1"

SCHEMA_CANDIDATE_DECISION = "candidate_decision.v1"
SCHEMA_TRADE_EVENT = "trade_event.v1"

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    # Hard filters.
    "POOL_TOO_OLD": {"severity": "INFO", "category": "filter", "title": "Pool older than freshness window"},
    "LIQUIDITY_BELOW_MIN": {"severity": "INFO", "category": "filter", "title": "Liquidity below minimum"},
    "MC_TOO_LOW": {"severity": "INFO", "category": "filter", "title": "Market cap below band"},
    "MC_TOO_HIGH": {"severity": "INFO", "category": "filter", "title": "Market cap above band"},
    "VOLUME_M5_TOO_LOW": {"severity": "INFO", "category": "filter", "title": "5m volume below minimum"},
    "SELL_DOMINATED_M5": {"severity": "INFO", "category": "filter", "title": "Sells dominate 5m flow"},
    "NO_BUY_ROUTE": {"severity": "WARN", "category": "route", "title": "No viable buy route"},
    "NO_SELL_ROUTE": {"severity": "WARN", "category": "route", "title": "No viable sell route"},
    "QUOTE_INSTABILITY": {"severity": "INFO", "category": "route", "title": "Quote samples unstable"},
    "PRICE_IMPACT_TOO_HIGH": {"severity": "INFO", "category": "route", "title": "Price impact above cap"},
    "HOLDER_COUNT_TOO_LOW": {"severity": "INFO", "category": "filter", "title": "Holder count below minimum"},
    "AUTHORITY_ENABLED_STRICT_REJECT": {
        "severity": "WARN",
        "category": "authority",
        "title": "Mint or freeze authority present",
    },
    "SCORE_BELOW_THRESHOLD": {"severity": "INFO", "category": "score", "title": "Score below threshold"},
    # Non-blocking warnings.
    "MC_UNAVAILABLE": {"severity": "WARN", "category": "data", "title": "Market cap unavailable"},
    "HOLDER_CHECK_SKIPPED": {"severity": "WARN", "category": "data", "title": "Holder check skipped"},
    "AUTHORITY_CHECK_FAILED": {"severity": "WARN", "category": "authority", "title": "Authority lookup failed"},
    "AUTHORITY_ENABLED_PERMISSIVE_WARNING": {
        "severity": "WARN",
        "category": "authority",
        "title": "Authority present (permissive policy)",
    },
    "HOLDER_CONCENTRATION_NOT_ENFORCED": {
        "severity": "INFO",
        "category": "data",
        "title": "Holder concentration not enforced",
    },
    # Risk governor.
    "KILL_SWITCH_ACTIVE": {"severity": "WARN", "category": "risk", "title": "Kill switch active"},
    "CIRCUIT_BREAKER_OPEN": {"severity": "WARN", "category": "risk", "title": "Circuit breaker open"},
    "TOKEN_COOLDOWN_ACTIVE": {"severity": "INFO", "category": "risk", "title": "Token cooldown active"},
    "MAX_TRADES_PER_HOUR_REACHED": {"severity": "INFO", "category": "risk", "title": "Hourly trade cap reached"},
    "MAX_SOL_AT_RISK_EXCEEDED": {"severity": "INFO", "category": "risk", "title": "At-risk cap exceeded"},
    # Exits.
    "TP1": {"severity": "INFO", "category": "exit", "title": "Take profit tier 1"},
    "TP2": {"severity": "INFO", "category": "exit", "title": "Take profit tier 2"},
    "TP3": {"severity": "INFO", "category": "exit", "title": "Take profit tier 3"},
    "TRAILING_STOP": {"severity": "INFO", "category": "exit", "title": "Trailing stop"},
    "STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Stop loss"},
    "TIME_STOP": {"severity": "INFO", "category": "exit", "title": "Time stop"},
    "ZERO_REMAINING": {"severity": "INFO", "category": "exit", "title": "Closed with zero remaining"},
    # Trade outcomes.
    "PASS": {"severity": "INFO", "category": "decision", "title": "Candidate passed"},
    "EXEC_BUY_PAPER_FILLED": {"severity": "INFO", "category": "execute", "title": "Paper buy filled"},
    "EXEC_BUY_CONFIRMED": {"severity": "INFO", "category": "execute", "title": "Live buy confirmed"},
    "EXEC_BUY_FAILED": {"severity": "ERROR", "category": "execute", "title": "Buy failed"},
    "EXEC_SELL_PAPER_EXIT": {"severity": "INFO", "category": "execute", "title": "Paper exit filled"},
    "EXEC_SELL_CONFIRMED": {"severity": "INFO", "category": "execute", "title": "Live sell confirmed"},
    "EXEC_SELL_FAILED": {"severity": "ERROR", "category": "execute", "title": "Sell failed"},
}


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc).timestamp()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def describe_codes(codes: list[str]) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for code in codes:
        key = _sanitize_code_token(code)
        row = {"code": key}
        row.update(reason_code_meta(key))
        out.append(row)
    return out


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(event: dict[str, Any], *, schema_name: str, event_type: str) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    return payload


def candidate_decision_event(event: dict[str, Any]) -> dict[str, Any]:
    """Stamp a persisted StrategyDecision payload; ``reasons``/``warnings`` get taxonomy rows."""
    payload = stamp_event(event, schema_name=SCHEMA_CANDIDATE_DECISION, event_type="candidate_decision")
    filters = payload.get("filters") or {}
    reasons = [str(code) for code in (filters.get("reasons") or [])]
    warnings = [str(code) for code in (filters.get("warnings") or [])]
    candidate = payload.get("candidate") or {}
    payload["decision_id"] = "dec_" + _digest_seed(
        candidate.get("pool_id", ""),
        candidate.get("trade_mint", ""),
        f"{payload['ts']:.6f}",
    )[:20]
    primary = reasons[0] if reasons else "PASS"
    meta = reason_code_meta(primary)
    payload["reason_code"] = _sanitize_code_token(primary)
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    payload["reason_codes"] = describe_codes(reasons)
    payload["warning_codes"] = describe_codes(warnings)
    return payload


def trade_event(event: dict[str, Any]) -> dict[str, Any]:
    """Stamp a trade's tx metadata; the reason code is EXEC_<SIDE>_<STATUS>."""
    payload = stamp_event(event, schema_name=SCHEMA_TRADE_EVENT, event_type="trade")
    side = _sanitize_code_token(str(payload.get("side", "") or ""))
    status = _sanitize_code_token(str(payload.get("status", "") or ""))
    code = f"EXEC_{side}_{status}"
    meta = reason_code_meta(code)
    payload["reason_code"] = code
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    exit_reason = str(payload.get("reason", "") or "")
    if exit_reason:
        payload["exit_reason_code"] = _sanitize_code_token(exit_reason)
        payload["exit_reason_category"] = reason_code_meta(exit_reason)["category"]
    return payload
