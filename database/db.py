"""Persistence store and CRUD operations."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import create_engine, func, or_
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import config
from database.models import (
    Base,
    ConfigSnapshot,
    Decision,
    LogEntry,
    PositionRow,
    RuntimeState,
    SeenPool,
    Token,
    Trade,
    utcnow_naive,
)
from trading.models import (
    FILLED_TRADE_STATUSES,
    POSITION_CLOSED,
    POSITION_OPEN,
    PoolCandidate,
    Position,
    StrategyDecision,
    TradeRecord,
    as_utc,
)
from utils.log_contracts import candidate_decision_event, trade_event

logger = logging.getLogger(__name__)


def _naive(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return as_utc(value)


def _opt_str(value: int | None) -> str | None:
    return None if value is None else str(int(value))


def _to_position(row: PositionRow) -> Position:
    return Position(
        id=int(row.id),
        token_mint=row.token_mint,
        entry_price_sol=float(row.entry_price_sol or 0),
        entry_notional_sol=float(row.entry_notional_sol or 0),
        quantity_raw=int(row.quantity_raw or 0),
        quantity_remaining_raw=int(row.quantity_remaining_raw or 0),
        decimals=int(row.decimals or 0),
        stop_loss_pct=float(row.stop_loss_pct or 0),
        take_profit1_pct=float(row.take_profit1_pct or 0),
        take_profit2_pct=float(row.take_profit2_pct or 0),
        take_profit3_pct=float(row.take_profit3_pct or 0),
        tp_sell_ratio=float(row.tp_sell_ratio or 0),
        trailing_stop_pct=float(row.trailing_stop_pct or 0),
        time_stop_minutes=float(row.time_stop_minutes or 0),
        opened_at=as_utc(row.opened_ts),
        closed_at=_aware(row.closed_ts),
        status=row.status,
        tp1_hit=bool(row.tp1_hit),
        tp2_hit=bool(row.tp2_hit),
        tp3_hit=bool(row.tp3_hit),
        metadata=dict(row.metadata_json or {}),
    )


def _trade_dict(row: Trade) -> dict[str, Any]:
    return {
        "id": int(row.id),
        "ts": as_utc(row.ts).isoformat(),
        "side": row.side,
        "mode": row.mode,
        "input_mint": row.input_mint,
        "output_mint": row.output_mint,
        "in_amount": row.in_amount,
        "out_amount": row.out_amount,
        "expected_out": row.expected_out,
        "status": row.status,
        "signature": row.signature,
        "error": row.error,
    }


class Store:
    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = str(database_url or config.DATABASE_URL)
        url = make_url(self.database_url)
        kwargs: dict[str, Any] = {"future": True}
        if url.get_backend_name() == "sqlite":
            kwargs["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(self.database_url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def reset(self) -> None:
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def get_db(self) -> Session:
        return self.SessionLocal()

    def snapshot_config(self, mode: str, payload: dict[str, Any]) -> None:
        db = self.get_db()
        try:
            db.add(ConfigSnapshot(mode=str(mode), config=dict(payload)))
            db.commit()
        finally:
            db.close()

    def insert_log(
        self,
        level: str,
        component: str,
        code: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> int:
        db = self.get_db()
        try:
            row = LogEntry(level=level, component=component, code=code, message=message, data=data)
            db.add(row)
            db.commit()
            return int(row.id)
        finally:
            db.close()

    def recent_logs(self, limit: int = 200) -> list[dict[str, Any]]:
        db = self.get_db()
        try:
            rows = db.query(LogEntry).order_by(LogEntry.id.desc()).limit(max(1, int(limit))).all()
            return [
                {
                    "id": int(row.id),
                    "ts": as_utc(row.ts).isoformat(),
                    "level": row.level,
                    "component": row.component,
                    "code": row.code,
                    "message": row.message,
                    "data": row.data,
                }
                for row in reversed(rows)
            ]
        finally:
            db.close()

    def set_runtime_state(self, key: str, value: Any) -> None:
        db = self.get_db()
        try:
            row = db.get(RuntimeState, key)
            if row is None:
                db.add(RuntimeState(key=key, value=value, updated_ts=utcnow_naive()))
            else:
                row.value = value
                row.updated_ts = utcnow_naive()
            db.commit()
        finally:
            db.close()

    def get_runtime_state(self, key: str) -> Optional[dict[str, Any]]:
        db = self.get_db()
        try:
            row = db.get(RuntimeState, key)
            if row is None:
                return None
            return {"key": row.key, "value": row.value, "updated_ts": as_utc(row.updated_ts).isoformat()}
        finally:
            db.close()

    def has_seen_pool(self, pool_id: str) -> bool:
        db = self.get_db()
        try:
            return db.query(SeenPool.id).filter(SeenPool.pool_id == pool_id).first() is not None
        finally:
            db.close()

    def upsert_seen_pool(self, candidate: PoolCandidate) -> None:
        db = self.get_db()
        try:
            row = db.query(SeenPool).filter(SeenPool.pool_id == candidate.pool_id).first()
            if row is None:
                db.add(
                    SeenPool(
                        pool_id=candidate.pool_id,
                        base_mint=candidate.base_mint,
                        quote_mint=candidate.quote_mint,
                        dex_id=candidate.dex_id,
                        created_at=_naive(candidate.created_at),
                        liquidity_sol=float(candidate.liquidity_sol),
                        reserve_usd=float(candidate.reserve_usd),
                        raw=candidate.raw,
                    )
                )
            else:
                row.liquidity_sol = float(candidate.liquidity_sol)
                row.reserve_usd = float(candidate.reserve_usd)
                row.raw = candidate.raw
            db.commit()
        finally:
            db.close()

    def upsert_token(
        self,
        mint: str,
        symbol: str,
        name: str,
        authority: dict[str, Any] | None = None,
        raw: dict[str, Any] | None = None,
    ) -> None:
        db = self.get_db()
        try:
            row = db.query(Token).filter(Token.mint == mint).first()
            if row is None:
                row = Token(mint=mint)
                db.add(row)
            row.symbol = symbol
            row.name = name
            row.last_seen_ts = utcnow_naive()
            row.authority = authority
            row.raw = raw
            db.commit()
        finally:
            db.close()

    def get_token(self, mint: str) -> Optional[dict[str, Any]]:
        db = self.get_db()
        try:
            row = db.query(Token).filter(Token.mint == mint).first()
            if row is None:
                return None
            return {"mint": row.mint, "symbol": row.symbol, "name": row.name, "authority": row.authority}
        finally:
            db.close()

    def record_decision(self, decision: StrategyDecision, mode: str) -> int:
        payload = decision.to_dict()
        db = self.get_db()
        try:
            row = Decision(
                pool_id=decision.candidate.pool_id,
                mint=decision.candidate.trade_mint,
                score=float(decision.score.total),
                passed=bool(decision.should_trade),
                mode=str(mode),
                reasons=list(decision.filters.reasons) + list(decision.filters.warnings),
                filters=decision.filters.to_dict(),
                raw=candidate_decision_event(payload),
            )
            db.add(row)
            db.commit()
            return int(row.id)
        finally:
            db.close()

    def recent_decisions(self, limit: int = 50) -> list[dict[str, Any]]:
        db = self.get_db()
        try:
            rows = db.query(Decision).order_by(Decision.id.desc()).limit(max(1, int(limit))).all()
            return [
                {
                    "id": int(row.id),
                    "ts": as_utc(row.ts).isoformat(),
                    "pool_id": row.pool_id,
                    "mint": row.mint,
                    "score": float(row.score),
                    "passed": bool(row.passed),
                    "mode": row.mode,
                    "reasons": list(row.reasons or []),
                    "raw": row.raw,
                }
                for row in rows
            ]
        finally:
            db.close()

    def record_trade(self, trade: TradeRecord) -> int:
        meta = dict(trade.tx_meta or {})
        meta.update({"side": trade.side, "status": trade.status})
        db = self.get_db()
        try:
            row = Trade(
                side=trade.side,
                mode=trade.mode,
                input_mint=trade.input_mint,
                output_mint=trade.output_mint,
                in_amount=str(int(trade.in_amount)),
                out_amount=_opt_str(trade.out_amount),
                expected_out=_opt_str(trade.expected_out),
                status=trade.status,
                signature=trade.signature,
                error=trade.error,
                quote=trade.quote,
                tx_meta=trade_event(meta),
            )
            db.add(row)
            db.commit()
            return int(row.id)
        finally:
            db.close()

    def recent_trades(self, limit: int = 8) -> list[dict[str, Any]]:
        db = self.get_db()
        try:
            rows = db.query(Trade).order_by(Trade.id.desc()).limit(max(1, int(limit))).all()
            return [_trade_dict(row) for row in rows]
        finally:
            db.close()

    def trades_last_hour(self, now: datetime | None = None) -> int:
        ref = _naive(now) if now is not None else utcnow_naive()
        since = ref - timedelta(hours=1)
        db = self.get_db()
        try:
            return int(
                db.query(func.count(Trade.id))
                .filter(Trade.ts >= since, Trade.status.in_(FILLED_TRADE_STATUSES))
                .scalar()
                or 0
            )
        finally:
            db.close()

    def last_trade_ts_for_mint(self, mint: str) -> datetime | None:
        db = self.get_db()
        try:
            row = (
                db.query(Trade.ts)
                .filter(or_(Trade.output_mint == mint, Trade.input_mint == mint))
                .order_by(Trade.ts.desc())
                .first()
            )
            return _aware(row[0]) if row else None
        finally:
            db.close()

    def scanner_stats(self, now: datetime | None = None) -> dict[str, int]:
        ref = _naive(now) if now is not None else utcnow_naive()
        since = ref - timedelta(hours=1)
        db = self.get_db()
        try:
            pools = int(db.query(func.count(SeenPool.id)).scalar() or 0)
            candidates = int(db.query(func.count(Decision.id)).filter(Decision.ts >= since).scalar() or 0)
            return {"pools_seen_count": pools, "candidates_count": candidates}
        finally:
            db.close()

    def open_position(self, position: Position) -> int:
        quantity = max(0, int(position.quantity_raw))
        remaining = min(max(0, int(position.quantity_remaining_raw)), quantity)
        db = self.get_db()
        try:
            row = PositionRow(
                token_mint=position.token_mint,
                opened_ts=_naive(position.opened_at),
                status=POSITION_OPEN,
                entry_price_sol=float(position.entry_price_sol),
                entry_notional_sol=float(position.entry_notional_sol),
                quantity_raw=str(quantity),
                quantity_remaining_raw=str(remaining),
                decimals=int(position.decimals),
                tp1_hit=bool(position.tp1_hit),
                tp2_hit=bool(position.tp2_hit),
                tp3_hit=bool(position.tp3_hit),
                stop_loss_pct=float(position.stop_loss_pct),
                take_profit1_pct=float(position.take_profit1_pct),
                take_profit2_pct=float(position.take_profit2_pct),
                take_profit3_pct=float(position.take_profit3_pct),
                tp_sell_ratio=float(position.tp_sell_ratio),
                trailing_stop_pct=float(position.trailing_stop_pct),
                time_stop_minutes=float(position.time_stop_minutes),
                metadata_json=dict(position.metadata or {}),
            )
            db.add(row)
            db.commit()
            return int(row.id)
        finally:
            db.close()

    def list_active_positions(self) -> list[Position]:
        db = self.get_db()
        try:
            rows = (
                db.query(PositionRow)
                .filter(PositionRow.status == POSITION_OPEN)
                .order_by(PositionRow.opened_ts.asc(), PositionRow.id.asc())
                .all()
            )
            return [_to_position(row) for row in rows]
        finally:
            db.close()

    def get_position(self, position_id: int) -> Optional[Position]:
        db = self.get_db()
        try:
            row = db.get(PositionRow, int(position_id))
            return _to_position(row) if row is not None else None
        finally:
            db.close()

    def update_position(
        self,
        position_id: int,
        *,
        quantity_remaining_raw: int | None = None,
        tp1_hit: bool | None = None,
        tp2_hit: bool | None = None,
        tp3_hit: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Optional[Position]:
        """Closed positions are left untouched. Remaining is clamped to [0, quantity]; tier flags only latch on."""
        db = self.get_db()
        try:
            row = db.get(PositionRow, int(position_id))
            if row is None or row.status != POSITION_OPEN:
                return _to_position(row) if row is not None else None
            if quantity_remaining_raw is not None:
                quantity = int(row.quantity_raw or 0)
                row.quantity_remaining_raw = str(min(max(0, int(quantity_remaining_raw)), quantity))
            if tp1_hit:
                row.tp1_hit = True
            if tp2_hit:
                row.tp2_hit = True
            if tp3_hit:
                row.tp3_hit = True
            if metadata is not None:
                row.metadata_json = dict(metadata)
            db.commit()
            return _to_position(row)
        finally:
            db.close()

    def close_position(
        self,
        position_id: int,
        metadata: dict[str, Any] | None = None,
        *,
        tp1_hit: bool | None = None,
        tp2_hit: bool | None = None,
        tp3_hit: bool | None = None,
    ) -> None:
        db = self.get_db()
        try:
            row = db.get(PositionRow, int(position_id))
            if row is None or row.status != POSITION_OPEN:
                return
            merged = dict(row.metadata_json or {})
            merged.update(metadata or {})
            if tp1_hit:
                row.tp1_hit = True
            if tp2_hit:
                row.tp2_hit = True
            if tp3_hit:
                row.tp3_hit = True
            row.status = POSITION_CLOSED
            row.closed_ts = utcnow_naive()
            row.quantity_remaining_raw = "0"
            row.metadata_json = merged
            db.commit()
        finally:
            db.close()
