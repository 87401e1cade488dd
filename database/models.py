"""SQLAlchemy models. Timestamps are stored as naive UTC; raw token quantities as strings."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SeenPool(Base):
    __tablename__ = "seen_pools"

    id = Column(Integer, primary_key=True)
    pool_id = Column(String, unique=True, nullable=False, index=True)
    base_mint = Column(String, nullable=False)
    quote_mint = Column(String, nullable=False)
    dex_id = Column(String, nullable=False, default="unknown")
    created_at = Column(DateTime, nullable=True, index=True)
    liquidity_sol = Column(Float, nullable=False, default=0.0)
    reserve_usd = Column(Float, nullable=False, default=0.0)
    first_seen_ts = Column(DateTime, default=utcnow_naive, nullable=False)
    raw = Column(JSON, nullable=True)


class Token(Base):
    __tablename__ = "tokens"

    id = Column(Integer, primary_key=True)
    mint = Column(String, unique=True, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    name = Column(String, nullable=True)
    last_seen_ts = Column(DateTime, default=utcnow_naive, nullable=False)
    authority = Column(JSON, nullable=True)
    raw = Column(JSON, nullable=True)


class Decision(Base):
    __tablename__ = "decisions"

    id = Column(Integer, primary_key=True)
    ts = Column(DateTime, default=utcnow_naive, nullable=False, index=True)
    pool_id = Column(String, nullable=False)
    mint = Column(String, nullable=False, index=True)
    score = Column(Float, nullable=False, default=0.0)
    passed = Column(Boolean, nullable=False, default=False)
    mode = Column(String, nullable=False)
    reasons = Column(JSON, nullable=False, default=list)
    filters = Column(JSON, nullable=True)
    raw = Column(JSON, nullable=True)


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    ts = Column(DateTime, default=utcnow_naive, nullable=False, index=True)
    side = Column(String, nullable=False)
    mode = Column(String, nullable=False)
    input_mint = Column(String, nullable=False, index=True)
    output_mint = Column(String, nullable=False, index=True)
    in_amount = Column(String, nullable=False)
    out_amount = Column(String, nullable=True)
    expected_out = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    signature = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    quote = Column(JSON, nullable=True)
    tx_meta = Column(JSON, nullable=True)


class PositionRow(Base):
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True)
    token_mint = Column(String, nullable=False, index=True)
    opened_ts = Column(DateTime, default=utcnow_naive, nullable=False)
    closed_ts = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="OPEN", index=True)
    entry_price_sol = Column(Float, nullable=False)
    entry_notional_sol = Column(Float, nullable=False)
    quantity_raw = Column(String, nullable=False)
    quantity_remaining_raw = Column(String, nullable=False)
    decimals = Column(Integer, nullable=False)
    tp1_hit = Column(Boolean, nullable=False, default=False)
    tp2_hit = Column(Boolean, nullable=False, default=False)
    tp3_hit = Column(Boolean, nullable=False, default=False)
    stop_loss_pct = Column(Float, nullable=False)
    take_profit1_pct = Column(Float, nullable=False)
    take_profit2_pct = Column(Float, nullable=False)
    take_profit3_pct = Column(Float, nullable=False)
    tp_sell_ratio = Column(Float, nullable=False)
    trailing_stop_pct = Column(Float, nullable=False)
    time_stop_minutes = Column(Float, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)


class ConfigSnapshot(Base):
    __tablename__ = "config_snapshots"

    id = Column(Integer, primary_key=True)
    ts = Column(DateTime, default=utcnow_naive, nullable=False)
    mode = Column(String, nullable=False)
    config = Column(JSON, nullable=False)


class RuntimeState(Base):
    __tablename__ = "runtime_state"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_ts = Column(DateTime, default=utcnow_naive, nullable=False)


class LogEntry(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True)
    ts = Column(DateTime, default=utcnow_naive, nullable=False, index=True)
    level = Column(String, nullable=False)
    component = Column(String, nullable=False)
    code = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
