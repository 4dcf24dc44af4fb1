"""
Database models for saved BTCDOM backtest runs
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd
from sqlalchemy import create_engine, Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

from config_loader import config
from backend.errors import ValidationError
from backend.models import BacktestResult, PositionInfo

logger = logging.getLogger(__name__)

DATABASE_URL = config.database.get('url', 'sqlite:///data/btcdom.db')

engine = None
SessionLocal = sessionmaker(autoflush=False)
Base = declarative_base()


def init_db(url: str = None):
    """Create the engine for url (config default if omitted) and the tables"""
    global engine
    url = url or DATABASE_URL

    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at {url}")
    return engine


def get_session():
    """New session, initializing the default database on first use"""
    if engine is None:
        init_db()
    return SessionLocal()


class BacktestRun(Base):
    """One completed simulation: parameters, headline metrics and status"""
    __tablename__ = "backtest_runs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    status = Column(String, default="completed")  # completed, failed

    parameters = Column(Text)  # JSON of StrategyParameters
    initial_capital = Column(Float, nullable=False)
    granularity_hours = Column(Float)
    start_timestamp = Column(String)
    end_timestamp = Column(String)
    total_periods = Column(Integer)
    active_periods = Column(Integer)

    # Results
    final_value = Column(Float)
    total_return = Column(Float)
    annualized_return = Column(Float)
    volatility = Column(Float)
    sharpe_ratio = Column(Float)
    max_drawdown = Column(Float)
    calmar_ratio = Column(Float)
    win_rate = Column(Float)
    total_trading_fee = Column(Float)
    total_funding_fee = Column(Float)

    snapshots = relationship("BacktestSnapshot", back_populates="run", cascade="all, delete-orphan",
                             order_by="BacktestSnapshot.period_index")

    @property
    def params_dict(self) -> dict:
        return json.loads(self.parameters) if self.parameters else {}


class BacktestSnapshot(Base):
    """Portfolio state at the end of one period of a run"""
    __tablename__ = "backtest_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("backtest_runs.id"), nullable=False)
    period_index = Column(Integer, nullable=False)  # 1-indexed
    timestamp = Column(String, nullable=False)

    reference_price = Column(Float)
    total_value = Column(Float, nullable=False)
    cash_balance = Column(Float)
    period_pnl = Column(Float)
    period_pnl_percent = Column(Float)
    cumulative_pnl = Column(Float)
    cumulative_pnl_percent = Column(Float)
    period_trading_fee = Column(Float)
    period_funding_fee = Column(Float)
    is_active = Column(Boolean, default=False)
    rebalance_reason = Column(Text)

    run = relationship("BacktestRun", back_populates="snapshots")
    positions = relationship("BacktestPosition", back_populates="snapshot", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_backtest_snapshot_run_period', 'run_id', 'period_index', unique=True),
    )


class BacktestPosition(Base):
    """A position held, opened or closed during one snapshot's period"""
    __tablename__ = "backtest_positions"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_id = Column(Integer, ForeignKey("backtest_snapshots.id"), nullable=False, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)  # LONG, SHORT
    quantity = Column(Float)
    entry_price = Column(Float)
    current_price = Column(Float)
    unrealized_pnl = Column(Float)
    realized_pnl = Column(Float)
    cumulative_realized_pnl = Column(Float)
    period_trading_fee = Column(Float)
    period_funding_fee = Column(Float)
    is_new_position = Column(Boolean, default=False)
    is_closed = Column(Boolean, default=False)
    reason = Column(Text)

    snapshot = relationship("BacktestSnapshot", back_populates="positions")


def _position_row(position: PositionInfo) -> BacktestPosition:
    return BacktestPosition(
        symbol=position.symbol,
        side=position.side.value,
        quantity=position.quantity,
        entry_price=position.entry_price,
        current_price=position.current_price,
        unrealized_pnl=position.unrealized_pnl,
        realized_pnl=position.realized_pnl,
        cumulative_realized_pnl=position.cumulative_realized_pnl,
        period_trading_fee=position.period_trading_fee,
        period_funding_fee=position.period_funding_fee,
        is_new_position=position.is_new_position,
        is_closed=position.is_closed,
        reason=position.reason,
    )


def save_backtest(session, result: BacktestResult, name: Optional[str] = None) -> BacktestRun:
    """Persist a finished run with all of its snapshots and positions"""
    snapshots = result.snapshots
    performance = result.performance
    last = snapshots[-1] if snapshots else None

    run = BacktestRun(
        name=name,
        parameters=json.dumps(result.params.to_dict()),
        initial_capital=result.params.initial_capital,
        granularity_hours=result.summary.granularity_hours,
        start_timestamp=snapshots[0].timestamp if snapshots else None,
        end_timestamp=last.timestamp if last else None,
        total_periods=result.summary.total_periods,
        active_periods=result.summary.active_periods,
        final_value=last.total_value if last else result.params.initial_capital,
        total_return=performance.total_return,
        annualized_return=performance.annualized_return,
        volatility=performance.volatility,
        sharpe_ratio=performance.sharpe_ratio,
        max_drawdown=performance.max_drawdown,
        calmar_ratio=performance.calmar_ratio,
        win_rate=performance.win_rate,
        total_trading_fee=last.cumulative_trading_fee if last else 0.0,
        total_funding_fee=last.cumulative_funding_fee if last else 0.0,
    )

    for index, snapshot in enumerate(snapshots, start=1):
        row = BacktestSnapshot(
            period_index=index,
            timestamp=snapshot.timestamp,
            reference_price=snapshot.reference_price,
            total_value=snapshot.total_value,
            cash_balance=snapshot.cash_balance,
            period_pnl=snapshot.period_pnl,
            period_pnl_percent=snapshot.period_pnl_percent,
            cumulative_pnl=snapshot.cumulative_pnl,
            cumulative_pnl_percent=snapshot.cumulative_pnl_percent,
            period_trading_fee=snapshot.period_trading_fee,
            period_funding_fee=snapshot.period_funding_fee,
            is_active=snapshot.is_active,
            rebalance_reason=snapshot.rebalance_reason,
        )
        row.positions = [_position_row(p) for p in snapshot.open_positions + snapshot.closed_positions]
        run.snapshots.append(row)

    session.add(run)
    session.commit()
    session.refresh(run)
    logger.info(f"Saved backtest run {run.id} ({name or 'unnamed'}): {len(snapshots)} snapshots")
    return run


def load_equity_curve(session, run_id: int) -> pd.DataFrame:
    """Per-period values of a saved run, ordered by period"""
    run = session.get(BacktestRun, run_id)
    if run is None:
        raise ValidationError(f"Backtest run {run_id} not found")

    rows = session.query(BacktestSnapshot).filter(
        BacktestSnapshot.run_id == run_id
    ).order_by(BacktestSnapshot.period_index).all()

    return pd.DataFrame([{
        'period_index': r.period_index,
        'timestamp': r.timestamp,
        'total_value': r.total_value,
        'cash_balance': r.cash_balance,
        'cumulative_pnl_percent': r.cumulative_pnl_percent,
        'is_active': r.is_active,
    } for r in rows], columns=['period_index', 'timestamp', 'total_value', 'cash_balance',
                               'cumulative_pnl_percent', 'is_active'])
