from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class MarketStatus(str, Enum):
    INITIALIZED = "initialized"
    PENDING = "pending"
    FUNDING = "funding"
    ACTIVE = "active"
    VOTING = "voting"
    FINALIZED = "finalized"
    ERROR = "error"


# Markets whose contracts still emit funding and trade events.
INDEXED_MARKET_STATUSES = (MarketStatus.ACTIVE.value, MarketStatus.FUNDING.value)


class CursorStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class JobStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    INACTIVE = "inactive"


class FundingTransactionType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


class ShareTransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class WorkItemKind(str, Enum):
    REFRESH_OUTCOME_CHANCES = "refresh_outcome_chances"


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


class WorkerLogStatus(int, Enum):
    DEBUG = 0
    START = 1
    INFO = 2
    WARNING = 3
    SUCCESS = 5
    ERROR = 9


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Market(Base):
    __tablename__ = "markets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=MarketStatus.INITIALIZED.value)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    outcomes: Mapped[list["Outcome"]] = relationship(
        "Outcome", back_populates="market", cascade="all, delete-orphan", order_by="Outcome.outcome_index"
    )
    cursor: Mapped["ChainCursor | None"] = relationship(
        "ChainCursor", back_populates="market", uselist=False, cascade="all, delete-orphan"
    )


class Outcome(Base):
    __tablename__ = "outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False)
    outcome_index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    position_id: Mapped[str | None] = mapped_column(String(78), nullable=True)

    market: Mapped[Market] = relationship("Market", back_populates="outcomes")

    __table_args__ = (
        UniqueConstraint("market_id", "outcome_index", name="uq_outcome_market_index"),
    )


class ChainCursor(Base):
    __tablename__ = "chain_cursors"

    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), primary_key=True)
    contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    condition_id: Mapped[str | None] = mapped_column(String(66), nullable=True, unique=True)
    last_processed_block: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1024)
    status: Mapped[str] = mapped_column(String, nullable=False, default=CursorStatus.ACTIVE.value)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    market: Mapped[Market] = relationship("Market", back_populates="cursor")


class Contract(Base):
    """Cursor for shared contracts that are parsed by singleton jobs."""

    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    last_processed_block: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1024)
    confirmation_lag: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class FundingTransaction(Base):
    __tablename__ = "funding_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    amounts: Mapped[str] = mapped_column(Text, nullable=False)
    shares: Mapped[str] = mapped_column(String(78), nullable=False)
    collateral_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    collateral_removed_from_fee_pool: Mapped[str | None] = mapped_column(String(78), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    allocations: Mapped[list["FundingAllocation"]] = relationship(
        "FundingAllocation", back_populates="funding_transaction", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_funding_transaction_log"),
    )


class FundingAllocation(Base):
    __tablename__ = "funding_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funding_transaction_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("funding_transactions.id"), nullable=False
    )
    outcome_id: Mapped[int] = mapped_column(Integer, ForeignKey("outcomes.id"), nullable=False)
    amount_added: Mapped[str] = mapped_column(String(78), nullable=False)
    collateral_share: Mapped[str] = mapped_column(String(78), nullable=False)

    funding_transaction: Mapped[FundingTransaction] = relationship(
        "FundingTransaction", back_populates="allocations"
    )


class ShareTransaction(Base):
    __tablename__ = "share_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False)
    outcome_id: Mapped[int] = mapped_column(Integer, ForeignKey("outcomes.id"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(78), nullable=False)
    fee_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    outcome_tokens: Mapped[str] = mapped_column(String(78), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_share_transaction_log"),
    )


class ClaimTransaction(Base):
    __tablename__ = "claim_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False)
    outcome_id: Mapped[int] = mapped_column(Integer, ForeignKey("outcomes.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(78), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_claim_transaction_log"),
    )


class OutcomeChance(Base):
    __tablename__ = "outcome_chances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False)
    outcome_id: Mapped[int] = mapped_column(Integer, ForeignKey("outcomes.id"), nullable=False)
    chance: Mapped[float] = mapped_column(Float, nullable=False)
    supply: Mapped[str] = mapped_column(String(78), nullable=False)
    total_supply: Mapped[str] = mapped_column(String(78), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.ACTIVE.value)
    executor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    timeout_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    interval_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    config: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class WorkItem(Base):
    __tablename__ = "work_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=WorkItemStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkerLog(Base):
    __tablename__ = "worker_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    worker: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
