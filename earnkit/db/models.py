"""
SQLAlchemy database models for the EarnKit usage ledger.
Agents bill their users per use from a prepaid ETH or credit balance.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


# ETH amounts carry wei precision (18 decimals)
EthAmount = Numeric(38, 18)

JSONConfig = JSON().with_variant(JSONB(), "postgresql")


# ===================
# Enums
# ===================

class FeeModelType(str, Enum):
    """How an agent charges its users."""
    FREE_TIER = "FREE_TIER"        # N free uses, then a fixed ETH rate per use
    CREDIT_BASED = "CREDIT_BASED"  # Credits deducted per use, bought via top-ups


class UsageEventStatus(str, Enum):
    """Lifecycle of a billable attempt."""
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"  # reserved for an expiry sweep


class TopUpStatus(str, Enum):
    """On-chain deposit reconciliation status."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# ===================
# Models
# ===================

class Developer(Base):
    """Developer account, keyed by the external identity provider's user ID."""

    __tablename__ = "developers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    privy_id: Mapped[str] = mapped_column(String(255), unique=True)

    # Deposit address for user top-ups
    wallet_address: Mapped[str] = mapped_column(String(42), unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    agents: Mapped[list["Agent"]] = relationship(back_populates="developer")


class Agent(Base):
    """
    A monetized AI agent.
    fee_model_config shape always matches fee_model_type; it is validated
    when written, see services.fee.parse_fee_model_config.
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))

    fee_model_type: Mapped[FeeModelType] = mapped_column(SQLEnum(FeeModelType))
    fee_model_config: Mapped[dict[str, Any]] = mapped_column(JSONConfig)

    developer_id: Mapped[str] = mapped_column(String(36), ForeignKey("developers.id"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    developer: Mapped["Developer"] = relationship(back_populates="agents")

    __table_args__ = (
        Index("ix_agents_developer", "developer_id"),
    )


class UserBalance(Base):
    """
    Prepaid balance of one end-user wallet for one agent.
    Created lazily by the first confirmed top-up.
    """

    __tablename__ = "user_balances"

    user_wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"), primary_key=True)

    eth_balance: Mapped[Decimal] = mapped_column(EthAmount, default=Decimal("0"), server_default="0")
    credit_balance: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )


class UsageEvent(Base):
    """
    One billable attempt: PENDING after track, then CAPTURED or CANCELLED.
    Records exactly what was held so a release can refund it.
    """

    __tablename__ = "usage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[UsageEventStatus] = mapped_column(
        SQLEnum(UsageEventStatus),
        default=UsageEventStatus.PENDING
    )

    fee_deducted: Mapped[Optional[Decimal]] = mapped_column(EthAmount, nullable=True)
    credits_deducted: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Unique per agent; NULLs never collide
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"))
    user_wallet_address: Mapped[str] = mapped_column(String(42))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_usage_events_agent_idempotency", "agent_id", "idempotency_key", unique=True),
        Index("ix_usage_events_agent_wallet_status", "agent_id", "user_wallet_address", "status"),
    )


class TopUpTransaction(Base):
    """
    On-chain deposit submitted for reconciliation.
    The transaction hash is the primary key, so resubmissions are rejected.
    """

    __tablename__ = "topup_transactions"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    status: Mapped[TopUpStatus] = mapped_column(
        SQLEnum(TopUpStatus),
        default=TopUpStatus.PENDING
    )

    user_wallet_address: Mapped[str] = mapped_column(String(42))
    # No FK: rows outlive a deleted agent
    agent_id: Mapped[str] = mapped_column(String(36))

    # Exact decimal string as submitted
    amount_in_eth: Mapped[str] = mapped_column(String(78))
    credits_to_top_up: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_topup_tx_status", "status"),
    )
