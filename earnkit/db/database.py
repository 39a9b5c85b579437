"""
Database connection and session management.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from earnkit.db.models import (
    Agent,
    Base,
    Developer,
    FeeModelType,
    UsageEvent,
    UserBalance,
)
from earnkit.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def normalize_database_url(database_url: str) -> str:
    """Convert postgres:// and postgresql:// to postgresql+asyncpg://."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


async def init_db(database_url: Optional[str] = None) -> None:
    """Initialize database connection."""
    global _engine, _session_factory

    if database_url is None:
        from earnkit.config import settings
        database_url = settings.database_url

    database_url = normalize_database_url(database_url)

    engine_kwargs: dict[str, Any] = {"echo": False}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)

    _engine = create_async_engine(database_url, **engine_kwargs)

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    logger.info("Database connection initialized", dialect=_engine.dialect.name)


async def create_tables() -> None:
    """Create all database tables."""
    if _engine is None:
        raise RuntimeError("Database not initialized")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def close_db() -> None:
    """Close database connection."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session.
    Commits when the block exits cleanly, rolls back on any exception.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ===================
# Developer Operations
# ===================

async def get_or_create_developer(privy_id: str, wallet_address: str) -> Developer:
    """Get existing developer or create new one."""
    async with get_session() as session:
        result = await session.execute(
            select(Developer).where(Developer.privy_id == privy_id)
        )
        developer = result.scalar_one_or_none()

        if developer:
            return developer

        developer = Developer(
            id=generate_id(),
            privy_id=privy_id,
            wallet_address=wallet_address,
        )
        session.add(developer)
        await session.flush()
        await session.refresh(developer)

        logger.info("Created new developer", developer_id=developer.id)
        return developer


async def get_developer_by_privy_id(privy_id: str) -> Optional[Developer]:
    """Get developer by identity provider user ID."""
    async with get_session() as session:
        result = await session.execute(
            select(Developer).where(Developer.privy_id == privy_id)
        )
        return result.scalar_one_or_none()


# ===================
# Agent Operations
# ===================

async def create_agent(
    developer_id: str,
    name: str,
    fee_model_type: FeeModelType,
    fee_model_config: dict[str, Any],
) -> Agent:
    """Create a new agent. The config must already be validated for its type."""
    async with get_session() as session:
        agent = Agent(
            id=generate_id(),
            developer_id=developer_id,
            name=name,
            fee_model_type=fee_model_type,
            fee_model_config=fee_model_config,
        )
        session.add(agent)
        await session.flush()
        await session.refresh(agent)

        logger.info(
            "Created agent",
            agent_id=agent.id,
            developer_id=developer_id,
            fee_model=fee_model_type.value,
        )
        return agent


async def get_agent(agent_id: str) -> Optional[Agent]:
    """Get an agent by its ID."""
    async with get_session() as session:
        result = await session.execute(
            select(Agent).where(Agent.id == agent_id)
        )
        return result.scalar_one_or_none()


async def get_developer_agent(developer_id: str, agent_id: str) -> Optional[Agent]:
    """Get an agent only if it belongs to the developer."""
    async with get_session() as session:
        result = await session.execute(
            select(Agent)
            .where(Agent.id == agent_id)
            .where(Agent.developer_id == developer_id)
        )
        return result.scalar_one_or_none()


async def get_developer_agents(developer_id: str) -> list[Agent]:
    """Get all agents for a developer."""
    async with get_session() as session:
        result = await session.execute(
            select(Agent)
            .where(Agent.developer_id == developer_id)
            .order_by(Agent.created_at.desc())
        )
        return list(result.scalars().all())


async def update_agent(
    agent_id: str,
    name: str,
    fee_model_type: FeeModelType,
    fee_model_config: dict[str, Any],
) -> Optional[Agent]:
    """Replace an agent's name and fee model."""
    async with get_session() as session:
        result = await session.execute(
            select(Agent).where(Agent.id == agent_id)
        )
        agent = result.scalar_one_or_none()
        if not agent:
            return None

        agent.name = name
        agent.fee_model_type = fee_model_type
        agent.fee_model_config = fee_model_config
        await session.flush()
        await session.refresh(agent)

        logger.info("Updated agent", agent_id=agent_id, fee_model=fee_model_type.value)
        return agent


async def delete_agent(agent_id: str) -> bool:
    """
    Delete an agent with its balances and usage events in one transaction.
    Top-up transactions are an audit trail and are kept.
    """
    async with get_session() as session:
        await session.execute(
            delete(UserBalance).where(UserBalance.agent_id == agent_id)
        )
        await session.execute(
            delete(UsageEvent).where(UsageEvent.agent_id == agent_id)
        )
        result = await session.execute(
            delete(Agent).where(Agent.id == agent_id)
        )
        deleted = result.rowcount > 0

    if deleted:
        logger.info("Deleted agent", agent_id=agent_id)
    return deleted


async def get_agent_usage_events(agent_id: str) -> list[UsageEvent]:
    """Get all usage events for an agent, newest first."""
    async with get_session() as session:
        result = await session.execute(
            select(UsageEvent)
            .where(UsageEvent.agent_id == agent_id)
            .order_by(UsageEvent.created_at.desc())
        )
        return list(result.scalars().all())
