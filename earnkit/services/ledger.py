"""
Usage ledger: the provisional hold / finalize / refund protocol.

    track    -> hold the fee (ETH or credits) and record a PENDING event
    capture  -> PENDING -> CAPTURED, the hold becomes the charge
    release  -> PENDING -> CANCELLED, the hold is refunded

Every balance change is a single guarded UPDATE (or an atomic upsert) in the
same transaction as the event write it depends on. Status transitions are
guarded on status = PENDING, so of two racing capture/release calls exactly
one matches a row. Balances are never cached in process.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from earnkit.db.database import generate_id, get_session
from earnkit.db.models import (
    Agent,
    FeeModelType,
    UsageEvent,
    UsageEventStatus,
    UserBalance,
)
from earnkit.services.errors import (
    AgentNotFound,
    EventNotCapturable,
    EventNotReleasable,
    IdempotencyConflict,
    InsufficientCredits,
    InsufficientFunds,
)
from earnkit.services.fee import ChargeDecision, ChargeKind, evaluate, parse_fee_model_config
from earnkit.utils.logging import get_logger, usage_context

logger = get_logger(__name__)


async def _find_idempotent_event(
    session: AsyncSession,
    agent_id: str,
    idempotency_key: str,
) -> Optional[UsageEvent]:
    result = await session.execute(
        select(UsageEvent)
        .where(UsageEvent.agent_id == agent_id)
        .where(UsageEvent.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def _committed_idempotent_event(
    agent_id: str,
    idempotency_key: str,
) -> Optional[UsageEvent]:
    """Re-read the key in a fresh session once our transaction has rolled back."""
    async with get_session() as session:
        return await _find_idempotent_event(session, agent_id, idempotency_key)


def _replayed_event_id(event: UsageEvent, wallet_address: str) -> str:
    """Return the event of an idempotent replay if it belongs to the same wallet."""
    if event.user_wallet_address != wallet_address:
        raise IdempotencyConflict(
            "Idempotency key was already used for a different wallet."
        )
    logger.info(
        "Idempotent track replay",
        event_id=event.id,
        status=event.status.value,
    )
    return event.id


async def count_captured_events(
    session: AsyncSession,
    agent_id: str,
    wallet_address: str,
) -> int:
    """Count finalized charges; PENDING, CANCELLED and EXPIRED do not count."""
    result = await session.execute(
        select(func.count())
        .select_from(UsageEvent)
        .where(UsageEvent.agent_id == agent_id)
        .where(UsageEvent.user_wallet_address == wallet_address)
        .where(UsageEvent.status == UsageEventStatus.CAPTURED)
    )
    return result.scalar_one()


async def _hold(
    session: AsyncSession,
    agent_id: str,
    wallet_address: str,
    decision: ChargeDecision,
) -> None:
    """Decrement the balance only if it covers the charge."""
    if decision.kind == ChargeKind.FREE:
        return

    stmt = (
        update(UserBalance)
        .where(UserBalance.user_wallet_address == wallet_address)
        .where(UserBalance.agent_id == agent_id)
    )

    if decision.kind == ChargeKind.ETH:
        stmt = (
            stmt.where(UserBalance.eth_balance >= decision.eth_amount)
            .values(eth_balance=UserBalance.eth_balance - decision.eth_amount)
        )
    else:
        stmt = (
            stmt.where(UserBalance.credit_balance >= decision.credit_amount)
            .values(credit_balance=UserBalance.credit_balance - decision.credit_amount)
        )

    result = await session.execute(
        stmt.execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        if decision.kind == ChargeKind.ETH:
            raise InsufficientFunds()
        raise InsufficientCredits()


async def track(
    agent_id: str,
    wallet_address: str,
    idempotency_key: Optional[str] = None,
    credits_to_deduct: Optional[int] = None,
) -> str:
    """
    Hold the fee for one use and open a PENDING usage event.

    Args:
        agent_id: Agent being used
        wallet_address: End user paying for the use
        idempotency_key: Collapses retries of the same logical call
        credits_to_deduct: Per-call credit override (credit model only)

    Returns:
        The usage event ID (the existing one on an idempotent replay)

    Raises:
        AgentNotFound, InsufficientFunds, InsufficientCredits, IdempotencyConflict
    """
    with usage_context(agent_id=agent_id, wallet=wallet_address):
        return await _track(agent_id, wallet_address, idempotency_key, credits_to_deduct)


async def _track(
    agent_id: str,
    wallet_address: str,
    idempotency_key: Optional[str],
    credits_to_deduct: Optional[int],
) -> str:
    try:
        async with get_session() as session:
            if idempotency_key:
                existing = await _find_idempotent_event(session, agent_id, idempotency_key)
                if existing:
                    return _replayed_event_id(existing, wallet_address)

            result = await session.execute(
                select(Agent).where(Agent.id == agent_id)
            )
            agent = result.scalar_one_or_none()
            if not agent:
                raise AgentNotFound()

            config = parse_fee_model_config(agent.fee_model_type, agent.fee_model_config)

            prior_captured = 0
            if agent.fee_model_type == FeeModelType.FREE_TIER:
                prior_captured = await count_captured_events(session, agent_id, wallet_address)

            decision = evaluate(agent.fee_model_type, config, prior_captured, credits_to_deduct)

            await _hold(session, agent_id, wallet_address, decision)

            event = UsageEvent(
                id=generate_id(),
                agent_id=agent_id,
                user_wallet_address=wallet_address,
                status=UsageEventStatus.PENDING,
                fee_deducted=decision.eth_amount,
                credits_deducted=decision.credit_amount,
                idempotency_key=idempotency_key,
            )
            session.add(event)
            # Surface a concurrent duplicate key here, inside the transaction
            await session.flush()
            event_id = event.id

    except IntegrityError:
        if not idempotency_key:
            raise
        # Lost the race for this key; the winner's hold stands, ours rolled back
        existing = await _committed_idempotent_event(agent_id, idempotency_key)
        if existing is None:
            raise IdempotencyConflict()
        return _replayed_event_id(existing, wallet_address)

    except (InsufficientFunds, InsufficientCredits):
        if not idempotency_key:
            raise
        # A racing call with this key may have spent the balance we needed
        existing = await _committed_idempotent_event(agent_id, idempotency_key)
        if existing is None:
            raise
        return _replayed_event_id(existing, wallet_address)

    logger.info(
        "Tracked usage event",
        event_id=event_id,
        charge=decision.kind.value,
        fee=decision.eth_amount,
        credits=decision.credit_amount,
    )
    return event_id


async def capture(event_id: str) -> str:
    """
    Finalize a held charge. Balances are untouched; the hold already happened.

    Raises:
        EventNotCapturable: If the event is missing or not PENDING
    """
    async with get_session() as session:
        result = await session.execute(
            update(UsageEvent)
            .where(UsageEvent.id == event_id)
            .where(UsageEvent.status == UsageEventStatus.PENDING)
            .values(status=UsageEventStatus.CAPTURED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise EventNotCapturable()

    logger.info("Captured usage event", event_id=event_id)
    return event_id


async def release(event_id: str) -> str:
    """
    Cancel a held charge and refund exactly what track deducted.

    The PENDING -> CANCELLED transition and the refund commit together.

    Raises:
        EventNotReleasable: If the event is missing or not PENDING
    """
    async with get_session() as session:
        result = await session.execute(
            update(UsageEvent)
            .where(UsageEvent.id == event_id)
            .where(UsageEvent.status == UsageEventStatus.PENDING)
            .values(status=UsageEventStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise EventNotReleasable()

        result = await session.execute(
            select(
                UsageEvent.agent_id,
                UsageEvent.user_wallet_address,
                UsageEvent.fee_deducted,
                UsageEvent.credits_deducted,
            ).where(UsageEvent.id == event_id)
        )
        agent_id, wallet_address, fee_deducted, credits_deducted = result.one()

        refund: dict = {}
        if fee_deducted is not None and fee_deducted > 0:
            refund["eth_balance"] = UserBalance.eth_balance + fee_deducted
        if credits_deducted is not None and credits_deducted > 0:
            refund["credit_balance"] = UserBalance.credit_balance + credits_deducted

        if refund:
            await session.execute(
                update(UserBalance)
                .where(UserBalance.user_wallet_address == wallet_address)
                .where(UserBalance.agent_id == agent_id)
                .values(**refund)
                .execution_options(synchronize_session=False)
            )

    logger.info(
        "Released usage event",
        event_id=event_id,
        agent_id=agent_id,
        wallet=wallet_address,
        refunded_fee=fee_deducted,
        refunded_credits=credits_deducted,
    )
    return event_id


async def get_balance(agent_id: str, wallet_address: str) -> tuple[Decimal, int]:
    """Get a user's (eth, credits) balance; zero when no row exists."""
    async with get_session() as session:
        result = await session.execute(
            select(UserBalance.eth_balance, UserBalance.credit_balance)
            .where(UserBalance.user_wallet_address == wallet_address)
            .where(UserBalance.agent_id == agent_id)
        )
        row = result.one_or_none()

    if row is None:
        return Decimal("0"), 0
    return Decimal(row.eth_balance), int(row.credit_balance)
