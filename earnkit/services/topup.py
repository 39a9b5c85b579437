"""
Top-up reconciliation for on-chain deposits.

Flow:
1. submit() records the deposit as PENDING, keyed by tx hash (duplicates are
   rejected by the primary key)
2. schedule() starts a background task that waits for the deposit to be
   final, then runs confirm()
3. confirm() credits the user's balance and marks the deposit CONFIRMED in
   one transaction, or records FAILED with a diagnostic

confirm() only acts on PENDING deposits, so running it more than once for the
same hash credits the balance once.

Chain finality is approximated by a fixed delay. A chain watcher would call
confirm() directly instead.
"""

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from earnkit.config import settings
from earnkit.db.database import get_session
from earnkit.db.models import (
    Agent,
    Developer,
    FeeModelType,
    TopUpStatus,
    TopUpTransaction,
    UserBalance,
)
from earnkit.services.errors import AgentNotFound, DuplicateTransaction
from earnkit.services.fee import build_top_up_options, parse_fee_model_config
from earnkit.utils.logging import LoggerMixin, log_context

PENDING_CONFIRMATION = "PENDING_CONFIRMATION"

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def credit_balance(
    session: AsyncSession,
    agent_id: str,
    wallet_address: str,
    eth_amount: Decimal = Decimal("0"),
    credits: int = 0,
) -> None:
    """
    Create the balance row with the amount, or add the amount to it.
    A single INSERT ... ON CONFLICT DO UPDATE, so two first-time top-ups
    for the same wallet cannot both try to create the row.
    """
    dialect = session.bind.dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"Balance upsert not supported on {dialect}")

    stmt = insert(UserBalance).values(
        user_wallet_address=wallet_address,
        agent_id=agent_id,
        eth_balance=eth_amount,
        credit_balance=credits,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_wallet_address", "agent_id"],
        set_={
            "eth_balance": UserBalance.eth_balance + stmt.excluded.eth_balance,
            "credit_balance": UserBalance.credit_balance + stmt.excluded.credit_balance,
        },
    )
    await session.execute(stmt)


async def get_top_up_details(agent_id: str) -> list[dict[str, Any]]:
    """
    Build purchase options for an agent. Read only.

    Raises:
        AgentNotFound: If the agent or its developer's deposit address is missing
    """
    async with get_session() as session:
        result = await session.execute(
            select(Agent, Developer.wallet_address)
            .join(Developer, Agent.developer_id == Developer.id)
            .where(Agent.id == agent_id)
        )
        row = result.one_or_none()

    if row is None or not row.wallet_address:
        raise AgentNotFound("Agent or developer configuration not found")

    agent = row.Agent
    config = parse_fee_model_config(agent.fee_model_type, agent.fee_model_config)
    return build_top_up_options(
        agent.fee_model_type,
        config,
        deposit_address=row.wallet_address,
        free_tier_amounts=settings.topup_amounts,
    )


class TopUpReconciler(LoggerMixin):
    """Submits deposits and confirms them in the background."""

    def __init__(
        self,
        confirmation_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._confirmation_delay = confirmation_delay
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def confirmation_delay(self) -> float:
        if self._confirmation_delay is not None:
            return self._confirmation_delay
        return settings.topup_confirmation_delay_seconds

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def submit(
        self,
        tx_hash: str,
        wallet_address: str,
        agent_id: str,
        amount_in_eth: str,
        credits_to_top_up: Optional[int] = None,
    ) -> str:
        """
        Record a deposit as PENDING and schedule its confirmation.

        Returns:
            PENDING_CONFIRMATION, without waiting for the confirmation

        Raises:
            AgentNotFound: If the agent does not exist
            DuplicateTransaction: If the hash was already submitted
        """
        try:
            async with get_session() as session:
                result = await session.execute(
                    select(Agent.id).where(Agent.id == agent_id)
                )
                if result.scalar_one_or_none() is None:
                    raise AgentNotFound()

                session.add(TopUpTransaction(
                    tx_hash=tx_hash,
                    status=TopUpStatus.PENDING,
                    user_wallet_address=wallet_address,
                    agent_id=agent_id,
                    amount_in_eth=amount_in_eth,
                    credits_to_top_up=credits_to_top_up,
                ))
                await session.flush()
        except IntegrityError as e:
            raise DuplicateTransaction() from e

        self.log.info(
            "Top-up submitted",
            tx_hash=tx_hash,
            agent_id=agent_id,
            wallet=wallet_address,
            amount_eth=amount_in_eth,
            credits=credits_to_top_up,
        )

        self.schedule(tx_hash)
        return PENDING_CONFIRMATION

    def schedule(self, tx_hash: str) -> asyncio.Task:
        """Fire-and-forget confirmation after the confirmation delay."""
        task = asyncio.create_task(self._confirm_later(tx_hash), name=f"topup:{tx_hash}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _confirm_later(self, tx_hash: str) -> None:
        self.log.info("Monitoring top-up", tx_hash=tx_hash, delay=self.confirmation_delay)
        await self._sleep(self.confirmation_delay)
        await self.confirm(tx_hash)

    async def confirm(self, tx_hash: str) -> bool:
        """
        Credit a PENDING deposit and mark it CONFIRMED.

        Returns:
            True if this call confirmed the deposit, False if it was a no-op
            or the deposit was marked FAILED
        """
        with log_context(tx_hash=tx_hash):
            async with get_session() as session:
                result = await session.execute(
                    select(TopUpTransaction).where(TopUpTransaction.tx_hash == tx_hash)
                )
                record = result.scalar_one_or_none()

            if record is None or record.status != TopUpStatus.PENDING:
                self.log.warning("Top-up not found or not pending, skipping")
                return False

            try:
                async with get_session() as session:
                    result = await session.execute(
                        select(Agent.fee_model_type).where(Agent.id == record.agent_id)
                    )
                    fee_model_type = result.scalar_one_or_none()
                    if fee_model_type is None:
                        raise AgentNotFound(f"Agent {record.agent_id} not found during confirmation")

                    # The status guard makes a concurrent duplicate confirm a no-op
                    result = await session.execute(
                        update(TopUpTransaction)
                        .where(TopUpTransaction.tx_hash == tx_hash)
                        .where(TopUpTransaction.status == TopUpStatus.PENDING)
                        .values(status=TopUpStatus.CONFIRMED)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        self.log.warning("Top-up confirmed concurrently, skipping")
                        return False

                    if fee_model_type == FeeModelType.FREE_TIER:
                        await credit_balance(
                            session,
                            record.agent_id,
                            record.user_wallet_address,
                            eth_amount=_parse_eth(record.amount_in_eth),
                        )
                    else:
                        await credit_balance(
                            session,
                            record.agent_id,
                            record.user_wallet_address,
                            credits=record.credits_to_top_up or 0,
                        )

            except Exception as e:
                self.log.error("Top-up confirmation failed", error=str(e))
                await self._mark_failed(tx_hash, f"{type(e).__name__}: {e}")
                return False

            self.log.info(
                "Top-up confirmed",
                agent_id=record.agent_id,
                wallet=record.user_wallet_address,
                fee_model=fee_model_type.value,
            )
            return True

    async def _mark_failed(self, tx_hash: str, error_message: str) -> None:
        """Record the failure outside the rolled-back credit transaction."""
        async with get_session() as session:
            await session.execute(
                update(TopUpTransaction)
                .where(TopUpTransaction.tx_hash == tx_hash)
                .where(TopUpTransaction.status == TopUpStatus.PENDING)
                .values(status=TopUpStatus.FAILED, error_message=error_message)
                .execution_options(synchronize_session=False)
            )

    async def drain(self) -> None:
        """Wait for all scheduled confirmations to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _parse_eth(amount_in_eth: str) -> Decimal:
    try:
        amount = Decimal(amount_in_eth)
    except InvalidOperation as e:
        raise ValueError(f"Invalid ETH amount: {amount_in_eth!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Invalid ETH amount: {amount_in_eth!r}")
    return amount


topup_reconciler = TopUpReconciler()
