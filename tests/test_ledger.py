"""
Tests for the usage ledger: track / capture / release.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from earnkit.db.database import get_session
from earnkit.db.models import FeeModelType, UsageEvent, UsageEventStatus
from earnkit.services import ledger
from earnkit.services.errors import (
    AgentNotFound,
    EventNotCapturable,
    EventNotReleasable,
    IdempotencyConflict,
    InsufficientCredits,
    InsufficientFunds,
)

from tests._testkit import OTHER_WALLET, USER_WALLET


async def count_events(agent_id: str) -> int:
    async with get_session() as session:
        result = await session.execute(
            select(func.count()).select_from(UsageEvent).where(UsageEvent.agent_id == agent_id)
        )
        return result.scalar_one()


async def load_event(event_id: str) -> UsageEvent:
    async with get_session() as session:
        result = await session.execute(select(UsageEvent).where(UsageEvent.id == event_id))
        return result.scalar_one()


async def use(agent_id: str, wallet: str = USER_WALLET, **kwargs) -> str:
    """Track and capture one use."""
    event_id = await ledger.track(agent_id, wallet, **kwargs)
    await ledger.capture(event_id)
    return event_id


class TestTrack:
    """Test holding fees."""

    async def test_free_use_creates_pending_event(self, free_tier_agent):
        event_id = await ledger.track(free_tier_agent.id, USER_WALLET)

        event = await load_event(event_id)
        assert event.status == UsageEventStatus.PENDING
        assert event.fee_deducted is None
        assert event.credits_deducted is None
        assert event.user_wallet_address == USER_WALLET

        # No balance row is needed for a free use
        assert await ledger.get_balance(free_tier_agent.id, USER_WALLET) == (Decimal("0"), 0)

    async def test_unknown_agent(self, db):
        with pytest.raises(AgentNotFound) as exc_info:
            await ledger.track("missing-agent", USER_WALLET)
        assert exc_info.value.status_code == 404

    async def test_eth_charge_records_fee(self, free_tier_agent, fund):
        await fund(free_tier_agent.id, USER_WALLET, eth="0.5")
        await use(free_tier_agent.id)
        await use(free_tier_agent.id)

        event_id = await ledger.track(free_tier_agent.id, USER_WALLET)

        event = await load_event(event_id)
        assert event.fee_deducted == Decimal("0.125")
        eth, _ = await ledger.get_balance(free_tier_agent.id, USER_WALLET)
        assert eth == Decimal("0.375")

    async def test_insufficient_funds_creates_nothing(self, free_tier_agent, fund):
        await fund(free_tier_agent.id, USER_WALLET, eth="0.0625")
        await use(free_tier_agent.id)
        await use(free_tier_agent.id)

        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.track(free_tier_agent.id, USER_WALLET)

        assert exc_info.value.status_code == 402
        assert await count_events(free_tier_agent.id) == 2
        eth, _ = await ledger.get_balance(free_tier_agent.id, USER_WALLET)
        assert eth == Decimal("0.0625")

    async def test_insufficient_funds_without_balance_row(self, free_tier_agent):
        await use(free_tier_agent.id)
        await use(free_tier_agent.id)

        with pytest.raises(InsufficientFunds):
            await ledger.track(free_tier_agent.id, USER_WALLET)

    async def test_credit_charge(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)

        event_id = await ledger.track(credit_agent.id, USER_WALLET)

        event = await load_event(event_id)
        assert event.credits_deducted == 10
        assert event.fee_deducted is None
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 15)

    async def test_credit_override(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)

        await ledger.track(credit_agent.id, USER_WALLET, credits_to_deduct=3)

        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 22)

    async def test_insufficient_credits(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=9)

        with pytest.raises(InsufficientCredits) as exc_info:
            await ledger.track(credit_agent.id, USER_WALLET)

        assert exc_info.value.status_code == 402
        assert await count_events(credit_agent.id) == 0
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 9)

    async def test_exact_balance_is_sufficient(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=10)

        await ledger.track(credit_agent.id, USER_WALLET)

        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 0)

    async def test_balances_are_per_wallet(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=50)

        with pytest.raises(InsufficientCredits):
            await ledger.track(credit_agent.id, OTHER_WALLET)


class TestFreeTierAllowance:
    """Only CAPTURED events consume the free allowance."""

    async def test_threshold_boundary(self, make_agent, fund):
        agent = await make_agent(FeeModelType.FREE_TIER, {"threshold": 3, "rate": "0.125"})
        await fund(agent.id, USER_WALLET, eth="1")

        for _ in range(3):
            event_id = await use(agent.id)
            assert (await load_event(event_id)).fee_deducted is None
        assert (await ledger.get_balance(agent.id, USER_WALLET))[0] == Decimal("1")

        event_id = await use(agent.id)

        assert (await load_event(event_id)).fee_deducted == Decimal("0.125")
        assert (await ledger.get_balance(agent.id, USER_WALLET))[0] == Decimal("0.875")

    async def test_released_events_do_not_count(self, free_tier_agent):
        for _ in range(3):
            event_id = await ledger.track(free_tier_agent.id, USER_WALLET)
            await ledger.release(event_id)

        # Still two free uses left
        await use(free_tier_agent.id)
        await use(free_tier_agent.id)

        with pytest.raises(InsufficientFunds):
            await ledger.track(free_tier_agent.id, USER_WALLET)

    async def test_pending_events_do_not_count(self, make_agent):
        agent = await make_agent(FeeModelType.FREE_TIER, {"threshold": 1, "rate": "0.125"})

        first = await ledger.track(agent.id, USER_WALLET)
        second = await ledger.track(agent.id, USER_WALLET)

        assert (await load_event(first)).fee_deducted is None
        assert (await load_event(second)).fee_deducted is None

    async def test_allowance_is_per_wallet(self, free_tier_agent):
        await use(free_tier_agent.id, USER_WALLET)
        await use(free_tier_agent.id, USER_WALLET)

        event_id = await use(free_tier_agent.id, OTHER_WALLET)

        assert (await load_event(event_id)).fee_deducted is None


class TestCaptureRelease:
    """Test finalizing and refunding holds."""

    async def test_capture(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)
        event_id = await ledger.track(credit_agent.id, USER_WALLET)

        assert await ledger.capture(event_id) == event_id

        assert (await load_event(event_id)).status == UsageEventStatus.CAPTURED
        # Capture never touches balances
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 15)

    async def test_release_refunds_credits(self, credit_agent, fund):
        """Hold 10 of 25 credits, the AI call fails, the hold is refunded."""
        await fund(credit_agent.id, USER_WALLET, credits=25)
        event_id = await ledger.track(credit_agent.id, USER_WALLET)
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 15)

        assert await ledger.release(event_id) == event_id

        assert (await load_event(event_id)).status == UsageEventStatus.CANCELLED
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 25)

    async def test_release_refunds_eth_exactly(self, make_agent, fund):
        agent = await make_agent(FeeModelType.FREE_TIER, {"threshold": 0, "rate": "0.125"})
        await fund(agent.id, USER_WALLET, eth="0.5")

        event_id = await ledger.track(agent.id, USER_WALLET)
        assert (await ledger.get_balance(agent.id, USER_WALLET))[0] == Decimal("0.375")

        await ledger.release(event_id)

        assert (await ledger.get_balance(agent.id, USER_WALLET))[0] == Decimal("0.5")

    async def test_release_free_use(self, free_tier_agent):
        event_id = await ledger.track(free_tier_agent.id, USER_WALLET)

        await ledger.release(event_id)

        assert (await load_event(event_id)).status == UsageEventStatus.CANCELLED
        assert await ledger.get_balance(free_tier_agent.id, USER_WALLET) == (Decimal("0"), 0)

    async def test_double_capture_fails(self, free_tier_agent):
        event_id = await use(free_tier_agent.id)

        with pytest.raises(EventNotCapturable) as exc_info:
            await ledger.capture(event_id)
        assert exc_info.value.status_code == 404

    async def test_double_release_does_not_double_refund(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)
        event_id = await ledger.track(credit_agent.id, USER_WALLET)
        await ledger.release(event_id)

        with pytest.raises(EventNotReleasable):
            await ledger.release(event_id)

        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 25)

    async def test_release_after_capture_fails(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)
        event_id = await use(credit_agent.id)

        with pytest.raises(EventNotReleasable):
            await ledger.release(event_id)

        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 15)
        assert (await load_event(event_id)).status == UsageEventStatus.CAPTURED

    async def test_capture_after_release_fails(self, free_tier_agent):
        event_id = await ledger.track(free_tier_agent.id, USER_WALLET)
        await ledger.release(event_id)

        with pytest.raises(EventNotCapturable):
            await ledger.capture(event_id)

    async def test_unknown_event(self, db):
        with pytest.raises(EventNotCapturable):
            await ledger.capture("missing-event")
        with pytest.raises(EventNotReleasable):
            await ledger.release("missing-event")


class TestIdempotency:
    """Test idempotent replays of track."""

    async def test_replay_returns_same_event(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)

        first = await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")
        second = await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")

        assert first == second
        assert await count_events(credit_agent.id) == 1
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 15)

    async def test_replay_ignores_event_status(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)
        event_id = await use(credit_agent.id, idempotency_key="abc")

        assert await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc") == event_id
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 15)

    async def test_replay_succeeds_without_funds(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=10)
        event_id = await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")

        assert await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc") == event_id

    async def test_replay_from_other_wallet_conflicts(self, free_tier_agent):
        await ledger.track(free_tier_agent.id, USER_WALLET, idempotency_key="abc")

        with pytest.raises(IdempotencyConflict) as exc_info:
            await ledger.track(free_tier_agent.id, OTHER_WALLET, idempotency_key="abc")

        assert exc_info.value.status_code == 409
        assert await count_events(free_tier_agent.id) == 1

    async def test_keys_are_scoped_per_agent(self, free_tier_agent, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)

        first = await ledger.track(free_tier_agent.id, USER_WALLET, idempotency_key="abc")
        second = await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")

        assert first != second

    async def test_calls_without_key_are_independent(self, free_tier_agent):
        first = await ledger.track(free_tier_agent.id, USER_WALLET)
        second = await ledger.track(free_tier_agent.id, USER_WALLET)

        assert first != second
        assert await count_events(free_tier_agent.id) == 2


class TestConcurrency:
    """Concurrent calls against one balance."""

    async def test_racing_duplicate_keys_charge_once(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=100)

        results = await asyncio.gather(*[
            ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")
            for _ in range(5)
        ])

        assert len(set(results)) == 1
        assert await count_events(credit_agent.id) == 1
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 90)

    async def test_racing_duplicate_keys_with_balance_for_one_use(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=10)

        results = await asyncio.gather(*[
            ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")
            for _ in range(2)
        ])

        assert len(set(results)) == 1
        assert await count_events(credit_agent.id) == 1
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 0)

    async def test_racing_duplicate_keys_with_eth_for_one_use(self, make_agent, fund):
        agent = await make_agent(FeeModelType.FREE_TIER, {"threshold": 0, "rate": "0.125"})
        await fund(agent.id, USER_WALLET, eth="0.125")

        results = await asyncio.gather(*[
            ledger.track(agent.id, USER_WALLET, idempotency_key="abc")
            for _ in range(3)
        ])

        assert len(set(results)) == 1
        assert await count_events(agent.id) == 1
        assert await ledger.get_balance(agent.id, USER_WALLET) == (Decimal("0"), 0)

    async def test_empty_balance_with_unused_key_still_fails(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=5)

        with pytest.raises(InsufficientCredits):
            await ledger.track(credit_agent.id, USER_WALLET, idempotency_key="abc")

        assert await count_events(credit_agent.id) == 0

    async def test_racing_tracks_never_overspend(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)

        results = await asyncio.gather(
            *[ledger.track(credit_agent.id, USER_WALLET) for _ in range(5)],
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, str)]
        failed = [r for r in results if isinstance(r, InsufficientCredits)]
        assert len(succeeded) == 2
        assert len(failed) == 3
        assert await count_events(credit_agent.id) == 2
        assert await ledger.get_balance(credit_agent.id, USER_WALLET) == (Decimal("0"), 5)

    async def test_capture_release_race(self, credit_agent, fund):
        await fund(credit_agent.id, USER_WALLET, credits=25)
        event_id = await ledger.track(credit_agent.id, USER_WALLET)

        results = await asyncio.gather(
            ledger.capture(event_id),
            ledger.release(event_id),
            return_exceptions=True,
        )

        winners = [r for r in results if r == event_id]
        losers = [r for r in results if isinstance(r, (EventNotCapturable, EventNotReleasable))]
        assert len(winners) == 1
        assert len(losers) == 1

        event = await load_event(event_id)
        _, credits = await ledger.get_balance(credit_agent.id, USER_WALLET)
        if event.status == UsageEventStatus.CAPTURED:
            assert credits == 15
        else:
            assert event.status == UsageEventStatus.CANCELLED
            assert credits == 25
