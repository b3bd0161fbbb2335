import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from models.credit_ledger import LedgerEvent
from services.credits import (
    INSUFFICIENT_CREDITS,
    LedgerCategory,
    adjust_credits,
    credit,
    debit,
    ensure_account,
    get_balance,
    list_events,
    reconcile,
    refund_spend,
    reverse_purchase,
)
from services.errors import AccountNotFoundError, LedgerWriteError


async def _event_count(session, user_id):
    result = await session.execute(select(func.count(LedgerEvent.id)).where(LedgerEvent.user_id == user_id))
    return int(result.scalar_one())


@pytest.mark.asyncio
async def test_new_account_gets_welcome_grant_once(session_maker):
    async with session_maker() as session:
        user = await ensure_account("user-welcome", session, email="welcome@example.com")
        assert user.credits == 3
        assert user.referral_code

        await ensure_account("user-welcome", session, email="welcome@example.com")
        summary = await get_balance("user-welcome", session)
        assert summary.balance == 3
        assert summary.lifetime_earned == 3
        assert summary.lifetime_spent == 0

        events = await list_events("user-welcome", session)
        assert [event.entry_type for event in events] == [LedgerCategory.WELCOME_BONUS.value]


@pytest.mark.asyncio
async def test_get_balance_unknown_account_raises(session_maker):
    async with session_maker() as session:
        with pytest.raises(AccountNotFoundError):
            await get_balance("missing-user", session)


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected_without_writes(session_maker):
    async with session_maker() as session:
        await ensure_account("user-poor", session)
        outcome = await debit(
            "user-poor",
            session,
            amount=5,
            category=LedgerCategory.READING_SPEND,
            description="Celtic cross reading",
        )
        assert outcome.ok is False
        assert outcome.reason == INSUFFICIENT_CREDITS
        assert outcome.required == 5
        assert outcome.balance == 3
        assert await _event_count(session, "user-poor") == 1

        summary = await get_balance("user-poor", session)
        assert summary.balance == 3
        assert summary.lifetime_spent == 0


@pytest.mark.asyncio
async def test_credit_with_same_idempotency_key_applies_once(session_maker):
    async with session_maker() as session:
        await ensure_account("user-idem", session)
        first = await credit(
            "user-idem",
            session,
            amount=10,
            category=LedgerCategory.PURCHASE,
            description="Starter pack",
            idempotency_key="payment:stripe:cs_1",
            payment_amount_cents=500,
        )
        second = await credit(
            "user-idem",
            session,
            amount=10,
            category=LedgerCategory.PURCHASE,
            description="Starter pack",
            idempotency_key="payment:stripe:cs_1",
            payment_amount_cents=500,
        )

        assert first.applied is True
        assert second.applied is False
        assert second.event_id == first.event_id
        summary = await get_balance("user-idem", session)
        assert summary.balance == 13
        assert summary.lifetime_earned == 13


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_maker):
    async with session_maker() as session:
        await ensure_account("user-race", session)
        await adjust_credits("user-race", session, amount=2, reason="test top up")

    async def spend():
        async with session_maker() as session:
            return await debit(
                "user-race",
                session,
                amount=2,
                category=LedgerCategory.READING_SPEND,
                description="Two card reading",
            )

    outcomes = await asyncio.gather(spend(), spend(), spend())
    assert sum(1 for outcome in outcomes if outcome.ok) == 2
    assert sum(1 for outcome in outcomes if outcome.reason == INSUFFICIENT_CREDITS) == 1

    async with session_maker() as session:
        summary = await get_balance("user-race", session)
        assert summary.balance == 1
        assert summary.lifetime_spent == 4
        audit = await reconcile("user-race", session)
        assert audit["consistent"] is True


@pytest.mark.asyncio
async def test_failed_event_write_leaves_balance_untouched(session_maker):
    async with session_maker() as session:
        await ensure_account("user-atomic", session)

    async with session_maker() as session:
        with patch("services.credits._append_event", new_callable=AsyncMock, side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(LedgerWriteError):
                await debit(
                    "user-atomic",
                    session,
                    amount=1,
                    category=LedgerCategory.READING_SPEND,
                    description="Single card reading",
                )

    async with session_maker() as session:
        summary = await get_balance("user-atomic", session)
        assert summary.balance == 3
        assert summary.lifetime_spent == 0
        assert await _event_count(session, "user-atomic") == 1


@pytest.mark.asyncio
async def test_refund_spend_returns_credits_once(session_maker):
    async with session_maker() as session:
        await ensure_account("user-refund", session)
        spend = await debit(
            "user-refund",
            session,
            amount=3,
            category=LedgerCategory.READING_SPEND,
            description="Three card reading",
        )
        assert spend.balance == 0

        refunded = await refund_spend("user-refund", session, event_id=spend.event_id, reason="generation failed")
        again = await refund_spend("user-refund", session, event_id=spend.event_id, reason="generation failed")

        assert refunded.applied is True
        assert refunded.balance == 3
        assert again.applied is False
        summary = await get_balance("user-refund", session)
        assert summary.balance == 3
        assert summary.lifetime_spent == 0
        assert summary.lifetime_earned == 3


@pytest.mark.asyncio
async def test_refund_rejects_non_spend_events(session_maker):
    async with session_maker() as session:
        await ensure_account("user-refund-bonus", session)
        events = await list_events("user-refund-bonus", session)
        outcome = await refund_spend("user-refund-bonus", session, event_id=events[0].id, reason="nope")
        assert outcome.ok is False
        assert outcome.reason == "not_eligible"

        missing = await refund_spend("user-refund-bonus", session, event_id="missing", reason="nope")
        assert missing.reason == "not_found"


@pytest.mark.asyncio
async def test_reverse_purchase_stops_at_zero(session_maker):
    async with session_maker() as session:
        await ensure_account("user-reverse", session)
        await credit(
            "user-reverse",
            session,
            amount=10,
            category=LedgerCategory.PURCHASE,
            description="Starter pack",
            idempotency_key="payment:stripe:cs_rev",
            payment_amount_cents=500,
        )
        await debit("user-reverse", session, amount=8, category=LedgerCategory.READING_SPEND, description="Readings")

        outcome = await reverse_purchase(
            "user-reverse",
            session,
            credits=10,
            provider="stripe",
            provider_ref="cs_rev",
        )
        assert outcome.amount == 5
        assert outcome.balance == 0

        repeat = await reverse_purchase("user-reverse", session, credits=10, provider="stripe", provider_ref="cs_rev")
        assert repeat.applied is False

        audit = await reconcile("user-reverse", session)
        assert audit["balance"] == 0
        assert audit["consistent"] is True


@pytest.mark.asyncio
async def test_admin_adjustment_rules(session_maker):
    async with session_maker() as session:
        await ensure_account("user-adjust", session)
        with pytest.raises(ValueError):
            await adjust_credits("user-adjust", session, amount=0, reason="noop")

        removed = await adjust_credits("user-adjust", session, amount=-2, reason="correction")
        assert removed.ok is True
        assert removed.balance == 1

        overdraw = await adjust_credits("user-adjust", session, amount=-5, reason="correction")
        assert overdraw.ok is False


@pytest.mark.asyncio
async def test_ledger_sum_matches_balance_after_mixed_operations(session_maker):
    async with session_maker() as session:
        await ensure_account("user-mixed", session)
        await credit(
            "user-mixed",
            session,
            amount=25,
            category=LedgerCategory.PURCHASE,
            description="Basic pack",
            idempotency_key="payment:paypal:order_1",
        )
        spend = await debit("user-mixed", session, amount=10, category=LedgerCategory.READING_SPEND, description="Celtic")
        await debit("user-mixed", session, amount=1, category=LedgerCategory.FOLLOW_UP_SPEND, description="Follow-up")
        await refund_spend("user-mixed", session, event_id=spend.event_id, reason="failed")
        await debit("user-mixed", session, amount=100, category=LedgerCategory.READING_SPEND, description="Too much")

        audit = await reconcile("user-mixed", session)
        assert audit == {
            "user_id": "user-mixed",
            "balance": 27,
            "ledger_sum": 27,
            "lifetime_earned": 28,
            "lifetime_spent": 1,
            "event_count": 5,
            "consistent": True,
        }


@pytest.mark.asyncio
async def test_refunded_charge_releases_its_idempotency_key(session_maker):
    async with session_maker() as session:
        await ensure_account("user-recharge", session)

        async def charge():
            return await debit(
                "user-recharge",
                session,
                amount=3,
                category=LedgerCategory.READING_SPEND,
                description="Three card reading",
                idempotency_key="reading:user-recharge:r-1",
            )

        first = await charge()
        await refund_spend("user-recharge", session, event_id=first.event_id, reason="generation failed")

        second = await charge()
        assert second.applied is True
        assert second.event_id != first.event_id
        assert second.balance == 0

        replay = await charge()
        assert replay.applied is False
        assert replay.event_id == second.event_id

        summary = await get_balance("user-recharge", session)
        assert summary.balance == 0
        assert summary.lifetime_spent == 3
