from datetime import date, timedelta

import pytest
from sqlalchemy import update

from models.user import User
from services.credits import ensure_account, get_balance
from services.rewards import claim_daily_bonus, daily_bonus_amount, redeem_referral


def test_daily_bonus_amount_adds_weekly_streak_bonus():
    assert daily_bonus_amount(1) == 2
    assert daily_bonus_amount(6) == 2
    assert daily_bonus_amount(7) == 7
    assert daily_bonus_amount(14) == 7


@pytest.mark.asyncio
async def test_daily_bonus_once_per_day(session_maker):
    today = date(2026, 10, 19)
    async with session_maker() as session:
        await ensure_account("user-daily", session)
        first = await claim_daily_bonus("user-daily", session, today=today)
        assert first.ok is True
        assert first.credits == 2
        assert first.balance == 5
        assert first.streak == 1

        second = await claim_daily_bonus("user-daily", session, today=today)
        assert second.ok is False
        assert second.reason == "already_claimed"
        assert (await get_balance("user-daily", session)).balance == 5

        tomorrow = await claim_daily_bonus("user-daily", session, today=today + timedelta(days=1))
        assert tomorrow.streak == 2


@pytest.mark.asyncio
async def test_streak_resets_after_a_missed_day_and_pays_on_day_seven(session_maker):
    today = date(2026, 10, 19)
    async with session_maker() as session:
        await ensure_account("user-streak", session)
        await session.execute(
            update(User)
            .where(User.id == "user-streak")
            .values(login_streak=6, last_bonus_date=today - timedelta(days=1))
        )
        await session.commit()

        weekly = await claim_daily_bonus("user-streak", session, today=today)
        assert weekly.streak == 7
        assert weekly.credits == 7

        after_gap = await claim_daily_bonus("user-streak", session, today=today + timedelta(days=3))
        assert after_gap.streak == 1
        assert after_gap.credits == 2


@pytest.mark.asyncio
async def test_referral_rewards_both_users_once(session_maker):
    async with session_maker() as session:
        referrer = await ensure_account("user-referrer", session)
        await ensure_account("user-friend", session)
        await ensure_account("user-late", session)
        code = referrer.referral_code

        redeemed = await redeem_referral("user-friend", session, code=code.lower())
        assert redeemed.ok is True
        assert redeemed.credits == 5
        assert redeemed.balance == 8

        again = await redeem_referral("user-friend", session, code=code)
        assert again.ok is False
        assert again.reason == "already_redeemed"

        assert (await get_balance("user-referrer", session)).balance == 8
        assert (await get_balance("user-friend", session)).balance == 8

        own = await redeem_referral("user-referrer", session, code=code)
        assert own.reason == "own_code"
        invalid = await redeem_referral("user-late", session, code="ZZZZZZZZ")
        assert invalid.reason == "invalid_code"


@pytest.mark.asyncio
async def test_reward_endpoints(client, auth_headers):
    headers = auth_headers("http-daily")
    claimed = await client.post("/users/me/daily-bonus", headers=headers)
    assert claimed.status_code == 200
    assert claimed.json()["credits"] == 2

    repeat = await client.post("/users/me/daily-bonus", headers=headers)
    assert repeat.status_code == 409
    assert repeat.json()["detail"]["reason"] == "already_claimed"

    invalid = await client.post("/users/me/redeem-referral", json={"code": "NOPE1234"}, headers=headers)
    assert invalid.status_code == 404

    me = await client.get("/users/me", headers=headers)
    assert me.json()["credits"] == 5
    assert me.json()["login_streak"] == 1
