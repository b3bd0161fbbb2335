import pytest
from pydantic import ValidationError

from services.pricing import (
    CreditPackageView,
    UnknownSpreadError,
    calculate_reading_cost,
    cost_table,
    create_package,
    deactivate_package,
    get_package,
    get_spread_cost,
    list_active_packages,
    seed_default_packages,
    update_package,
)


def test_spread_costs_follow_catalog():
    assert get_spread_cost("SINGLE") == 1
    assert get_spread_cost("three-card") == 3
    assert get_spread_cost("Celtic Cross") == 10
    assert get_spread_cost("horseshoe") == 7


def test_unknown_spread_is_rejected():
    with pytest.raises(UnknownSpreadError):
        get_spread_cost("tree_of_life")


def test_reading_cost_adds_options():
    cost = calculate_reading_cost("love", has_extended_question=True, has_advanced_style=True)
    assert cost.base == 5
    assert cost.total == 7
    assert cost.as_dict()["total_cost"] == 7


def test_cost_table_lists_every_spread():
    table = cost_table()
    assert table["spreads"]["three_card"] == 3
    assert table["follow_up"] == 1
    assert len(table["spreads"]) == 8


@pytest.mark.asyncio
async def test_seeded_packages_are_ordered_and_localized(session_maker):
    async with session_maker() as session:
        packages = await list_active_packages(session)
        assert [package.id for package in packages] == ["starter", "basic", "popular", "value", "premium"]
        starter = packages[0]
        assert starter.credits == 10
        assert starter.price_cents == 500
        assert starter.localized("fr")["name"] == "Démarrage"

        assert await seed_default_packages(session) == 0


@pytest.mark.asyncio
async def test_package_maintenance(session_maker):
    async with session_maker() as session:
        created = await create_package(
            CreditPackageView(
                id="mega",
                credits=500,
                bonus_credits=50,
                price_cents=10000,
                name_en="Mega",
                name_fr="Méga",
                sort_order=6,
            ),
            session,
        )
        assert created.total_credits == 550
        with pytest.raises(ValueError):
            await create_package(created, session)

        updated = await update_package("mega", {"price_cents": 9000}, session)
        assert updated.price_cents == 9000
        with pytest.raises(ValidationError):
            await update_package("mega", {"price_cents": 0}, session)

        assert await deactivate_package("mega", session) is True
        assert await get_package("mega", session) is None
        assert (await get_package("mega", session, active_only=False)).is_active is False
