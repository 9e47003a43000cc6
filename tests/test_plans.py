"""
Plan Catalog Tests
==================

Catalog lookups, price-ID wiring from configuration, and the monthly
allocation fallback chain (product metadata, planType, name, price).
"""

import pytest

from billing.exceptions import InvalidPlanError
from billing.plans import (
    FREE_PLAN_ID,
    find_plan_by_name,
    find_plan_by_price_amount,
    find_plan_by_price_id,
    get_plan_details,
    get_plans,
    monthly_allocation_for,
    parse_credits,
    plan_ids,
)


class TestCatalog:

    def test_catalog_order_and_amounts(self, config):
        plans = get_plans(config)
        assert [p.id for p in plans] == ["free", "first", "second", "third"]
        assert [p.credits_in_usd_cents for p in plans] == [0, 1000, 4000, 10000]
        assert [p.price_in_usd_cents for p in plans] == [0, 1900, 4900, 9900]

    def test_price_ids_come_from_config(self, config):
        config.subscription_2_price_id = "price_override"
        plan = get_plan_details("second", config)
        assert plan.price_id == "price_override"
        assert get_plan_details("first", config).price_id == "price_hobby"

    def test_free_plan_is_not_paid(self, config):
        free = get_plan_details(FREE_PLAN_ID, config)
        assert free.is_paid is False
        assert free.price_id is None

    def test_unknown_plan_lists_valid_ids(self, config):
        with pytest.raises(InvalidPlanError) as exc_info:
            get_plan_details("platinum", config)
        assert exc_info.value.status_code == 400
        assert exc_info.value.context["valid_plan_ids"] == plan_ids(config)
        assert "platinum" in exc_info.value.detail

    def test_none_plan_is_invalid(self, config):
        with pytest.raises(InvalidPlanError):
            get_plan_details(None, config)

    def test_plan_is_immutable(self, config):
        plan = get_plan_details("first", config)
        with pytest.raises(AttributeError):
            plan.credits_in_usd_cents = 1

    def test_to_dict(self, config):
        assert get_plan_details("third", config).to_dict() == {
            "id": "third",
            "name": "Growth",
            "credits_in_usd_cents": 10000,
            "price_in_usd_cents": 9900,
            "price_id": "price_growth",
        }


class TestLookups:

    def test_find_by_price_id(self, config):
        assert find_plan_by_price_id("price_standard", config).id == "second"
        assert find_plan_by_price_id("price_unknown", config) is None
        assert find_plan_by_price_id(None, config) is None

    def test_find_by_name_is_case_insensitive(self, config):
        assert find_plan_by_name("HOBBY Monthly", config).id == "first"
        assert find_plan_by_name("Enterprise", config) is None

    def test_find_by_name_skips_free_plan(self, config):
        assert find_plan_by_name("Free tier", config) is None

    def test_find_by_price_amount(self, config):
        assert find_plan_by_price_amount(9900, config).id == "third"
        assert find_plan_by_price_amount(0, config) is None
        assert find_plan_by_price_amount(1234, config) is None


class TestParseCredits:

    @pytest.mark.parametrize("value,expected", [
        ("1000", 1000),
        (250, 250),
        ("0", None),
        ("-5", None),
        ("ten", None),
        (None, None),
    ])
    def test_parse(self, value, expected):
        assert parse_credits(value) == expected


class TestMonthlyAllocation:

    def test_product_metadata_wins(self, config):
        credits = monthly_allocation_for(
            product_metadata={"monthly_credits": "1500"},
            subscription_metadata={"planType": "third"},
            config=config,
        )
        assert credits == 1500

    def test_falls_back_to_subscription_plan_type(self, config):
        credits = monthly_allocation_for(
            product_metadata={"monthly_credits": "not-a-number"},
            subscription_metadata={"planType": "second"},
            config=config,
        )
        assert credits == 4000

    def test_unknown_plan_type_falls_through_to_name(self, config):
        credits = monthly_allocation_for(
            subscription_metadata={"planType": "legacy"},
            product_name="Growth (annual)",
            config=config,
        )
        assert credits == 10000

    def test_falls_back_to_unit_price(self, config):
        assert monthly_allocation_for(product_name="Pro", unit_amount=4900, config=config) == 4000

    def test_nothing_matches(self, config):
        assert monthly_allocation_for(product_name="Mystery", unit_amount=1, config=config) == 0
