"""Tests for the plan catalog."""

from decimal import Decimal

import pytest

from backend.core.errors import ValidationError
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog, plan_by_id, list_plans
from backend.models.plan import BillingCycle, PlanFeature, UNLIMITED


def test_catalog_lists_all_tiers_in_order():
    ids = [p.plan_id for p in list_plans()]
    assert ids == ["free", "starter", "basic", "professional", "team_small", "team_medium", "enterprise"]


def test_unknown_plan_resolves_to_free():
    assert plan_by_id("platinum").plan_id == "free"
    assert plan_by_id(None).plan_id == "free"
    assert plan_by_id("").plan_id == "free"


def test_free_plan_limits():
    free = plan_by_id("free")
    assert free.max_students == 1
    assert free.max_generations_per_period == 0
    assert free.is_free
    assert not any(free.features.values())


def test_unified_catalog_uses_display_limits():
    basic = plan_by_id("basic")
    assert basic.max_generations_per_period == 150

    team_small = plan_by_id("team_small")
    assert team_small.max_students == 10
    assert team_small.max_reports_per_period == 200
    assert team_small.max_generations_per_period == 300
    assert not team_small.has_feature(PlanFeature.PRIORITY_SUPPORT)


def test_unlimited_plans_use_sentinel():
    enterprise = plan_by_id("enterprise")
    assert enterprise.max_students == UNLIMITED
    assert enterprise.max_professionals == UNLIMITED


def test_annual_charge_is_twelve_monthly_equivalents():
    starter = plan_by_id("starter")
    assert starter.charge_for(BillingCycle.MONTHLY) == Decimal("49.90")
    assert starter.charge_for(BillingCycle.ANNUAL) == Decimal("478.80")


def test_require_paid_plan_rejects_free_and_unknown():
    with pytest.raises(ValidationError) as exc:
        DEFAULT_CATALOG.require_paid_plan("free")
    assert exc.value.code == "invalid_plan"

    with pytest.raises(ValidationError):
        DEFAULT_CATALOG.require_paid_plan("platinum")

    assert DEFAULT_CATALOG.require_paid_plan("basic").plan_id == "basic"


def test_paid_plan_ids_exclude_free():
    assert "free" not in DEFAULT_CATALOG.paid_plan_ids()
    assert len(DEFAULT_CATALOG.paid_plan_ids()) == 6


def test_catalog_requires_free_plan():
    with pytest.raises(ValueError):
        PlanCatalog([plan_by_id("basic")])


def test_plan_is_immutable():
    with pytest.raises(Exception):
        plan_by_id("basic").max_students = 999
