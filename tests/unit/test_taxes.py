"""Tests for taxes and tax resolution."""

import pytest
from decimal import Decimal

from meterly.core.errors import ConflictError, NotFoundError
from meterly.core.models import TaxCreate, TaxLevel, TaxUpdate
from meterly.rating.taxes import total_tax_rate


async def make_tax(tenant, code, rate="10", default=False):
    return await tenant.taxes.create(TaxCreate(
        name=code.upper(), code=code, rate=Decimal(rate), applied_by_default=default
    ))


class TestTaxCrud:
    """Tests for tax definitions."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, tenant):
        tax = await make_tax(tenant, "vat", "20")
        assert tax.id.startswith("tax_")
        assert await tenant.taxes.get(tax.id) == tax

    @pytest.mark.asyncio
    async def test_duplicate_code(self, tenant):
        await make_tax(tenant, "vat")
        with pytest.raises(ConflictError):
            await make_tax(tenant, "vat", "5")

    @pytest.mark.asyncio
    async def test_get_unknown(self, tenant):
        with pytest.raises(NotFoundError):
            await tenant.taxes.get("tax_missing")

    @pytest.mark.asyncio
    async def test_list_filters_defaults(self, tenant):
        await make_tax(tenant, "vat", default=True)
        await make_tax(tenant, "gst")

        defaults = await tenant.taxes.list_taxes(applied_by_default=True)
        assert [t.code for t in defaults.data] == ["vat"]

        everything = await tenant.taxes.list_taxes(page=1, limit=1)
        assert everything.meta.total == 2
        assert everything.meta.total_pages == 2
        assert len(everything.data) == 1

    @pytest.mark.asyncio
    async def test_update_keeps_code(self, tenant):
        tax = await make_tax(tenant, "vat")
        updated = await tenant.taxes.update(
            tax.id, TaxUpdate(rate=Decimal("21"), description=None)
        )
        assert updated.rate == Decimal("21")
        assert updated.code == "vat"
        assert updated.name == "VAT"

    @pytest.mark.asyncio
    async def test_delete_cascades_assignments(self, tenant):
        tax = await make_tax(tenant, "vat")
        await tenant.taxes.assign_to_customer("cus_1", tax.id)
        await tenant.taxes.assign_to_plan("plan_1", tax.id)

        await tenant.taxes.delete(tax.id)

        assert await tenant.taxes.taxes_for_customer("cus_1") == []
        assert await tenant.taxes.taxes_for_plan("plan_1") == []
        # The code is free again
        await make_tax(tenant, "vat")


class TestAssignments:
    """Tests for attaching taxes to entities."""

    @pytest.mark.asyncio
    async def test_assignment_order_kept(self, tenant):
        first = await make_tax(tenant, "a")
        second = await make_tax(tenant, "b")
        third = await make_tax(tenant, "c")
        for tax in (second, third, first):
            await tenant.taxes.assign_to_charge("chg_1", tax.id)

        taxes = await tenant.taxes.taxes_for_charge("chg_1")
        assert [t.code for t in taxes] == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_duplicate_assignment(self, tenant):
        tax = await make_tax(tenant, "vat")
        await tenant.taxes.assign(TaxLevel.PLAN, "plan_1", tax.id)
        with pytest.raises(ConflictError):
            await tenant.taxes.assign(TaxLevel.PLAN, "plan_1", tax.id)

    @pytest.mark.asyncio
    async def test_assign_unknown_tax(self, tenant):
        with pytest.raises(NotFoundError):
            await tenant.taxes.assign_to_customer("cus_1", "tax_missing")

    @pytest.mark.asyncio
    async def test_unassign(self, tenant):
        tax = await make_tax(tenant, "vat")
        await tenant.taxes.assign_to_customer("cus_1", tax.id)

        await tenant.taxes.unassign_from_customer("cus_1", tax.id)
        await tenant.taxes.unassign_from_customer("cus_1", tax.id)

        assert await tenant.taxes.taxes_for_customer("cus_1") == []


class TestResolution:
    """Tests for hierarchical tax resolution."""

    @pytest.mark.asyncio
    async def test_charge_wins(self, tenant):
        customer_tax = await make_tax(tenant, "cus")
        plan_tax = await make_tax(tenant, "plan")
        charge_tax = await make_tax(tenant, "chg")
        await tenant.taxes.assign_to_customer("cus_1", customer_tax.id)
        await tenant.taxes.assign_to_plan("plan_1", plan_tax.id)
        await tenant.taxes.assign_to_charge("chg_1", charge_tax.id)

        applied = await tenant.taxes.resolve_taxes("cus_1", "plan_1", "chg_1")
        assert [t.code for t in applied] == ["chg"]

    @pytest.mark.asyncio
    async def test_plan_before_customer(self, tenant):
        customer_tax = await make_tax(tenant, "cus")
        plan_tax = await make_tax(tenant, "plan")
        await tenant.taxes.assign_to_customer("cus_1", customer_tax.id)
        await tenant.taxes.assign_to_plan("plan_1", plan_tax.id)

        applied = await tenant.taxes.resolve_taxes("cus_1", "plan_1", "chg_1")
        assert [t.code for t in applied] == ["plan"]

    @pytest.mark.asyncio
    async def test_customer_level(self, tenant):
        customer_tax = await make_tax(tenant, "cus")
        await make_tax(tenant, "vat", default=True)
        await tenant.taxes.assign_to_customer("cus_1", customer_tax.id)

        applied = await tenant.taxes.resolve_taxes("cus_1", "plan_1")
        assert [t.code for t in applied] == ["cus"]

    @pytest.mark.asyncio
    async def test_defaults_when_nothing_assigned(self, tenant):
        await make_tax(tenant, "vat", "20", default=True)
        await make_tax(tenant, "eco", "1.5", default=True)
        await make_tax(tenant, "unused", "7")

        applied = await tenant.taxes.resolve_taxes("cus_1", "plan_1", "chg_1")

        assert [t.code for t in applied] == ["vat", "eco"]
        assert total_tax_rate(applied) == Decimal("21.5")

    @pytest.mark.asyncio
    async def test_levels_never_merge(self, tenant):
        first = await make_tax(tenant, "a")
        second = await make_tax(tenant, "b")
        await tenant.taxes.assign_to_plan("plan_1", first.id)
        await tenant.taxes.assign_to_plan("plan_1", second.id)
        await tenant.taxes.assign_to_customer("cus_1", first.id)

        applied = await tenant.taxes.resolve_taxes("cus_1", "plan_1")
        assert [t.code for t in applied] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_empty(self, tenant):
        assert await tenant.taxes.resolve_taxes("cus_1") == []
