"""
Taxes and hierarchical tax resolution.

Taxes can be attached to a customer, a plan or a single charge. Resolution
picks the most specific level that has any assignment and never merges
levels; with no assignment anywhere, the taxes applied by default are used.
"""

from __future__ import annotations

import math
from decimal import Decimal

import structlog

from meterly.core.errors import BadRequestError, ConflictError, NotFoundError
from meterly.core.models import (
    AppliedTax,
    PageMeta,
    Tax,
    TaxAssignment,
    TaxCreate,
    TaxLevel,
    TaxPage,
    TaxUpdate,
    new_id,
    utcnow,
)
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace

logger = structlog.get_logger()

# Spacing between assignment scores so insertion order survives clock ties
_ORDER_STEP = 1e-6


class TaxService:
    """Tax definitions, assignments and resolution for one tenant."""

    def __init__(self, storage: StorageBackend, namespace: TenantNamespace):
        self._storage = storage
        self._ns = namespace
        self._taxes_key = namespace.key("taxes")
        self._codes_key = namespace.key("taxes", "codes")

    def _assignments_key(self, level: TaxLevel, entity_id: str) -> str:
        return self._ns.key("taxes", "assigned", level.value, entity_id)

    def _backrefs_key(self, tax_id: str) -> str:
        return self._ns.key("taxes", "backrefs", tax_id)

    # ==================== CRUD ====================

    async def create(self, payload: TaxCreate) -> Tax:
        """
        Create a tax.

        Raises:
            ConflictError: code already in use
        """
        tax = Tax(id=new_id("tax"), **payload.model_dump())
        if not await self._storage.hsetnx_with_writes(
            self._codes_key,
            tax.code,
            tax.id,
            hset=[(self._taxes_key, tax.id, tax.model_dump_json())],
        ):
            raise ConflictError(f"Tax with code '{tax.code}' already exists")

        logger.info("Tax created", tax_id=tax.id, code=tax.code, rate=str(tax.rate))
        return tax

    async def get(self, tax_id: str) -> Tax:
        raw = await self._storage.hget(self._taxes_key, tax_id)
        if raw is None:
            raise NotFoundError("Tax not found")
        return Tax.model_validate_json(raw)

    async def _all(self) -> list[Tax]:
        data = await self._storage.hgetall(self._taxes_key)
        return [Tax.model_validate_json(raw) for raw in data.values()]

    async def list_taxes(
        self,
        applied_by_default: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> TaxPage:
        """Taxes newest first, optionally only those applied by default."""
        if page < 1 or limit < 1:
            raise BadRequestError("page and limit must be positive")

        taxes = await self._all()
        if applied_by_default is not None:
            taxes = [t for t in taxes if t.applied_by_default == applied_by_default]
        taxes.sort(key=lambda t: t.created_at, reverse=True)

        start = (page - 1) * limit
        return TaxPage(
            data=taxes[start:start + limit],
            meta=PageMeta(
                total=len(taxes),
                page=page,
                per_page=limit,
                total_pages=math.ceil(len(taxes) / limit),
            ),
        )

    async def update(self, tax_id: str, payload: TaxUpdate) -> Tax:
        tax = await self.get(tax_id)
        changes = {
            k: v
            for k, v in payload.model_dump(exclude_unset=True).items()
            if v is not None or k == "description"
        }
        updated = Tax.model_validate({**tax.model_dump(), **changes, "updated_at": utcnow()})
        await self._storage.hset(self._taxes_key, tax_id, updated.model_dump_json())
        return updated

    async def delete(self, tax_id: str) -> None:
        """Delete a tax and every assignment that references it."""
        tax = await self.get(tax_id)

        backrefs = await self._storage.hgetall(self._backrefs_key(tax_id))
        for ref in backrefs:
            level, entity_id = ref.split(":", 1)
            await self._storage.zrem(self._assignments_key(TaxLevel(level), entity_id), tax_id)

        await self._storage.delete(self._backrefs_key(tax_id))
        await self._storage.hdel(self._taxes_key, tax_id)
        await self._storage.hdel(self._codes_key, tax.code)
        logger.info("Tax deleted", tax_id=tax_id, assignments_removed=len(backrefs))

    # ==================== ASSIGNMENTS ====================

    async def assign(self, level: TaxLevel, entity_id: str, tax_id: str) -> TaxAssignment:
        """
        Attach a tax to a customer, plan or charge.

        Raises:
            NotFoundError: unknown tax
            ConflictError: tax already assigned to this entity
        """
        await self.get(tax_id)
        key = self._assignments_key(level, entity_id)

        score = utcnow().timestamp()
        last = await self._storage.zrange_by_score(key, reverse=True, count=1)
        if last:
            last_score = await self._storage.zscore(key, last[0])
            if last_score is not None:
                score = max(score, last_score + _ORDER_STEP)

        if not await self._storage.zadd(key, tax_id, score, nx=True):
            raise ConflictError(f"Tax already assigned to {level.value} '{entity_id}'")

        await self._storage.hset(self._backrefs_key(tax_id), f"{level.value}:{entity_id}", "1")
        logger.info("Tax assigned", level=level.value, entity_id=entity_id, tax_id=tax_id)
        return TaxAssignment(level=level, entity_id=entity_id, tax_id=tax_id)

    async def unassign(self, level: TaxLevel, entity_id: str, tax_id: str) -> None:
        """Detach a tax. Removing an absent assignment is a no-op."""
        await self._storage.zrem(self._assignments_key(level, entity_id), tax_id)
        await self._storage.hdel(self._backrefs_key(tax_id), f"{level.value}:{entity_id}")

    async def taxes_for(self, level: TaxLevel, entity_id: str) -> list[Tax]:
        """Taxes assigned to an entity, in assignment order."""
        tax_ids = await self._storage.zrange_by_score(self._assignments_key(level, entity_id))
        if not tax_ids:
            return []
        raws = await self._storage.hmget(self._taxes_key, tax_ids)
        return [Tax.model_validate_json(raw) for raw in raws if raw is not None]

    async def assign_to_customer(self, customer_id: str, tax_id: str) -> TaxAssignment:
        return await self.assign(TaxLevel.CUSTOMER, customer_id, tax_id)

    async def unassign_from_customer(self, customer_id: str, tax_id: str) -> None:
        await self.unassign(TaxLevel.CUSTOMER, customer_id, tax_id)

    async def taxes_for_customer(self, customer_id: str) -> list[Tax]:
        return await self.taxes_for(TaxLevel.CUSTOMER, customer_id)

    async def assign_to_plan(self, plan_id: str, tax_id: str) -> TaxAssignment:
        return await self.assign(TaxLevel.PLAN, plan_id, tax_id)

    async def unassign_from_plan(self, plan_id: str, tax_id: str) -> None:
        await self.unassign(TaxLevel.PLAN, plan_id, tax_id)

    async def taxes_for_plan(self, plan_id: str) -> list[Tax]:
        return await self.taxes_for(TaxLevel.PLAN, plan_id)

    async def assign_to_charge(self, charge_id: str, tax_id: str) -> TaxAssignment:
        return await self.assign(TaxLevel.CHARGE, charge_id, tax_id)

    async def unassign_from_charge(self, charge_id: str, tax_id: str) -> None:
        await self.unassign(TaxLevel.CHARGE, charge_id, tax_id)

    async def taxes_for_charge(self, charge_id: str) -> list[Tax]:
        return await self.taxes_for(TaxLevel.CHARGE, charge_id)

    # ==================== RESOLUTION ====================

    async def resolve_taxes(
        self,
        customer_id: str,
        plan_id: str | None = None,
        charge_id: str | None = None,
    ) -> list[AppliedTax]:
        """
        Taxes that apply to a charge billed to a customer.

        Priority: charge, then plan, then customer, then default taxes.
        The first level with any assignment wins outright.
        """
        levels: list[tuple[TaxLevel, str | None]] = [
            (TaxLevel.CHARGE, charge_id),
            (TaxLevel.PLAN, plan_id),
            (TaxLevel.CUSTOMER, customer_id),
        ]
        for level, entity_id in levels:
            if not entity_id:
                continue
            taxes = await self.taxes_for(level, entity_id)
            if taxes:
                return [AppliedTax.from_tax(t) for t in taxes]

        defaults = [t for t in await self._all() if t.applied_by_default]
        defaults.sort(key=lambda t: t.created_at)
        return [AppliedTax.from_tax(t) for t in defaults]


def total_tax_rate(taxes: list[AppliedTax]) -> Decimal:
    """Combined percentage of a resolved tax list."""
    return sum((t.rate for t in taxes), Decimal("0"))
