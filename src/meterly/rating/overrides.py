"""
Customer plan overrides.

A customer may have at most one override per plan, replacing the plan's
price in some currencies, its minimum commitment, or the configuration of
individual charges. The resolve_* helpers are what the billing computation
consults; they return None whenever nothing is overridden.
"""

from __future__ import annotations

import math
from decimal import Decimal

import structlog

from meterly.catalog.plans import PlanCatalog
from meterly.core.currencies import CurrencyTable, build_currency_table
from meterly.core.errors import BadRequestError, ConflictError, NotFoundError
from meterly.core.models import (
    ChargeOverride,
    OverriddenPrice,
    PageMeta,
    PlanOverride,
    PlanOverrideCreate,
    PlanOverridePage,
    PlanOverrideUpdate,
    new_id,
    utcnow,
)
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace

logger = structlog.get_logger()


class PlanOverrideService:
    """Override management and resolution for one tenant."""

    def __init__(
        self,
        storage: StorageBackend,
        namespace: TenantNamespace,
        currencies: CurrencyTable | None = None,
        plans: PlanCatalog | None = None,
    ):
        self._storage = storage
        self._currencies = currencies if currencies is not None else build_currency_table()
        self._plans = plans
        self._overrides_key = namespace.key("overrides")
        self._pairs_key = namespace.key("overrides", "pairs")

    @staticmethod
    def _pair(customer_id: str, plan_id: str) -> str:
        return f"{customer_id}:{plan_id}"

    def _normalise_prices(
        self, prices: list[OverriddenPrice] | None
    ) -> list[OverriddenPrice] | None:
        if prices is None:
            return None
        normalised = []
        for price in prices:
            info = self._currencies.get(price.currency)
            if info is None:
                raise BadRequestError(f"Unsupported currency '{price.currency}'")
            normalised.append(
                OverriddenPrice(currency=price.currency, amount=info.quantize(price.amount))
            )
        return normalised

    # ==================== CRUD ====================

    async def create(self, payload: PlanOverrideCreate) -> PlanOverride:
        """
        Create the override for a customer and plan.

        Raises:
            NotFoundError: plan does not exist
            BadRequestError: a price uses an unknown currency
            ConflictError: the pair already has an override
        """
        if self._plans is not None:
            await self._plans.get(payload.plan_id)

        prices = self._normalise_prices(payload.overridden_prices)
        override = PlanOverride(
            id=new_id("po"),
            **payload.model_dump(exclude={"overridden_prices"}),
            overridden_prices=prices,
        )

        pair = self._pair(override.customer_id, override.plan_id)
        if not await self._storage.hsetnx_with_writes(
            self._pairs_key,
            pair,
            override.id,
            hset=[(self._overrides_key, override.id, override.model_dump_json())],
        ):
            raise ConflictError("A plan override already exists for this customer and plan")

        logger.info(
            "Plan override created",
            override_id=override.id,
            customer_id=override.customer_id,
            plan_id=override.plan_id,
        )
        return override

    async def get(self, override_id: str) -> PlanOverride:
        raw = await self._storage.hget(self._overrides_key, override_id)
        if raw is None:
            raise NotFoundError("Plan override not found")
        return PlanOverride.model_validate_json(raw)

    async def list_overrides(
        self,
        customer_id: str | None = None,
        plan_id: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> PlanOverridePage:
        if page < 1 or limit < 1:
            raise BadRequestError("page and limit must be positive")

        data = await self._storage.hgetall(self._overrides_key)
        overrides = [PlanOverride.model_validate_json(raw) for raw in data.values()]
        if customer_id:
            overrides = [o for o in overrides if o.customer_id == customer_id]
        if plan_id:
            overrides = [o for o in overrides if o.plan_id == plan_id]
        overrides.sort(key=lambda o: o.created_at, reverse=True)

        start = (page - 1) * limit
        return PlanOverridePage(
            data=overrides[start:start + limit],
            meta=PageMeta(
                total=len(overrides),
                page=page,
                per_page=limit,
                total_pages=math.ceil(len(overrides) / limit),
            ),
        )

    async def update(self, override_id: str, payload: PlanOverrideUpdate) -> PlanOverride:
        """Apply the fields present in the payload; an explicit null clears a field."""
        override = await self.get(override_id)
        changes = payload.model_dump(exclude_unset=True)
        if "overridden_prices" in changes:
            prices = self._normalise_prices(payload.overridden_prices)
            changes["overridden_prices"] = (
                [p.model_dump() for p in prices] if prices is not None else None
            )

        updated = PlanOverride.model_validate(
            {**override.model_dump(), **changes, "updated_at": utcnow()}
        )
        await self._storage.hset(self._overrides_key, override_id, updated.model_dump_json())
        return updated

    async def delete(self, override_id: str) -> None:
        override = await self.get(override_id)
        await self._storage.hdel(self._overrides_key, override_id)
        await self._storage.hdel(
            self._pairs_key, self._pair(override.customer_id, override.plan_id)
        )
        logger.info("Plan override deleted", override_id=override_id)

    # ==================== RESOLUTION ====================

    async def find_by_customer_and_plan(
        self, customer_id: str, plan_id: str
    ) -> PlanOverride | None:
        override_id = await self._storage.hget(self._pairs_key, self._pair(customer_id, plan_id))
        if override_id is None:
            return None
        raw = await self._storage.hget(self._overrides_key, override_id)
        return PlanOverride.model_validate_json(raw) if raw is not None else None

    async def resolve_price(
        self, customer_id: str, plan_id: str, currency: str
    ) -> Decimal | None:
        """Overridden plan amount in `currency`, or None to use the catalog price."""
        override = await self.find_by_customer_and_plan(customer_id, plan_id)
        if override is None or not override.overridden_prices:
            return None
        currency = currency.upper()
        for price in override.overridden_prices:
            if price.currency == currency:
                return price.amount
        return None

    async def resolve_minimum_commitment(
        self, customer_id: str, plan_id: str
    ) -> Decimal | None:
        """Overridden minimum commitment; zero is a valid override."""
        override = await self.find_by_customer_and_plan(customer_id, plan_id)
        if override is None:
            return None
        return override.overridden_minimum_commitment

    async def resolve_charge_properties(
        self, customer_id: str, plan_id: str, charge_id: str
    ) -> ChargeOverride | None:
        override = await self.find_by_customer_and_plan(customer_id, plan_id)
        if override is None or not override.overridden_charges:
            return None
        for charge in override.overridden_charges:
            if charge.charge_id == charge_id:
                return ChargeOverride(
                    properties=charge.properties,
                    graduated_ranges=charge.graduated_ranges,
                )
        return None
