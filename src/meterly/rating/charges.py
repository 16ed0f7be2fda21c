"""
Charge models: turning aggregated units into an amount.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal
from typing import Any

from meterly.core.models import (
    ZERO,
    Charge,
    ChargeModel,
    ChargeOverride,
    GraduatedRange,
    to_decimal,
)


def _prop(properties: dict[str, Any], *names: str) -> Decimal:
    for name in names:
        if name in properties:
            return to_decimal(properties[name])
    return ZERO


def _graduated(units: Decimal, ranges: list[GraduatedRange]) -> Decimal:
    total = ZERO
    remaining = units
    for tier in ranges:
        if remaining <= 0:
            break
        # Bounds are inclusive, so a tier 0..100 holds 101 units
        size = tier.to_value - tier.from_value + 1 if tier.to_value is not None else remaining
        in_tier = min(remaining, size)
        total += in_tier * tier.per_unit_amount + tier.flat_amount
        remaining -= in_tier
    return total


def _volume(units: Decimal, ranges: list[GraduatedRange]) -> Decimal:
    for tier in ranges:
        if units >= tier.from_value and (tier.to_value is None or units <= tier.to_value):
            return units * tier.per_unit_amount + tier.flat_amount
    return ZERO


def _package(units: Decimal, properties: dict[str, Any]) -> Decimal:
    size = _prop(properties, "package_size", "packageSize")
    if size <= 0:
        size = Decimal("1")
    packages = (units / size).to_integral_value(rounding=ROUND_CEILING)
    return packages * _prop(properties, "amount")


def _percentage(units: Decimal, properties: dict[str, Any]) -> Decimal:
    rate = _prop(properties, "rate")
    fixed = _prop(properties, "fixed_amount", "fixedAmount")
    free = _prop(properties, "free_units_per_total_aggregation", "freeUnitsPerTotalAggregation")
    billable = max(ZERO, units - free)
    return billable * rate / 100 + (fixed if billable > 0 else ZERO)


def charge_cost(
    charge: Charge,
    units: Decimal,
    override: ChargeOverride | None = None,
) -> Decimal:
    """
    Price `units` of usage under a plan charge.

    Override properties and graduated ranges replace the charge's own when
    the override sets them. Unknown charge models cost nothing.
    """
    properties = charge.properties
    ranges = charge.graduated_ranges
    if override is not None:
        if override.properties is not None:
            properties = override.properties
        if override.graduated_ranges is not None:
            ranges = override.graduated_ranges

    if charge.charge_model is ChargeModel.STANDARD:
        return units * _prop(properties, "amount")
    if charge.charge_model is ChargeModel.GRADUATED:
        return _graduated(units, ranges)
    if charge.charge_model is ChargeModel.VOLUME:
        return _volume(units, ranges)
    if charge.charge_model is ChargeModel.PACKAGE:
        return _package(units, properties)
    if charge.charge_model is ChargeModel.PERCENTAGE:
        return _percentage(units, properties)
    return ZERO
