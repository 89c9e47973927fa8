"""Benefit synthesis: category weights applied to monetary bases.

Each benefit category has a base derived from the user's assumptions:

    REVENUE_UPLIFT = revenue_uplift
    PRODUCTIVITY   = productivity_gain_hours * avg_loaded_rate
    RISK_AVOIDANCE = risk_avoided_value
    COST_AVOIDANCE = cost_avoided
    OTHER          = 0

total_benefit = sum(base[category] * weight[category]) over the weight rows.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from tbm_roi_engine.core.domain import (
    ZERO,
    BenefitAssumptions,
    BenefitCategory,
    BenefitWeight,
    StageName,
    to_decimal,
)
from tbm_roi_engine.core.errors import MissingDataError
from tbm_roi_engine.core.weights import validate_benefit_weights


@dataclass(frozen=True)
class BenefitBreakdown:
    """Result of benefit synthesis.

    Attributes:
        total_benefit: Weighted sum across categories.
        per_category: Weighted contribution of each category with a weight row.
        base: Unweighted monetary base of every category.
    """

    total_benefit: Decimal
    per_category: dict[BenefitCategory, Decimal]
    base: dict[BenefitCategory, Decimal]


def category_bases(assumptions: BenefitAssumptions) -> dict[BenefitCategory, Decimal]:
    """Monetary base of every benefit category."""
    return {
        BenefitCategory.REVENUE_UPLIFT: to_decimal(assumptions.revenue_uplift),
        BenefitCategory.PRODUCTIVITY: to_decimal(assumptions.productivity_gain_hours)
        * to_decimal(assumptions.avg_loaded_rate),
        BenefitCategory.RISK_AVOIDANCE: to_decimal(assumptions.risk_avoided_value),
        BenefitCategory.COST_AVOIDANCE: to_decimal(assumptions.cost_avoided),
        BenefitCategory.OTHER: ZERO,
    }


def synthesize(
    weights: Sequence[BenefitWeight],
    assumptions: BenefitAssumptions,
    tolerance: Decimal | float,
) -> BenefitBreakdown:
    """Combine category weights and assumptions into a total benefit.

    Args:
        weights: Benefit weight rows of one company/period.
        assumptions: Benefit model inputs.
        tolerance: Allowed deviation of the weight sum from 1.

    Returns:
        BenefitBreakdown with the total and per-category contributions.

    Raises:
        MissingDataError: If there are no benefit weight rows.
        WeightSumError: If the weights do not sum to 1 within tolerance.
    """
    if not weights:
        raise MissingDataError(stage=StageName.SYNTHESIZING_BENEFIT.value, key="benefit_weights")
    validate_benefit_weights(weights, tolerance)

    base = category_bases(assumptions)
    per_category: dict[BenefitCategory, Decimal] = {}
    for weight in weights:
        category = BenefitCategory(weight.category)
        contribution = base[category] * to_decimal(weight.weight_pct)
        per_category[category] = per_category.get(category, ZERO) + contribution

    total_benefit = sum(per_category.values(), ZERO)
    return BenefitBreakdown(total_benefit=total_benefit, per_category=per_category, base=base)
