"""ROI snapshot construction.

ROI formula (strict, applied everywhere):
    net     = total_benefit - total_cost
    roi_pct = net / total_cost * 100

A non-positive total cost raises DivisionByZeroError; the engine never
reports 0% or infinity in its place.

Payback:
    payback_months = total_cost / (total_benefit / 12)
    (None when total_benefit <= 0)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from tbm_roi_engine.core.benefit import BenefitBreakdown
from tbm_roi_engine.core.domain import (
    ZERO,
    BenefitAssumptions,
    OperationalInput,
    RoiSnapshot,
    SnapshotStatus,
)
from tbm_roi_engine.core.errors import DivisionByZeroError
from tbm_roi_engine.core.interfaces import IInputStore
from tbm_roi_engine.observability import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")
ROI_QUANTUM = Decimal("0.0001")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = Decimal("12")


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents (half up)."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_roi_pct(total_cost: Decimal, total_benefit: Decimal) -> Decimal:
    """ROI as a percentage of total cost, rounded to 4 places.

    Raises:
        DivisionByZeroError: If total_cost <= 0.
    """
    if total_cost <= ZERO:
        raise DivisionByZeroError(total_cost)
    return ((total_benefit - total_cost) / total_cost * HUNDRED).quantize(
        ROI_QUANTUM, rounding=ROUND_HALF_UP
    )


def compute_payback_months(total_cost: Decimal, total_benefit: Decimal) -> Decimal | None:
    """Months of benefit needed to recover the cost, or None without benefit."""
    if total_benefit <= ZERO:
        return None
    monthly_benefit = total_benefit / MONTHS_PER_YEAR
    return (total_cost / monthly_benefit).quantize(CENT, rounding=ROUND_HALF_UP)


def _per_head(amount: Decimal, employees: int) -> Decimal | None:
    if employees <= 0:
        return None
    return quantize_money(amount / Decimal(employees))


def build_snapshot(
    company_id: str,
    period: date,
    total_cost: Decimal,
    total_benefit: Decimal,
    assumptions: BenefitAssumptions,
    operational_inputs: Sequence[OperationalInput] = (),
    breakdown: BenefitBreakdown | None = None,
) -> RoiSnapshot:
    """Combine propagated cost and synthesized benefit into a snapshot.

    Args:
        company_id: Owning company.
        period: Reporting month (day 1).
        total_cost: Total propagated cost.
        total_benefit: Total synthesized benefit.
        assumptions: Benefit model inputs, kept for audit.
        operational_inputs: Department rows used for per-employee metrics.
        breakdown: Optional benefit breakdown kept for audit.

    Returns:
        An unsaved RoiSnapshot with status CURRENT.

    Raises:
        DivisionByZeroError: If total_cost <= 0.
    """
    cost = quantize_money(total_cost)
    benefit = quantize_money(total_benefit)
    roi_pct = compute_roi_pct(cost, benefit)
    net = benefit - cost
    employees = sum(row.employees for row in operational_inputs)

    derived: dict[str, Any] = {"net": str(net), "roiPct": str(roi_pct)}
    if breakdown is not None:
        derived["perCategory"] = {
            category.value: str(quantize_money(amount))
            for category, amount in sorted(breakdown.per_category.items(), key=lambda item: item[0].value)
        }
    audit: dict[str, Any] = {**assumptions.as_dict(), "_derived": derived}

    return RoiSnapshot(
        company_id=company_id,
        period=period,
        total_cost=cost,
        total_benefit=benefit,
        net=net,
        roi_pct=roi_pct,
        assumptions=audit,
        total_employees=employees,
        cost_per_employee=_per_head(cost, employees),
        benefit_per_employee=_per_head(benefit, employees),
        payback_months=compute_payback_months(cost, benefit),
        status=SnapshotStatus.CURRENT,
    )


async def persist_snapshot(store: IInputStore, snapshot: RoiSnapshot) -> RoiSnapshot:
    """Upsert the snapshot for its (company, period) and return the stored row."""
    stored = await store.upsert_roi_snapshot(snapshot)
    logger.info(
        "roi_snapshot_upserted",
        company_id=snapshot.company_id,
        period=snapshot.period.isoformat(),
        total_cost=str(snapshot.total_cost),
        total_benefit=str(snapshot.total_benefit),
        roi_pct=str(snapshot.roi_pct),
    )
    return stored
