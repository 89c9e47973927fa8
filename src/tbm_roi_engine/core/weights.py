"""Weight group validation.

A weight group is the set of rows sharing a validation key: one department's
tower weights, or one company/period's benefit weights. A group is usable
only when its weights sum to 1 within tolerance. An empty group is "not
ready", which callers must keep distinct from "invalid".
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Sequence
from decimal import Decimal
from typing import Protocol

from tbm_roi_engine.core.domain import ZERO, BenefitWeight, TowerWeight, to_decimal
from tbm_roi_engine.core.errors import WeightSumError

ONE = Decimal("1")


class WeightRow(Protocol):
    weight_pct: Decimal


class GroupStatus(str, enum.Enum):
    """Outcome of validating a weight group that did not raise."""

    VALID = "valid"
    EMPTY = "empty"


def weight_sum(rows: Iterable[WeightRow]) -> Decimal:
    """Exact sum of weight_pct across rows."""
    return sum((to_decimal(row.weight_pct) for row in rows), ZERO)


def validate_group(
    rows: Sequence[WeightRow],
    tolerance: Decimal | float,
    group: str = "weights",
) -> GroupStatus:
    """Check that one weight group sums to 1 within tolerance.

    Args:
        rows: Weight rows already filtered to a single validation group.
        tolerance: Allowed absolute deviation of the sum from 1.
        group: Human-readable group key carried by the error.

    Returns:
        GroupStatus.EMPTY for a group with no rows, GroupStatus.VALID otherwise.

    Raises:
        WeightSumError: If |sum - 1| exceeds the tolerance.
    """
    if not rows:
        return GroupStatus.EMPTY
    tol = to_decimal(tolerance)
    total = weight_sum(rows)
    if abs(total - ONE) > tol:
        raise WeightSumError(group=group, actual_sum=total, tolerance=tol)
    return GroupStatus.VALID


def group_tower_weights(rows: Iterable[TowerWeight]) -> dict[str, list[TowerWeight]]:
    """Partition tower weights into per-department groups, sorted by department."""
    groups: dict[str, list[TowerWeight]] = {}
    for row in rows:
        groups.setdefault(row.department, []).append(row)
    return {department: groups[department] for department in sorted(groups)}


def validate_tower_weights(
    rows: Sequence[TowerWeight],
    tolerance: Decimal | float,
) -> dict[str, GroupStatus]:
    """Validate every department's tower weight group.

    Raises:
        WeightSumError: For the first department (alphabetically) whose group fails.
    """
    return {
        department: validate_group(group_rows, tolerance, group=f"tower_weights:{department}")
        for department, group_rows in group_tower_weights(rows).items()
    }


def validate_benefit_weights(
    rows: Sequence[BenefitWeight],
    tolerance: Decimal | float,
) -> GroupStatus:
    """Validate the single benefit weight group of a company/period."""
    return validate_group(rows, tolerance, group="benefit_weights")
