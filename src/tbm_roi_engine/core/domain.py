"""Value objects exchanged between the input store and the engine.

All monetary amounts, weights and percents are Decimal. Every row is scoped
by company_id and period (a date truncated to the first of the month).
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})(?:-(\d{2}))?$")

ZERO = Decimal("0")


class BenefitCategory(str, enum.Enum):
    """Closed set of benefit categories a benefit weight can target."""

    PRODUCTIVITY = "PRODUCTIVITY"
    REVENUE_UPLIFT = "REVENUE_UPLIFT"
    RISK_AVOIDANCE = "RISK_AVOIDANCE"
    COST_AVOIDANCE = "COST_AVOIDANCE"
    OTHER = "OTHER"


class TbmTower(str, enum.Enum):
    """Resource tower vocabulary accepted for tower weights."""

    APP_DEV = "APP_DEV"
    SERVICE_DESK = "SERVICE_DESK"
    DATA_CENTER = "DATA_CENTER"
    NETWORK = "NETWORK"
    END_USER = "END_USER"
    SECURITY = "SECURITY"
    CLOUD = "CLOUD"
    OTHER = "OTHER"


class StageName(str, enum.Enum):
    """States of a recomputation run."""

    VALIDATING = "validating"
    PROPAGATING_COST = "propagating_cost"
    SYNTHESIZING_BENEFIT = "synthesizing_benefit"
    BUILDING_SNAPSHOT = "building_snapshot"
    DONE = "done"
    FAILED = "failed"


class SnapshotStatus(str, enum.Enum):
    """Whether a stored snapshot reflects the derived rows beside it."""

    CURRENT = "current"
    STALE = "stale"


def normalize_period(value: date | datetime | str) -> date:
    """Truncate a period to the first day of its month.

    Accepts a date, a datetime, or a 'YYYY-MM' / 'YYYY-MM-DD' string.

    Raises:
        ValueError: If a string period is not in one of the accepted forms.
    """
    if isinstance(value, datetime):
        return date(value.year, value.month, 1)
    if isinstance(value, date):
        return value.replace(day=1)
    match = _PERIOD_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid period '{value}'; use 'YYYY-MM' or 'YYYY-MM-DD'")
    year, month = int(match.group(1)), int(match.group(2))
    return date(year, month, 1)


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Convert a number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


# ---------------------------------------------------------------------------
# Raw inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OperationalInput:
    """Budget and headcount of one department for one period."""

    company_id: str
    period: date
    department: str
    employees: int
    budget: Decimal
    baseline_kpi: Decimal | None = None


@dataclass(frozen=True)
class TowerWeight:
    """Share of a department's spend that lands in a resource tower."""

    company_id: str
    period: date
    department: str
    tower: str
    weight_pct: Decimal


@dataclass(frozen=True)
class BenefitWeight:
    """Share of the benefit model attributed to one category."""

    company_id: str
    period: date
    category: BenefitCategory
    weight_pct: Decimal


@dataclass(frozen=True)
class CostPoolSpend:
    """What a department spent into a named cost pool in a period."""

    company_id: str
    period: date
    department_id: str
    cost_pool_id: str
    amount: Decimal


@dataclass(frozen=True)
class CpToRtRule:
    """Fan-out of a (department, cost pool) spend into a resource tower."""

    company_id: str
    period: date
    department_id: str
    cost_pool_id: str
    resource_tower_id: str
    percent: Decimal


@dataclass(frozen=True)
class RtToSolutionRule:
    """Fan-out of resource tower cost into a solution."""

    company_id: str
    period: date
    resource_tower_id: str
    solution_id: str
    percent: Decimal


@dataclass(frozen=True)
class Solution:
    """An IT offering owned by a department.

    business_tag is the final attribution bucket; when unset it falls back to
    the owning department's name.
    """

    company_id: str
    solution_id: str
    department_id: str
    department_name: str
    name: str = ""
    business_tag: str | None = None
    is_initiative: bool = False

    @property
    def effective_business_tag(self) -> str:
        return self.business_tag or self.department_name


@dataclass(frozen=True)
class BenefitAssumptions:
    """User-supplied inputs of the benefit model."""

    revenue_uplift: Decimal = ZERO
    productivity_gain_hours: Decimal = ZERO
    avg_loaded_rate: Decimal = ZERO
    risk_avoided_value: Decimal = ZERO
    cost_avoided: Decimal = ZERO

    def as_dict(self) -> dict[str, str]:
        """Audit form keyed by the public field names."""
        return {
            "revenueUplift": str(self.revenue_uplift),
            "productivityGainHours": str(self.productivity_gain_hours),
            "avgLoadedRate": str(self.avg_loaded_rate),
            "riskAvoidedValue": str(self.risk_avoided_value),
            "costAvoided": str(self.cost_avoided),
        }


# ---------------------------------------------------------------------------
# Derived rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TowerCost:
    company_id: str
    period: date
    resource_tower_id: str
    department_id: str
    amount: Decimal


@dataclass(frozen=True)
class SolutionCost:
    company_id: str
    period: date
    solution_id: str
    amount: Decimal


@dataclass(frozen=True)
class BusinessCost:
    company_id: str
    period: date
    department_id: str
    business_tag: str
    amount: Decimal


@dataclass(frozen=True)
class RoiSnapshot:
    """Point-in-time financial result for one (company, period).

    A cache over the input tables: rerunning the pipeline on unchanged inputs
    produces an equal snapshot (timestamps aside).
    """

    company_id: str
    period: date
    total_cost: Decimal
    total_benefit: Decimal
    net: Decimal
    roi_pct: Decimal
    assumptions: dict[str, Any] = field(default_factory=dict)
    total_employees: int = 0
    cost_per_employee: Decimal | None = None
    benefit_per_employee: Decimal | None = None
    payback_months: Decimal | None = None
    status: SnapshotStatus = SnapshotStatus.CURRENT
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def values(self) -> tuple[Any, ...]:
        """Computed values only, excluding status and timestamps."""
        return (
            self.company_id,
            self.period,
            self.total_cost,
            self.total_benefit,
            self.net,
            self.roi_pct,
            self.assumptions,
            self.total_employees,
            self.cost_per_employee,
            self.benefit_per_employee,
            self.payback_months,
        )


@dataclass(frozen=True)
class RecomputationRun:
    """Audit record of one orchestrator run."""

    run_id: str
    company_id: str
    period: date
    state: StageName
    started_at: datetime
    finished_at: datetime | None = None
    failed_stage: StageName | None = None
    error_code: str | None = None
    error_detail: dict[str, Any] | None = None
