"""SQLAlchemy ORM models for the TBM allocation and ROI engine.

All tables use the `tbm_` prefix. Every table extends CompanyModel, which
supplies id (UUID), company_id, created_at and updated_at; period-scoped
tables extend CompanyPeriodModel, which adds period (first of the month).

Input tables:
  OperationalInputRecord   - Budget and headcount per department
  TowerWeightRecord        - Department spend share per resource tower
  BenefitWeightRecord      - Benefit model share per category
  BenefitAssumptionRecord  - Monetary inputs of the benefit model
  CostPoolSpendRecord      - Department spend into a cost pool
  CpToRtRuleRecord         - Cost pool -> resource tower allocation rule
  RtToSolutionRuleRecord   - Resource tower -> solution allocation rule
  SolutionRecord           - Solution with its owning department

Derived tables (regenerable from the inputs):
  TowerCostRecord, SolutionCostRecord, BusinessCostRecord, RoiSnapshotRecord

Bookkeeping:
  RecomputationRunRecord   - One row per orchestrator run
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from tbm_roi_engine.database import Base, CompanyModel, CompanyPeriodModel, JsonType

MONEY = Numeric(18, 2)
WEIGHT = Numeric(7, 4)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class OperationalInputRecord(CompanyPeriodModel, Base):
    """Budget and headcount of one department for one period.

    Table: tbm_operational_inputs
    """

    __tablename__ = "tbm_operational_inputs"
    __table_args__ = (
        UniqueConstraint("company_id", "period", "department", name="uq_tbm_operational_inputs_key"),
        CheckConstraint("employees >= 0", name="ck_tbm_operational_inputs_employees"),
        CheckConstraint("budget >= 0", name="ck_tbm_operational_inputs_budget"),
    )

    department: Mapped[str] = mapped_column(String(255), nullable=False)
    employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    budget: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    baseline_kpi: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 4),
        nullable=True,
        comment="Optional department KPI before the investment",
    )


class TowerWeightRecord(CompanyPeriodModel, Base):
    """Share of a department's spend that lands in a resource tower.

    Table: tbm_tower_weights
    """

    __tablename__ = "tbm_tower_weights"
    __table_args__ = (
        UniqueConstraint("company_id", "period", "department", "tower", name="uq_tbm_tower_weights_key"),
        CheckConstraint("weight_pct >= 0 AND weight_pct <= 1", name="ck_tbm_tower_weights_range"),
    )

    department: Mapped[str] = mapped_column(String(255), nullable=False)
    tower: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="APP_DEV | SERVICE_DESK | DATA_CENTER | NETWORK | END_USER | SECURITY | CLOUD | OTHER",
    )
    weight_pct: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False)


class BenefitWeightRecord(CompanyPeriodModel, Base):
    """Share of the benefit model attributed to one category.

    Table: tbm_benefit_weights
    """

    __tablename__ = "tbm_benefit_weights"
    __table_args__ = (
        UniqueConstraint("company_id", "period", "category", name="uq_tbm_benefit_weights_key"),
        CheckConstraint("weight_pct >= 0 AND weight_pct <= 1", name="ck_tbm_benefit_weights_range"),
    )

    category: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="PRODUCTIVITY | REVENUE_UPLIFT | RISK_AVOIDANCE | COST_AVOIDANCE | OTHER",
    )
    weight_pct: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False)


class BenefitAssumptionRecord(CompanyPeriodModel, Base):
    """Monetary inputs of the benefit model for one period.

    Table: tbm_benefit_assumptions
    """

    __tablename__ = "tbm_benefit_assumptions"
    __table_args__ = (
        UniqueConstraint("company_id", "period", name="uq_tbm_benefit_assumptions_key"),
        CheckConstraint(
            "revenue_uplift >= 0 AND productivity_gain_hours >= 0 AND avg_loaded_rate >= 0 "
            "AND risk_avoided_value >= 0 AND cost_avoided >= 0",
            name="ck_tbm_benefit_assumptions_non_negative",
        ),
    )

    revenue_uplift: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    productivity_gain_hours: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )
    avg_loaded_rate: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    risk_avoided_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    cost_avoided: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))


class CostPoolSpendRecord(CompanyPeriodModel, Base):
    """What a department spent into a named cost pool in a period.

    Table: tbm_cost_pool_spend
    """

    __tablename__ = "tbm_cost_pool_spend"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "period", "department_id", "cost_pool_id", name="uq_tbm_cost_pool_spend_key"
        ),
        CheckConstraint("amount >= 0", name="ck_tbm_cost_pool_spend_amount"),
    )

    department_id: Mapped[str] = mapped_column(String(255), nullable=False)
    cost_pool_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)


class CpToRtRuleRecord(CompanyPeriodModel, Base):
    """Fan-out of a (department, cost pool) spend into a resource tower.

    Table: tbm_alloc_rules_cp_rt
    """

    __tablename__ = "tbm_alloc_rules_cp_rt"
    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "period",
            "department_id",
            "cost_pool_id",
            "resource_tower_id",
            name="uq_tbm_alloc_rules_cp_rt_key",
        ),
        CheckConstraint("percent >= 0 AND percent <= 1", name="ck_tbm_alloc_rules_cp_rt_range"),
    )

    department_id: Mapped[str] = mapped_column(String(255), nullable=False)
    cost_pool_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_tower_id: Mapped[str] = mapped_column(String(255), nullable=False)
    percent: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False)


class RtToSolutionRuleRecord(CompanyPeriodModel, Base):
    """Fan-out of resource tower cost into a solution.

    Table: tbm_alloc_rules_rt_sol
    """

    __tablename__ = "tbm_alloc_rules_rt_sol"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "period", "resource_tower_id", "solution_id", name="uq_tbm_alloc_rules_rt_sol_key"
        ),
        CheckConstraint("percent >= 0 AND percent <= 1", name="ck_tbm_alloc_rules_rt_sol_range"),
    )

    resource_tower_id: Mapped[str] = mapped_column(String(255), nullable=False)
    solution_id: Mapped[str] = mapped_column(String(255), nullable=False)
    percent: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False)


class SolutionRecord(CompanyModel, Base):
    """An IT offering owned by a department. Not period-scoped.

    Table: tbm_solutions
    """

    __tablename__ = "tbm_solutions"
    __table_args__ = (UniqueConstraint("company_id", "solution_id", name="uq_tbm_solutions_key"),)

    solution_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    department_id: Mapped[str] = mapped_column(String(255), nullable=False)
    department_name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_tag: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Attribution bucket; falls back to department_name when null",
    )
    is_initiative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# ---------------------------------------------------------------------------
# Derived
# ---------------------------------------------------------------------------


class TowerCostRecord(CompanyPeriodModel, Base):
    """Cost landed in a resource tower from one department.

    Table: tbm_tower_costs
    """

    __tablename__ = "tbm_tower_costs"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "period", "resource_tower_id", "department_id", name="uq_tbm_tower_costs_key"
        ),
    )

    resource_tower_id: Mapped[str] = mapped_column(String(255), nullable=False)
    department_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)


class SolutionCostRecord(CompanyPeriodModel, Base):
    """Cost accumulated on a solution.

    Table: tbm_solution_costs
    """

    __tablename__ = "tbm_solution_costs"
    __table_args__ = (UniqueConstraint("company_id", "period", "solution_id", name="uq_tbm_solution_costs_key"),)

    solution_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)


class BusinessCostRecord(CompanyPeriodModel, Base):
    """Cost attributed to a business tag of a department.

    Table: tbm_business_costs
    """

    __tablename__ = "tbm_business_costs"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "period", "department_id", "business_tag", name="uq_tbm_business_costs_key"
        ),
    )

    department_id: Mapped[str] = mapped_column(String(255), nullable=False)
    business_tag: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)


class RoiSnapshotRecord(CompanyPeriodModel, Base):
    """Point-in-time ROI result for one (company, period).

    Table: tbm_roi_snapshots
    """

    __tablename__ = "tbm_roi_snapshots"
    __table_args__ = (UniqueConstraint("company_id", "period", name="uq_tbm_roi_snapshots_key"),)

    total_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_benefit: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    net: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    roi_pct: Mapped[Decimal] = mapped_column(
        Numeric(9, 4),
        nullable=False,
        comment="(total_benefit - total_cost) / total_cost * 100",
    )
    total_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_per_employee: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    benefit_per_employee: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    payback_months: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)
    assumptions: Mapped[dict[str, Any]] = mapped_column(
        JsonType,
        nullable=False,
        default=dict,
        comment="Benefit inputs plus _derived {net, roiPct, perCategory}",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="current",
        comment="current | stale",
    )


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


class RecomputationRunRecord(CompanyPeriodModel, Base):
    """Audit row of one recomputation run.

    Table: tbm_recomputation_runs
    """

    __tablename__ = "tbm_recomputation_runs"

    state: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="validating | propagating_cost | synthesizing_benefit | building_snapshot | done | failed",
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_detail: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
