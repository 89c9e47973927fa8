"""Create initial tbm_ schema tables.

Revision ID: 001_tbm_initial
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001_tbm_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)
WEIGHT = sa.Numeric(7, 4)

_TABLES = [
    "tbm_operational_inputs",
    "tbm_tower_weights",
    "tbm_benefit_weights",
    "tbm_benefit_assumptions",
    "tbm_cost_pool_spend",
    "tbm_alloc_rules_cp_rt",
    "tbm_alloc_rules_rt_sol",
    "tbm_solutions",
    "tbm_tower_costs",
    "tbm_solution_costs",
    "tbm_business_costs",
    "tbm_roi_snapshots",
    "tbm_recomputation_runs",
]


def _company_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def _period_columns() -> list[sa.Column]:
    return [*_company_columns(), sa.Column("period", sa.Date, nullable=False)]


def upgrade() -> None:
    """Create all tbm_ tables."""

    # -- inputs --------------------------------------------------------------

    op.create_table(
        "tbm_operational_inputs",
        *_period_columns(),
        sa.Column("department", sa.String(255), nullable=False),
        sa.Column("employees", sa.Integer, nullable=False, server_default="0"),
        sa.Column("budget", MONEY, nullable=False, server_default="0"),
        sa.Column("baseline_kpi", sa.Numeric(18, 4), nullable=True),
        sa.UniqueConstraint("company_id", "period", "department", name="uq_tbm_operational_inputs_key"),
        sa.CheckConstraint("employees >= 0", name="ck_tbm_operational_inputs_employees"),
        sa.CheckConstraint("budget >= 0", name="ck_tbm_operational_inputs_budget"),
    )

    op.create_table(
        "tbm_tower_weights",
        *_period_columns(),
        sa.Column("department", sa.String(255), nullable=False),
        sa.Column("tower", sa.String(50), nullable=False),
        sa.Column("weight_pct", WEIGHT, nullable=False),
        sa.UniqueConstraint("company_id", "period", "department", "tower", name="uq_tbm_tower_weights_key"),
        sa.CheckConstraint("weight_pct >= 0 AND weight_pct <= 1", name="ck_tbm_tower_weights_range"),
    )

    op.create_table(
        "tbm_benefit_weights",
        *_period_columns(),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("weight_pct", WEIGHT, nullable=False),
        sa.UniqueConstraint("company_id", "period", "category", name="uq_tbm_benefit_weights_key"),
        sa.CheckConstraint("weight_pct >= 0 AND weight_pct <= 1", name="ck_tbm_benefit_weights_range"),
    )

    op.create_table(
        "tbm_benefit_assumptions",
        *_period_columns(),
        sa.Column("revenue_uplift", MONEY, nullable=False, server_default="0"),
        sa.Column("productivity_gain_hours", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("avg_loaded_rate", MONEY, nullable=False, server_default="0"),
        sa.Column("risk_avoided_value", MONEY, nullable=False, server_default="0"),
        sa.Column("cost_avoided", MONEY, nullable=False, server_default="0"),
        sa.UniqueConstraint("company_id", "period", name="uq_tbm_benefit_assumptions_key"),
        sa.CheckConstraint(
            "revenue_uplift >= 0 AND productivity_gain_hours >= 0 AND avg_loaded_rate >= 0 "
            "AND risk_avoided_value >= 0 AND cost_avoided >= 0",
            name="ck_tbm_benefit_assumptions_non_negative",
        ),
    )

    op.create_table(
        "tbm_cost_pool_spend",
        *_period_columns(),
        sa.Column("department_id", sa.String(255), nullable=False),
        sa.Column("cost_pool_id", sa.String(255), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.UniqueConstraint(
            "company_id", "period", "department_id", "cost_pool_id", name="uq_tbm_cost_pool_spend_key"
        ),
        sa.CheckConstraint("amount >= 0", name="ck_tbm_cost_pool_spend_amount"),
    )

    op.create_table(
        "tbm_alloc_rules_cp_rt",
        *_period_columns(),
        sa.Column("department_id", sa.String(255), nullable=False),
        sa.Column("cost_pool_id", sa.String(255), nullable=False),
        sa.Column("resource_tower_id", sa.String(255), nullable=False),
        sa.Column("percent", WEIGHT, nullable=False),
        sa.UniqueConstraint(
            "company_id",
            "period",
            "department_id",
            "cost_pool_id",
            "resource_tower_id",
            name="uq_tbm_alloc_rules_cp_rt_key",
        ),
        sa.CheckConstraint("percent >= 0 AND percent <= 1", name="ck_tbm_alloc_rules_cp_rt_range"),
    )

    op.create_table(
        "tbm_alloc_rules_rt_sol",
        *_period_columns(),
        sa.Column("resource_tower_id", sa.String(255), nullable=False),
        sa.Column("solution_id", sa.String(255), nullable=False),
        sa.Column("percent", WEIGHT, nullable=False),
        sa.UniqueConstraint(
            "company_id", "period", "resource_tower_id", "solution_id", name="uq_tbm_alloc_rules_rt_sol_key"
        ),
        sa.CheckConstraint("percent >= 0 AND percent <= 1", name="ck_tbm_alloc_rules_rt_sol_range"),
    )

    op.create_table(
        "tbm_solutions",
        *_company_columns(),
        sa.Column("solution_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("department_id", sa.String(255), nullable=False),
        sa.Column("department_name", sa.String(255), nullable=False),
        sa.Column("business_tag", sa.String(255), nullable=True),
        sa.Column("is_initiative", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("company_id", "solution_id", name="uq_tbm_solutions_key"),
    )

    # -- derived -------------------------------------------------------------

    op.create_table(
        "tbm_tower_costs",
        *_period_columns(),
        sa.Column("resource_tower_id", sa.String(255), nullable=False),
        sa.Column("department_id", sa.String(255), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.UniqueConstraint(
            "company_id", "period", "resource_tower_id", "department_id", name="uq_tbm_tower_costs_key"
        ),
    )

    op.create_table(
        "tbm_solution_costs",
        *_period_columns(),
        sa.Column("solution_id", sa.String(255), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.UniqueConstraint("company_id", "period", "solution_id", name="uq_tbm_solution_costs_key"),
    )

    op.create_table(
        "tbm_business_costs",
        *_period_columns(),
        sa.Column("department_id", sa.String(255), nullable=False),
        sa.Column("business_tag", sa.String(255), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.UniqueConstraint(
            "company_id", "period", "department_id", "business_tag", name="uq_tbm_business_costs_key"
        ),
    )

    op.create_table(
        "tbm_roi_snapshots",
        *_period_columns(),
        sa.Column("total_cost", MONEY, nullable=False),
        sa.Column("total_benefit", MONEY, nullable=False),
        sa.Column("net", MONEY, nullable=False),
        sa.Column("roi_pct", sa.Numeric(9, 4), nullable=False),
        sa.Column("total_employees", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost_per_employee", MONEY, nullable=True),
        sa.Column("benefit_per_employee", MONEY, nullable=True),
        sa.Column("payback_months", sa.Numeric(9, 2), nullable=True),
        sa.Column("assumptions", JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="current"),
        sa.UniqueConstraint("company_id", "period", name="uq_tbm_roi_snapshots_key"),
    )

    # -- bookkeeping ---------------------------------------------------------

    op.create_table(
        "tbm_recomputation_runs",
        *_period_columns(),
        sa.Column("state", sa.String(30), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_stage", sa.String(30), nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_detail", JSONB, nullable=True),
    )

    for table in _TABLES:
        op.create_index(f"ix_{table}_company_id", table, ["company_id"])
        if table != "tbm_solutions":
            op.create_index(f"ix_{table}_period", table, ["period"])


def downgrade() -> None:
    """Drop all tbm_ tables."""
    for table in reversed(_TABLES):
        op.drop_table(table)
