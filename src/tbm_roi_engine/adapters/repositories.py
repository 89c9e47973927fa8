"""SQLAlchemy implementation of IInputStore.

Every query filters on company_id. Writes are flushed into the session's open
transaction; nothing is durable until commit() is awaited. Any SQLAlchemyError
rolls the session back and surfaces as PersistenceError.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, insert, select, union, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tbm_roi_engine.core.domain import (
    BenefitAssumptions,
    BenefitCategory,
    BenefitWeight,
    BusinessCost,
    CostPoolSpend,
    CpToRtRule,
    OperationalInput,
    RecomputationRun,
    RoiSnapshot,
    RtToSolutionRule,
    Solution,
    SolutionCost,
    SnapshotStatus,
    StageName,
    TowerCost,
    TowerWeight,
)
from tbm_roi_engine.core.errors import PersistenceError
from tbm_roi_engine.core.models import (
    BenefitAssumptionRecord,
    BenefitWeightRecord,
    BusinessCostRecord,
    CostPoolSpendRecord,
    CpToRtRuleRecord,
    OperationalInputRecord,
    RecomputationRunRecord,
    RoiSnapshotRecord,
    RtToSolutionRuleRecord,
    SolutionCostRecord,
    SolutionRecord,
    TowerCostRecord,
    TowerWeightRecord,
)
from tbm_roi_engine.database import utcnow
from tbm_roi_engine.observability import get_logger

logger = get_logger(__name__)

_SNAPSHOT_VALUE_COLUMNS = [
    "total_cost",
    "total_benefit",
    "net",
    "roi_pct",
    "total_employees",
    "cost_per_employee",
    "benefit_per_employee",
    "payback_months",
    "assumptions",
    "status",
    "updated_at",
]


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: ``INSERT ... ON CONFLICT DO UPDATE``.

    PostgreSQL and SQLite both support the clause; the insert construct comes
    from the dialect of the session's bind.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# -- record -> value object ---------------------------------------------------


def _to_operational_input(record: OperationalInputRecord) -> OperationalInput:
    return OperationalInput(
        company_id=record.company_id,
        period=record.period,
        department=record.department,
        employees=record.employees,
        budget=record.budget,
        baseline_kpi=record.baseline_kpi,
    )


def _to_snapshot(record: RoiSnapshotRecord) -> RoiSnapshot:
    return RoiSnapshot(
        company_id=record.company_id,
        period=record.period,
        total_cost=record.total_cost,
        total_benefit=record.total_benefit,
        net=record.net,
        roi_pct=record.roi_pct,
        assumptions=dict(record.assumptions or {}),
        total_employees=record.total_employees,
        cost_per_employee=record.cost_per_employee,
        benefit_per_employee=record.benefit_per_employee,
        payback_months=record.payback_months,
        status=SnapshotStatus(record.status),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_run(record: RecomputationRunRecord) -> RecomputationRun:
    return RecomputationRun(
        run_id=str(record.id),
        company_id=record.company_id,
        period=record.period,
        state=StageName(record.state),
        started_at=record.started_at,
        finished_at=record.finished_at,
        failed_stage=StageName(record.failed_stage) if record.failed_stage else None,
        error_code=record.error_code,
        error_detail=record.error_detail,
    )


class SqlAlchemyInputStore:
    """IInputStore over a single AsyncSession.

    One store instance serves one request or one batch; the session's
    transaction is controlled with commit() and rollback().
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        self._session = session

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("input_store_operation_failed", operation=operation, error=str(exc))
            raise PersistenceError(operation, detail=exc.__class__.__name__) from exc

    async def _scalars(self, operation: str, query: Any) -> list[Any]:
        async with self._guard(operation):
            result = await self._session.execute(query)
            return list(result.scalars().all())

    # -- raw inputs: reads --------------------------------------------------

    async def load_operational_inputs(self, company_id: str, period: date) -> list[OperationalInput]:
        """Budget and headcount rows ordered by department."""
        records = await self._scalars(
            "load_operational_inputs",
            select(OperationalInputRecord)
            .where(OperationalInputRecord.company_id == company_id, OperationalInputRecord.period == period)
            .order_by(OperationalInputRecord.department),
        )
        return [_to_operational_input(record) for record in records]

    async def load_tower_weights(self, company_id: str, period: date) -> list[TowerWeight]:
        records = await self._scalars(
            "load_tower_weights",
            select(TowerWeightRecord)
            .where(TowerWeightRecord.company_id == company_id, TowerWeightRecord.period == period)
            .order_by(TowerWeightRecord.department, TowerWeightRecord.tower),
        )
        return [
            TowerWeight(
                company_id=record.company_id,
                period=record.period,
                department=record.department,
                tower=record.tower,
                weight_pct=record.weight_pct,
            )
            for record in records
        ]

    async def load_benefit_weights(self, company_id: str, period: date) -> list[BenefitWeight]:
        records = await self._scalars(
            "load_benefit_weights",
            select(BenefitWeightRecord)
            .where(BenefitWeightRecord.company_id == company_id, BenefitWeightRecord.period == period)
            .order_by(BenefitWeightRecord.category),
        )
        return [
            BenefitWeight(
                company_id=record.company_id,
                period=record.period,
                category=BenefitCategory(record.category),
                weight_pct=record.weight_pct,
            )
            for record in records
        ]

    async def load_cost_pool_spend(self, company_id: str, period: date) -> list[CostPoolSpend]:
        records = await self._scalars(
            "load_cost_pool_spend",
            select(CostPoolSpendRecord)
            .where(CostPoolSpendRecord.company_id == company_id, CostPoolSpendRecord.period == period)
            .order_by(CostPoolSpendRecord.department_id, CostPoolSpendRecord.cost_pool_id),
        )
        return [
            CostPoolSpend(
                company_id=record.company_id,
                period=record.period,
                department_id=record.department_id,
                cost_pool_id=record.cost_pool_id,
                amount=record.amount,
            )
            for record in records
        ]

    async def load_allocation_rules_cp_to_rt(self, company_id: str, period: date) -> list[CpToRtRule]:
        """Rules ordered by (department, cost pool, tower).

        Stage 1 overwrites on collision, so this order decides which rule wins.
        """
        records = await self._scalars(
            "load_allocation_rules_cp_to_rt",
            select(CpToRtRuleRecord)
            .where(CpToRtRuleRecord.company_id == company_id, CpToRtRuleRecord.period == period)
            .order_by(
                CpToRtRuleRecord.department_id,
                CpToRtRuleRecord.cost_pool_id,
                CpToRtRuleRecord.resource_tower_id,
            ),
        )
        return [
            CpToRtRule(
                company_id=record.company_id,
                period=record.period,
                department_id=record.department_id,
                cost_pool_id=record.cost_pool_id,
                resource_tower_id=record.resource_tower_id,
                percent=record.percent,
            )
            for record in records
        ]

    async def load_allocation_rules_rt_to_solution(
        self, company_id: str, period: date
    ) -> list[RtToSolutionRule]:
        records = await self._scalars(
            "load_allocation_rules_rt_to_solution",
            select(RtToSolutionRuleRecord)
            .where(RtToSolutionRuleRecord.company_id == company_id, RtToSolutionRuleRecord.period == period)
            .order_by(RtToSolutionRuleRecord.resource_tower_id, RtToSolutionRuleRecord.solution_id),
        )
        return [
            RtToSolutionRule(
                company_id=record.company_id,
                period=record.period,
                resource_tower_id=record.resource_tower_id,
                solution_id=record.solution_id,
                percent=record.percent,
            )
            for record in records
        ]

    async def load_solutions(self, company_id: str) -> list[Solution]:
        records = await self._scalars(
            "load_solutions",
            select(SolutionRecord)
            .where(SolutionRecord.company_id == company_id)
            .order_by(SolutionRecord.solution_id),
        )
        return [
            Solution(
                company_id=record.company_id,
                solution_id=record.solution_id,
                department_id=record.department_id,
                department_name=record.department_name,
                name=record.name,
                business_tag=record.business_tag,
                is_initiative=record.is_initiative,
            )
            for record in records
        ]

    async def load_benefit_assumptions(self, company_id: str, period: date) -> BenefitAssumptions | None:
        records = await self._scalars(
            "load_benefit_assumptions",
            select(BenefitAssumptionRecord).where(
                BenefitAssumptionRecord.company_id == company_id,
                BenefitAssumptionRecord.period == period,
            ),
        )
        if not records:
            return None
        record = records[0]
        return BenefitAssumptions(
            revenue_uplift=record.revenue_uplift,
            productivity_gain_hours=record.productivity_gain_hours,
            avg_loaded_rate=record.avg_loaded_rate,
            risk_avoided_value=record.risk_avoided_value,
            cost_avoided=record.cost_avoided,
        )

    async def list_company_ids(self, period: date) -> list[str]:
        """Companies with operational inputs, spend, or weights in the period."""
        query = union(
            *(
                select(model.company_id).where(model.period == period)
                for model in (
                    OperationalInputRecord,
                    CostPoolSpendRecord,
                    TowerWeightRecord,
                    BenefitWeightRecord,
                    BenefitAssumptionRecord,
                )
            )
        )
        async with self._guard("list_company_ids"):
            result = await self._session.execute(query)
            return sorted(row[0] for row in result.all())

    # -- raw inputs: writes -------------------------------------------------

    async def upsert_operational_input(self, row: OperationalInput) -> None:
        async with self._guard("upsert_operational_input"):
            await _dialect_upsert(
                self._session,
                OperationalInputRecord,
                values={
                    "company_id": row.company_id,
                    "period": row.period,
                    "department": row.department,
                    "employees": row.employees,
                    "budget": row.budget,
                    "baseline_kpi": row.baseline_kpi,
                    "updated_at": utcnow(),
                },
                index_elements=["company_id", "period", "department"],
                update_columns=["employees", "budget", "baseline_kpi", "updated_at"],
            )
            await self._session.flush()

    async def upsert_tower_weights(self, rows: Sequence[TowerWeight]) -> None:
        async with self._guard("upsert_tower_weights"):
            for row in rows:
                await _dialect_upsert(
                    self._session,
                    TowerWeightRecord,
                    values={
                        "company_id": row.company_id,
                        "period": row.period,
                        "department": row.department,
                        "tower": row.tower,
                        "weight_pct": row.weight_pct,
                        "updated_at": utcnow(),
                    },
                    index_elements=["company_id", "period", "department", "tower"],
                    update_columns=["weight_pct", "updated_at"],
                )
            await self._session.flush()

    async def upsert_benefit_weights(self, rows: Sequence[BenefitWeight]) -> None:
        async with self._guard("upsert_benefit_weights"):
            for row in rows:
                await _dialect_upsert(
                    self._session,
                    BenefitWeightRecord,
                    values={
                        "company_id": row.company_id,
                        "period": row.period,
                        "category": BenefitCategory(row.category).value,
                        "weight_pct": row.weight_pct,
                        "updated_at": utcnow(),
                    },
                    index_elements=["company_id", "period", "category"],
                    update_columns=["weight_pct", "updated_at"],
                )
            await self._session.flush()

    async def upsert_benefit_assumptions(
        self, company_id: str, period: date, assumptions: BenefitAssumptions
    ) -> None:
        values = {
            "company_id": company_id,
            "period": period,
            "revenue_uplift": assumptions.revenue_uplift,
            "productivity_gain_hours": assumptions.productivity_gain_hours,
            "avg_loaded_rate": assumptions.avg_loaded_rate,
            "risk_avoided_value": assumptions.risk_avoided_value,
            "cost_avoided": assumptions.cost_avoided,
            "updated_at": utcnow(),
        }
        async with self._guard("upsert_benefit_assumptions"):
            await _dialect_upsert(
                self._session,
                BenefitAssumptionRecord,
                values=values,
                index_elements=["company_id", "period"],
                update_columns=[key for key in values if key not in ("company_id", "period")],
            )
            await self._session.flush()

    async def upsert_cost_pool_spend(self, rows: Sequence[CostPoolSpend]) -> None:
        async with self._guard("upsert_cost_pool_spend"):
            for row in rows:
                await _dialect_upsert(
                    self._session,
                    CostPoolSpendRecord,
                    values={
                        "company_id": row.company_id,
                        "period": row.period,
                        "department_id": row.department_id,
                        "cost_pool_id": row.cost_pool_id,
                        "amount": row.amount,
                        "updated_at": utcnow(),
                    },
                    index_elements=["company_id", "period", "department_id", "cost_pool_id"],
                    update_columns=["amount", "updated_at"],
                )
            await self._session.flush()

    async def upsert_allocation_rules_cp_to_rt(self, rows: Sequence[CpToRtRule]) -> None:
        async with self._guard("upsert_allocation_rules_cp_to_rt"):
            for row in rows:
                await _dialect_upsert(
                    self._session,
                    CpToRtRuleRecord,
                    values={
                        "company_id": row.company_id,
                        "period": row.period,
                        "department_id": row.department_id,
                        "cost_pool_id": row.cost_pool_id,
                        "resource_tower_id": row.resource_tower_id,
                        "percent": row.percent,
                        "updated_at": utcnow(),
                    },
                    index_elements=[
                        "company_id",
                        "period",
                        "department_id",
                        "cost_pool_id",
                        "resource_tower_id",
                    ],
                    update_columns=["percent", "updated_at"],
                )
            await self._session.flush()

    async def upsert_allocation_rules_rt_to_solution(self, rows: Sequence[RtToSolutionRule]) -> None:
        async with self._guard("upsert_allocation_rules_rt_to_solution"):
            for row in rows:
                await _dialect_upsert(
                    self._session,
                    RtToSolutionRuleRecord,
                    values={
                        "company_id": row.company_id,
                        "period": row.period,
                        "resource_tower_id": row.resource_tower_id,
                        "solution_id": row.solution_id,
                        "percent": row.percent,
                        "updated_at": utcnow(),
                    },
                    index_elements=["company_id", "period", "resource_tower_id", "solution_id"],
                    update_columns=["percent", "updated_at"],
                )
            await self._session.flush()

    async def upsert_solution(self, row: Solution) -> None:
        async with self._guard("upsert_solution"):
            await _dialect_upsert(
                self._session,
                SolutionRecord,
                values={
                    "company_id": row.company_id,
                    "solution_id": row.solution_id,
                    "name": row.name,
                    "department_id": row.department_id,
                    "department_name": row.department_name,
                    "business_tag": row.business_tag,
                    "is_initiative": row.is_initiative,
                    "updated_at": utcnow(),
                },
                index_elements=["company_id", "solution_id"],
                update_columns=[
                    "name",
                    "department_id",
                    "department_name",
                    "business_tag",
                    "is_initiative",
                    "updated_at",
                ],
            )
            await self._session.flush()

    # -- derived rows -------------------------------------------------------

    async def _replace_slice(
        self,
        operation: str,
        model: Any,
        company_id: str,
        period: date,
        values: list[dict[str, Any]],
    ) -> None:
        async with self._guard(operation):
            await self._session.execute(
                delete(model).where(model.company_id == company_id, model.period == period)
            )
            if values:
                await self._session.execute(insert(model), values)
            await self._session.flush()

    async def upsert_tower_costs(self, company_id: str, period: date, rows: Sequence[TowerCost]) -> None:
        await self._replace_slice(
            "upsert_tower_costs",
            TowerCostRecord,
            company_id,
            period,
            [
                {
                    "company_id": company_id,
                    "period": period,
                    "resource_tower_id": row.resource_tower_id,
                    "department_id": row.department_id,
                    "amount": row.amount,
                }
                for row in rows
            ],
        )

    async def upsert_solution_costs(
        self, company_id: str, period: date, rows: Sequence[SolutionCost]
    ) -> None:
        await self._replace_slice(
            "upsert_solution_costs",
            SolutionCostRecord,
            company_id,
            period,
            [
                {"company_id": company_id, "period": period, "solution_id": row.solution_id, "amount": row.amount}
                for row in rows
            ],
        )

    async def upsert_business_costs(
        self, company_id: str, period: date, rows: Sequence[BusinessCost]
    ) -> None:
        await self._replace_slice(
            "upsert_business_costs",
            BusinessCostRecord,
            company_id,
            period,
            [
                {
                    "company_id": company_id,
                    "period": period,
                    "department_id": row.department_id,
                    "business_tag": row.business_tag,
                    "amount": row.amount,
                }
                for row in rows
            ],
        )

    async def load_tower_costs(self, company_id: str, period: date) -> list[TowerCost]:
        records = await self._scalars(
            "load_tower_costs",
            select(TowerCostRecord)
            .where(TowerCostRecord.company_id == company_id, TowerCostRecord.period == period)
            .order_by(TowerCostRecord.resource_tower_id, TowerCostRecord.department_id),
        )
        return [
            TowerCost(
                company_id=record.company_id,
                period=record.period,
                resource_tower_id=record.resource_tower_id,
                department_id=record.department_id,
                amount=record.amount,
            )
            for record in records
        ]

    # -- snapshots ----------------------------------------------------------

    async def upsert_roi_snapshot(self, snapshot: RoiSnapshot) -> RoiSnapshot:
        """Insert or update the (company, period) snapshot; created_at is kept."""
        values = {
            "company_id": snapshot.company_id,
            "period": snapshot.period,
            "total_cost": snapshot.total_cost,
            "total_benefit": snapshot.total_benefit,
            "net": snapshot.net,
            "roi_pct": snapshot.roi_pct,
            "total_employees": snapshot.total_employees,
            "cost_per_employee": snapshot.cost_per_employee,
            "benefit_per_employee": snapshot.benefit_per_employee,
            "payback_months": snapshot.payback_months,
            "assumptions": snapshot.assumptions,
            "status": snapshot.status.value,
            "updated_at": utcnow(),
        }
        async with self._guard("upsert_roi_snapshot"):
            await _dialect_upsert(
                self._session,
                RoiSnapshotRecord,
                values=values,
                index_elements=["company_id", "period"],
                update_columns=_SNAPSHOT_VALUE_COLUMNS,
            )
            await self._session.flush()
            result = await self._session.execute(
                select(RoiSnapshotRecord)
                .where(
                    RoiSnapshotRecord.company_id == snapshot.company_id,
                    RoiSnapshotRecord.period == snapshot.period,
                )
                .execution_options(populate_existing=True)
            )
            return _to_snapshot(result.scalar_one())

    async def get_roi_snapshot(self, company_id: str, period: date) -> RoiSnapshot | None:
        records = await self._scalars(
            "get_roi_snapshot",
            select(RoiSnapshotRecord)
            .where(RoiSnapshotRecord.company_id == company_id, RoiSnapshotRecord.period == period)
            .execution_options(populate_existing=True),
        )
        return _to_snapshot(records[0]) if records else None

    async def list_roi_snapshots(self, company_id: str) -> list[RoiSnapshot]:
        records = await self._scalars(
            "list_roi_snapshots",
            select(RoiSnapshotRecord)
            .where(RoiSnapshotRecord.company_id == company_id)
            .order_by(RoiSnapshotRecord.period.asc())
            .execution_options(populate_existing=True),
        )
        return [_to_snapshot(record) for record in records]

    async def mark_snapshot_stale(self, company_id: str, period: date) -> None:
        async with self._guard("mark_snapshot_stale"):
            await self._session.execute(
                update(RoiSnapshotRecord)
                .where(RoiSnapshotRecord.company_id == company_id, RoiSnapshotRecord.period == period)
                .values(status=SnapshotStatus.STALE.value)
            )
            await self._session.flush()

    # -- run bookkeeping ----------------------------------------------------

    async def start_run(self, company_id: str, period: date, started_at: datetime) -> RecomputationRun:
        record = RecomputationRunRecord(
            company_id=company_id,
            period=period,
            state=StageName.VALIDATING.value,
            started_at=started_at,
        )
        async with self._guard("start_run"):
            self._session.add(record)
            await self._session.flush()
        return _to_run(record)

    async def finish_run(self, run: RecomputationRun) -> None:
        async with self._guard("finish_run"):
            result = await self._session.execute(
                update(RecomputationRunRecord)
                .where(
                    RecomputationRunRecord.id == uuid.UUID(run.run_id),
                    RecomputationRunRecord.company_id == run.company_id,
                )
                .values(
                    state=run.state.value,
                    finished_at=run.finished_at,
                    failed_stage=run.failed_stage.value if run.failed_stage else None,
                    error_code=run.error_code,
                    error_detail=run.error_detail,
                )
            )
            if result.rowcount == 0:
                raise PersistenceError("finish_run", detail=f"no run record {run.run_id}")
            await self._session.flush()

    async def get_run(self, run_id: str) -> RecomputationRun | None:
        try:
            key = uuid.UUID(run_id)
        except ValueError:
            return None
        async with self._guard("get_run"):
            record = await self._session.get(RecomputationRunRecord, key, populate_existing=True)
        return _to_run(record) if record is not None else None

    # -- transaction control ------------------------------------------------

    async def commit(self) -> None:
        async with self._guard("commit"):
            await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
