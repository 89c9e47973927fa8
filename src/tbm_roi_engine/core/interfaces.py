"""Abstract interfaces (Protocol classes) for the TBM ROI engine.

The orchestrator and input collector depend on IInputStore, never on a
concrete implementation. This keeps the engine free of SQLAlchemy and lets
tests run against an in-memory double.
"""

from collections.abc import Sequence
from datetime import date, datetime
from typing import Protocol, runtime_checkable

from tbm_roi_engine.core.domain import (
    BenefitAssumptions,
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
    TowerCost,
    TowerWeight,
)


@runtime_checkable
class IInputStore(Protocol):
    """Read/write access to the raw input tables and the derived tables.

    Every method is scoped to a single company. Write methods stage changes;
    nothing is durable until commit() is awaited.
    """

    # -- raw inputs ---------------------------------------------------------

    async def load_operational_inputs(self, company_id: str, period: date) -> list[OperationalInput]:
        """Budget and headcount rows for every department in the period."""
        ...

    async def load_tower_weights(self, company_id: str, period: date) -> list[TowerWeight]:
        """Tower weight rows for every department in the period."""
        ...

    async def load_benefit_weights(self, company_id: str, period: date) -> list[BenefitWeight]:
        """Benefit category weight rows for the period."""
        ...

    async def load_cost_pool_spend(self, company_id: str, period: date) -> list[CostPoolSpend]:
        """Cost pool ledger entries for the period."""
        ...

    async def load_allocation_rules_cp_to_rt(self, company_id: str, period: date) -> list[CpToRtRule]:
        """Cost pool -> resource tower rules for the period."""
        ...

    async def load_allocation_rules_rt_to_solution(
        self, company_id: str, period: date
    ) -> list[RtToSolutionRule]:
        """Resource tower -> solution rules for the period."""
        ...

    async def load_solutions(self, company_id: str) -> list[Solution]:
        """Solutions of the company with their owning department."""
        ...

    async def load_benefit_assumptions(self, company_id: str, period: date) -> BenefitAssumptions | None:
        """Stored benefit model inputs, or None if never entered."""
        ...

    async def list_company_ids(self, period: date) -> list[str]:
        """Companies that have any input rows for the period."""
        ...

    async def upsert_operational_input(self, row: OperationalInput) -> None:
        ...

    async def upsert_tower_weights(self, rows: Sequence[TowerWeight]) -> None:
        ...

    async def upsert_benefit_weights(self, rows: Sequence[BenefitWeight]) -> None:
        ...

    async def upsert_benefit_assumptions(
        self, company_id: str, period: date, assumptions: BenefitAssumptions
    ) -> None:
        ...

    async def upsert_cost_pool_spend(self, rows: Sequence[CostPoolSpend]) -> None:
        ...

    async def upsert_allocation_rules_cp_to_rt(self, rows: Sequence[CpToRtRule]) -> None:
        ...

    async def upsert_allocation_rules_rt_to_solution(self, rows: Sequence[RtToSolutionRule]) -> None:
        ...

    async def upsert_solution(self, row: Solution) -> None:
        ...

    # -- derived rows -------------------------------------------------------

    async def upsert_tower_costs(self, company_id: str, period: date, rows: Sequence[TowerCost]) -> None:
        """Replace the (company, period) tower cost slice with rows."""
        ...

    async def upsert_solution_costs(
        self, company_id: str, period: date, rows: Sequence[SolutionCost]
    ) -> None:
        """Replace the (company, period) solution cost slice with rows."""
        ...

    async def upsert_business_costs(
        self, company_id: str, period: date, rows: Sequence[BusinessCost]
    ) -> None:
        """Replace the (company, period) business cost slice with rows."""
        ...

    async def upsert_roi_snapshot(self, snapshot: RoiSnapshot) -> RoiSnapshot:
        """Insert or update the single snapshot for (company, period).

        Returns the stored snapshot with created_at preserved across updates
        and updated_at refreshed.
        """
        ...

    async def get_roi_snapshot(self, company_id: str, period: date) -> RoiSnapshot | None:
        ...

    async def list_roi_snapshots(self, company_id: str) -> list[RoiSnapshot]:
        """All snapshots of a company ordered by period ascending."""
        ...

    async def mark_snapshot_stale(self, company_id: str, period: date) -> None:
        """Flag an existing snapshot as no longer matching the derived rows."""
        ...

    # -- run bookkeeping ----------------------------------------------------

    async def start_run(self, company_id: str, period: date, started_at: datetime) -> RecomputationRun:
        ...

    async def finish_run(self, run: RecomputationRun) -> None:
        """Record the run's terminal state. Fails if the run was never stored."""
        ...

    async def get_run(self, run_id: str) -> RecomputationRun | None:
        ...

    # -- transaction control ------------------------------------------------

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...
