"""Shared test fixtures for tbm-roi-engine tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

import copy
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

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
    SnapshotStatus,
    Solution,
    SolutionCost,
    StageName,
    TowerCost,
    TowerWeight,
)
from tbm_roi_engine.core.errors import PersistenceError
from tbm_roi_engine.settings import Settings

COMPANY = "acme"
PERIOD = date(2025, 1, 1)


@dataclass
class _Tables:
    operational: dict[tuple, OperationalInput] = field(default_factory=dict)
    tower_weights: dict[tuple, TowerWeight] = field(default_factory=dict)
    benefit_weights: dict[tuple, BenefitWeight] = field(default_factory=dict)
    assumptions: dict[tuple, BenefitAssumptions] = field(default_factory=dict)
    spend: dict[tuple, CostPoolSpend] = field(default_factory=dict)
    cp_rules: dict[tuple, CpToRtRule] = field(default_factory=dict)
    rt_rules: dict[tuple, RtToSolutionRule] = field(default_factory=dict)
    solutions: dict[tuple, Solution] = field(default_factory=dict)
    tower_costs: dict[tuple, list[TowerCost]] = field(default_factory=dict)
    solution_costs: dict[tuple, list[SolutionCost]] = field(default_factory=dict)
    business_costs: dict[tuple, list[BusinessCost]] = field(default_factory=dict)
    snapshots: dict[tuple, RoiSnapshot] = field(default_factory=dict)
    runs: dict[str, RecomputationRun] = field(default_factory=dict)


class InMemoryInputStore:
    """IInputStore double with commit/rollback semantics.

    Writes land in a working copy that reads also see; commit() publishes the
    working copy and rollback() discards it. Methods named in ``fail_on``
    raise PersistenceError. Every derived write is recorded in
    ``derived_writes``.
    """

    def __init__(self) -> None:
        self.committed = _Tables()
        self._working = _Tables()
        self.fail_on: set[str] = set()
        self.derived_writes: list[str] = []
        self.commits = 0
        self.rollbacks = 0
        self._clock = datetime(2025, 2, 1, 9, 0, tzinfo=timezone.utc)

    # -- helpers ------------------------------------------------------------

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PersistenceError(operation, detail="injected failure")

    def seed(
        self,
        operational: Iterable[OperationalInput] = (),
        tower_weights: Iterable[TowerWeight] = (),
        benefit_weights: Iterable[BenefitWeight] = (),
        assumptions: dict[tuple[str, date], BenefitAssumptions] | None = None,
        spend: Iterable[CostPoolSpend] = (),
        cp_rules: Iterable[CpToRtRule] = (),
        rt_rules: Iterable[RtToSolutionRule] = (),
        solutions: Iterable[Solution] = (),
    ) -> None:
        """Write input rows straight into the committed state."""
        tables = self._working
        for row in operational:
            tables.operational[(row.company_id, row.period, row.department)] = row
        for row in tower_weights:
            tables.tower_weights[(row.company_id, row.period, row.department, row.tower)] = row
        for row in benefit_weights:
            tables.benefit_weights[(row.company_id, row.period, row.category)] = row
        for key, value in (assumptions or {}).items():
            tables.assumptions[key] = value
        for row in spend:
            tables.spend[(row.company_id, row.period, row.department_id, row.cost_pool_id)] = row
        for row in cp_rules:
            key = (row.company_id, row.period, row.department_id, row.cost_pool_id, row.resource_tower_id)
            tables.cp_rules[key] = row
        for row in rt_rules:
            tables.rt_rules[(row.company_id, row.period, row.resource_tower_id, row.solution_id)] = row
        for row in solutions:
            tables.solutions[(row.company_id, row.solution_id)] = row
        self.committed = copy.deepcopy(self._working)

    @staticmethod
    def _select(rows: dict[tuple, object], company_id: str, period: date) -> list:
        return [rows[key] for key in sorted(rows, key=str) if key[0] == company_id and key[1] == period]

    # -- raw inputs ---------------------------------------------------------

    async def load_operational_inputs(self, company_id: str, period: date) -> list[OperationalInput]:
        self._check("load_operational_inputs")
        return self._select(self._working.operational, company_id, period)

    async def load_tower_weights(self, company_id: str, period: date) -> list[TowerWeight]:
        return self._select(self._working.tower_weights, company_id, period)

    async def load_benefit_weights(self, company_id: str, period: date) -> list[BenefitWeight]:
        return self._select(self._working.benefit_weights, company_id, period)

    async def load_cost_pool_spend(self, company_id: str, period: date) -> list[CostPoolSpend]:
        return self._select(self._working.spend, company_id, period)

    async def load_allocation_rules_cp_to_rt(self, company_id: str, period: date) -> list[CpToRtRule]:
        return self._select(self._working.cp_rules, company_id, period)

    async def load_allocation_rules_rt_to_solution(
        self, company_id: str, period: date
    ) -> list[RtToSolutionRule]:
        return self._select(self._working.rt_rules, company_id, period)

    async def load_solutions(self, company_id: str) -> list[Solution]:
        rows = self._working.solutions
        return [rows[key] for key in sorted(rows) if key[0] == company_id]

    async def load_benefit_assumptions(self, company_id: str, period: date) -> BenefitAssumptions | None:
        return self._working.assumptions.get((company_id, period))

    async def list_company_ids(self, period: date) -> list[str]:
        tables = self._working
        keys: set[str] = set()
        for rows in (
            tables.operational,
            tables.spend,
            tables.tower_weights,
            tables.benefit_weights,
            tables.assumptions,
        ):
            keys.update(key[0] for key in rows if key[1] == period)
        return sorted(keys)

    async def upsert_operational_input(self, row: OperationalInput) -> None:
        self._check("upsert_operational_input")
        self._working.operational[(row.company_id, row.period, row.department)] = row

    async def upsert_tower_weights(self, rows: Sequence[TowerWeight]) -> None:
        self._check("upsert_tower_weights")
        for row in rows:
            self._working.tower_weights[(row.company_id, row.period, row.department, row.tower)] = row

    async def upsert_benefit_weights(self, rows: Sequence[BenefitWeight]) -> None:
        for row in rows:
            self._working.benefit_weights[(row.company_id, row.period, row.category)] = row

    async def upsert_benefit_assumptions(
        self, company_id: str, period: date, assumptions: BenefitAssumptions
    ) -> None:
        self._working.assumptions[(company_id, period)] = assumptions

    async def upsert_cost_pool_spend(self, rows: Sequence[CostPoolSpend]) -> None:
        for row in rows:
            self._working.spend[(row.company_id, row.period, row.department_id, row.cost_pool_id)] = row

    async def upsert_allocation_rules_cp_to_rt(self, rows: Sequence[CpToRtRule]) -> None:
        for row in rows:
            key = (row.company_id, row.period, row.department_id, row.cost_pool_id, row.resource_tower_id)
            self._working.cp_rules[key] = row

    async def upsert_allocation_rules_rt_to_solution(self, rows: Sequence[RtToSolutionRule]) -> None:
        for row in rows:
            self._working.rt_rules[(row.company_id, row.period, row.resource_tower_id, row.solution_id)] = row

    async def upsert_solution(self, row: Solution) -> None:
        self._working.solutions[(row.company_id, row.solution_id)] = row

    # -- derived rows -------------------------------------------------------

    async def upsert_tower_costs(self, company_id: str, period: date, rows: Sequence[TowerCost]) -> None:
        self._check("upsert_tower_costs")
        self.derived_writes.append("tower_costs")
        self._working.tower_costs[(company_id, period)] = list(rows)

    async def upsert_solution_costs(self, company_id: str, period: date, rows: Sequence[SolutionCost]) -> None:
        self._check("upsert_solution_costs")
        self.derived_writes.append("solution_costs")
        self._working.solution_costs[(company_id, period)] = list(rows)

    async def upsert_business_costs(self, company_id: str, period: date, rows: Sequence[BusinessCost]) -> None:
        self._check("upsert_business_costs")
        self.derived_writes.append("business_costs")
        self._working.business_costs[(company_id, period)] = list(rows)

    async def upsert_roi_snapshot(self, snapshot: RoiSnapshot) -> RoiSnapshot:
        self._check("upsert_roi_snapshot")
        self.derived_writes.append("roi_snapshot")
        key = (snapshot.company_id, snapshot.period)
        existing = self._working.snapshots.get(key)
        now = self._now()
        stored = replace(
            snapshot,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._working.snapshots[key] = stored
        return stored

    async def get_roi_snapshot(self, company_id: str, period: date) -> RoiSnapshot | None:
        return self._working.snapshots.get((company_id, period))

    async def list_roi_snapshots(self, company_id: str) -> list[RoiSnapshot]:
        rows = self._working.snapshots
        return [rows[key] for key in sorted(rows) if key[0] == company_id]

    async def mark_snapshot_stale(self, company_id: str, period: date) -> None:
        key = (company_id, period)
        existing = self._working.snapshots.get(key)
        if existing is not None:
            self._working.snapshots[key] = replace(existing, status=SnapshotStatus.STALE)

    # -- run bookkeeping ----------------------------------------------------

    async def start_run(self, company_id: str, period: date, started_at: datetime) -> RecomputationRun:
        run = RecomputationRun(
            run_id=str(uuid.uuid4()),
            company_id=company_id,
            period=period,
            state=StageName.VALIDATING,
            started_at=started_at,
        )
        self._working.runs[run.run_id] = run
        return run

    async def finish_run(self, run: RecomputationRun) -> None:
        if run.run_id not in self._working.runs:
            raise PersistenceError("finish_run", detail=f"no run record {run.run_id}")
        self._working.runs[run.run_id] = run

    async def get_run(self, run_id: str) -> RecomputationRun | None:
        return self._working.runs.get(run_id)

    # -- transaction control ------------------------------------------------

    async def commit(self) -> None:
        self.commits += 1
        self.committed = copy.deepcopy(self._working)

    async def rollback(self) -> None:
        self.rollbacks += 1
        self._working = copy.deepcopy(self.committed)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        log_json=False,
        weight_sum_tolerance=0.0001,
        weight_validation_mode="on_write",
        unmatched_spend_policy="warn",
        default_cost_pool_id="DEPARTMENT_IT_BUDGET",
        recomputation_timeout_seconds=5.0,
    )


@pytest.fixture
def company_id() -> str:
    """Provide a consistent test company ID."""
    return COMPANY


@pytest.fixture
def period() -> date:
    """Provide a consistent reporting month."""
    return PERIOD


@pytest.fixture
def store() -> InMemoryInputStore:
    return InMemoryInputStore()


@pytest.fixture
def engineering_budget() -> OperationalInput:
    """One department with a 200 000 budget."""
    return OperationalInput(
        company_id=COMPANY,
        period=PERIOD,
        department="Engineering",
        employees=40,
        budget=Decimal("200000"),
    )


@pytest.fixture
def engineering_tower_weights() -> list[TowerWeight]:
    """APP_DEV 0.7, CLOUD 0.3, END_USER 0."""
    return [
        TowerWeight(COMPANY, PERIOD, "Engineering", "APP_DEV", Decimal("0.7")),
        TowerWeight(COMPANY, PERIOD, "Engineering", "CLOUD", Decimal("0.3")),
        TowerWeight(COMPANY, PERIOD, "Engineering", "END_USER", Decimal("0")),
    ]


@pytest.fixture
def productivity_revenue_weights() -> list[BenefitWeight]:
    """PRODUCTIVITY 0.6, REVENUE_UPLIFT 0.4."""
    return [
        BenefitWeight(COMPANY, PERIOD, BenefitCategory.PRODUCTIVITY, Decimal("0.6")),
        BenefitWeight(COMPANY, PERIOD, BenefitCategory.REVENUE_UPLIFT, Decimal("0.4")),
    ]


@pytest.fixture
def assumptions() -> BenefitAssumptions:
    """Revenue uplift 100 000 and 400 hours at 50 per hour."""
    return BenefitAssumptions(
        revenue_uplift=Decimal("100000"),
        productivity_gain_hours=Decimal("400"),
        avg_loaded_rate=Decimal("50"),
    )


@pytest.fixture
def seeded_store(
    store: InMemoryInputStore,
    engineering_budget: OperationalInput,
    engineering_tower_weights: list[TowerWeight],
    productivity_revenue_weights: list[BenefitWeight],
    assumptions: BenefitAssumptions,
) -> InMemoryInputStore:
    """Store holding a complete, valid input set for (acme, 2025-01)."""
    store.seed(
        operational=[engineering_budget],
        tower_weights=engineering_tower_weights,
        benefit_weights=productivity_revenue_weights,
        assumptions={(COMPANY, PERIOD): assumptions},
    )
    return store
