"""Business logic services for the TBM allocation and ROI engine.

All services depend on the IInputStore interface (not a concrete store) and
receive dependencies via constructor injection. No framework code (FastAPI,
SQLAlchemy) belongs here.

Key invariants:
- RecomputationOrchestrator: Validates before writing, persists each cost stage
  before the next runs, and leaves the snapshot stale whenever a run stops
  after derived writes began.
- InputCollectorService: Rejects out-of-range values before any write and, in
  on_write mode, never commits a weight group that does not sum to 1.
- RecomputationGate: At most one recomputation per (company, period) at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal

from tbm_roi_engine.core.allocation import NodeKind
from tbm_roi_engine.core.benefit import synthesize
from tbm_roi_engine.core.domain import (
    ZERO,
    BenefitAssumptions,
    BenefitCategory,
    BenefitWeight,
    CostPoolSpend,
    CpToRtRule,
    OperationalInput,
    RecomputationRun,
    RoiSnapshot,
    RtToSolutionRule,
    Solution,
    StageName,
    TbmTower,
    TowerWeight,
    normalize_period,
    to_decimal,
)
from tbm_roi_engine.core.errors import EngineError, InvalidInputError, RecomputationTimeoutError, WeightSumError
from tbm_roi_engine.core.interfaces import IInputStore
from tbm_roi_engine.core.pipeline import (
    DerivedState,
    StageLedger,
    compute_derived,
    derived_rows,
    load_inputs,
    prepare_run,
)
from tbm_roi_engine.core.snapshot import build_snapshot, persist_snapshot
from tbm_roi_engine.core.weights import validate_benefit_weights, validate_group
from tbm_roi_engine.observability import get_logger
from tbm_roi_engine.settings import Settings

logger = get_logger(__name__)

ONE = Decimal("1")

PeriodLike = date | datetime | str


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecomputationResult:
    """Outcome of one recomputation run.

    Attributes:
        company_id: Company the run computed.
        period: Reporting month (day 1).
        state: DONE on success, FAILED otherwise.
        snapshot: Stored snapshot when the run succeeded.
        failed_stage: Stage that was active when the run failed.
        error: Engine error that stopped the run.
        transitions: Every state the run entered, in order.
        dropped_amount: Cost pool spend with no matching rule, missing from
            total cost.
        attribution_gaps: Per later stage, cost left unattributed for lack
            of a rule. It stays in total cost.
        run_id: Identifier of the persisted run record.
    """

    company_id: str
    period: date
    state: StageName
    snapshot: RoiSnapshot | None = None
    failed_stage: StageName | None = None
    error: EngineError | None = None
    transitions: tuple[StageName, ...] = ()
    dropped_amount: Decimal = ZERO
    attribution_gaps: dict[str, Decimal] = field(default_factory=dict)
    run_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is StageName.DONE


@dataclass
class _RunContext:
    company_id: str
    period: date
    stage: StageName = StageName.VALIDATING
    transitions: list[StageName] = field(default_factory=list)
    writes_started: bool = False
    ledger: StageLedger = field(default_factory=StageLedger)


class RecomputationOrchestrator:
    """Drive a (company, period) through validation, cost, benefit and snapshot.

    State machine:
        VALIDATING -> PROPAGATING_COST -> SYNTHESIZING_BENEFIT
            -> BUILDING_SNAPSHOT -> DONE
        any non-terminal state -> FAILED(stage, error)

    Engine errors and timeouts become a FAILED result; any other exception
    propagates to the caller.
    """

    def __init__(
        self,
        store: IInputStore,
        settings: Settings,
        gate: RecomputationGate | None = None,
    ) -> None:
        """Initialize RecomputationOrchestrator with required dependencies."""
        self._store = store
        self._settings = settings
        self._gate = gate

    async def run(self, company_id: str, period: PeriodLike) -> RecomputationResult:
        """Recompute every derived row and the snapshot of one company/period.

        When a gate is configured, the run waits for any other run of the
        same key to finish first.

        Args:
            company_id: Company to recompute.
            period: Any form accepted by normalize_period.

        Returns:
            RecomputationResult in state DONE or FAILED.
        """
        normalized = normalize_period(period)
        if self._gate is None:
            return await self._run(company_id, normalized)
        async with self._gate.hold(company_id, normalized):
            return await self._run(company_id, normalized)

    async def _run(self, company_id: str, period: date) -> RecomputationResult:
        ctx = _RunContext(company_id=company_id, period=period)
        run = await self._store.start_run(ctx.company_id, ctx.period, _now())
        await self._store.commit()

        try:
            snapshot = await asyncio.wait_for(
                self._execute(ctx),
                timeout=self._settings.recomputation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._fail(ctx, run, RecomputationTimeoutError(self._settings.recomputation_timeout_seconds))
        except EngineError as exc:
            return await self._fail(ctx, run, exc)

        self._enter(ctx, StageName.DONE)
        await self._store.finish_run(replace(run, state=StageName.DONE, finished_at=_now()))
        await self._store.commit()

        logger.info(
            "recomputation_completed",
            company_id=ctx.company_id,
            period=ctx.period.isoformat(),
            total_cost=str(snapshot.total_cost),
            total_benefit=str(snapshot.total_benefit),
            roi_pct=str(snapshot.roi_pct),
            dropped_amount=str(ctx.ledger.dropped_amount),
            attribution_gaps={name: str(amount) for name, amount in ctx.ledger.attribution_gaps.items()},
        )
        return RecomputationResult(
            company_id=ctx.company_id,
            period=ctx.period,
            state=StageName.DONE,
            snapshot=snapshot,
            transitions=tuple(ctx.transitions),
            dropped_amount=ctx.ledger.dropped_amount,
            attribution_gaps=ctx.ledger.attribution_gaps,
            run_id=run.run_id,
        )

    async def run_all(self, period: PeriodLike) -> dict[str, RecomputationResult]:
        """Recompute every company with inputs for the period, one at a time.

        A failed company never stops the others.
        """
        normalized = normalize_period(period)
        company_ids = await self._store.list_company_ids(normalized)
        results: dict[str, RecomputationResult] = {}
        for company_id in company_ids:
            results[company_id] = await self.run(company_id, normalized)

        logger.info(
            "recomputation_batch_completed",
            period=normalized.isoformat(),
            companies=len(results),
            failed=sum(1 for result in results.values() if not result.succeeded),
        )
        return results

    async def preview(self, company_id: str, period: PeriodLike) -> DerivedState:
        """Compute every derived row and the snapshot without writing anything.

        Raises:
            EngineError: Any validation, readiness or computation failure.
        """
        inputs = await load_inputs(self._store, company_id, normalize_period(period))
        return compute_derived(inputs, self._settings)

    # -- stages -------------------------------------------------------------

    def _enter(self, ctx: _RunContext, stage: StageName) -> None:
        ctx.stage = stage
        ctx.transitions.append(stage)
        logger.info(
            "recomputation_stage_entered",
            company_id=ctx.company_id,
            period=ctx.period.isoformat(),
            stage=stage.value,
        )

    async def _execute(self, ctx: _RunContext) -> RoiSnapshot:
        store = self._store
        settings = self._settings

        self._enter(ctx, StageName.VALIDATING)
        inputs = await load_inputs(store, ctx.company_id, ctx.period)
        prepared = prepare_run(inputs, settings)

        self._enter(ctx, StageName.PROPAGATING_COST)
        await store.mark_snapshot_stale(ctx.company_id, ctx.period)
        await store.commit()
        ctx.writes_started = True

        writers = {
            NodeKind.RESOURCE_TOWER: store.upsert_tower_costs,
            NodeKind.SOLUTION: store.upsert_solution_costs,
            NodeKind.BUSINESS_TAG: store.upsert_business_costs,
        }
        for stage, result in prepared.walk(settings):
            ctx.ledger.record(stage, result)
            rows = derived_rows(stage, result, ctx.company_id, ctx.period)
            await writers[stage.target_kind](ctx.company_id, ctx.period, rows)
            await store.commit()
            logger.info(
                "allocation_stage_persisted",
                company_id=ctx.company_id,
                period=ctx.period.isoformat(),
                stage=stage.name,
                rows=len(rows),
                total=str(result.total),
            )

        self._enter(ctx, StageName.SYNTHESIZING_BENEFIT)
        breakdown = synthesize(inputs.benefit_weights, prepared.assumptions, settings.weight_sum_tolerance)

        self._enter(ctx, StageName.BUILDING_SNAPSHOT)
        snapshot = build_snapshot(
            company_id=ctx.company_id,
            period=ctx.period,
            total_cost=ctx.ledger.total_cost,
            total_benefit=breakdown.total_benefit,
            assumptions=prepared.assumptions,
            operational_inputs=inputs.operational_inputs,
            breakdown=breakdown,
        )
        stored = await persist_snapshot(store, snapshot)
        await store.commit()
        return stored

    async def _fail(
        self,
        ctx: _RunContext,
        run: RecomputationRun,
        error: EngineError,
    ) -> RecomputationResult:
        failed_stage = ctx.stage
        ctx.transitions.append(StageName.FAILED)

        if ctx.writes_started:
            # Discard the open stage; committed stages stay behind a stale snapshot.
            await self._store.rollback()
            await self._store.mark_snapshot_stale(ctx.company_id, ctx.period)

        await self._store.finish_run(
            replace(
                run,
                state=StageName.FAILED,
                finished_at=_now(),
                failed_stage=failed_stage,
                error_code=error.error_code.value,
                error_detail=error.to_dict(),
            )
        )
        await self._store.commit()

        logger.warning(
            "recomputation_failed",
            company_id=ctx.company_id,
            period=ctx.period.isoformat(),
            failed_stage=failed_stage.value,
            error_code=error.error_code.value,
            error=str(error),
            writes_started=ctx.writes_started,
        )
        return RecomputationResult(
            company_id=ctx.company_id,
            period=ctx.period,
            state=StageName.FAILED,
            failed_stage=failed_stage,
            error=error,
            transitions=tuple(ctx.transitions),
            dropped_amount=ctx.ledger.dropped_amount,
            attribution_gaps=ctx.ledger.attribution_gaps,
            run_id=run.run_id,
        )


class RecomputationGate:
    """Single-flight gate: one recomputation per (company, period) at a time.

    Different keys never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, date], asyncio.Lock] = {}
        self._users: dict[tuple[str, date], int] = {}

    @property
    def keys(self) -> tuple[tuple[str, date], ...]:
        """Keys currently held or waited on."""
        return tuple(self._locks)

    def is_busy(self, company_id: str, period: date) -> bool:
        lock = self._locks.get((company_id, period))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, company_id: str, period: date) -> AsyncIterator[None]:
        """Wait for and hold the key's lock for the duration of the block.

        The key's lock is dropped once its last holder or waiter leaves.
        """
        key = (company_id, period)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def _require_non_negative(field_name: str, value: Decimal | float | int) -> Decimal:
    amount = to_decimal(value)
    if amount < ZERO:
        raise InvalidInputError(f"{field_name} must be >= 0, got {amount}")
    return amount


def _require_fraction(field_name: str, value: Decimal | float | int) -> Decimal:
    fraction = to_decimal(value)
    if fraction < ZERO or fraction > ONE:
        raise InvalidInputError(f"{field_name} must be between 0 and 1, got {fraction}")
    return fraction


class InputCollectorService:
    """Write-side gate for every input table.

    In "on_write" validation mode a weight write is staged, the whole group is
    reloaded and validated, and the write is rolled back if the group no
    longer sums to 1. In "on_compute" mode weight writes are committed as
    given and only the orchestrator validates.
    """

    def __init__(self, store: IInputStore, settings: Settings) -> None:
        """Initialize InputCollectorService with required dependencies."""
        self._store = store
        self._settings = settings

    @property
    def _validate_on_write(self) -> bool:
        return self._settings.weight_validation_mode == "on_write"

    async def save_operational_input(
        self,
        company_id: str,
        period: PeriodLike,
        department: str,
        employees: int,
        budget: Decimal | float,
        baseline_kpi: Decimal | float | None = None,
    ) -> OperationalInput:
        """Upsert one department's budget and headcount.

        Raises:
            InvalidInputError: If employees or budget is negative.
        """
        if employees < 0:
            raise InvalidInputError(f"employees must be >= 0, got {employees}")
        row = OperationalInput(
            company_id=company_id,
            period=normalize_period(period),
            department=department,
            employees=employees,
            budget=_require_non_negative("budget", budget),
            baseline_kpi=to_decimal(baseline_kpi) if baseline_kpi is not None else None,
        )
        await self._store.upsert_operational_input(row)
        await self._store.commit()
        logger.info(
            "operational_input_saved",
            company_id=company_id,
            period=row.period.isoformat(),
            department=department,
            budget=str(row.budget),
        )
        return row

    async def save_tower_weights(
        self,
        company_id: str,
        period: PeriodLike,
        department: str,
        weights: Mapping[str, Decimal | float],
    ) -> list[TowerWeight]:
        """Upsert one department's tower weights.

        Args:
            company_id: Owning company.
            period: Reporting month.
            department: Department whose weight group is written.
            weights: Weight per TbmTower value.

        Returns:
            The department's full weight group after the write.

        Raises:
            InvalidInputError: For an unknown tower or a weight outside [0, 1].
            WeightSumError: In on_write mode, if the group does not sum to 1.
        """
        normalized = normalize_period(period)
        towers = {tower.value for tower in TbmTower}
        rows = []
        for tower, weight in weights.items():
            if tower not in towers:
                raise InvalidInputError(f"Unknown tower '{tower}'")
            rows.append(
                TowerWeight(
                    company_id=company_id,
                    period=normalized,
                    department=department,
                    tower=tower,
                    weight_pct=_require_fraction(f"weight for {tower}", weight),
                )
            )

        await self._store.upsert_tower_weights(rows)
        group = [
            row
            for row in await self._store.load_tower_weights(company_id, normalized)
            if row.department == department
        ]
        if self._validate_on_write:
            try:
                validate_group(group, self._settings.weight_sum_tolerance, group=f"tower_weights:{department}")
            except WeightSumError as exc:
                await self._store.rollback()
                logger.warning("tower_weights_rejected", company_id=company_id, **exc.to_dict())
                raise
        await self._store.commit()
        logger.info(
            "tower_weights_saved",
            company_id=company_id,
            period=normalized.isoformat(),
            department=department,
            towers=len(group),
        )
        return group

    async def save_benefit_weights(
        self,
        company_id: str,
        period: PeriodLike,
        weights: Mapping[BenefitCategory | str, Decimal | float],
    ) -> list[BenefitWeight]:
        """Upsert the benefit category weights of a company/period.

        Raises:
            InvalidInputError: For an unknown category or a weight outside [0, 1].
            WeightSumError: In on_write mode, if the group does not sum to 1.
        """
        normalized = normalize_period(period)
        rows = []
        for category, weight in weights.items():
            try:
                parsed = BenefitCategory(category)
            except ValueError as exc:
                raise InvalidInputError(f"Unknown benefit category '{category}'") from exc
            rows.append(
                BenefitWeight(
                    company_id=company_id,
                    period=normalized,
                    category=parsed,
                    weight_pct=_require_fraction(f"weight for {parsed.value}", weight),
                )
            )

        await self._store.upsert_benefit_weights(rows)
        group = await self._store.load_benefit_weights(company_id, normalized)
        if self._validate_on_write:
            try:
                validate_benefit_weights(group, self._settings.weight_sum_tolerance)
            except WeightSumError as exc:
                await self._store.rollback()
                logger.warning("benefit_weights_rejected", company_id=company_id, **exc.to_dict())
                raise
        await self._store.commit()
        logger.info(
            "benefit_weights_saved",
            company_id=company_id,
            period=normalized.isoformat(),
            categories=len(group),
        )
        return group

    async def save_benefit_assumptions(
        self,
        company_id: str,
        period: PeriodLike,
        assumptions: BenefitAssumptions,
    ) -> BenefitAssumptions:
        """Upsert the benefit model inputs of a company/period.

        Raises:
            InvalidInputError: If any input is negative.
        """
        normalized = normalize_period(period)
        checked = BenefitAssumptions(
            revenue_uplift=_require_non_negative("revenue_uplift", assumptions.revenue_uplift),
            productivity_gain_hours=_require_non_negative(
                "productivity_gain_hours", assumptions.productivity_gain_hours
            ),
            avg_loaded_rate=_require_non_negative("avg_loaded_rate", assumptions.avg_loaded_rate),
            risk_avoided_value=_require_non_negative("risk_avoided_value", assumptions.risk_avoided_value),
            cost_avoided=_require_non_negative("cost_avoided", assumptions.cost_avoided),
        )
        await self._store.upsert_benefit_assumptions(company_id, normalized, checked)
        await self._store.commit()
        logger.info("benefit_assumptions_saved", company_id=company_id, period=normalized.isoformat())
        return checked

    async def save_cost_pool_spend(self, rows: Sequence[CostPoolSpend]) -> list[CostPoolSpend]:
        """Upsert cost pool ledger rows.

        Raises:
            InvalidInputError: If any amount is negative.
        """
        checked = [
            replace(
                row,
                period=normalize_period(row.period),
                amount=_require_non_negative("amount", row.amount),
            )
            for row in rows
        ]
        await self._store.upsert_cost_pool_spend(checked)
        await self._store.commit()
        logger.info("cost_pool_spend_saved", rows=len(checked))
        return checked

    async def save_cp_to_rt_rules(self, rows: Sequence[CpToRtRule]) -> list[CpToRtRule]:
        """Upsert cost pool -> resource tower rules.

        Raises:
            InvalidInputError: If any percent lies outside [0, 1].
        """
        checked = [
            replace(row, period=normalize_period(row.period), percent=_require_fraction("percent", row.percent))
            for row in rows
        ]
        await self._store.upsert_allocation_rules_cp_to_rt(checked)
        await self._store.commit()
        logger.info("cp_to_rt_rules_saved", rows=len(checked))
        return checked

    async def save_rt_to_solution_rules(self, rows: Sequence[RtToSolutionRule]) -> list[RtToSolutionRule]:
        """Upsert resource tower -> solution rules.

        Raises:
            InvalidInputError: If any percent lies outside [0, 1].
        """
        checked = [
            replace(row, period=normalize_period(row.period), percent=_require_fraction("percent", row.percent))
            for row in rows
        ]
        await self._store.upsert_allocation_rules_rt_to_solution(checked)
        await self._store.commit()
        logger.info("rt_to_solution_rules_saved", rows=len(checked))
        return checked

    async def save_solution(self, solution: Solution) -> Solution:
        """Upsert a solution and its owning department."""
        if not solution.department_name:
            raise InvalidInputError("department_name is required")
        await self._store.upsert_solution(solution)
        await self._store.commit()
        logger.info(
            "solution_saved",
            company_id=solution.company_id,
            solution_id=solution.solution_id,
            business_tag=solution.effective_business_tag,
        )
        return solution
