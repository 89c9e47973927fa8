"""End-to-end derivation of TBM costs, benefit and ROI from input rows.

Stages of the cost graph:

    1. (department, cost pool)  -> (tower, department)   OVERWRITE
    2. (tower, department)      -> (solution,)           ACCUMULATE, matched on tower
    3. (solution,)              -> (department, tag)     ACCUMULATE, 100% edge

Total cost is the sum of the stage 1 tower costs. Stages 2 and 3 re-attribute
that cost and never change it. Spend without a stage 1 rule is missing from
total cost (dropped_amount); cost a later stage cannot place is only left
unattributed (attribution_gaps).

Every stage output is rounded to cents before it feeds the next stage, so the
amounts a stage reads are exactly the amounts persisted for the stage before.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from functools import partial

from tbm_roi_engine.core.allocation import (
    AllocationGraph,
    AllocationStage,
    Edge,
    Flow,
    MergePolicy,
    NodeKey,
    NodeKind,
    PropagationResult,
)
from tbm_roi_engine.core.benefit import BenefitBreakdown, synthesize
from tbm_roi_engine.core.domain import (
    ZERO,
    BenefitAssumptions,
    BenefitWeight,
    BusinessCost,
    CostPoolSpend,
    CpToRtRule,
    OperationalInput,
    RoiSnapshot,
    RtToSolutionRule,
    Solution,
    SolutionCost,
    StageName,
    TowerCost,
    TowerWeight,
    to_decimal,
)
from tbm_roi_engine.core.errors import MissingDataError
from tbm_roi_engine.core.interfaces import IInputStore
from tbm_roi_engine.core.snapshot import build_snapshot, quantize_money
from tbm_roi_engine.core.weights import validate_benefit_weights, validate_tower_weights
from tbm_roi_engine.observability import get_logger
from tbm_roi_engine.settings import Settings

logger = get_logger(__name__)

COST_POOL_TO_TOWER = "cost_pool_to_tower"
TOWER_TO_SOLUTION = "tower_to_solution"
SOLUTION_TO_BUSINESS = "solution_to_business"

DerivedRow = TowerCost | SolutionCost | BusinessCost


@dataclass(frozen=True)
class EngineInputs:
    """Every input row of one (company, period), as loaded from the store."""

    company_id: str
    period: date
    operational_inputs: tuple[OperationalInput, ...] = ()
    tower_weights: tuple[TowerWeight, ...] = ()
    benefit_weights: tuple[BenefitWeight, ...] = ()
    cost_pool_spend: tuple[CostPoolSpend, ...] = ()
    cp_to_rt_rules: tuple[CpToRtRule, ...] = ()
    rt_to_solution_rules: tuple[RtToSolutionRule, ...] = ()
    solutions: tuple[Solution, ...] = ()
    assumptions: BenefitAssumptions | None = None


@dataclass(frozen=True)
class PreparedRun:
    """Inputs that passed validation, with the default ledger filled in."""

    inputs: EngineInputs
    cost_pool_spend: tuple[CostPoolSpend, ...]
    cp_to_rt_rules: tuple[CpToRtRule, ...]
    graph: AllocationGraph
    assumptions: BenefitAssumptions

    def seed(self) -> list[Flow]:
        """Spend rows as flows at their (department, cost pool) node."""
        return [
            Flow(key=(row.department_id, row.cost_pool_id), amount=to_decimal(row.amount))
            for row in self.cost_pool_spend
        ]

    def walk(self, settings: Settings) -> Iterator[tuple[AllocationStage, PropagationResult]]:
        """Evaluate the cost graph stage by stage, settled by settle_stage."""
        return self.graph.walk(
            self.seed(),
            partial(settle_stage, settings=settings, company_id=self.inputs.company_id),
        )


@dataclass
class StageLedger:
    """Stage results of one run, in stage order."""

    entries: list[tuple[AllocationStage, PropagationResult]] = field(default_factory=list)

    def record(self, stage: AllocationStage, result: PropagationResult) -> None:
        self.entries.append((stage, result))

    @property
    def results(self) -> tuple[PropagationResult, ...]:
        return tuple(result for _, result in self.entries)

    @property
    def total_cost(self) -> Decimal:
        """Sum of the cost pool stage output."""
        return sum(
            (result.total for stage, result in self.entries if stage.source_kind is NodeKind.COST_POOL),
            ZERO,
        )

    @property
    def dropped_amount(self) -> Decimal:
        """Cost pool spend that matched no rule and is missing from total cost."""
        return sum(
            (result.dropped_amount for stage, result in self.entries if stage.source_kind is NodeKind.COST_POOL),
            ZERO,
        )

    @property
    def attribution_gaps(self) -> dict[str, Decimal]:
        """Per later stage, cost already in total cost that was not attributed further."""
        return {
            stage.name: result.dropped_amount
            for stage, result in self.entries
            if stage.source_kind is not NodeKind.COST_POOL and result.dropped_amount != ZERO
        }


@dataclass(frozen=True)
class DerivedState:
    """Everything a recomputation derives for one (company, period)."""

    tower_costs: tuple[TowerCost, ...]
    solution_costs: tuple[SolutionCost, ...]
    business_costs: tuple[BusinessCost, ...]
    breakdown: BenefitBreakdown
    snapshot: RoiSnapshot
    stage_results: tuple[PropagationResult, ...] = field(default=())
    dropped_amount: Decimal = ZERO
    attribution_gaps: dict[str, Decimal] = field(default_factory=dict)


async def load_inputs(store: IInputStore, company_id: str, period: date) -> EngineInputs:
    """Read every input table for one (company, period)."""
    return EngineInputs(
        company_id=company_id,
        period=period,
        operational_inputs=tuple(await store.load_operational_inputs(company_id, period)),
        tower_weights=tuple(await store.load_tower_weights(company_id, period)),
        benefit_weights=tuple(await store.load_benefit_weights(company_id, period)),
        cost_pool_spend=tuple(await store.load_cost_pool_spend(company_id, period)),
        cp_to_rt_rules=tuple(await store.load_allocation_rules_cp_to_rt(company_id, period)),
        rt_to_solution_rules=tuple(
            await store.load_allocation_rules_rt_to_solution(company_id, period)
        ),
        solutions=tuple(await store.load_solutions(company_id)),
        assumptions=await store.load_benefit_assumptions(company_id, period),
    )


def derive_default_ledger(
    inputs: EngineInputs,
    default_cost_pool_id: str,
) -> tuple[tuple[CostPoolSpend, ...], tuple[CpToRtRule, ...]]:
    """Fill in spend and rules for departments that only entered a budget.

    A department with an operational input but no cost pool spend spends its
    budget into the default cost pool. A department spending into the default
    pool without an explicit rule for it is allocated by its tower weights.

    Returns:
        Tuple of (spend rows, cost pool -> tower rules) including explicit rows.
    """
    spend = list(inputs.cost_pool_spend)
    departments_with_spend = {row.department_id for row in spend}
    for row in sorted(inputs.operational_inputs, key=lambda item: item.department):
        if row.department in departments_with_spend:
            continue
        spend.append(
            CostPoolSpend(
                company_id=inputs.company_id,
                period=inputs.period,
                department_id=row.department,
                cost_pool_id=default_cost_pool_id,
                amount=to_decimal(row.budget),
            )
        )

    rules = list(inputs.cp_to_rt_rules)
    ruled_pairs = {(rule.department_id, rule.cost_pool_id) for rule in rules}
    default_pool_departments = sorted(
        {row.department_id for row in spend if row.cost_pool_id == default_cost_pool_id}
    )
    for department in default_pool_departments:
        if (department, default_cost_pool_id) in ruled_pairs:
            continue
        for weight in inputs.tower_weights:
            if weight.department != department:
                continue
            rules.append(
                CpToRtRule(
                    company_id=inputs.company_id,
                    period=inputs.period,
                    department_id=department,
                    cost_pool_id=default_cost_pool_id,
                    resource_tower_id=weight.tower,
                    percent=to_decimal(weight.weight_pct),
                )
            )
    return tuple(spend), tuple(rules)


def _project_tower(key: NodeKey) -> NodeKey:
    return (key[0],)


def build_allocation_graph(
    cp_to_rt_rules: Sequence[CpToRtRule],
    rt_to_solution_rules: Sequence[RtToSolutionRule],
    solutions: Sequence[Solution],
) -> AllocationGraph:
    """Build the three-stage TBM cost graph.

    Raises:
        InvalidAllocationRuleError: If any rule percent lies outside [0, 1].
    """
    return AllocationGraph(
        [
            AllocationStage(
                name=COST_POOL_TO_TOWER,
                source_kind=NodeKind.COST_POOL,
                target_kind=NodeKind.RESOURCE_TOWER,
                mode=MergePolicy.OVERWRITE,
                edges=tuple(
                    Edge(
                        source=(rule.department_id, rule.cost_pool_id),
                        target=(rule.resource_tower_id, rule.department_id),
                        percent=rule.percent,
                    )
                    for rule in cp_to_rt_rules
                ),
            ),
            AllocationStage(
                name=TOWER_TO_SOLUTION,
                source_kind=NodeKind.RESOURCE_TOWER,
                target_kind=NodeKind.SOLUTION,
                mode=MergePolicy.ACCUMULATE,
                edges=tuple(
                    Edge(
                        source=(rule.resource_tower_id,),
                        target=(rule.solution_id,),
                        percent=rule.percent,
                    )
                    for rule in rt_to_solution_rules
                ),
                match=_project_tower,
            ),
            AllocationStage(
                name=SOLUTION_TO_BUSINESS,
                source_kind=NodeKind.SOLUTION,
                target_kind=NodeKind.BUSINESS_TAG,
                mode=MergePolicy.ACCUMULATE,
                edges=tuple(
                    Edge(
                        source=(solution.solution_id,),
                        target=(solution.department_id, solution.effective_business_tag),
                        percent=Decimal("1"),
                    )
                    for solution in solutions
                ),
            ),
        ]
    )


def prepare_run(inputs: EngineInputs, settings: Settings) -> PreparedRun:
    """Validate every input group and check the key is ready to compute.

    Raises:
        WeightSumError: If any tower or benefit weight group is off.
        MissingDataError: If benefit weights, assumptions, spend or
            cost pool rules are absent, or a department spending into the
            default pool has neither a rule for it nor tower weights.
        InvalidAllocationRuleError: If any rule percent lies outside [0, 1].
    """
    stage = StageName.VALIDATING.value
    validate_tower_weights(inputs.tower_weights, settings.weight_sum_tolerance)
    if not inputs.benefit_weights:
        raise MissingDataError(stage=stage, key="benefit_weights")
    validate_benefit_weights(inputs.benefit_weights, settings.weight_sum_tolerance)
    if inputs.assumptions is None:
        raise MissingDataError(stage=stage, key="benefit_assumptions")

    default_pool = settings.default_cost_pool_id
    spend, cp_to_rt_rules = derive_default_ledger(inputs, default_pool)
    if not spend:
        raise MissingDataError(stage=stage, key="cost_pool_spend")
    allocated = {rule.department_id for rule in cp_to_rt_rules if rule.cost_pool_id == default_pool}
    for row in spend:
        if row.cost_pool_id == default_pool and row.department_id not in allocated:
            raise MissingDataError(stage=stage, key=f"tower_weights:{row.department_id}")
    if not cp_to_rt_rules:
        raise MissingDataError(stage=stage, key="allocation_rules_cp_to_rt")

    graph = build_allocation_graph(cp_to_rt_rules, inputs.rt_to_solution_rules, inputs.solutions)
    return PreparedRun(
        inputs=inputs,
        cost_pool_spend=spend,
        cp_to_rt_rules=cp_to_rt_rules,
        graph=graph,
        assumptions=inputs.assumptions,
    )


def settle(result: PropagationResult) -> PropagationResult:
    """Round every propagated amount to cents."""
    return PropagationResult(
        amounts={key: quantize_money(amount) for key, amount in result.amounts.items()},
        unmatched=result.unmatched,
        collisions=result.collisions,
    )


def settle_stage(
    stage: AllocationStage,
    result: PropagationResult,
    *,
    settings: Settings,
    company_id: str = "",
) -> PropagationResult:
    """Round a stage output to cents and enforce the unmatched-spend policy.

    The policy covers cost pool spend only, since that is the amount missing
    from total cost. A later stage that finds no rule for a flow leaves that
    cost unattributed; it is logged and reported, never fatal.

    Raises:
        MissingDataError: If non-zero spend has no rule and the policy is "fail".
    """
    result = settle(result)

    for key in result.collisions:
        logger.warning(
            "allocation_overwrite_collision",
            company_id=company_id,
            stage=stage.name,
            target="/".join(key),
        )

    for flow in result.unmatched:
        if flow.amount == ZERO:
            continue
        if stage.source_kind is not NodeKind.COST_POOL:
            logger.info(
                "allocation_attribution_gap",
                company_id=company_id,
                stage=stage.name,
                source="/".join(flow.key),
                amount=str(flow.amount),
            )
            continue
        if settings.unmatched_spend_policy == "fail":
            raise MissingDataError(
                stage=StageName.PROPAGATING_COST.value,
                key=f"{stage.name}:{'/'.join(flow.key)}",
            )
        logger.warning(
            "allocation_spend_unmatched",
            company_id=company_id,
            stage=stage.name,
            source="/".join(flow.key),
            dropped_amount=str(flow.amount),
        )
    return result


def derived_rows(
    stage: AllocationStage,
    result: PropagationResult,
    company_id: str,
    period: date,
) -> list[DerivedRow]:
    """Convert a stage output into derived table rows, sorted by key."""
    rows: list[DerivedRow] = []
    for key in sorted(result.amounts):
        amount = result.amounts[key]
        if stage.target_kind is NodeKind.RESOURCE_TOWER:
            rows.append(
                TowerCost(
                    company_id=company_id,
                    period=period,
                    resource_tower_id=key[0],
                    department_id=key[1],
                    amount=amount,
                )
            )
        elif stage.target_kind is NodeKind.SOLUTION:
            rows.append(SolutionCost(company_id=company_id, period=period, solution_id=key[0], amount=amount))
        else:
            rows.append(
                BusinessCost(
                    company_id=company_id,
                    period=period,
                    department_id=key[0],
                    business_tag=key[1],
                    amount=amount,
                )
            )
    return rows


def compute_derived(inputs: EngineInputs, settings: Settings) -> DerivedState:
    """Derive every output row for one (company, period) without I/O.

    Args:
        inputs: Every input row of the key.
        settings: Tolerance, unmatched-flow policy and default cost pool.

    Returns:
        DerivedState holding the derived rows, the benefit breakdown and
        the unsaved snapshot.

    Raises:
        EngineError: Any validation, readiness or computation failure.
    """
    prepared = prepare_run(inputs, settings)

    ledger = StageLedger()
    rows: dict[NodeKind, list[DerivedRow]] = {}
    for stage, result in prepared.walk(settings):
        ledger.record(stage, result)
        rows[stage.target_kind] = derived_rows(stage, result, inputs.company_id, inputs.period)

    breakdown = synthesize(inputs.benefit_weights, prepared.assumptions, settings.weight_sum_tolerance)
    snapshot = build_snapshot(
        company_id=inputs.company_id,
        period=inputs.period,
        total_cost=ledger.total_cost,
        total_benefit=breakdown.total_benefit,
        assumptions=prepared.assumptions,
        operational_inputs=inputs.operational_inputs,
        breakdown=breakdown,
    )
    return DerivedState(
        tower_costs=tuple(rows[NodeKind.RESOURCE_TOWER]),  # type: ignore[arg-type]
        solution_costs=tuple(rows[NodeKind.SOLUTION]),  # type: ignore[arg-type]
        business_costs=tuple(rows[NodeKind.BUSINESS_TAG]),  # type: ignore[arg-type]
        breakdown=breakdown,
        snapshot=snapshot,
        stage_results=ledger.results,
        dropped_amount=ledger.dropped_amount,
        attribution_gaps=ledger.attribution_gaps,
    )
