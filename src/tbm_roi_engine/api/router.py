"""FastAPI router for the TBM ROI API.

All routes are thin: they validate inputs, call services, and return
Pydantic response models. No business logic belongs here.

Endpoints:
  PUT    /tbm/companies/{company_id}/operational-inputs               Upsert a department budget
  PUT    /tbm/companies/{company_id}/tower-weights                    Upsert a department's tower weights
  PUT    /tbm/companies/{company_id}/benefit-weights                  Upsert benefit category weights
  PUT    /tbm/companies/{company_id}/benefit-assumptions              Upsert benefit model inputs
  PUT    /tbm/companies/{company_id}/cost-pool-spend                  Upsert cost pool ledger rows
  PUT    /tbm/companies/{company_id}/allocation-rules/cp-to-rt        Upsert cost pool -> tower rules
  PUT    /tbm/companies/{company_id}/allocation-rules/rt-to-solution  Upsert tower -> solution rules
  PUT    /tbm/companies/{company_id}/solutions                        Upsert a solution
  GET    /tbm/companies/{company_id}/operational-inputs/{period}      Read department budgets back
  GET    /tbm/companies/{company_id}/tower-weights/{period}           Read tower weight groups back
  GET    /tbm/companies/{company_id}/benefit-weights/{period}         Read the benefit weight group back
  GET    /tbm/companies/{company_id}/benefit-assumptions/{period}     Read benefit model inputs back
  GET    /tbm/companies/{company_id}/solutions                        List solutions
  POST   /tbm/companies/{company_id}/recompute                        Run the allocation and ROI pipeline
  POST   /tbm/recompute-all                                           Recompute every company for a period
  GET    /tbm/companies/{company_id}/snapshots                        List ROI snapshots
  GET    /tbm/companies/{company_id}/snapshots/{period}               Get one ROI snapshot
  GET    /tbm/companies/{company_id}/preview/{period}                 Compute without writing
  GET    /tbm/companies/{company_id}/runs/{run_id}                    Get one recomputation run record
"""

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tbm_roi_engine.adapters.repositories import SqlAlchemyInputStore
from tbm_roi_engine.api.schemas import (
    BenefitAssumptionsRequest,
    BenefitAssumptionsResponse,
    BenefitWeightsRequest,
    CostPoolSpendRequest,
    CpToRtRulesRequest,
    OperationalInputRequest,
    OperationalInputResponse,
    PreviewResponse,
    RecomputationResultResponse,
    RecomputationRunResponse,
    RecomputeAllResponse,
    RecomputeRequest,
    RoiSnapshotResponse,
    RtToSolutionRulesRequest,
    SavedRowsResponse,
    SolutionRequest,
    SolutionResponse,
    TowerWeightsRequest,
    WeightGroupResponse,
)
from tbm_roi_engine.core.domain import (
    BenefitAssumptions,
    BenefitWeight,
    CostPoolSpend,
    CpToRtRule,
    RtToSolutionRule,
    Solution,
    TowerWeight,
    normalize_period,
)
from tbm_roi_engine.core.errors import EngineError, ErrorCode
from tbm_roi_engine.core.interfaces import IInputStore
from tbm_roi_engine.core.services import (
    InputCollectorService,
    RecomputationGate,
    RecomputationOrchestrator,
)
from tbm_roi_engine.core.weights import group_tower_weights, weight_sum
from tbm_roi_engine.database import get_db_session
from tbm_roi_engine.observability import get_logger
from tbm_roi_engine.settings import Settings

logger = get_logger(__name__)

router = APIRouter(prefix="/tbm", tags=["tbm"])
settings = Settings()
gate = RecomputationGate()

ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.WEIGHT_SUM: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_INPUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_RULE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.DIVISION_BY_ZERO: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.MISSING_DATA: status.HTTP_409_CONFLICT,
    ErrorCode.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map an engine error to its HTTP status with a structured body."""
    status_code = ERROR_STATUS.get(exc.error_code, status.HTTP_400_BAD_REQUEST)
    logger.warning(
        "engine_error_response",
        path=request.url.path,
        status_code=status_code,
        error_code=exc.error_code.value,
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_settings() -> Settings:
    """Return the process-wide settings."""
    return settings


def get_input_store(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> IInputStore:
    """Build the SQLAlchemy input store for the request's session."""
    return SqlAlchemyInputStore(session)


def _get_collector(
    store: Annotated[IInputStore, Depends(get_input_store)],
    current: Annotated[Settings, Depends(get_settings)],
) -> InputCollectorService:
    """Build InputCollectorService with all required dependencies."""
    return InputCollectorService(store=store, settings=current)


def _get_orchestrator(
    store: Annotated[IInputStore, Depends(get_input_store)],
    current: Annotated[Settings, Depends(get_settings)],
) -> RecomputationOrchestrator:
    """Build RecomputationOrchestrator sharing the process-wide gate."""
    return RecomputationOrchestrator(store=store, settings=current, gate=gate)


def _parse_period(period: str) -> date:
    try:
        return normalize_period(period)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


def _tower_group(company_id: str, period: date, department: str, rows: list[TowerWeight]) -> WeightGroupResponse:
    return WeightGroupResponse(
        company_id=company_id,
        period=period,
        group=f"tower_weights:{department}",
        weights={row.tower: row.weight_pct for row in rows},
        total=weight_sum(rows),
    )


def _benefit_group(company_id: str, period: date, rows: list[BenefitWeight]) -> WeightGroupResponse:
    return WeightGroupResponse(
        company_id=company_id,
        period=period,
        group="benefit_weights",
        weights={row.category.value: row.weight_pct for row in rows},
        total=weight_sum(rows),
    )


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@router.put("/companies/{company_id}/operational-inputs", response_model=SavedRowsResponse)
async def put_operational_input(
    company_id: str,
    body: OperationalInputRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> SavedRowsResponse:
    """Upsert one department's budget and headcount."""
    await collector.save_operational_input(
        company_id=company_id,
        period=body.period,
        department=body.department,
        employees=body.employees,
        budget=body.budget,
        baseline_kpi=body.baseline_kpi,
    )
    return SavedRowsResponse(company_id=company_id, period=body.period, saved=1)


@router.put("/companies/{company_id}/tower-weights", response_model=WeightGroupResponse)
async def put_tower_weights(
    company_id: str,
    body: TowerWeightsRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> WeightGroupResponse:
    """Upsert a department's tower weights; the group must sum to 1."""
    group = await collector.save_tower_weights(
        company_id=company_id,
        period=body.period,
        department=body.department,
        weights={tower.value: weight for tower, weight in body.weights.items()},
    )
    return _tower_group(company_id, body.period, body.department, group)


@router.put("/companies/{company_id}/benefit-weights", response_model=WeightGroupResponse)
async def put_benefit_weights(
    company_id: str,
    body: BenefitWeightsRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> WeightGroupResponse:
    """Upsert the benefit category weights; the group must sum to 1."""
    group = await collector.save_benefit_weights(
        company_id=company_id,
        period=body.period,
        weights=dict(body.weights),
    )
    return _benefit_group(company_id, body.period, group)


@router.put("/companies/{company_id}/benefit-assumptions", response_model=SavedRowsResponse)
async def put_benefit_assumptions(
    company_id: str,
    body: BenefitAssumptionsRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> SavedRowsResponse:
    await collector.save_benefit_assumptions(
        company_id=company_id,
        period=body.period,
        assumptions=BenefitAssumptions(
            revenue_uplift=body.revenue_uplift,
            productivity_gain_hours=body.productivity_gain_hours,
            avg_loaded_rate=body.avg_loaded_rate,
            risk_avoided_value=body.risk_avoided_value,
            cost_avoided=body.cost_avoided,
        ),
    )
    return SavedRowsResponse(company_id=company_id, period=body.period, saved=1)


@router.put("/companies/{company_id}/cost-pool-spend", response_model=SavedRowsResponse)
async def put_cost_pool_spend(
    company_id: str,
    body: CostPoolSpendRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> SavedRowsResponse:
    rows = await collector.save_cost_pool_spend(
        [
            CostPoolSpend(
                company_id=company_id,
                period=body.period,
                department_id=entry.department_id,
                cost_pool_id=entry.cost_pool_id,
                amount=entry.amount,
            )
            for entry in body.entries
        ]
    )
    return SavedRowsResponse(company_id=company_id, period=body.period, saved=len(rows))


@router.put("/companies/{company_id}/allocation-rules/cp-to-rt", response_model=SavedRowsResponse)
async def put_cp_to_rt_rules(
    company_id: str,
    body: CpToRtRulesRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> SavedRowsResponse:
    rows = await collector.save_cp_to_rt_rules(
        [
            CpToRtRule(
                company_id=company_id,
                period=body.period,
                department_id=rule.department_id,
                cost_pool_id=rule.cost_pool_id,
                resource_tower_id=rule.resource_tower_id,
                percent=rule.percent,
            )
            for rule in body.rules
        ]
    )
    return SavedRowsResponse(company_id=company_id, period=body.period, saved=len(rows))


@router.put("/companies/{company_id}/allocation-rules/rt-to-solution", response_model=SavedRowsResponse)
async def put_rt_to_solution_rules(
    company_id: str,
    body: RtToSolutionRulesRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> SavedRowsResponse:
    rows = await collector.save_rt_to_solution_rules(
        [
            RtToSolutionRule(
                company_id=company_id,
                period=body.period,
                resource_tower_id=rule.resource_tower_id,
                solution_id=rule.solution_id,
                percent=rule.percent,
            )
            for rule in body.rules
        ]
    )
    return SavedRowsResponse(company_id=company_id, period=body.period, saved=len(rows))


@router.put("/companies/{company_id}/solutions", response_model=SavedRowsResponse)
async def put_solution(
    company_id: str,
    body: SolutionRequest,
    collector: Annotated[InputCollectorService, Depends(_get_collector)],
) -> SavedRowsResponse:
    await collector.save_solution(
        Solution(
            company_id=company_id,
            solution_id=body.solution_id,
            department_id=body.department_id,
            department_name=body.department_name,
            name=body.name,
            business_tag=body.business_tag,
            is_initiative=body.is_initiative,
        )
    )
    return SavedRowsResponse(company_id=company_id, saved=1)


@router.get("/companies/{company_id}/operational-inputs/{period}", response_model=list[OperationalInputResponse])
async def get_operational_inputs(
    company_id: str,
    period: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> list[OperationalInputResponse]:
    """List the department budgets entered for a period."""
    rows = await store.load_operational_inputs(company_id, _parse_period(period))
    return [OperationalInputResponse.model_validate(row) for row in rows]


@router.get("/companies/{company_id}/tower-weights/{period}", response_model=list[WeightGroupResponse])
async def get_tower_weights(
    company_id: str,
    period: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> list[WeightGroupResponse]:
    """List every department's tower weight group for a period."""
    normalized = _parse_period(period)
    rows = await store.load_tower_weights(company_id, normalized)
    return [
        _tower_group(company_id, normalized, department, group)
        for department, group in group_tower_weights(rows).items()
    ]


@router.get("/companies/{company_id}/benefit-weights/{period}", response_model=WeightGroupResponse)
async def get_benefit_weights(
    company_id: str,
    period: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> WeightGroupResponse:
    normalized = _parse_period(period)
    rows = await store.load_benefit_weights(company_id, normalized)
    if not rows:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Benefit weights not found")
    return _benefit_group(company_id, normalized, rows)


@router.get("/companies/{company_id}/benefit-assumptions/{period}", response_model=BenefitAssumptionsResponse)
async def get_benefit_assumptions(
    company_id: str,
    period: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> BenefitAssumptionsResponse:
    normalized = _parse_period(period)
    assumptions = await store.load_benefit_assumptions(company_id, normalized)
    if assumptions is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Benefit assumptions not found")
    return BenefitAssumptionsResponse(
        company_id=company_id,
        period=normalized,
        revenue_uplift=assumptions.revenue_uplift,
        productivity_gain_hours=assumptions.productivity_gain_hours,
        avg_loaded_rate=assumptions.avg_loaded_rate,
        risk_avoided_value=assumptions.risk_avoided_value,
        cost_avoided=assumptions.cost_avoided,
    )


@router.get("/companies/{company_id}/solutions", response_model=list[SolutionResponse])
async def list_solutions(
    company_id: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> list[SolutionResponse]:
    """List a company's solutions with their business tags."""
    solutions = await store.load_solutions(company_id)
    return [SolutionResponse.model_validate(solution) for solution in solutions]


# ---------------------------------------------------------------------------
# Recomputation
# ---------------------------------------------------------------------------


@router.post("/companies/{company_id}/recompute", response_model=RecomputationResultResponse)
async def recompute(
    company_id: str,
    body: RecomputeRequest,
    orchestrator: Annotated[RecomputationOrchestrator, Depends(_get_orchestrator)],
) -> RecomputationResultResponse | JSONResponse:
    """Run the allocation and ROI pipeline for one company/period.

    A failed run answers with the status of its error and the full result.
    """
    result = await orchestrator.run(company_id, body.period)
    response = RecomputationResultResponse.from_result(result)
    if result.error is not None:
        return JSONResponse(
            status_code=ERROR_STATUS.get(result.error.error_code, status.HTTP_400_BAD_REQUEST),
            content=response.model_dump(mode="json"),
        )
    return response


@router.post("/recompute-all", response_model=RecomputeAllResponse)
async def recompute_all(
    body: RecomputeRequest,
    orchestrator: Annotated[RecomputationOrchestrator, Depends(_get_orchestrator)],
) -> RecomputeAllResponse:
    """Recompute every company with inputs for the period."""
    results = await orchestrator.run_all(body.period)
    return RecomputeAllResponse(
        period=body.period,
        results={
            company_id: RecomputationResultResponse.from_result(result)
            for company_id, result in results.items()
        },
    )


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@router.get("/companies/{company_id}/snapshots", response_model=list[RoiSnapshotResponse])
async def list_snapshots(
    company_id: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> list[RoiSnapshotResponse]:
    """List a company's snapshots ordered by period."""
    snapshots = await store.list_roi_snapshots(company_id)
    return [RoiSnapshotResponse.model_validate(snapshot) for snapshot in snapshots]


@router.get("/companies/{company_id}/snapshots/{period}", response_model=RoiSnapshotResponse)
async def get_snapshot(
    company_id: str,
    period: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> RoiSnapshotResponse:
    snapshot = await store.get_roi_snapshot(company_id, _parse_period(period))
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Snapshot not found")
    return RoiSnapshotResponse.model_validate(snapshot)


@router.get("/companies/{company_id}/preview/{period}", response_model=PreviewResponse)
async def preview(
    company_id: str,
    period: str,
    orchestrator: Annotated[RecomputationOrchestrator, Depends(_get_orchestrator)],
) -> PreviewResponse:
    """Compute derived rows and the snapshot without writing them."""
    state = await orchestrator.preview(company_id, _parse_period(period))
    return PreviewResponse.from_state(state)


@router.get("/companies/{company_id}/runs/{run_id}", response_model=RecomputationRunResponse)
async def get_run(
    company_id: str,
    run_id: str,
    store: Annotated[IInputStore, Depends(get_input_store)],
) -> RecomputationRunResponse:
    run = await store.get_run(run_id)
    if run is None or run.company_id != company_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return RecomputationRunResponse.model_validate(run)
