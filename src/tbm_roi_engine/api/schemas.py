"""Pydantic request and response schemas for the TBM ROI API.

All API inputs and outputs are typed Pydantic models, never raw dicts.
Money, weights and percents travel as decimals.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from tbm_roi_engine.core.domain import BenefitCategory, SnapshotStatus, StageName, TbmTower, normalize_period
from tbm_roi_engine.core.pipeline import DerivedState
from tbm_roi_engine.core.services import RecomputationResult

Fraction = Annotated[Decimal, Field(ge=0, le=1)]
NonNegative = Annotated[Decimal, Field(ge=0)]


class PeriodRequest(BaseModel):
    """Base for requests scoped to a reporting month ('YYYY-MM' or a date)."""

    period: date

    @field_validator("period", mode="before")
    @classmethod
    def _normalize_period(cls, value: Any) -> date:
        if not isinstance(value, (str, date)):
            raise ValueError("period must be 'YYYY-MM', 'YYYY-MM-DD' or a date")
        return normalize_period(value)


# ---------------------------------------------------------------------------
# Input requests
# ---------------------------------------------------------------------------


class OperationalInputRequest(PeriodRequest):
    """Budget and headcount of one department."""

    department: str = Field(min_length=1, max_length=255)
    employees: int = Field(ge=0)
    budget: NonNegative
    baseline_kpi: Decimal | None = None


class TowerWeightsRequest(PeriodRequest):
    """Tower weight group of one department; must sum to 1."""

    department: str = Field(min_length=1, max_length=255)
    weights: dict[TbmTower, Fraction] = Field(min_length=1)


class BenefitWeightsRequest(PeriodRequest):
    """Benefit category weights of a company/period; must sum to 1."""

    weights: dict[BenefitCategory, Fraction] = Field(min_length=1)


class BenefitAssumptionsRequest(PeriodRequest):
    """Monetary inputs of the benefit model."""

    revenue_uplift: NonNegative = Decimal("0")
    productivity_gain_hours: NonNegative = Decimal("0")
    avg_loaded_rate: NonNegative = Decimal("0")
    risk_avoided_value: NonNegative = Decimal("0")
    cost_avoided: NonNegative = Decimal("0")


class CostPoolSpendEntry(BaseModel):
    department_id: str = Field(min_length=1, max_length=255)
    cost_pool_id: str = Field(min_length=1, max_length=255)
    amount: NonNegative


class CostPoolSpendRequest(PeriodRequest):
    entries: list[CostPoolSpendEntry] = Field(min_length=1)


class CpToRtRuleEntry(BaseModel):
    department_id: str = Field(min_length=1, max_length=255)
    cost_pool_id: str = Field(min_length=1, max_length=255)
    resource_tower_id: str = Field(min_length=1, max_length=255)
    percent: Fraction


class CpToRtRulesRequest(PeriodRequest):
    rules: list[CpToRtRuleEntry] = Field(min_length=1)


class RtToSolutionRuleEntry(BaseModel):
    resource_tower_id: str = Field(min_length=1, max_length=255)
    solution_id: str = Field(min_length=1, max_length=255)
    percent: Fraction


class RtToSolutionRulesRequest(PeriodRequest):
    rules: list[RtToSolutionRuleEntry] = Field(min_length=1)


class SolutionRequest(BaseModel):
    """A solution and the department that owns it."""

    solution_id: str = Field(min_length=1, max_length=255)
    department_id: str = Field(min_length=1, max_length=255)
    department_name: str = Field(min_length=1, max_length=255)
    name: str = ""
    business_tag: str | None = None
    is_initiative: bool = False


class RecomputeRequest(PeriodRequest):
    """Period to recompute."""


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class SavedRowsResponse(BaseModel):
    """Acknowledgement of an input write."""

    company_id: str
    period: date | None = None
    saved: int


class WeightGroupResponse(BaseModel):
    """A weight group as stored after the write."""

    company_id: str
    period: date
    group: str
    weights: dict[str, Decimal]
    total: Decimal


class OperationalInputResponse(BaseModel):
    department: str
    employees: int
    budget: Decimal
    baseline_kpi: Decimal | None = None

    model_config = {"from_attributes": True}


class BenefitAssumptionsResponse(BaseModel):
    company_id: str
    period: date
    revenue_uplift: Decimal
    productivity_gain_hours: Decimal
    avg_loaded_rate: Decimal
    risk_avoided_value: Decimal
    cost_avoided: Decimal


class SolutionResponse(BaseModel):
    """A stored solution with its resolved business tag."""

    solution_id: str
    department_id: str
    department_name: str
    name: str
    business_tag: str | None
    effective_business_tag: str
    is_initiative: bool

    model_config = {"from_attributes": True}


class RecomputationRunResponse(BaseModel):
    """Audit record of one recomputation run."""

    run_id: str
    company_id: str
    period: date
    state: StageName
    started_at: datetime
    finished_at: datetime | None = None
    failed_stage: StageName | None = None
    error_code: str | None = None
    error_detail: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


class RoiSnapshotResponse(BaseModel):
    """Response schema for a stored ROI snapshot."""

    company_id: str
    period: date
    total_cost: Decimal
    total_benefit: Decimal
    net: Decimal
    roi_pct: Decimal
    total_employees: int
    cost_per_employee: Decimal | None
    benefit_per_employee: Decimal | None
    payback_months: Decimal | None
    assumptions: dict[str, Any]
    status: SnapshotStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class RecomputationResultResponse(BaseModel):
    """Outcome of one recomputation run."""

    company_id: str
    period: date
    state: str
    succeeded: bool
    run_id: str | None
    transitions: list[str]
    failed_stage: str | None = None
    error: dict[str, Any] | None = None
    dropped_amount: Decimal
    attribution_gaps: dict[str, Decimal] = Field(default_factory=dict)
    snapshot: RoiSnapshotResponse | None = None

    @classmethod
    def from_result(cls, result: RecomputationResult) -> "RecomputationResultResponse":
        return cls(
            company_id=result.company_id,
            period=result.period,
            state=result.state.value,
            succeeded=result.succeeded,
            run_id=result.run_id,
            transitions=[stage.value for stage in result.transitions],
            failed_stage=result.failed_stage.value if result.failed_stage else None,
            error=result.error.to_dict() if result.error else None,
            dropped_amount=result.dropped_amount,
            attribution_gaps=result.attribution_gaps,
            snapshot=RoiSnapshotResponse.model_validate(result.snapshot) if result.snapshot else None,
        )


class RecomputeAllResponse(BaseModel):
    period: date
    results: dict[str, RecomputationResultResponse]


class TowerCostResponse(BaseModel):
    resource_tower_id: str
    department_id: str
    amount: Decimal

    model_config = {"from_attributes": True}


class SolutionCostResponse(BaseModel):
    solution_id: str
    amount: Decimal

    model_config = {"from_attributes": True}


class BusinessCostResponse(BaseModel):
    department_id: str
    business_tag: str
    amount: Decimal

    model_config = {"from_attributes": True}


class PreviewResponse(BaseModel):
    """Derived rows and snapshot computed without writing anything."""

    tower_costs: list[TowerCostResponse]
    solution_costs: list[SolutionCostResponse]
    business_costs: list[BusinessCostResponse]
    benefit_per_category: dict[str, Decimal]
    dropped_amount: Decimal
    attribution_gaps: dict[str, Decimal]
    snapshot: RoiSnapshotResponse

    @classmethod
    def from_state(cls, state: DerivedState) -> "PreviewResponse":
        return cls(
            tower_costs=[TowerCostResponse.model_validate(row) for row in state.tower_costs],
            solution_costs=[SolutionCostResponse.model_validate(row) for row in state.solution_costs],
            business_costs=[BusinessCostResponse.model_validate(row) for row in state.business_costs],
            benefit_per_category={
                category.value: amount for category, amount in state.breakdown.per_category.items()
            },
            dropped_amount=state.dropped_amount,
            attribution_gaps=state.attribution_gaps,
            snapshot=RoiSnapshotResponse.model_validate(state.snapshot),
        )
