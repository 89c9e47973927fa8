"""Tests for ROI snapshot construction."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tbm_roi_engine.core.benefit import synthesize
from tbm_roi_engine.core.domain import (
    BenefitAssumptions,
    BenefitCategory,
    BenefitWeight,
    OperationalInput,
    RoiSnapshot,
    SnapshotStatus,
)
from tbm_roi_engine.core.errors import DivisionByZeroError
from tbm_roi_engine.core.interfaces import IInputStore
from tbm_roi_engine.core.snapshot import (
    build_snapshot,
    compute_payback_months,
    compute_roi_pct,
    persist_snapshot,
)

COMPANY = "acme"
PERIOD = date(2025, 1, 1)


class TestRoiPercent:
    def test_negative_roi_for_cost_above_benefit(self) -> None:
        assert compute_roi_pct(Decimal("200000"), Decimal("52000")) == Decimal("-74.0000")

    def test_roi_is_rounded_half_up_to_four_places(self) -> None:
        # (2 - 3) / 3 * 100 = -33.3333...
        assert compute_roi_pct(Decimal("3"), Decimal("2")) == Decimal("-33.3333")
        # 0.0000005 * 100 = 0.00005 rounds half up
        assert compute_roi_pct(Decimal("1"), Decimal("1.0000005")) == Decimal("0.0001")

    @pytest.mark.parametrize("cost", [Decimal("0"), Decimal("-10")])
    def test_non_positive_cost_raises(self, cost: Decimal) -> None:
        with pytest.raises(DivisionByZeroError) as exc_info:
            compute_roi_pct(cost, Decimal("100"))
        assert exc_info.value.total_cost == cost


class TestPayback:
    def test_payback_in_months(self) -> None:
        # 120 000 cost against 60 000 yearly benefit -> 24 months
        assert compute_payback_months(Decimal("120000"), Decimal("60000")) == Decimal("24.00")

    def test_no_payback_without_benefit(self) -> None:
        assert compute_payback_months(Decimal("100"), Decimal("0")) is None


class TestBuildSnapshot:
    def test_negative_net_when_cost_exceeds_benefit(self, assumptions: BenefitAssumptions) -> None:
        snapshot = build_snapshot(COMPANY, PERIOD, Decimal("200000"), Decimal("52000"), assumptions)

        assert snapshot.net == Decimal("-148000.00")
        assert snapshot.roi_pct == Decimal("-74.0000")
        assert snapshot.status is SnapshotStatus.CURRENT
        assert snapshot.payback_months == Decimal("46.15")

    def test_zero_cost_raises_instead_of_reporting_zero(self, assumptions: BenefitAssumptions) -> None:
        with pytest.raises(DivisionByZeroError):
            build_snapshot(COMPANY, PERIOD, Decimal("0"), Decimal("52000"), assumptions)

    def test_money_is_rounded_to_cents(self, assumptions: BenefitAssumptions) -> None:
        snapshot = build_snapshot(COMPANY, PERIOD, Decimal("100.005"), Decimal("10.004"), assumptions)

        assert snapshot.total_cost == Decimal("100.01")
        assert snapshot.total_benefit == Decimal("10.00")

    def test_per_employee_metrics_use_total_headcount(self, assumptions: BenefitAssumptions) -> None:
        operational = [
            OperationalInput(COMPANY, PERIOD, "Engineering", 30, Decimal("150000")),
            OperationalInput(COMPANY, PERIOD, "Sales", 10, Decimal("50000")),
        ]

        snapshot = build_snapshot(
            COMPANY, PERIOD, Decimal("200000"), Decimal("52000"), assumptions, operational_inputs=operational
        )

        assert snapshot.total_employees == 40
        assert snapshot.cost_per_employee == Decimal("5000.00")
        assert snapshot.benefit_per_employee == Decimal("1300.00")

    def test_per_employee_metrics_are_absent_without_headcount(self, assumptions: BenefitAssumptions) -> None:
        snapshot = build_snapshot(
            COMPANY,
            PERIOD,
            Decimal("100"),
            Decimal("50"),
            assumptions,
            operational_inputs=[OperationalInput(COMPANY, PERIOD, "Ops", 0, Decimal("100"))],
        )
        assert snapshot.cost_per_employee is None
        assert snapshot.benefit_per_employee is None

    def test_assumptions_keep_inputs_and_derived_values(self, assumptions: BenefitAssumptions) -> None:
        breakdown = synthesize(
            [
                BenefitWeight(COMPANY, PERIOD, BenefitCategory.PRODUCTIVITY, Decimal("0.6")),
                BenefitWeight(COMPANY, PERIOD, BenefitCategory.REVENUE_UPLIFT, Decimal("0.4")),
            ],
            assumptions,
            Decimal("0.0001"),
        )

        snapshot = build_snapshot(
            COMPANY, PERIOD, Decimal("200000"), breakdown.total_benefit, assumptions, breakdown=breakdown
        )

        assert snapshot.assumptions["revenueUplift"] == "100000"
        assert snapshot.assumptions["_derived"]["net"] == "-148000.00"
        assert snapshot.assumptions["_derived"]["roiPct"] == "-74.0000"
        assert snapshot.assumptions["_derived"]["perCategory"] == {
            "PRODUCTIVITY": "12000.00",
            "REVENUE_UPLIFT": "40000.00",
        }

    def test_identical_inputs_give_identical_snapshots(self, assumptions: BenefitAssumptions) -> None:
        first = build_snapshot(COMPANY, PERIOD, Decimal("1234.56"), Decimal("789.01"), assumptions)
        second = build_snapshot(COMPANY, PERIOD, Decimal("1234.56"), Decimal("789.01"), assumptions)
        assert first == second


@pytest.mark.asyncio
async def test_persist_snapshot_upserts_once_and_returns_stored_row(assumptions: BenefitAssumptions) -> None:
    snapshot = build_snapshot(COMPANY, PERIOD, Decimal("200000"), Decimal("52000"), assumptions)
    stored = RoiSnapshot(**{**snapshot.__dict__, "created_at": None})
    store = AsyncMock(spec=IInputStore)
    store.upsert_roi_snapshot.return_value = stored

    result = await persist_snapshot(store, snapshot)

    store.upsert_roi_snapshot.assert_awaited_once_with(snapshot)
    assert result is stored
