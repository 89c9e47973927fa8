"""Tests for weight group validation."""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings as hypothesis_settings
from hypothesis import strategies as st

from tbm_roi_engine.core.domain import BenefitCategory, BenefitWeight, TowerWeight
from tbm_roi_engine.core.errors import ErrorCode, WeightSumError
from tbm_roi_engine.core.weights import (
    GroupStatus,
    group_tower_weights,
    validate_benefit_weights,
    validate_group,
    validate_tower_weights,
    weight_sum,
)

COMPANY = "acme"
PERIOD = date(2025, 1, 1)

TOLERANCE = Decimal("0.0001")


def _tower(department: str, tower: str, weight: str) -> TowerWeight:
    return TowerWeight(COMPANY, PERIOD, department, tower, Decimal(weight))


class TestValidateGroup:
    def test_empty_group_is_not_ready_rather_than_invalid(self) -> None:
        assert validate_group([], TOLERANCE) is GroupStatus.EMPTY

    def test_group_summing_to_one_is_valid(self) -> None:
        rows = [_tower("Eng", "APP_DEV", "0.7"), _tower("Eng", "CLOUD", "0.3")]
        assert validate_group(rows, TOLERANCE) is GroupStatus.VALID

    def test_sum_within_tolerance_is_accepted(self) -> None:
        rows = [_tower("Eng", "APP_DEV", "0.33333"), _tower("Eng", "CLOUD", "0.66666")]
        assert validate_group(rows, TOLERANCE) is GroupStatus.VALID

    def test_sum_of_point_nine_raises_with_details(self) -> None:
        rows = [_tower("Eng", "APP_DEV", "0.6"), _tower("Eng", "CLOUD", "0.3")]

        with pytest.raises(WeightSumError) as exc_info:
            validate_group(rows, TOLERANCE, group="tower_weights:Eng")

        error = exc_info.value
        assert error.group == "tower_weights:Eng"
        assert error.actual_sum == Decimal("0.9")
        assert error.expected_sum == Decimal("1")
        assert error.tolerance == TOLERANCE
        payload = error.to_dict()
        assert payload["error_code"] == ErrorCode.WEIGHT_SUM.value
        assert payload["actual_sum"] == "0.9"

    def test_sum_above_one_raises(self) -> None:
        rows = [_tower("Eng", "APP_DEV", "0.7"), _tower("Eng", "CLOUD", "0.31")]
        with pytest.raises(WeightSumError):
            validate_group(rows, TOLERANCE)

    def test_float_tolerance_is_accepted(self) -> None:
        rows = [_tower("Eng", "APP_DEV", "0.99995")]
        assert validate_group(rows, 0.0001) is GroupStatus.VALID


class TestTowerWeightGroups:
    def test_groups_are_partitioned_per_department(self) -> None:
        rows = [
            _tower("Sales", "CLOUD", "1"),
            _tower("Eng", "APP_DEV", "0.5"),
            _tower("Eng", "CLOUD", "0.5"),
        ]

        groups = group_tower_weights(rows)

        assert list(groups) == ["Eng", "Sales"]
        assert len(groups["Eng"]) == 2

    def test_each_department_is_validated_independently(self) -> None:
        rows = [
            _tower("Eng", "APP_DEV", "1"),
            _tower("Sales", "CLOUD", "0.5"),
        ]

        with pytest.raises(WeightSumError) as exc_info:
            validate_tower_weights(rows, TOLERANCE)

        assert exc_info.value.group == "tower_weights:Sales"

    def test_all_valid_departments_report_valid(self) -> None:
        rows = [_tower("Eng", "APP_DEV", "1"), _tower("Sales", "CLOUD", "1")]
        assert validate_tower_weights(rows, TOLERANCE) == {
            "Eng": GroupStatus.VALID,
            "Sales": GroupStatus.VALID,
        }


def test_benefit_weights_use_a_single_group() -> None:
    rows = [
        BenefitWeight(COMPANY, PERIOD, BenefitCategory.PRODUCTIVITY, Decimal("0.6")),
        BenefitWeight(COMPANY, PERIOD, BenefitCategory.REVENUE_UPLIFT, Decimal("0.3")),
    ]
    with pytest.raises(WeightSumError) as exc_info:
        validate_benefit_weights(rows, TOLERANCE)
    assert exc_info.value.group == "benefit_weights"


@hypothesis_settings(max_examples=200)
@given(st.lists(st.integers(min_value=0, max_value=10_000), min_size=1, max_size=8))
def test_validation_accepts_exactly_the_groups_within_tolerance(basis_points: list[int]) -> None:
    rows = [_tower("Eng", f"T{i}", str(Decimal(bp) / 10_000)) for i, bp in enumerate(basis_points)]
    total = weight_sum(rows)

    if abs(total - Decimal("1")) <= TOLERANCE:
        assert validate_group(rows, TOLERANCE) is GroupStatus.VALID
    else:
        with pytest.raises(WeightSumError):
            validate_group(rows, TOLERANCE)


@given(st.lists(st.integers(min_value=1, max_value=100), min_size=1, max_size=6))
def test_normalized_groups_always_validate(parts: list[int]) -> None:
    total = sum(parts)
    weights = [Decimal(part) / Decimal(total) for part in parts]
    rows = [_tower("Eng", f"T{i}", str(weight)) for i, weight in enumerate(weights)]

    assert validate_group(rows, TOLERANCE) is GroupStatus.VALID
