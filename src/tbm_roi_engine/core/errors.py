"""Error taxonomy for the allocation and ROI engine.

Each error carries a stable ErrorCode and a structured to_dict() payload so
the caller can tell "fix your weights" (WeightSumError) apart from "finish
data entry" (MissingDataError) and "try again" (PersistenceError).
"""

from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any


class ErrorCode(str, enum.Enum):
    """Stable error identifiers surfaced to callers."""

    WEIGHT_SUM = "weight_sum"
    MISSING_DATA = "missing_data"
    DIVISION_BY_ZERO = "division_by_zero"
    PERSISTENCE = "persistence"
    INVALID_RULE = "invalid_rule"
    INVALID_INPUT = "invalid_input"
    TIMEOUT = "timeout"


class EngineError(Exception):
    """Base class for every error raised by the engine."""

    error_code: ErrorCode = ErrorCode.INVALID_INPUT

    def to_dict(self) -> dict[str, Any]:
        """Structured representation used in logs and API responses."""
        return {"error_code": self.error_code.value, "message": str(self)}


class WeightSumError(EngineError):
    """A weight group does not sum to 1 within tolerance.

    Never auto-corrected: the caller must fix the weights.
    """

    error_code = ErrorCode.WEIGHT_SUM

    def __init__(
        self,
        group: str,
        actual_sum: Decimal,
        tolerance: Decimal,
        expected_sum: Decimal = Decimal("1"),
    ) -> None:
        self.group = group
        self.actual_sum = actual_sum
        self.tolerance = tolerance
        self.expected_sum = expected_sum
        super().__init__(
            f"Weights for group '{group}' must sum to {expected_sum} "
            f"(±{tolerance}); current sum is {actual_sum}"
        )

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            group=self.group,
            expected_sum=str(self.expected_sum),
            actual_sum=str(self.actual_sum),
            tolerance=str(self.tolerance),
        )
        return payload


class MissingDataError(EngineError):
    """A required upstream row is absent; the company/period is not ready."""

    error_code = ErrorCode.MISSING_DATA

    def __init__(self, stage: str, key: str) -> None:
        self.stage = stage
        self.key = key
        super().__init__(f"Missing input '{key}' required by stage '{stage}'")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(stage=self.stage, key=self.key)
        return payload


class DivisionByZeroError(EngineError):
    """ROI percentage requested for a non-positive total cost."""

    error_code = ErrorCode.DIVISION_BY_ZERO

    def __init__(self, total_cost: Decimal) -> None:
        self.total_cost = total_cost
        super().__init__(f"ROI is undefined when total cost is {total_cost} (must be > 0)")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["total_cost"] = str(self.total_cost)
        return payload


class PersistenceError(EngineError):
    """Opaque failure from the input store. Always fatal to the current run."""

    error_code = ErrorCode.PERSISTENCE

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        message = f"Input store operation '{operation}' failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["operation"] = self.operation
        return payload


class InvalidAllocationRuleError(EngineError):
    """An allocation rule percent lies outside [0, 1]."""

    error_code = ErrorCode.INVALID_RULE

    def __init__(self, source: tuple[str, ...], target: tuple[str, ...], percent: Decimal) -> None:
        self.source = source
        self.target = target
        self.percent = percent
        super().__init__(
            f"Allocation rule {source} -> {target} has percent {percent}; expected a value in [0, 1]"
        )


class InvalidInputError(EngineError, ValueError):
    """An input row failed range validation before being written."""

    error_code = ErrorCode.INVALID_INPUT


class RecomputationTimeoutError(EngineError):
    """A recomputation run exceeded its time budget."""

    error_code = ErrorCode.TIMEOUT

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Recomputation exceeded {timeout_seconds} seconds")
