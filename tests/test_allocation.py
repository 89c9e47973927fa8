"""Tests for the weighted cost propagator and allocation graph."""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tbm_roi_engine.core.allocation import (
    AllocationGraph,
    AllocationStage,
    Edge,
    Flow,
    MergePolicy,
    NodeKind,
    PropagationResult,
    propagate,
)
from tbm_roi_engine.core.errors import InvalidAllocationRuleError


class TestEdge:
    def test_percent_above_one_is_rejected(self) -> None:
        with pytest.raises(InvalidAllocationRuleError):
            Edge(source=("a",), target=("b",), percent=Decimal("1.01"))

    def test_negative_percent_is_rejected(self) -> None:
        with pytest.raises(InvalidAllocationRuleError):
            Edge(source=("a",), target=("b",), percent=Decimal("-0.1"))

    def test_float_percent_is_converted_to_decimal(self) -> None:
        edge = Edge(source=("a",), target=("b",), percent=0.3)  # type: ignore[arg-type]
        assert edge.percent == Decimal("0.3")


class TestPropagate:
    def test_accumulate_sums_contributions_at_a_shared_target(self) -> None:
        flows = [Flow(("eng",), Decimal("100")), Flow(("ops",), Decimal("50"))]
        edges = [
            Edge(("eng",), ("CLOUD",), Decimal("0.5")),
            Edge(("ops",), ("CLOUD",), Decimal("1")),
        ]

        result = propagate(flows, edges, MergePolicy.ACCUMULATE)

        assert result.amounts == {("CLOUD",): Decimal("100.0")}
        assert result.collisions == ()

    def test_overwrite_keeps_the_last_contribution_and_reports_collision(self) -> None:
        flows = [Flow(("eng", "pool-a"), Decimal("100")), Flow(("eng", "pool-b"), Decimal("40"))]
        edges = [
            Edge(("eng", "pool-a"), ("CLOUD", "eng"), Decimal("1")),
            Edge(("eng", "pool-b"), ("CLOUD", "eng"), Decimal("1")),
        ]

        result = propagate(flows, edges, MergePolicy.OVERWRITE)

        assert result.amounts == {("CLOUD", "eng"): Decimal("40")}
        assert result.collisions == (("CLOUD", "eng"),)

    def test_flow_without_edges_is_reported_unmatched(self) -> None:
        flows = [Flow(("eng",), Decimal("100")), Flow(("hr",), Decimal("25"))]
        edges = [Edge(("eng",), ("APP_DEV",), Decimal("1"))]

        result = propagate(flows, edges, MergePolicy.ACCUMULATE)

        assert result.total == Decimal("100")
        assert [flow.key for flow in result.unmatched] == [("hr",)]
        assert result.dropped_amount == Decimal("25")

    def test_match_key_selects_edges_by_projection(self) -> None:
        flows = [Flow(("CLOUD", "eng"), Decimal("60"), match=("CLOUD",))]
        edges = [
            Edge(("CLOUD",), ("crm",), Decimal("0.25")),
            Edge(("CLOUD",), ("erp",), Decimal("0.75")),
        ]

        result = propagate(flows, edges, MergePolicy.ACCUMULATE)

        assert result.amounts == {("crm",): Decimal("15.00"), ("erp",): Decimal("45.00")}

    def test_zero_weight_edge_produces_a_zero_amount(self) -> None:
        result = propagate(
            [Flow(("eng",), Decimal("10"))],
            [Edge(("eng",), ("END_USER",), Decimal("0")), Edge(("eng",), ("CLOUD",), Decimal("1"))],
            MergePolicy.ACCUMULATE,
        )
        assert result.amounts[("END_USER",)] == Decimal("0")


class TestAllocationGraph:
    def _stage(self, name: str, source: NodeKind, target: NodeKind, edges: tuple[Edge, ...]) -> AllocationStage:
        return AllocationStage(
            name=name,
            source_kind=source,
            target_kind=target,
            mode=MergePolicy.ACCUMULATE,
            edges=edges,
        )

    def test_mismatched_stage_kinds_are_rejected(self) -> None:
        with pytest.raises(ValueError, match="reads solution nodes"):
            AllocationGraph(
                [
                    self._stage("first", NodeKind.COST_POOL, NodeKind.RESOURCE_TOWER, ()),
                    self._stage("second", NodeKind.SOLUTION, NodeKind.BUSINESS_TAG, ()),
                ]
            )

    def test_evaluate_feeds_each_stage_into_the_next(self) -> None:
        graph = AllocationGraph(
            [
                self._stage(
                    "pool_to_tower",
                    NodeKind.COST_POOL,
                    NodeKind.RESOURCE_TOWER,
                    (Edge(("pool",), ("tower",), Decimal("1")),),
                ),
                self._stage(
                    "tower_to_solution",
                    NodeKind.RESOURCE_TOWER,
                    NodeKind.SOLUTION,
                    (
                        Edge(("tower",), ("crm",), Decimal("0.4")),
                        Edge(("tower",), ("erp",), Decimal("0.6")),
                    ),
                ),
            ]
        )

        results = graph.evaluate([Flow(("pool",), Decimal("1000"))])

        assert len(results) == 2
        assert results[0].amounts == {("tower",): Decimal("1000")}
        assert results[1].total == Decimal("1000.0")

    def test_walk_hands_the_settled_result_forward(self) -> None:
        graph = AllocationGraph(
            [
                self._stage(
                    "pool_to_tower",
                    NodeKind.COST_POOL,
                    NodeKind.RESOURCE_TOWER,
                    (Edge(("pool",), ("tower",), Decimal("0.3333")),),
                ),
                self._stage(
                    "tower_to_solution",
                    NodeKind.RESOURCE_TOWER,
                    NodeKind.SOLUTION,
                    (Edge(("tower",), ("crm",), Decimal("1")),),
                ),
            ]
        )
        seen: list[str] = []

        def halve(stage: AllocationStage, result: PropagationResult) -> PropagationResult:
            seen.append(stage.name)
            return PropagationResult(amounts={key: amount / 2 for key, amount in result.amounts.items()})

        walked = list(graph.walk([Flow(("pool",), Decimal("100"))], settle=halve))

        assert seen == ["pool_to_tower", "tower_to_solution"]
        assert [stage.name for stage, _ in walked] == seen
        assert walked[0][1].amounts == {("tower",): Decimal("16.665")}
        assert walked[1][1].amounts == {("crm",): Decimal("8.3325")}

    def test_walk_is_lazy(self) -> None:
        graph = AllocationGraph(
            [
                self._stage("first", NodeKind.COST_POOL, NodeKind.RESOURCE_TOWER, ()),
                self._stage("second", NodeKind.RESOURCE_TOWER, NodeKind.SOLUTION, ()),
            ]
        )
        seen: list[str] = []

        def record(stage: AllocationStage, result: PropagationResult) -> PropagationResult:
            seen.append(stage.name)
            return result

        walker = graph.walk([Flow(("pool",), Decimal("1"))], settle=record)
        next(walker)

        assert seen == ["first"]


@st.composite
def _fully_allocated(draw: st.DrawFn) -> tuple[list[Flow], list[Edge]]:
    """Flows plus, for every source, edges whose percents sum to exactly 1."""
    source_count = draw(st.integers(min_value=1, max_value=5))
    targets = [f"t{i}" for i in range(draw(st.integers(min_value=1, max_value=4)))]
    flows: list[Flow] = []
    edges: list[Edge] = []
    for index in range(source_count):
        source = (f"s{index}",)
        cents = draw(st.integers(min_value=0, max_value=10**11))
        flows.append(Flow(source, Decimal(cents) / 100))
        shares = draw(st.lists(st.integers(min_value=1, max_value=100), min_size=1, max_size=len(targets)))
        total = sum(shares)
        remaining = Decimal("1")
        for position, share in enumerate(shares):
            if position == len(shares) - 1:
                percent = remaining
            else:
                percent = (Decimal(share) / Decimal(total)).quantize(Decimal("0.0001"))
                remaining -= percent
            edges.append(Edge(source, (targets[position],), percent))
    return flows, edges


@given(_fully_allocated())
def test_accumulate_conserves_the_total_when_every_source_is_fully_allocated(
    case: tuple[list[Flow], list[Edge]],
) -> None:
    flows, edges = case

    result = propagate(flows, edges, MergePolicy.ACCUMULATE)

    assert result.unmatched == ()
    assert result.total == sum((flow.amount for flow in flows), Decimal("0"))


@given(_fully_allocated(), st.randoms())
def test_accumulate_is_independent_of_flow_order(case: tuple[list[Flow], list[Edge]], rng) -> None:  # type: ignore[no-untyped-def]
    flows, edges = case
    shuffled = list(flows)
    rng.shuffle(shuffled)

    assert propagate(shuffled, edges, MergePolicy.ACCUMULATE).amounts == propagate(
        flows, edges, MergePolicy.ACCUMULATE
    ).amounts
