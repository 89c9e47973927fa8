"""Weighted cost propagation over the TBM allocation graph.

The pipeline is a small directed graph with typed node kinds:

    cost pool -> resource tower -> solution -> business tag

Each stage moves amounts along weighted edges. A stage either overwrites the
amount at a target (last contribution wins) or accumulates every contribution.
The merge policy is an explicit parameter, never inferred from the stage.

Pure functions only; no I/O.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from tbm_roi_engine.core.domain import ZERO, to_decimal
from tbm_roi_engine.core.errors import InvalidAllocationRuleError

NodeKey = tuple[str, ...]

ONE = Decimal("1")


class MergePolicy(str, enum.Enum):
    """How contributions arriving at the same target combine."""

    OVERWRITE = "overwrite"
    ACCUMULATE = "accumulate"


class NodeKind(str, enum.Enum):
    COST_POOL = "cost_pool"
    RESOURCE_TOWER = "resource_tower"
    SOLUTION = "solution"
    BUSINESS_TAG = "business_tag"


@dataclass(frozen=True)
class Flow:
    """An amount sitting at a node.

    Attributes:
        key: Identity of the amount at its node.
        amount: Non-negative monetary amount.
        match: Part of the key used to select outgoing edges (defaults to key).
    """

    key: NodeKey
    amount: Decimal
    match: NodeKey | None = None

    @property
    def match_key(self) -> NodeKey:
        return self.key if self.match is None else self.match


@dataclass(frozen=True)
class Edge:
    """A weighted allocation rule from one node to another."""

    source: NodeKey
    target: NodeKey
    percent: Decimal

    def __post_init__(self) -> None:
        percent = to_decimal(self.percent)
        if percent < ZERO or percent > ONE:
            raise InvalidAllocationRuleError(self.source, self.target, percent)
        object.__setattr__(self, "percent", percent)


@dataclass(frozen=True)
class PropagationResult:
    """Output of one propagation stage.

    Attributes:
        amounts: Propagated amount per target key, in first-seen order.
        unmatched: Flows that had no outgoing edge; their amount is dropped.
        collisions: Target keys written more than once in OVERWRITE mode.
    """

    amounts: dict[NodeKey, Decimal]
    unmatched: tuple[Flow, ...] = ()
    collisions: tuple[NodeKey, ...] = ()

    @property
    def total(self) -> Decimal:
        return sum(self.amounts.values(), ZERO)

    @property
    def dropped_amount(self) -> Decimal:
        return sum((flow.amount for flow in self.unmatched), ZERO)

    def flows(self, match: Callable[[NodeKey], NodeKey] | None = None) -> list[Flow]:
        """Turn the amounts into flows for the next stage."""
        return [
            Flow(key=key, amount=amount, match=match(key) if match else None)
            for key, amount in self.amounts.items()
        ]


def propagate(
    flows: Iterable[Flow],
    edges: Iterable[Edge],
    mode: MergePolicy,
) -> PropagationResult:
    """Push every flow along its matching edges.

    For each flow, every edge whose source equals the flow's match key adds
    ``flow.amount * edge.percent`` at the edge's target. In ACCUMULATE mode
    contributions are summed, so the result does not depend on row order. In
    OVERWRITE mode the last contribution per target wins and the colliding
    target keys are reported.

    Args:
        flows: Amounts at the source nodes.
        edges: Allocation rules out of the source nodes.
        mode: Merge policy for contributions that share a target.

    Returns:
        PropagationResult with the target amounts, unmatched flows, and
        OVERWRITE collisions.
    """
    by_source: dict[NodeKey, list[Edge]] = {}
    for edge in edges:
        by_source.setdefault(edge.source, []).append(edge)

    amounts: dict[NodeKey, Decimal] = {}
    unmatched: list[Flow] = []
    collisions: list[NodeKey] = []

    for flow in flows:
        matching = by_source.get(flow.match_key)
        if not matching:
            unmatched.append(flow)
            continue
        for edge in matching:
            contribution = flow.amount * edge.percent
            if mode is MergePolicy.ACCUMULATE:
                amounts[edge.target] = amounts.get(edge.target, ZERO) + contribution
            else:
                if edge.target in amounts and edge.target not in collisions:
                    collisions.append(edge.target)
                amounts[edge.target] = contribution

    return PropagationResult(
        amounts=amounts,
        unmatched=tuple(unmatched),
        collisions=tuple(collisions),
    )


def _identity(key: NodeKey) -> NodeKey:
    return key


@dataclass(frozen=True)
class AllocationStage:
    """One hop of the allocation graph.

    Attributes:
        name: Stage label used in logs.
        source_kind: Node kind the incoming flows sit at.
        target_kind: Node kind the edges point to.
        mode: Merge policy for this hop.
        edges: Weighted rules of this hop.
        match: Projection from an incoming flow key to the edge source key.
    """

    name: str
    source_kind: NodeKind
    target_kind: NodeKind
    mode: MergePolicy
    edges: tuple[Edge, ...]
    match: Callable[[NodeKey], NodeKey] = field(default=_identity)

    def apply(self, flows: Iterable[Flow]) -> PropagationResult:
        """Propagate flows sitting at source_kind nodes through this hop."""
        projected = [
            Flow(key=flow.key, amount=flow.amount, match=self.match(flow.key)) for flow in flows
        ]
        return propagate(projected, self.edges, self.mode)


StageHook = Callable[[AllocationStage, PropagationResult], PropagationResult]


class AllocationGraph:
    """Ordered chain of allocation stages evaluated in dependency order.

    Adding a stage only requires its source kind to equal the previous
    stage's target kind.
    """

    def __init__(self, stages: Sequence[AllocationStage]) -> None:
        for upstream, downstream in zip(stages, stages[1:]):
            if upstream.target_kind != downstream.source_kind:
                raise ValueError(
                    f"Stage '{downstream.name}' reads {downstream.source_kind.value} nodes "
                    f"but '{upstream.name}' produces {upstream.target_kind.value} nodes"
                )
        self._stages = tuple(stages)

    @property
    def stages(self) -> tuple[AllocationStage, ...]:
        return self._stages

    def walk(
        self,
        seed: Iterable[Flow],
        settle: StageHook | None = None,
    ) -> Iterator[tuple[AllocationStage, PropagationResult]]:
        """Yield each stage with its result, feeding the result into the next stage.

        ``settle`` may replace a stage's result (rounding, policy checks)
        before it is yielded and handed forward. The next stage only runs
        once the consumer asks for it, so a caller can persist a stage
        before the following one is computed.
        """
        flows = list(seed)
        for stage in self._stages:
            result = stage.apply(flows)
            if settle is not None:
                result = settle(stage, result)
            yield stage, result
            flows = result.flows()

    def evaluate(
        self,
        seed: Iterable[Flow],
        settle: StageHook | None = None,
    ) -> list[PropagationResult]:
        """Run every stage and return one PropagationResult per stage, in order."""
        return [result for _, result in self.walk(seed, settle)]
