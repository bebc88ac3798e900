"""Roll-up of effective status over the node hierarchy."""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from result_stream.models.node import Status, TestNode

log = logging.getLogger(__name__)

DEFAULT_SEVERITY: tuple[Status, ...] = (
    Status.ERRORED,
    Status.FAILED,
    Status.AMBIGUOUS,
    Status.PENDING,
    Status.SKIPPED,
    Status.PASSED,
    Status.UNDEFINED,
    Status.UNKNOWN,
)


def check_severity_order(order: Iterable[Status]) -> tuple[Status, ...]:
    """Validate that ``order`` ranks every status exactly once."""
    statuses = tuple(order)
    if len(statuses) != len(Status) or set(statuses) != set(Status):
        raise ValueError(
            "severity order must list every status exactly once: "
            + ", ".join(status.value for status in Status)
        )
    return statuses


def worst_status(
    statuses: Iterable[Status], order: Sequence[Status] = DEFAULT_SEVERITY
) -> Status:
    """Return the most severe status, or UNDEFINED when there is none."""
    rank = {status: index for index, status in enumerate(order)}
    return min(statuses, key=rank.__getitem__, default=Status.UNDEFINED)


class StatusTree(Protocol):
    """Read access the aggregator needs from the hierarchy."""

    def get(self, node_id: str) -> TestNode: ...

    def children_ids(self, node_id: str) -> Sequence[str]: ...

    def parent_id(self, node_id: str) -> str | None: ...

    def frozen_status(self, node_id: str) -> Status | None: ...


@dataclass(kw_only=True)
class StatusAggregator:
    """Derives effective status for nodes, memoized per node.

    A node's effective status is its explicit result if present, otherwise
    the worst effective status among its children, otherwise UNDEFINED.
    Finalized nodes report their frozen status and are never recomputed.
    """

    severity: Sequence[Status] = DEFAULT_SEVERITY
    _rank: dict[Status, int] = field(init=False, repr=False)
    _cache: dict[str, Status] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.severity = check_severity_order(self.severity)
        self._rank = {status: index for index, status in enumerate(self.severity)}

    def rank(self, status: Status) -> int:
        """Return the rank of ``status``; 0 is the most severe."""
        return self._rank[status]

    def reduce(self, statuses: Iterable[Status]) -> Status:
        """Return the worst of ``statuses`` under this ordering."""
        return min(statuses, key=self._rank.__getitem__, default=Status.UNDEFINED)

    def effective_status(self, node_id: str, tree: StatusTree) -> Status:
        """Return the effective status of a node.

        Evaluated bottom-up without recursion so deep hierarchies are safe.
        """
        if (frozen := tree.frozen_status(node_id)) is not None:
            return frozen
        if node_id in self._cache:
            return self._cache[node_id]

        stack: list[tuple[str, bool]] = [(node_id, False)]
        while stack:
            current, expanded = stack.pop()
            if current in self._cache:
                continue
            node = tree.get(current)
            if node.result is not None:
                self._cache[current] = node.result
                continue
            children = tree.children_ids(current)
            if not expanded:
                stack.append((current, True))
                stack.extend(
                    (child, False)
                    for child in children
                    if child not in self._cache and tree.frozen_status(child) is None
                )
                continue
            self._cache[current] = self.reduce(
                self._child_status(child, tree) for child in children
            )
        return self._cache[node_id]

    def _child_status(self, child_id: str, tree: StatusTree) -> Status:
        frozen = tree.frozen_status(child_id)
        return frozen if frozen is not None else self._cache[child_id]

    def invalidate(self, node_id: str, tree: StatusTree) -> None:
        """Drop memoized status for a node and its attached ancestors."""
        current: str | None = node_id
        while current is not None and tree.frozen_status(current) is None:
            self._cache.pop(current, None)
            current = tree.parent_id(current)

    def forget(self, node_ids: Iterable[str]) -> None:
        """Release memoized status for nodes whose storage was released."""
        for node_id in node_ids:
            self._cache.pop(node_id, None)
