"""Status counts over emitted subtrees."""

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from result_stream.finalizer import Subtree
from result_stream.models.node import Status

FAILING_STATUSES = frozenset({Status.ERRORED, Status.FAILED, Status.AMBIGUOUS})


@dataclass(frozen=True, kw_only=True)
class StatusSummary:
    """Leaf status counts for a set of finalized subtrees."""

    total: int = 0
    counts: Mapping[Status, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Return True if no leaf errored, failed or was ambiguous."""
        return not any(self.counts.get(status) for status in FAILING_STATUSES)

    def to_dict(self) -> dict[str, Any]:
        """Format for JSON output."""
        return {
            "total": self.total,
            "success": self.success,
            **{status.value.lower(): self.counts.get(status, 0) for status in Status},
        }


def summarize(subtrees: Iterable[Subtree]) -> StatusSummary:
    """Count leaf statuses across subtrees.

    Children emitted by an earlier finalize are not counted again.
    """
    counts: Counter[Status] = Counter(
        leaf.status for subtree in subtrees for leaf in subtree.leaves()
    )
    return StatusSummary(total=sum(counts.values()), counts=dict(counts))
