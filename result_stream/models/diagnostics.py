"""Models for non-fatal diagnostics collected during ingestion."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal


@dataclass(frozen=True, kw_only=True)
class OrphanNodes:
    """Nodes that could not be wired to a declared parent.

    ``missing_parents`` maps each parent id that was referenced but never
    observed to the ids waiting on it, in arrival order. ``rejected`` lists
    nodes whose edge was refused (cycle or late attach). ``detached`` lists
    open descendants of those nodes, which are wired but unreachable from
    any root.
    """

    missing_parents: Mapping[str, Sequence[str]] = field(default_factory=dict)
    rejected: Sequence[str] = ()
    detached: Sequence[str] = ()

    @property
    def node_ids(self) -> Sequence[str]:
        """All orphaned node ids."""
        ids = [child for children in self.missing_parents.values() for child in children]
        ids.extend(self.rejected)
        return ids

    def __bool__(self) -> bool:
        return bool(self.missing_parents) or bool(self.rejected)

    def __len__(self) -> int:
        return len(self.node_ids)


@dataclass(frozen=True, kw_only=True)
class RejectedEdge:
    """A parent edge refused by the hierarchy builder."""

    node_id: str
    parent_id: str
    reason: Literal["cycle", "late-attach"]


@dataclass(frozen=True, kw_only=True)
class SkippedRecord:
    """A record discarded in lenient mode."""

    offset: int | None
    line: int | None = None
    reason: str


@dataclass(frozen=True, kw_only=True)
class DiagnosticsReport:
    """Everything worth reporting about one ingestion session."""

    orphans: OrphanNodes
    rejected_edges: Sequence[RejectedEdge] = ()
    skipped_records: Sequence[SkippedRecord] = ()
    leaves_without_timestamp: Sequence[str] = ()
    finalized: int = 0
    cancelled: bool = False

    @property
    def clean(self) -> bool:
        """Return True if nothing was orphaned, rejected or skipped."""
        return not (
            self.orphans
            or self.rejected_edges
            or self.skipped_records
            or self.leaves_without_timestamp
        )
