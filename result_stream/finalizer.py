"""Freezing and emission of completed subtrees."""

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import TypeAlias

from result_stream.builder import HierarchyBuilder
from result_stream.errors import NotFound
from result_stream.models.node import Status, TestNode
from result_stream.status import StatusAggregator

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class SubtreeRef:
    """Child of an emitted subtree that was finalized and emitted earlier."""

    node_id: str
    status: Status


@dataclass(frozen=True, kw_only=True)
class Subtree:
    """Immutable snapshot of a finalized node and its descendants."""

    node: TestNode
    status: Status
    children: Sequence["Subtree | SubtreeRef"] = ()

    @property
    def node_id(self) -> str:
        return self.node.id

    def walk(self) -> Iterator["Subtree"]:
        """Yield this subtree and every nested subtree in pre-order."""
        stack: list[Subtree] = [self]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(
                child for child in reversed(current.children) if isinstance(child, Subtree)
            )

    def leaves(self) -> Iterator["Subtree"]:
        """Yield nested subtrees without children."""
        return (subtree for subtree in self.walk() if not subtree.children)

    def find(self, node_id: str) -> "Subtree | None":
        """Return the nested subtree for ``node_id``, if emitted here."""
        return next((subtree for subtree in self.walk() if subtree.node_id == node_id), None)


EmitCallback: TypeAlias = Callable[[Subtree], object]


@dataclass(kw_only=True)
class Finalizer:
    """Closes subtrees once the transport knows no further child can arrive.

    Finalizing freezes effective status bottom-up, hands the snapshot to
    ``emit`` and releases builder storage while remembering the ids. Emission
    happens outside ``lock`` and, with an ``executor``, concurrently with
    further ingestion.
    """

    builder: HierarchyBuilder
    aggregator: StatusAggregator
    lock: threading.RLock = field(default_factory=threading.RLock)
    emit: EmitCallback | None = None
    executor: Executor | None = None
    check_leaf_timestamps: bool = True

    finalized: int = field(default=0, init=False)
    # Grows by one id per offending leaf for the life of the session.
    leaves_without_timestamp: list[str] = field(default_factory=list, init=False)
    _futures: list[Future[object]] = field(default_factory=list, init=False, repr=False)

    def finalize(self, node_id: str) -> Subtree | None:
        """Freeze and emit the subtree rooted at ``node_id``.

        Idempotent: finalizing the same id again returns None. Finalizing an
        unseen id that children are waiting for reports those children as
        orphans and returns None.

        Raises:
            NotFound: If the id is neither materialized nor awaited

        """
        with self.lock:
            subtree = self._close(node_id)
        if subtree is not None:
            self._emit(subtree)
        return subtree

    def finalize_all(self) -> Sequence[Subtree]:
        """Finalize every open root, e.g. on an end-of-stream marker."""
        with self.lock:
            roots = self.builder.roots()
        return [
            subtree for root in roots if (subtree := self.finalize(root)) is not None
        ]

    def _close(self, node_id: str) -> Subtree | None:
        builder = self.builder
        if builder.is_finalized(node_id):
            log.debug("Node %s already finalized", node_id)
            return None
        if node_id not in builder:
            if not builder.is_awaited(node_id):
                raise NotFound(node_id)
            orphaned = builder.abandon(node_id)
            log.warning(
                "Finalized unseen node %s; %d waiting child(ren) orphaned: %s",
                node_id,
                len(orphaned),
                ", ".join(orphaned),
            )
            return None

        order = list(builder.iter_subtree(node_id))
        statuses: dict[str, Status] = {}
        built: dict[str, Subtree] = {}
        for current in reversed(order):
            node = builder.get(current)
            status = self.aggregator.effective_status(current, builder)
            statuses[current] = status
            child_ids = builder.children_ids(current)
            if (
                self.check_leaf_timestamps
                and not child_ids
                and node.result is not None
                and node.timestamp is None
            ):
                self.leaves_without_timestamp.append(current)
                log.warning("Leaf %s declares a result without a timestamp", current)
            built[current] = Subtree(
                node=node,
                status=status,
                children=tuple(
                    built[child] if child in built else self._ref(child)
                    for child in child_ids
                ),
            )

        builder.release(statuses)
        self.aggregator.forget(statuses)
        self.finalized += len(statuses)
        log.debug(
            "Finalized %s (%d node(s), status %s)",
            node_id,
            len(statuses),
            built[node_id].status,
        )
        return built[node_id]

    def _ref(self, node_id: str) -> SubtreeRef:
        status = self.builder.frozen_status(node_id)
        if status is None:
            # Listed as a child but neither open nor finalized with a status.
            raise NotFound(node_id)
        return SubtreeRef(node_id=node_id, status=status)

    def _emit(self, subtree: Subtree) -> None:
        if self.emit is None:
            return
        if self.executor is None:
            self.emit(subtree)
            return
        future = self.executor.submit(self.emit, subtree)
        future.add_done_callback(self._log_emit_failure)
        with self.lock:
            self._futures = [pending for pending in self._futures if not pending.done()]
            self._futures.append(future)

    @staticmethod
    def _log_emit_failure(future: Future[object]) -> None:
        if future.cancelled():
            return
        if (exc := future.exception()) is not None:
            log.error("Subtree emission failed: %s", exc, exc_info=exc)

    def wait(self) -> None:
        """Block until every scheduled emission has completed."""
        with self.lock:
            futures, self._futures = self._futures, []
        for future in futures:
            future.exception()
