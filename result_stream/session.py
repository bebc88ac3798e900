"""Per-stream ingestion session."""

import asyncio
import logging
import threading
from collections.abc import AsyncIterable, Iterable, Sequence
from concurrent.futures import Executor
from types import TracebackType
from typing import BinaryIO, Self

from result_stream.builder import HierarchyBuilder
from result_stream.codec import AttachmentCodec, AttachmentFetcher
from result_stream.config import EngineConfig
from result_stream.decoder import RecordParser, iter_records
from result_stream.errors import (
    CycleError,
    LateAttachError,
    ResultStreamError,
    ValidationError,
)
from result_stream.finalizer import EmitCallback, Finalizer, Subtree
from result_stream.models.diagnostics import DiagnosticsReport, SkippedRecord
from result_stream.models.node import TestNode
from result_stream.query import QueryView
from result_stream.status import StatusAggregator

log = logging.getLogger(__name__)


class IngestionSession:
    """State for ingesting one record stream.

    Each session owns its id registry, pending-parent map and finalized set,
    so independent streams can be ingested concurrently. Mutations (attach and
    finalize) are serialized by a single lock; emission of finalized subtrees
    runs outside it.

    Usage::

        with IngestionSession(emit=store) as session:
            session.ingest(stream)
            session.finalize_all()
        report = session.close()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        emit: EmitCallback | None = None,
        executor: Executor | None = None,
        fetcher: AttachmentFetcher | None = None,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        self._lock = threading.RLock()
        self.aggregator = StatusAggregator(severity=self.config.severity_order)
        self.builder = HierarchyBuilder(on_attach=self._invalidate)
        self.finalizer = Finalizer(
            builder=self.builder,
            aggregator=self.aggregator,
            lock=self._lock,
            emit=emit,
            executor=executor,
            check_leaf_timestamps=self.config.check_leaf_timestamps,
        )
        self.view = QueryView(
            builder=self.builder,
            aggregator=self.aggregator,
            lock=self._lock,
            codec=AttachmentCodec(fetcher=fetcher),
        )
        self._skipped: list[SkippedRecord] = []
        self._parsers: list[RecordParser] = []
        self._accepted = 0
        self._cancelled = False
        self._report: DiagnosticsReport | None = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._report is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _invalidate(self, parent_id: str) -> None:
        self.aggregator.invalidate(parent_id, self.builder)

    def _check_open(self) -> None:
        if self._report is not None:
            raise ResultStreamError("session is closed")

    def _new_parser(self) -> RecordParser:
        parser = RecordParser(lenient=self.config.lenient)
        self._parsers.append(parser)
        return parser

    def add(self, node: TestNode) -> bool:
        """Attach one record to the hierarchy.

        Returns:
            True if the record was accepted, False if its own edge was rejected
            (cycle, late attach) or it was skipped as a duplicate in lenient mode

        Raises:
            ValidationError: On a duplicate id unless the session is lenient

        """
        self._check_open()
        try:
            with self._lock:
                self.builder.add(node)
        except (CycleError, LateAttachError) as exc:
            log.warning("Rejected edge while adding %s: %s", node.id, exc)
            if exc.node_id == node.id:
                return False
        except ValidationError as exc:
            if not self.config.lenient:
                raise
            log.warning("Skipping record %s: %s", node.id, exc)
            self._skipped.append(SkippedRecord(offset=exc.offset, reason=str(exc)))
            return False
        self._accepted += 1
        return True

    def ingest_records(self, nodes: Iterable[TestNode]) -> int:
        """Attach already decoded records in order; return how many were accepted."""
        accepted = 0
        for node in nodes:
            if self._cancelled:
                log.info("Ingestion cancelled; stopping before %s", node.id)
                break
            accepted += self.add(node)
        return accepted

    def ingest(self, source: BinaryIO | Iterable[bytes] | bytes) -> int:
        """Decode and attach every record from a byte source.

        Raises:
            DecodeError: On malformed input, with the byte offset
            ValidationError: On a schema violation unless skipped in lenient mode

        """
        self._check_open()
        parser = self._new_parser()
        log.info("Ingesting records (lenient=%s)", self.config.lenient)
        accepted = self.ingest_records(
            iter_records(source, chunk_size=self.config.chunk_size, parser=parser)
        )
        log.info(
            "Ingested %d record(s) from %s stream, %d accepted",
            parser.records,
            parser.framing or "empty",
            accepted,
        )
        return accepted

    async def aingest(self, chunks: AsyncIterable[bytes]) -> int:
        """Decode and attach records from an asynchronous byte source.

        Cancelling the awaiting task cancels the session: finalized subtrees
        stay valid and pending nodes are reported as orphans.
        """
        self._check_open()
        parser = self._new_parser()
        accepted = 0
        try:
            async for chunk in chunks:
                accepted += self.ingest_records(parser.feed(chunk))
                if self._cancelled:
                    return accepted
            accepted += self.ingest_records(parser.close())
        except asyncio.CancelledError:
            self.cancel()
            raise
        log.info("Ingested %d record(s), %d accepted", parser.records, accepted)
        return accepted

    def finalize(self, node_id: str) -> Subtree | None:
        """Freeze, emit and release the subtree rooted at ``node_id``."""
        self._check_open()
        return self.finalizer.finalize(node_id)

    def finalize_all(self) -> Sequence[Subtree]:
        """Finalize every open root."""
        self._check_open()
        subtrees = self.finalizer.finalize_all()
        log.info("Finalized %d root(s)", len(subtrees))
        return subtrees

    def cancel(self) -> None:
        """Stop ingestion at the next record boundary.

        Already-finalized subtrees remain valid; nodes still waiting for a
        parent are reported as orphans.
        """
        if self._cancelled:
            return
        self._cancelled = True
        with self._lock:
            pending = self.builder.pending_count()
        log.warning("Ingestion cancelled with %d pending node(s)", pending)

    def diagnostics(self) -> DiagnosticsReport:
        """Return diagnostics collected so far."""
        if self._report is not None:
            return self._report
        skipped = [record for parser in self._parsers for record in parser.skipped]
        skipped.extend(self._skipped)
        with self._lock:
            return DiagnosticsReport(
                orphans=self.builder.orphans(),
                rejected_edges=self.builder.rejected_edges(),
                skipped_records=tuple(skipped),
                leaves_without_timestamp=tuple(self.finalizer.leaves_without_timestamp),
                finalized=self.finalizer.finalized,
                cancelled=self._cancelled,
            )

    def close(self, *, finalize_remaining: bool = False) -> DiagnosticsReport:
        """Tear down the session and return its diagnostics.

        Idempotent. With ``finalize_remaining``, open roots are finalized and
        emitted first.
        """
        if self._report is not None:
            return self._report
        if finalize_remaining and not self._cancelled:
            self.finalize_all()
        self.finalizer.wait()
        report = self.diagnostics()
        self._report = report
        if report.orphans:
            log.warning(
                "Session closed with %d orphaned node(s)", len(report.orphans)
            )
        log.info(
            "Session closed: %d accepted, %d finalized", self._accepted, report.finalized
        )
        return report
