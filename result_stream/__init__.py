"""Streaming reconstruction and aggregation of hierarchical test results."""

from result_stream.builder import HierarchyBuilder
from result_stream.codec import AttachmentCodec, AttachmentFetcher, encode_attachment
from result_stream.config import EngineConfig, load_config
from result_stream.decoder import RecordParser, aiter_records, decode_record, iter_records
from result_stream.encoder import encode_record, write_records
from result_stream.errors import (
    CodecError,
    ConfigurationError,
    CycleError,
    DecodeError,
    ExternalAttachment,
    LateAttachError,
    NotFound,
    ResultStreamError,
    ValidationError,
)
from result_stream.finalizer import Finalizer, Subtree, SubtreeRef
from result_stream.models.diagnostics import DiagnosticsReport, OrphanNodes
from result_stream.models.node import (
    Attachment,
    ContentEncoding,
    Duration,
    Status,
    TestNode,
    Timestamp,
)
from result_stream.query import Match, QueryView
from result_stream.session import IngestionSession
from result_stream.status import DEFAULT_SEVERITY, StatusAggregator, worst_status
from result_stream.summary import StatusSummary, summarize

__all__ = [
    "DEFAULT_SEVERITY",
    "Attachment",
    "AttachmentCodec",
    "AttachmentFetcher",
    "CodecError",
    "ConfigurationError",
    "ContentEncoding",
    "CycleError",
    "DecodeError",
    "DiagnosticsReport",
    "Duration",
    "EngineConfig",
    "ExternalAttachment",
    "Finalizer",
    "HierarchyBuilder",
    "IngestionSession",
    "LateAttachError",
    "Match",
    "NotFound",
    "OrphanNodes",
    "QueryView",
    "RecordParser",
    "ResultStreamError",
    "Status",
    "StatusAggregator",
    "StatusSummary",
    "Subtree",
    "SubtreeRef",
    "TestNode",
    "Timestamp",
    "ValidationError",
    "aiter_records",
    "decode_record",
    "encode_attachment",
    "encode_record",
    "iter_records",
    "load_config",
    "summarize",
    "worst_status",
]
