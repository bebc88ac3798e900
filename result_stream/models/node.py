"""Models for test node records and their attachments."""

from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Self

from pydantic import ConfigDict, Field, field_validator, model_validator

from result_stream.models.base import Model


class Status(StrEnum):
    """Result of a test node.

    Declaration order is the default severity order, most severe first.
    """

    ERRORED = "ERRORED"
    FAILED = "FAILED"
    AMBIGUOUS = "AMBIGUOUS"
    PENDING = "PENDING"
    SKIPPED = "SKIPPED"
    PASSED = "PASSED"
    UNDEFINED = "UNDEFINED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str) -> "Status":
        """Map a wire value to a status, falling back to UNKNOWN."""
        try:
            return cls(value.upper())
        except ValueError:
            return cls.UNKNOWN


class ContentEncoding(StrEnum):
    """Encoding of an inline attachment body."""

    IDENTITY = "IDENTITY"
    BASE64 = "BASE64"


NANOS_PER_SECOND = 1_000_000_000


class _SecondsNanos(Model):
    seconds: int
    nanos: int = Field(default=0, ge=0, lt=NANOS_PER_SECOND)

    @classmethod
    def from_seconds(cls, value: float) -> Self:
        """Build from fractional seconds."""
        seconds, nanos = divmod(round(value * NANOS_PER_SECOND), NANOS_PER_SECOND)
        return cls(seconds=seconds, nanos=nanos)

    def to_seconds(self) -> float:
        """Return fractional seconds."""
        return self.seconds + self.nanos / NANOS_PER_SECOND


class Timestamp(_SecondsNanos):
    """Point in time as seconds since the epoch plus nanoseconds."""


class Duration(_SecondsNanos):
    """Elapsed time as seconds plus nanoseconds."""


class Attachment(Model):
    """Auxiliary artifact attached to a node, inline or by reference."""

    model_config = ConfigDict(extra="allow")

    body: str | None = Field(default=None, description="Encoded inline payload")
    content_encoding: ContentEncoding = Field(
        default=ContentEncoding.IDENTITY, description="Encoding of body"
    )
    file_name: str | None = Field(default=None, description="Suggested file name")
    media_type: str = Field(..., description="MIME type of the decoded payload")
    url: str | None = Field(default=None, description="Location of an external body")

    @model_validator(mode="after")
    def _check_body_or_url(self) -> Self:
        if (self.body is None) == (self.url is None):
            raise ValueError("exactly one of body or url must be set")
        return self


class TestNode(Model):
    """One record of the stream: a leaf test result or a container.

    Fields the engine does not know are kept as the node payload so tools can
    carry type-specific data without engine changes.
    """

    __test__ = False

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Unique id within the stream")
    parent_id: str | None = Field(default=None, description="Id of the parent node")
    type: str = Field(..., description="Tool-defined node type")
    source_ref: str = Field(..., description="Opaque reference to the source")
    entity_id: str | None = Field(
        default=None, description="Opaque cross-execution identifier"
    )
    name: str = Field(..., description="Human-readable name")
    timestamp: Timestamp | None = None
    duration: Duration | None = None
    result: Status | None = None
    attachments: tuple[Attachment, ...] = ()
    tags: tuple[str, ...] = ()

    @field_validator("result", mode="before")
    @classmethod
    def _coerce_result(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, Status):
            return Status.parse(value)
        return value

    @property
    def is_root(self) -> bool:
        """Return True if the node declares no parent."""
        return self.parent_id is None

    @property
    def tag_set(self) -> frozenset[str]:
        """Tags as an unordered set for filtering."""
        return frozenset(self.tags)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Fields of the record not known to the engine."""
        return self.model_extra or {}
