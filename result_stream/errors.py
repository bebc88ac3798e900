"""Exceptions raised by the stream engine."""

from collections.abc import Sequence
from typing import Any


class ResultStreamError(Exception):
    """Base exception for result stream errors."""


class DecodeError(ResultStreamError):
    """Raised when the byte stream is not syntactically valid."""

    def __init__(self, message: str, *, offset: int | None = None) -> None:
        self.offset = offset
        super().__init__(
            message if offset is None else f"{message} (at byte {offset})"
        )


class ValidationError(ResultStreamError):
    """Raised when a record violates the node schema."""

    def __init__(
        self,
        message: str,
        *,
        offset: int | None = None,
        errors: Sequence[Any] = (),
    ) -> None:
        self.offset = offset
        self.errors = errors
        super().__init__(
            message if offset is None else f"{message} (at byte {offset})"
        )


class CycleError(ResultStreamError):
    """Raised when attaching a node would make it its own ancestor."""

    def __init__(self, node_id: str, parent_id: str) -> None:
        self.node_id = node_id
        self.parent_id = parent_id
        super().__init__(
            f"Attaching {node_id!r} under {parent_id!r} would create a cycle"
        )


class LateAttachError(ResultStreamError):
    """Raised when a record names an already-finalized node as its parent."""

    def __init__(self, node_id: str, parent_id: str) -> None:
        self.node_id = node_id
        self.parent_id = parent_id
        super().__init__(
            f"Node {node_id!r} references finalized parent {parent_id!r}"
        )


class CodecError(ResultStreamError):
    """Raised when an attachment payload cannot be decoded."""


class ExternalAttachment(CodecError):
    """Raised when an attachment body lives behind a URL and no fetcher is set."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Attachment body is external and must be fetched: {url}")


class NotFound(ResultStreamError, KeyError):
    """Raised when a node is absent, not yet materialized, or released."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node {node_id!r} not found")

    def __str__(self) -> str:
        return str(self.args[0])


class ConfigurationError(ResultStreamError):
    """Raised when configuration is invalid or cannot be loaded."""
