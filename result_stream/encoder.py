"""Encoding of test node records for producers and round trips."""

import json
from collections.abc import Iterable
from typing import Any, BinaryIO, Literal

from result_stream.models.base import Model
from result_stream.models.node import TestNode


def _wire_fields(model: Model) -> dict[str, Any]:
    """Known fields under wire names without unset optionals, extras verbatim."""
    data = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    data.update(model.model_extra or {})
    return data


def encode_record(node: TestNode) -> str:
    """Encode a node as one compact JSON record using wire field names.

    Optional fields that are unset are omitted. Unknown fields carried by the
    node or its attachments are written back unchanged, ``null`` included;
    they must hold plain JSON values, as decoded records do.
    """
    data = _wire_fields(node)
    if node.attachments:
        data["attachments"] = [_wire_fields(attachment) for attachment in node.attachments]
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def write_records(
    nodes: Iterable[TestNode],
    stream: BinaryIO,
    framing: Literal["lines", "array"] = "lines",
) -> int:
    """Write nodes to a binary stream and return the number written."""
    count = 0
    if framing == "array":
        stream.write(b"[")
    for node in nodes:
        record = encode_record(node).encode("utf-8")
        if framing == "array":
            if count:
                stream.write(b",")
            stream.write(record)
        else:
            stream.write(record + b"\n")
        count += 1
    if framing == "array":
        stream.write(b"]")
    return count
