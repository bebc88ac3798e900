"""Decoding of attachment payloads."""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Protocol

from result_stream.errors import CodecError, ExternalAttachment
from result_stream.models.node import Attachment, ContentEncoding

log = logging.getLogger(__name__)


class AttachmentFetcher(Protocol):
    """Collaborator retrieving attachment bodies referenced by URL."""

    def fetch(self, url: str, media_type: str) -> bytes:
        """Return the raw bytes stored at ``url``."""
        ...


@dataclass(frozen=True, kw_only=True)
class AttachmentCodec:
    """Decodes attachment payloads on demand.

    URL-referenced bodies are handed to ``fetcher``; the codec itself never
    performs network I/O.
    """

    fetcher: AttachmentFetcher | None = None

    def decode(self, attachment: Attachment) -> bytes:
        """Return the decoded payload bytes.

        Raises:
            CodecError: If a BASE64 body is malformed or there is no body at all
            ExternalAttachment: If the body is behind a URL and no fetcher is set

        """
        if attachment.body is None:
            if attachment.url is None:
                raise CodecError("Attachment has neither a body nor a url")
            if self.fetcher is None:
                raise ExternalAttachment(attachment.url)
            log.debug("Fetching attachment body from %s", attachment.url)
            return self.fetcher.fetch(attachment.url, attachment.media_type)

        if attachment.content_encoding is ContentEncoding.BASE64:
            try:
                return base64.b64decode(attachment.body, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise CodecError(
                    f"Malformed BASE64 body in {attachment.file_name or 'attachment'}: {exc}"
                ) from exc
        return attachment.body.encode("utf-8")

    def decode_text(self, attachment: Attachment, encoding: str = "utf-8") -> str:
        """Return the decoded payload as text."""
        data = self.decode(attachment)
        try:
            return data.decode(encoding)
        except UnicodeDecodeError as exc:
            raise CodecError(f"Attachment payload is not {encoding} text: {exc}") from exc


def encode_attachment(
    data: bytes,
    media_type: str,
    *,
    encoding: ContentEncoding = ContentEncoding.BASE64,
    file_name: str | None = None,
) -> Attachment:
    """Build an inline attachment from raw bytes."""
    if encoding is ContentEncoding.BASE64:
        body = base64.b64encode(data).decode("ascii")
    else:
        try:
            body = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CodecError("IDENTITY attachments must be UTF-8 text") from exc
    return Attachment(
        body=body,
        content_encoding=encoding,
        media_type=media_type,
        file_name=file_name,
    )
