"""
Plaintext payload codec.

Text travels as bare plaintext. A file travels as a tagged JSON object:

    {"kind": "file", "file": {"url", "iv", "name", "mime_type", "size"},
     "caption": "..."}

Decoding never fails: anything that is not a well-formed file object,
including JSON that merely looks like one, is treated as text.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from ..models import FileAttachment

logger = logging.getLogger("raabta.sync.payload")

FILE_KIND = "file"


def encode_text(text: str) -> str:
    return text


def encode_file_payload(attachment: FileAttachment, caption: str = "") -> str:
    """Serialize an uploaded-file descriptor plus optional caption."""
    descriptor = attachment.model_dump(
        mode="json", include={"url", "iv", "name", "mime_type", "size"},
    )
    return json.dumps({"kind": FILE_KIND, "file": descriptor, "caption": caption})


def decode_payload(plaintext: str) -> tuple[str, Optional[FileAttachment]]:
    """Split a decrypted payload into ``(text, attachment)``.

    Objects without a ``kind`` but with a ``file`` carrying a ``url`` are
    accepted as files too, for peers that predate the tag.
    """
    stripped = plaintext.lstrip()
    if not stripped.startswith("{"):
        return plaintext, None
    try:
        data = json.loads(plaintext)
    except ValueError:
        return plaintext, None
    if not isinstance(data, dict):
        return plaintext, None

    kind = data.get("kind")
    descriptor = data.get("file")
    if kind not in (None, FILE_KIND) or not isinstance(descriptor, dict):
        return plaintext, None
    if not descriptor.get("url"):
        return plaintext, None

    try:
        attachment = FileAttachment(
            name=descriptor.get("name") or "file",
            mime_type=descriptor.get("mime_type") or descriptor.get("mimeType")
            or "application/octet-stream",
            size=int(descriptor.get("size") or 0),
            url=descriptor["url"],
            iv=descriptor.get("iv"),
        )
    except (ValidationError, TypeError, ValueError) as exc:
        logger.debug("Malformed file descriptor, treating as text: %s", exc)
        return plaintext, None

    caption = data.get("caption")
    return (caption if isinstance(caption, str) else ""), attachment
