"""Attachment markers of the form ``[KIND:target]``.

The core only needs enough of the grammar to decide whether an image target
is local (and should be encoded for a vision provider) or a URL that can be
passed through untouched.
"""

import base64
import logging
import mimetypes
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger("courier_agent.attachments")

# Images larger than this are left as references rather than inlined.
MAX_INLINE_IMAGE_BYTES = 5 * 1024 * 1024

_MARKER_RE = re.compile(r"\[([^\[\]:]+):([^\[\]]*)\]")


class AttachmentKind(str, Enum):
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    VOICE = "VOICE"

    @classmethod
    def from_marker(cls, marker: str) -> "AttachmentKind | None":
        name = marker.strip().upper()
        return _ALIASES.get(name)


_ALIASES = {
    "IMAGE": AttachmentKind.IMAGE,
    "PHOTO": AttachmentKind.IMAGE,
    "DOCUMENT": AttachmentKind.DOCUMENT,
    "FILE": AttachmentKind.DOCUMENT,
    "VIDEO": AttachmentKind.VIDEO,
    "AUDIO": AttachmentKind.AUDIO,
    "VOICE": AttachmentKind.VOICE,
}


@dataclass(frozen=True)
class Attachment:
    kind: AttachmentKind
    target: str

    @property
    def is_local(self) -> bool:
        return is_local_path(self.target)


def is_local_path(target: str) -> bool:
    return not (target.startswith("http://") or target.startswith("https://") or target.startswith("data:"))


def _parse_marker(kind: str, target: str) -> Attachment | None:
    parsed_kind = AttachmentKind.from_marker(kind)
    target = target.strip()
    if parsed_kind is None or not target:
        return None
    return Attachment(parsed_kind, target)


def parse_attachment_markers(text: str) -> tuple[str, list[Attachment]]:
    """Split ``text`` into cleaned text and the attachments it references.

    Bracketed text that is not a known marker is kept verbatim.
    """
    attachments: list[Attachment] = []

    def _strip(match: re.Match) -> str:
        attachment = _parse_marker(match.group(1), match.group(2))
        if attachment is None:
            return match.group(0)
        attachments.append(attachment)
        return ""

    cleaned = _MARKER_RE.sub(_strip, text)
    return cleaned.strip(), attachments


def has_attachments(text: str) -> bool:
    return any(_parse_marker(m.group(1), m.group(2)) for m in _MARKER_RE.finditer(text))


def encode_local_image(path: str) -> str | None:
    """Return a ``data:`` URI for a local image, or None if it can't be read."""
    p = Path(path).expanduser()
    try:
        if not p.is_file():
            logger.warning("Image marker points at missing file %s", p)
            return None
        if p.stat().st_size > MAX_INLINE_IMAGE_BYTES:
            logger.warning("Image %s too large to inline (%d bytes)", p, p.stat().st_size)
            return None
        data = p.read_bytes()
    except OSError as exc:
        logger.warning("Could not read image %s: %s", p, exc)
        return None
    mime = mimetypes.guess_type(p.name)[0] or "image/png"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def encode_image_markers(text: str) -> str:
    """Rewrite local image markers so their targets are inline data URIs.

    Remote URLs, non-image markers and unreadable files are left as-is.
    """

    def _encode(match: re.Match) -> str:
        attachment = _parse_marker(match.group(1), match.group(2))
        if attachment is None or attachment.kind != AttachmentKind.IMAGE or not attachment.is_local:
            return match.group(0)
        uri = encode_local_image(attachment.target)
        if uri is None:
            return match.group(0)
        return f"[IMAGE:{uri}]"

    return _MARKER_RE.sub(_encode, text)


def split_content_parts(text: str) -> list[tuple[str, str]]:
    """Split text into ``("text", str)`` and ``("image", target)`` parts in order."""
    parts: list[tuple[str, str]] = []
    cursor = 0
    for match in _MARKER_RE.finditer(text):
        attachment = _parse_marker(match.group(1), match.group(2))
        if attachment is None or attachment.kind != AttachmentKind.IMAGE:
            continue
        before = text[cursor:match.start()].strip()
        if before:
            parts.append(("text", before))
        parts.append(("image", attachment.target))
        cursor = match.end()
    rest = text[cursor:].strip()
    if rest:
        parts.append(("text", rest))
    return parts
