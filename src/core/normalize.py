"""Record normalization helpers (core domain)."""

from __future__ import annotations

import logging
import os
from typing import Iterable, List

from core.models import Attachment, NormalizedUnit, Record

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "…"

SUPPORTED_IMAGE_KINDS = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)

# Used only when the source did not report a MIME type.
SUPPORTED_IMAGE_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".heif"}
)


def truncate_text(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` characters, marker included."""

    if len(text) <= max_length:
        return text
    if max_length <= len(TRUNCATION_MARKER):
        return TRUNCATION_MARKER[:max_length]
    return text[: max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def is_image_attachment(attachment: Attachment) -> bool:
    kind = attachment.media_kind.strip().lower()
    if kind:
        return kind in SUPPORTED_IMAGE_KINDS
    _, ext = os.path.splitext(attachment.path)
    return ext.lower() in SUPPORTED_IMAGE_EXTENSIONS


def select_media(attachments: Iterable[Attachment]) -> List[str]:
    """Return image attachment paths in source order, skipping everything else."""

    paths: List[str] = []
    for attachment in attachments:
        if not attachment.path:
            continue
        if is_image_attachment(attachment):
            paths.append(attachment.path)
        else:
            LOGGER.info(
                "Skipping unsupported attachment type %s (%s)",
                attachment.media_kind or "unknown",
                os.path.basename(attachment.path),
            )
    return paths


def normalize_record(record: Record, max_text_length: int, max_media: int) -> NormalizedUnit:
    """Build the publishable form of a record.

    Text is stripped and then truncated on the character sequence. Media is
    capped to ``max_media``; the overflow is dropped and reported through a
    warning and ``dropped_media``, never as an error.
    """

    original_text = (record.raw_text or "").strip()
    publish_text = truncate_text(original_text, max_text_length)
    was_truncated = len(publish_text) < len(original_text)
    if was_truncated:
        LOGGER.info(
            "Record %s truncated from %s to %s characters",
            record.id,
            len(original_text),
            len(publish_text),
        )

    media_paths = select_media(record.attachments)
    dropped = max(len(media_paths) - max_media, 0)
    if dropped:
        LOGGER.warning(
            "Record %s has %s images but only %s are allowed per post; dropping %s",
            record.id,
            len(media_paths),
            max_media,
            dropped,
        )
        media_paths = media_paths[:max_media]

    return NormalizedUnit(
        publish_text=publish_text,
        media_paths=tuple(media_paths),
        original_text=original_text,
        was_truncated=was_truncated,
        dropped_media=dropped,
    )


def format_summary(unit: NormalizedUnit) -> str:
    """Short human-readable description of a unit for log lines."""

    parts: List[str] = []
    if unit.publish_text:
        preview = unit.publish_text
        if len(preview) > 50:
            preview = preview[:50] + "..."
        parts.append(f'text "{preview}"')
    if unit.media_paths:
        parts.append(f"{len(unit.media_paths)} image(s)")
    if unit.was_truncated:
        parts.append("(truncated)")
    return ", ".join(parts) or "empty"


_UPLOAD_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def mime_for_path(path: str) -> str:
    """Upload MIME hint for a prepared file, defaulting to JPEG."""

    _, ext = os.path.splitext(path)
    return _UPLOAD_MIME_TYPES.get(ext.lower(), "image/jpeg")
