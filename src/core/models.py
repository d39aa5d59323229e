"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from core.errors import AttachmentError


@dataclass(frozen=True)
class Attachment:
    """Attachment descriptor as reported by the record source."""

    path: str
    media_kind: str = ""


@dataclass(frozen=True)
class Record:
    """One outbound message fetched from the source."""

    id: str
    raw_text: str
    attachments: tuple[Attachment, ...] = ()
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class NormalizedUnit:
    """Truncated text plus capped media, ready for the publisher."""

    publish_text: str
    media_paths: tuple[str, ...]
    original_text: str
    was_truncated: bool
    dropped_media: int = 0

    def is_valid(self) -> bool:
        return bool(self.publish_text) or bool(self.media_paths)


class LedgerOutcome(Enum):
    POSTED = "posted"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerEntry:
    """Persisted terminal outcome for one record id."""

    record_id: str
    outcome: LedgerOutcome


@dataclass(frozen=True)
class UploadedMedia:
    """Remote reference for an uploaded attachment, valid for one record."""

    media_ref: str
    source_path: str


@dataclass(frozen=True)
class AttachmentResult:
    """Result of preparing and uploading one attachment."""

    path: str
    media: Optional[UploadedMedia] = None
    error: Optional[AttachmentError] = None

    @property
    def ok(self) -> bool:
        return self.media is not None


class RecordStatus(Enum):
    POSTED = "posted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RecordResult:
    """Outcome of processing one record, used for the outcome log line."""

    record_id: str
    status: RecordStatus
    post_id: Optional[str] = None
    media_uploaded: int = 0
    media_failed: int = 0
    detail: str = ""


@dataclass
class CycleReport:
    """Summary of one poll cycle."""

    fetched: int = 0
    pending: int = 0
    results: list[RecordResult] = field(default_factory=list)
    fetch_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.fetch_error is None
