"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for the record source, the ledger, the
media transformer and the publisher so that the core can be reused with
different backends.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from core.models import LedgerOutcome, Record


class RecordSourcePort(Protocol):
    """Read-only access to the message store.

    Implementations return at most ``window_size`` records, newest first, and
    must not track what has been seen; that is the ledger's job.
    """

    def fetch_recent(self, contact: str, window_size: int) -> list[Record]:
        ...


class LedgerPort(Protocol):
    """Durable record id -> outcome mapping."""

    def is_resolved(self, record_id: str) -> bool:
        ...

    def outcome(self, record_id: str) -> Optional[LedgerOutcome]:
        ...

    def mark_posted(self, record_id: str) -> None:
        ...

    def mark_failed_terminal(self, record_id: str) -> None:
        ...

    def counts(self) -> tuple[int, int]:
        ...

    def flush(self) -> None:
        ...


class MediaTransformerPort(Protocol):
    """Turns an attachment path into an upload-ready local file."""

    def resolve(self, path: str) -> str:
        ...

    def needs_transform(self, path: str, media_kind: str = "") -> bool:
        ...

    def transform(self, path: str) -> str:
        ...

    def prepare(self, path: str, media_kind: str = "") -> str:
        ...


class PublisherPort(Protocol):
    """Remote posting operations required by the core pipeline."""

    async def verify_identity(self) -> bool:
        ...

    async def upload_media(self, data: bytes, mime_hint: str) -> str:
        ...

    async def post(self, text: str, media_refs: Sequence[str]) -> str:
        ...
