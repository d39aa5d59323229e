"""JSON file ledger adapter.

Implements the core LedgerPort with a single JSON document that is rewritten
atomically on every change.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core.errors import PersistenceError
from core.models import LedgerEntry, LedgerOutcome

LOGGER = logging.getLogger(__name__)


class JsonLedger:
    """Durable record id -> outcome map that satisfies the LedgerPort contract.

    Layout::

        {"posted": ["101", ...], "failed": ["99", ...], "lastUpdated": "<iso>"}
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._entries: dict[str, LedgerOutcome] = {}
        self._dirty = False
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Read the ledger, starting empty when the file is missing or broken."""

        if not self._path.exists():
            LOGGER.warning("No ledger found at %s, starting fresh", self._path)
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            posted = data.get("posted", [])
            failed = data.get("failed", [])
            entries = {str(record_id): LedgerOutcome.POSTED for record_id in posted}
            # A record listed in both keeps the last write's outcome, which
            # mark_posted guarantees is POSTED.
            for record_id in failed:
                entries.setdefault(str(record_id), LedgerOutcome.FAILED)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            LOGGER.warning("Failed to load ledger %s, starting fresh: %s", self._path, exc)
            return
        self._entries = entries
        posted_count, failed_count = self.counts()
        LOGGER.info("Loaded ledger: %s posted, %s failed", posted_count, failed_count)

    def _save(self) -> None:
        data = {
            "posted": self._ids(LedgerOutcome.POSTED),
            "failed": self._ids(LedgerOutcome.FAILED),
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            if self._path.parent and not self._path.parent.exists():
                self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, self._path)
        except OSError as exc:
            self._dirty = True
            raise PersistenceError(f"Failed to write ledger {self._path}: {exc}") from exc
        self._dirty = False

    def _ids(self, outcome: LedgerOutcome) -> list[str]:
        return [record_id for record_id, value in self._entries.items() if value is outcome]

    def is_resolved(self, record_id: str) -> bool:
        return record_id in self._entries

    def outcome(self, record_id: str) -> Optional[LedgerOutcome]:
        return self._entries.get(record_id)

    def entry(self, record_id: str) -> Optional[LedgerEntry]:
        outcome = self._entries.get(record_id)
        return LedgerEntry(record_id, outcome) if outcome else None

    def mark_posted(self, record_id: str) -> None:
        """Record a successful (or skipped) record; durable before returning."""

        self._entries[record_id] = LedgerOutcome.POSTED
        self._save()

    def mark_failed_terminal(self, record_id: str) -> None:
        """Record a record that must never be retried; durable before returning."""

        self._entries[record_id] = LedgerOutcome.FAILED
        self._save()

    def counts(self) -> tuple[int, int]:
        posted = sum(1 for value in self._entries.values() if value is LedgerOutcome.POSTED)
        return posted, len(self._entries) - posted

    def flush(self) -> None:
        """Retry the last write if it failed."""

        if self._dirty:
            self._save()
