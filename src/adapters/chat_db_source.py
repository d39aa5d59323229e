"""Messages (chat.db) record source adapter.

Implements the core RecordSourcePort by reading the macOS Messages SQLite
database in read-only mode.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.errors import SourceUnavailable
from core.models import Attachment, Record

LOGGER = logging.getLogger(__name__)

DEFAULT_CHAT_DB = os.path.join("~", "Library", "Messages", "chat.db")

# Messages timestamps count from 2001-01-01 UTC, in seconds on older macOS
# releases and in nanoseconds on newer ones.
APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)
_NANOSECOND_THRESHOLD = 10**11


def apple_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a chat.db ``date`` column value to an aware datetime."""

    if not value:
        return None
    seconds = value / 1_000_000_000 if abs(value) > _NANOSECOND_THRESHOLD else value
    return APPLE_EPOCH + timedelta(seconds=seconds)


class ContactNotFound(SourceUnavailable):
    """The configured contact has no handle in the Messages database."""


class ChatDbRecordSource:
    """Thin read-only SQLite wrapper that satisfies the RecordSourcePort contract."""

    def __init__(self, db_path: str = DEFAULT_CHAT_DB) -> None:
        self._db_path = os.path.expanduser(db_path)

    def _connect(self) -> sqlite3.Connection:
        # mode=ro refuses to create a missing database and never writes.
        conn = sqlite3.connect(f"file:{self._db_path}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self, contact: str) -> None:
        """Preflight: the database is readable and ``contact`` has a handle.

        Raises SourceUnavailable with a message suitable for the user.
        """

        if not os.path.exists(self._db_path):
            raise SourceUnavailable(f"Messages database not found at {self._db_path}")
        try:
            handles = self._handle_ids(contact)
        except sqlite3.Error as exc:
            raise SourceUnavailable(f"Could not open {self._db_path}: {exc}") from exc
        if not handles:
            raise ContactNotFound(f"Contact {contact} not found in Messages database")
        LOGGER.info("Found contact %s (handle ids %s)", contact, ", ".join(map(str, handles)))

    def _handle_ids(self, contact: str) -> list[int]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT ROWID FROM handle WHERE id = ?", (contact,)).fetchall()
        finally:
            conn.close()
        return [int(row["ROWID"]) for row in rows]

    def list_handles(self, limit: int = 20) -> list[tuple[str, str]]:
        """Return ``(id, service)`` pairs for contact discovery."""

        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT id, service FROM handle ORDER BY id LIMIT ?",
                    (limit,),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise SourceUnavailable(f"Could not list handles: {exc}") from exc
        return [(row["id"], row["service"] or "") for row in rows]

    def fetch_recent(self, contact: str, window_size: int) -> list[Record]:
        """Return up to ``window_size`` outbound messages to ``contact``, newest first."""

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise SourceUnavailable(f"Could not open {self._db_path}: {exc}") from exc
        try:
            # A contact can own several handle rows (iMessage and SMS), so the
            # match is on the handle string rather than a single ROWID.
            rows = conn.execute(
                """
                SELECT m.ROWID AS rowid, m.text AS text, m.date AS date
                FROM message m
                JOIN handle h ON h.ROWID = m.handle_id
                WHERE h.id = ?
                  AND m.is_from_me = 1
                ORDER BY m.date DESC, m.ROWID DESC
                LIMIT ?
                """,
                (contact, window_size),
            ).fetchall()
            records = [
                Record(
                    id=str(row["rowid"]),
                    raw_text=row["text"] or "",
                    attachments=self._attachments(conn, int(row["rowid"])),
                    created_at=apple_timestamp(row["date"]),
                )
                for row in rows
            ]
        except sqlite3.Error as exc:
            raise SourceUnavailable(f"Failed to query messages: {exc}") from exc
        finally:
            conn.close()
        return records

    def _attachments(self, conn: sqlite3.Connection, message_rowid: int) -> tuple[Attachment, ...]:
        rows = conn.execute(
            """
            SELECT a.filename AS filename, a.mime_type AS mime_type, a.transfer_name AS transfer_name
            FROM attachment a
            JOIN message_attachment_join maj ON a.ROWID = maj.attachment_id
            WHERE maj.message_id = ?
            ORDER BY a.ROWID
            """,
            (message_rowid,),
        ).fetchall()
        attachments = []
        for row in rows:
            path = row["filename"] or row["transfer_name"]
            if not path:
                continue
            attachments.append(Attachment(path=path, media_kind=row["mime_type"] or ""))
        return tuple(attachments)
