"""Core poll/publish pipeline.

This module is integration-agnostic. It only relies on ports for the record
source, ledger, media transformer and publisher, so the Messages database and
Twitter clients can be swapped without changes here.

Each cycle runs in a strict order:
1) Fetch the newest window of records for the contact
2) Drop records the ledger already resolved
3) Process the rest oldest-first, one at a time
4) Sleep, waking early on shutdown

A record is written to the ledger before the next one starts. The window
between a successful remote post and that ledger write is the only place a
crash can cause a duplicate post on restart; it is accepted, not hidden.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from core.config import PipelineConfig
from core.errors import AttachmentError, PersistenceError, UploadError
from core.models import (
    AttachmentResult,
    CycleReport,
    LedgerOutcome,
    NormalizedUnit,
    Record,
    RecordResult,
    RecordStatus,
    UploadedMedia,
)
from core.normalize import format_summary, mime_for_path, normalize_record
from core.ports import LedgerPort, MediaTransformerPort, PublisherPort, RecordSourcePort

LOGGER = logging.getLogger(__name__)

# The remote API rejects empty payloads, so media-only posts carry a space.
EMPTY_TEXT_PLACEHOLDER = " "


class ShutdownReason(Enum):
    CANCELLED = "cancelled"
    FAILURE_GUARD = "failure_guard"


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


class PipelineOrchestrator:
    """Drives fetch, dedup, transform, upload, post and ledger updates."""

    def __init__(
        self,
        source: RecordSourcePort,
        publisher: PublisherPort,
        ledger: LedgerPort,
        transformer: MediaTransformerPort,
        config: PipelineConfig,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        self._source = source
        self._publisher = publisher
        self._ledger = ledger
        self._transformer = transformer
        self._config = config
        self._stop = stop_event or asyncio.Event()
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_shutdown(self) -> None:
        """Stop at the next record or cycle boundary."""

        self._stop.set()

    async def run(self) -> ShutdownReason:
        """Poll until cancelled or until the failure guard trips."""

        reason = ShutdownReason.CANCELLED
        try:
            while not self.stopping:
                report = await self.run_cycle()
                if self._consecutive_failures >= self._config.max_consecutive_failures:
                    LOGGER.error(
                        "Too many consecutive fetch failures (%s); shutting down",
                        self._consecutive_failures,
                    )
                    reason = ShutdownReason.FAILURE_GUARD
                    self._stop.set()
                    break
                delay = self._config.poll_interval
                if not report.ok:
                    delay *= 2
                await self._sleep(delay)
        finally:
            self._flush_ledger()
        return reason

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _flush_ledger(self) -> None:
        try:
            self._ledger.flush()
        except PersistenceError:
            LOGGER.exception("Ledger flush failed on shutdown; resolved records may repeat after restart")

    async def run_cycle(self) -> CycleReport:
        """Fetch, filter and process one window of records."""

        report = CycleReport()
        try:
            records = await asyncio.to_thread(
                self._source.fetch_recent,
                self._config.contact,
                self._config.window_size,
            )
        except Exception as exc:
            self._consecutive_failures += 1
            report.fetch_error = str(exc)
            LOGGER.error(
                "Fetch failed (%s/%s): %s",
                self._consecutive_failures,
                self._config.max_consecutive_failures,
                exc,
            )
            return report

        self._consecutive_failures = 0
        report.fetched = len(records)

        # The source returns newest-first; process oldest-first so a crash
        # mid-batch resumes in forward order on the next cycle.
        pending = [record for record in records if not self._ledger.is_resolved(record.id)]
        pending.reverse()
        report.pending = len(pending)
        if pending:
            LOGGER.info("Found %s new message(s)", len(pending))

        for record in pending:
            if self.stopping:
                LOGGER.info(
                    "Shutdown requested; leaving %s record(s) for the next run",
                    report.pending - len(report.results),
                )
                break
            report.results.append(await self.process_record(record))
        return report

    async def process_record(self, record: Record) -> RecordResult:
        """Process one record and always leave it resolved in the ledger."""

        try:
            result = await self._process(record)
        except Exception as exc:
            LOGGER.exception("Unexpected error while processing record %s", record.id)
            self._resolve(record.id, LedgerOutcome.FAILED)
            result = RecordResult(record.id, RecordStatus.FAILED, detail=str(exc))
        self._log_outcome(result)
        return result

    async def _process(self, record: Record) -> RecordResult:
        unit = normalize_record(record, self._config.max_text_length, self._config.max_media)
        if not unit.is_valid():
            self._resolve(record.id, LedgerOutcome.POSTED)
            return RecordResult(record.id, RecordStatus.SKIPPED, detail="no text or media")

        LOGGER.info("Record %s: %s", record.id, format_summary(unit))
        kinds = {attachment.path: attachment.media_kind for attachment in record.attachments}
        attachment_results = await self._upload_all(unit, kinds)
        media = [item.media for item in attachment_results if item.ok]
        failed = len(attachment_results) - len(media)

        if unit.media_paths and not media and not unit.publish_text:
            self._resolve(record.id, LedgerOutcome.POSTED)
            return RecordResult(
                record.id,
                RecordStatus.SKIPPED,
                media_failed=failed,
                detail="no media uploaded and no text",
            )

        # A record that reached a post attempt is never attempted again.
        try:
            post_id = await self._publisher.post(
                unit.publish_text or EMPTY_TEXT_PLACEHOLDER,
                [item.media_ref for item in media],
            )
        except Exception as exc:
            self._resolve(record.id, LedgerOutcome.FAILED)
            return RecordResult(
                record.id,
                RecordStatus.FAILED,
                media_uploaded=len(media),
                media_failed=failed,
                detail=str(exc),
            )

        self._resolve(record.id, LedgerOutcome.POSTED)
        return RecordResult(
            record.id,
            RecordStatus.POSTED,
            post_id=post_id,
            media_uploaded=len(media),
            media_failed=failed,
        )

    async def _upload_all(self, unit: NormalizedUnit, kinds: dict[str, str]) -> list[AttachmentResult]:
        if not unit.media_paths:
            return []
        LOGGER.info("Uploading %s media file(s)", len(unit.media_paths))
        slots = asyncio.Semaphore(max(self._config.upload_concurrency, 1))
        return list(
            await asyncio.gather(
                *(self._upload_one(path, kinds.get(path, ""), slots) for path in unit.media_paths)
            )
        )

    async def _upload_one(self, path: str, media_kind: str, slots: asyncio.Semaphore) -> AttachmentResult:
        async with slots:
            try:
                prepared = await asyncio.to_thread(self._transformer.prepare, path, media_kind)
                try:
                    data = await asyncio.to_thread(_read_bytes, prepared)
                except OSError as exc:
                    raise UploadError(path, f"Could not read {prepared}: {exc}") from exc
                media_ref = await self._publisher.upload_media(data, mime_for_path(prepared))
            except AttachmentError as exc:
                LOGGER.warning("Failed to upload %s: %s", path, exc)
                return AttachmentResult(path=path, error=exc)
            except Exception as exc:
                LOGGER.warning("Failed to upload %s: %s", path, exc)
                return AttachmentResult(path=path, error=UploadError(path, str(exc)))
        return AttachmentResult(path=path, media=UploadedMedia(media_ref=media_ref, source_path=path))

    def _resolve(self, record_id: str, outcome: LedgerOutcome) -> None:
        try:
            if outcome is LedgerOutcome.POSTED:
                self._ledger.mark_posted(record_id)
            else:
                self._ledger.mark_failed_terminal(record_id)
        except PersistenceError as exc:
            LOGGER.error(
                "State persistence failure for record %s (%s): %s; it may be posted again after a restart",
                record_id,
                outcome.value,
                exc,
            )
        except Exception:
            # Resolved exactly once: a published post is never re-marked failed.
            LOGGER.exception(
                "Ledger could not record %s for record %s; it may be posted again after a restart",
                outcome.value,
                record_id,
            )

    @staticmethod
    def _log_outcome(result: RecordResult) -> None:
        if result.status is RecordStatus.POSTED:
            LOGGER.info(
                "Record %s posted as %s (%s media, %s failed)",
                result.record_id,
                result.post_id,
                result.media_uploaded,
                result.media_failed,
            )
        elif result.status is RecordStatus.SKIPPED:
            LOGGER.info("Record %s skipped: %s", result.record_id, result.detail)
        else:
            LOGGER.error(
                "Record %s failed and will not be retried: %s",
                result.record_id,
                result.detail,
            )
