from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from core.config import PipelineConfig
from core.errors import NotFoundError, PersistenceError, PostError, SourceUnavailable, UploadError
from core.models import Attachment, LedgerOutcome, Record, RecordStatus
from core.orchestrator import PipelineOrchestrator, ShutdownReason


class FakeLedger:
    def __init__(self, fail_writes: bool = False) -> None:
        self.entries: dict[str, LedgerOutcome] = {}
        self.calls: list[tuple[str, LedgerOutcome]] = []
        self.flushed = 0
        self._fail_writes = fail_writes

    def is_resolved(self, record_id: str) -> bool:
        return record_id in self.entries

    def outcome(self, record_id: str) -> Optional[LedgerOutcome]:
        return self.entries.get(record_id)

    def _write(self, record_id: str, outcome: LedgerOutcome) -> None:
        self.entries[record_id] = outcome
        self.calls.append((record_id, outcome))
        if self._fail_writes:
            raise PersistenceError("disk full")

    def mark_posted(self, record_id: str) -> None:
        self._write(record_id, LedgerOutcome.POSTED)

    def mark_failed_terminal(self, record_id: str) -> None:
        self._write(record_id, LedgerOutcome.FAILED)

    def counts(self) -> tuple[int, int]:
        posted = sum(1 for value in self.entries.values() if value is LedgerOutcome.POSTED)
        return posted, len(self.entries) - posted

    def flush(self) -> None:
        self.flushed += 1


class FakePublisher:
    def __init__(self, fail_uploads: Sequence[bytes] = (), fail_post: bool = False) -> None:
        self.uploads: list[tuple[bytes, str]] = []
        self.posts: list[tuple[str, list[str]]] = []
        self._fail_uploads = set(fail_uploads)
        self._fail_post = fail_post

    async def verify_identity(self) -> bool:
        return True

    async def upload_media(self, data: bytes, mime_hint: str) -> str:
        self.uploads.append((data, mime_hint))
        if data in self._fail_uploads:
            raise UploadError("media.jpg", "upload rejected")
        return f"media-{data.decode()}"

    async def post(self, text: str, media_refs: Sequence[str]) -> str:
        self.posts.append((text, list(media_refs)))
        if self._fail_post:
            raise PostError("connection reset")
        return f"tweet-{len(self.posts)}"


class FakeTransformer:
    """Returns the path unchanged, raising NotFoundError for listed paths."""

    def __init__(self, missing: Sequence[str] = ()) -> None:
        self.prepared: list[str] = []
        self._missing = set(missing)

    def resolve(self, path: str) -> str:
        return path

    def needs_transform(self, path: str, media_kind: str = "") -> bool:
        return False

    def transform(self, path: str) -> str:
        return path

    def prepare(self, path: str, media_kind: str = "") -> str:
        self.prepared.append(path)
        if path in self._missing:
            raise NotFoundError(path)
        return path


class FakeSource:
    """Serves the same newest-first batch on every call unless told to fail."""

    def __init__(self, records: Sequence[Record] = (), failures: Sequence[bool] = ()) -> None:
        self.records = list(records)
        self.calls = 0
        self._failures = list(failures)

    def fetch_recent(self, contact: str, window_size: int) -> list[Record]:
        self.calls += 1
        if self._failures and self._failures.pop(0):
            raise SourceUnavailable("database is locked")
        return self.records[:window_size]


def _config(**overrides) -> PipelineConfig:
    values = dict(contact="+15550001111", max_text_length=280, max_media=4, poll_interval=0.0)
    values.update(overrides)
    return PipelineConfig(**values)


def _images(tmp_path, names: Sequence[str]) -> tuple[Attachment, ...]:
    attachments = []
    for name in names:
        path = tmp_path / f"{name}.jpg"
        path.write_bytes(name.encode())
        attachments.append(Attachment(path=str(path), media_kind="image/jpeg"))
    return tuple(attachments)


def _orchestrator(source, publisher=None, ledger=None, transformer=None, **config):
    return PipelineOrchestrator(
        source=source,
        publisher=publisher or FakePublisher(),
        ledger=ledger if ledger is not None else FakeLedger(),
        transformer=transformer or FakeTransformer(),
        config=_config(**config),
    )


def test_processes_pending_records_oldest_first() -> None:
    source = FakeSource([Record("3", "third"), Record("2", "second"), Record("1", "first")])
    publisher = FakePublisher()
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    report = asyncio.run(orchestrator.run_cycle())

    assert [text for text, _ in publisher.posts] == ["first", "second", "third"]
    assert [record_id for record_id, _ in ledger.calls] == ["1", "2", "3"]
    assert report.fetched == 3
    assert report.pending == 3
    assert all(result.status is RecordStatus.POSTED for result in report.results)


def test_resolved_records_never_reach_the_publisher() -> None:
    source = FakeSource([Record("2", "new"), Record("1", "old")])
    publisher = FakePublisher()
    ledger = FakeLedger()
    ledger.entries["1"] = LedgerOutcome.POSTED
    orchestrator = _orchestrator(source, publisher, ledger)

    asyncio.run(orchestrator.run_cycle())
    asyncio.run(orchestrator.run_cycle())

    assert publisher.posts == [("new", [])]


def test_empty_record_is_skipped_with_one_ledger_call() -> None:
    source = FakeSource([Record("7", "")])
    publisher = FakePublisher()
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    report = asyncio.run(orchestrator.run_cycle())

    assert ledger.calls == [("7", LedgerOutcome.POSTED)]
    assert publisher.posts == []
    assert publisher.uploads == []
    assert report.results[0].status is RecordStatus.SKIPPED


def test_long_text_is_truncated_before_posting() -> None:
    source = FakeSource([Record("1", "x" * 15)])
    publisher = FakePublisher()
    orchestrator = _orchestrator(source, publisher, max_text_length=10)

    asyncio.run(orchestrator.run_cycle())

    text, _ = publisher.posts[0]
    assert len(text) == 10
    assert text.endswith("…")


def test_attachment_cap_drops_extra_uploads(tmp_path) -> None:
    attachments = _images(tmp_path, ["a", "b", "c", "d", "e", "f"])
    source = FakeSource([Record("1", "six photos", attachments)])
    publisher = FakePublisher()
    transformer = FakeTransformer()
    orchestrator = _orchestrator(source, publisher, transformer=transformer)

    asyncio.run(orchestrator.run_cycle())

    assert sorted(data for data, _ in publisher.uploads) == [b"a", b"b", b"c", b"d"]
    assert len(transformer.prepared) == 4
    assert publisher.posts == [("six photos", ["media-a", "media-b", "media-c", "media-d"])]


def test_partial_upload_failure_posts_remaining_media(tmp_path, caplog) -> None:
    attachments = _images(tmp_path, ["one", "two", "three"])
    source = FakeSource([Record("1", "trip", attachments)])
    publisher = FakePublisher(fail_uploads=[b"two"])
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    with caplog.at_level(logging.WARNING, logger="core.orchestrator"):
        report = asyncio.run(orchestrator.run_cycle())

    assert publisher.posts == [("trip", ["media-one", "media-three"])]
    assert ledger.outcome("1") is LedgerOutcome.POSTED
    assert report.results[0].media_uploaded == 2
    assert report.results[0].media_failed == 1
    assert any("two.jpg" in message for message in caplog.messages)


def test_missing_attachment_does_not_abort_siblings(tmp_path) -> None:
    attachments = _images(tmp_path, ["kept", "gone"])
    source = FakeSource([Record("1", "", attachments)])
    publisher = FakePublisher()
    transformer = FakeTransformer(missing=[attachments[1].path])
    orchestrator = _orchestrator(source, publisher, transformer=transformer)

    asyncio.run(orchestrator.run_cycle())

    assert publisher.posts == [(" ", ["media-kept"])]


def test_media_only_record_with_no_successful_upload_is_skipped(tmp_path) -> None:
    attachments = _images(tmp_path, ["bad"])
    source = FakeSource([Record("1", "", attachments)])
    publisher = FakePublisher(fail_uploads=[b"bad"])
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    report = asyncio.run(orchestrator.run_cycle())

    assert publisher.posts == []
    assert ledger.calls == [("1", LedgerOutcome.POSTED)]
    assert report.results[0].status is RecordStatus.SKIPPED


def test_text_record_still_posts_when_all_uploads_fail(tmp_path) -> None:
    attachments = _images(tmp_path, ["bad"])
    source = FakeSource([Record("1", "caption", attachments)])
    publisher = FakePublisher(fail_uploads=[b"bad"])
    orchestrator = _orchestrator(source, publisher)

    asyncio.run(orchestrator.run_cycle())

    assert publisher.posts == [("caption", [])]


def test_failed_post_is_terminal_and_never_retried() -> None:
    source = FakeSource([Record("1", "hello")])
    publisher = FakePublisher(fail_post=True)
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    first = asyncio.run(orchestrator.run_cycle())
    second = asyncio.run(orchestrator.run_cycle())

    assert first.results[0].status is RecordStatus.FAILED
    assert ledger.outcome("1") is LedgerOutcome.FAILED
    assert len(publisher.posts) == 1
    assert second.pending == 0


def test_unexpected_error_is_contained_at_record_boundary() -> None:
    class ExplodingPublisher(FakePublisher):
        async def post(self, text: str, media_refs: Sequence[str]) -> str:
            if text == "boom":
                raise KeyError("data")
            return await super().post(text, media_refs)

    source = FakeSource([Record("2", "fine"), Record("1", "boom")])
    publisher = ExplodingPublisher()
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    asyncio.run(orchestrator.run_cycle())

    assert ledger.outcome("1") is LedgerOutcome.FAILED
    assert ledger.outcome("2") is LedgerOutcome.POSTED


def test_persistence_failure_does_not_block_progress(caplog) -> None:
    source = FakeSource([Record("2", "b"), Record("1", "a")])
    publisher = FakePublisher()
    ledger = FakeLedger(fail_writes=True)
    orchestrator = _orchestrator(source, publisher, ledger)

    with caplog.at_level(logging.ERROR, logger="core.orchestrator"):
        asyncio.run(orchestrator.run_cycle())
        asyncio.run(orchestrator.run_cycle())

    assert len(publisher.posts) == 2
    assert any("State persistence failure" in message for message in caplog.messages)


def test_failure_guard_shuts_down_after_five_fetch_failures() -> None:
    source = FakeSource(failures=[True] * 10)
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, ledger=ledger)

    reason = asyncio.run(orchestrator.run())

    assert reason is ShutdownReason.FAILURE_GUARD
    assert source.calls == 5
    assert ledger.flushed == 1


def test_successful_fetch_resets_failure_counter() -> None:
    source = FakeSource(failures=[True, True, True, True, False, True])
    orchestrator = _orchestrator(source)

    async def cycles() -> list[int]:
        counts = []
        for _ in range(6):
            await orchestrator.run_cycle()
            counts.append(orchestrator.consecutive_failures)
        return counts

    assert asyncio.run(cycles()) == [1, 2, 3, 4, 0, 1]


def test_shutdown_request_stops_between_records_and_flushes() -> None:
    class StoppingPublisher(FakePublisher):
        def __init__(self, orchestrator_ref: list) -> None:
            super().__init__()
            self._ref = orchestrator_ref

        async def post(self, text: str, media_refs: Sequence[str]) -> str:
            self._ref[0].request_shutdown()
            return await super().post(text, media_refs)

    ref: list = []
    source = FakeSource([Record("3", "c"), Record("2", "b"), Record("1", "a")])
    publisher = StoppingPublisher(ref)
    ledger = FakeLedger()
    orchestrator = _orchestrator(source, publisher, ledger, poll_interval=60.0)
    ref.append(orchestrator)

    reason = asyncio.run(orchestrator.run())

    assert reason is ShutdownReason.CANCELLED
    assert publisher.posts == [("a", [])]
    assert ledger.calls == [("1", LedgerOutcome.POSTED)]
    assert ledger.flushed == 1


def test_failed_fetch_doubles_the_next_sleep_only() -> None:
    class RecordingOrchestrator(PipelineOrchestrator):
        def __init__(self, *args, **kwargs) -> None:
            super().__init__(*args, **kwargs)
            self.delays: list[float] = []

        async def _sleep(self, delay: float) -> None:
            self.delays.append(delay)
            if len(self.delays) == 2:
                self.request_shutdown()

    source = FakeSource([Record("1", "hello")], failures=[True, False])
    orchestrator = RecordingOrchestrator(
        source=source,
        publisher=FakePublisher(),
        ledger=FakeLedger(),
        transformer=FakeTransformer(),
        config=_config(poll_interval=3.0),
    )

    reason = asyncio.run(orchestrator.run())

    assert reason is ShutdownReason.CANCELLED
    assert orchestrator.delays == [6.0, 3.0]


def test_ledger_error_after_post_does_not_mark_record_failed(caplog) -> None:
    class BrokenPostedLedger(FakeLedger):
        def mark_posted(self, record_id: str) -> None:
            self.calls.append((record_id, LedgerOutcome.POSTED))
            raise RuntimeError("ledger bug")

    source = FakeSource([Record("1", "hello")])
    publisher = FakePublisher()
    ledger = BrokenPostedLedger()
    orchestrator = _orchestrator(source, publisher, ledger)

    with caplog.at_level(logging.ERROR, logger="core.orchestrator"):
        report = asyncio.run(orchestrator.run_cycle())

    assert publisher.posts == [("hello", [])]
    assert ledger.calls == [("1", LedgerOutcome.POSTED)]
    assert report.results[0].status is RecordStatus.POSTED
    assert any("Ledger could not record posted" in message for message in caplog.messages)


def test_stopping_reflects_shutdown_request() -> None:
    orchestrator = _orchestrator(FakeSource())

    assert not orchestrator.stopping
    orchestrator.request_shutdown()
    assert orchestrator.stopping
