"""Error taxonomy shared by the core and the adapters."""

from __future__ import annotations


class TextweetError(Exception):
    """Base class for every error raised by textweet."""


class SourceUnavailable(TextweetError):
    """The record source could not be queried for this cycle."""


class AttachmentError(TextweetError):
    """A single attachment could not be made into uploaded media."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(message)


class NotFoundError(AttachmentError):
    """The attachment path does not exist after resolution."""

    def __init__(self, path: str) -> None:
        super().__init__(path, f"Image file not found: {path}")


class TransformError(AttachmentError):
    """The attachment bytes could not be read or converted."""


class UploadError(AttachmentError):
    """The remote API rejected or failed the media upload."""


class PublishError(TextweetError):
    """Post-level failure. The record is terminal and never retried."""


class PostError(PublishError):
    """The post call failed; the remote side may have partially applied it."""


class PersistenceError(TextweetError):
    """The ledger could not be written durably."""
