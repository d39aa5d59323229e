"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for one orchestrator instance."""

    contact: str
    window_size: int = 10
    max_text_length: int = 280
    max_media: int = 4
    poll_interval: float = 3.0
    upload_concurrency: int = 2
    max_consecutive_failures: int = 5
