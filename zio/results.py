from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class Outcome(str, Enum):
    OPTIMIZED = "optimized"
    NOT_OPTIMIZED = "not_optimized"
    RESTORED = "restored"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    Outcome.OPTIMIZED: "OPTIMIZED",
    Outcome.NOT_OPTIMIZED: "NOT OPTIMIZED",
    Outcome.RESTORED: "NOT OPTIMIZED",
    Outcome.FAILED: "FAILED",
    Outcome.SKIPPED: "SKIPPING",
}


@dataclass(frozen=True)
class ProcessResult:
    """
    What happened to a single image.

    size_before/size_after are the bytes counted into the run totals, so for
    a restored or failed file both are the original size.
    Skipped files never reach the totals; their sizes are informational.
    """
    path: Path
    image_format: Optional[str]
    outcome: Outcome
    size_before: int = 0
    size_after: int = 0
    tool: Optional[str] = None
    reason: Optional[str] = None

    @property
    def saved_bytes(self) -> int:
        return max(0, self.size_before - self.size_after)

    @property
    def saved_percent(self) -> float:
        if self.size_before <= 0:
            return 0.0
        return (self.saved_bytes / self.size_before) * 100.0
