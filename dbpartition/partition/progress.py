"""
Percentage progress notices for long running partition phases.

A phase reports at every 10% boundary of its cumulative count (rounded
down) and always ends with exactly one 100% notice, even when integer
rounding skipped the last boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress notice.

    Attributes:
        phase: Phase name, e.g. "grouping" or "writing"
        percent: Boundary reached (10, 20, ... 100)
        count: Items processed so far
        total: Items expected in the phase
    """

    phase: str
    percent: int
    count: int
    total: int


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Tracks a phase's cumulative count and emits boundary notices.

    Example:
        >>> progress = ProgressReporter("grouping", total=25)
        >>> for record in records:
        ...     progress.advance()
        >>> progress.finish()
    """

    def __init__(
        self,
        phase: str,
        total: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.phase = phase
        self.total = total
        self.on_progress = on_progress
        self.count = 0
        self._last_percent = 0
        self._completed = False

    def advance(self, n: int = 1) -> None:
        """Add n processed items and emit a notice if a boundary was crossed."""
        self.count += n
        if self._completed or self.total <= 0:
            return

        percent = min(self.count * 100 // self.total, 100) // 10 * 10
        if percent > self._last_percent:
            self._emit(percent)

    def finish(self, summary: str | None = None) -> None:
        """Emit the final notice if it hasn't been emitted yet.

        Args:
            summary: Outcome of a phase that did not fully succeed, logged
                instead of "100% complete"
        """
        if not self._completed:
            self._emit(100, summary)

    def _emit(self, percent: int, summary: str | None = None) -> None:
        self._last_percent = percent
        if percent == 100:
            self._completed = True

        event = ProgressEvent(self.phase, percent, self.count, self.total)
        message = f"{self.phase}: {percent}% complete"
        if summary:
            message = f"{self.phase}: finished, {summary}"
        logger.info(
            message,
            extra={"phase": self.phase, "percent": percent, "count": self.count, "total": self.total},
        )
        if self.on_progress is not None:
            self.on_progress(event)
