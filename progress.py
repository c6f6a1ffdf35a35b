#!/usr/bin/env python3
"""
Progress reporting and cooperative cancellation shared by the scan and
download stages.
"""

import math
from dataclasses import dataclass
from typing import Callable, List, Optional

STAGE_CHECKING = "checking"
STAGE_DOWNLOADING = "downloading"


def percent(current: int, total: int) -> int:
    """Whole-number percentage, halves rounded up. 0 when total is 0."""
    if total <= 0:
        return 0
    return int(math.floor(current / total * 100 + 0.5))


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update for a listener."""
    stage: str
    current: int
    total: int
    progress: int
    message: str

    @classmethod
    def create(cls, stage: str, current: int, total: int, message: str) -> "ProgressEvent":
        return cls(stage=stage, current=current, total=total,
                   progress=percent(current, total), message=message)


ProgressListener = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Fans progress events out to any number of listeners.

    Emission is fire-and-forget: listeners get no ordering guarantees across
    concurrent workers, and a failing listener never interrupts the run.
    """

    def __init__(self, logger=None):
        self.logger = logger
        self.listeners: List[ProgressListener] = []

    def subscribe(self, listener: ProgressListener):
        self.listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def emit(self, event: ProgressEvent):
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception as e:
                if self.logger:
                    self.logger.warning(f"Progress listener failed: {e}")


class CancellationToken:
    """Cancellation flag for a single run.

    Only moves from not-cancelled to cancelled; create a new token per run.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by user"):
        if not self._cancelled:
            self.reason = reason
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self):
        return f"CancellationToken(cancelled={self._cancelled})"
