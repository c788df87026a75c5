"""
Progress calculation over a product's phase rows.

Completed phases count in full and running phases count as half done. The
flat half credit ignores a running phase's own progress_percentage.
"""

import math
from typing import Callable, Iterable, Optional

from flipforge.models.schemas import PhaseStatus, PipelinePhase
from flipforge.pipeline.phases import TOTAL_PHASES

RUNNING_PHASE_CREDIT = 50


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def compute_progress(phases: Iterable[PipelinePhase]) -> int:
    """
    Map a set of phase rows to an integer completion percentage.

    Args:
        phases: Phase rows for one product, possibly empty.

    Returns:
        Integer in [0, 100].
    """
    completed = 0
    running = 0
    for phase in phases:
        if phase.status == PhaseStatus.COMPLETED:
            completed += 1
        elif phase.status == PhaseStatus.RUNNING:
            running += 1

    if completed == 0 and running == 0:
        return 0

    progress = completed / TOTAL_PHASES * 100
    if running:
        progress += running / TOTAL_PHASES * RUNNING_PHASE_CREDIT

    return min(100, round_half_up(progress))


class ProgressTracker:
    """Reports per-step progress of a running phase to an optional callback."""

    def __init__(
        self,
        steps: int,
        callback: Optional[Callable[[int, str], None]] = None,
    ):
        self.steps = max(1, steps)
        self.callback = callback
        self.completed_steps = 0

    def advance(self, message: str = "") -> int:
        """Mark one step done and return the phase percentage."""
        self.completed_steps = min(self.steps, self.completed_steps + 1)
        percent = round_half_up(self.completed_steps / self.steps * 100)
        if self.callback:
            self.callback(percent, message)
        return percent

    @property
    def done(self) -> bool:
        return self.completed_steps >= self.steps


__all__ = ["compute_progress", "round_half_up", "ProgressTracker", "RUNNING_PHASE_CREDIT"]
