"""Pipeline module for the FlipForge pipeline."""

from flipforge.pipeline.phases import (
    PHASES,
    PhaseDefinition,
    get_phase_name,
    next_phase,
    validate_phase_number,
)
from flipforge.pipeline.progress import ProgressTracker, compute_progress
from flipforge.pipeline.tasks import BackgroundWork, CancellationToken, WorkRegistry
from flipforge.pipeline.state_machine import PipelineStateMachine
from flipforge.pipeline.handlers import PhaseContext, PhaseHandlers
from flipforge.pipeline.driver import (
    AdvanceAction,
    PipelineDriver,
    PipelineRunSummary,
    create_pipeline_driver,
)

__all__ = [
    # Phases
    "PHASES",
    "PhaseDefinition",
    "get_phase_name",
    "next_phase",
    "validate_phase_number",
    # Progress
    "compute_progress",
    "ProgressTracker",
    # Background work
    "BackgroundWork",
    "CancellationToken",
    "WorkRegistry",
    # State machine and driver
    "PipelineStateMachine",
    "PhaseContext",
    "PhaseHandlers",
    "PipelineDriver",
    "PipelineRunSummary",
    "AdvanceAction",
    "create_pipeline_driver",
]
