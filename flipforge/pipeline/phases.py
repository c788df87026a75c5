"""
Static registry of the four pipeline phases.

Phases run strictly in order; nothing here holds mutable state.
"""

from dataclasses import dataclass
from typing import Any, Optional

from flipforge.utils.errors import InvalidPhaseError


@dataclass(frozen=True)
class PhaseDefinition:
    number: int
    name: str
    description: str


PHASES: tuple[PhaseDefinition, ...] = (
    PhaseDefinition(1, "Product Analysis", "Identify the product from its images and metadata"),
    PhaseDefinition(2, "Market Research", "Collect marketplace prices and demand"),
    PhaseDefinition(3, "SEO Analysis", "Generate titles, slugs and keywords"),
    PhaseDefinition(4, "Listing Generation", "Assemble the publishable listing"),
)

TOTAL_PHASES = len(PHASES)
FIRST_PHASE = PHASES[0].number
FINAL_PHASE = PHASES[-1].number


def validate_phase_number(phase_number: Any) -> int:
    """Return the phase number if it is an integer in 1..4, else raise InvalidPhaseError."""
    # bool is an int subclass but never a phase
    if isinstance(phase_number, bool) or not isinstance(phase_number, int):
        raise InvalidPhaseError(phase_number)
    if not FIRST_PHASE <= phase_number <= FINAL_PHASE:
        raise InvalidPhaseError(phase_number)
    return phase_number


def get_phase(phase_number: Any) -> PhaseDefinition:
    return PHASES[validate_phase_number(phase_number) - 1]


def get_phase_name(phase_number: Any) -> str:
    """Look up a phase name by number."""
    return get_phase(phase_number).name


def next_phase(phase_number: Any) -> Optional[int]:
    """Phase that follows the given one, or None after the final phase."""
    number = validate_phase_number(phase_number)
    return number + 1 if number < FINAL_PHASE else None


__all__ = [
    "PhaseDefinition",
    "PHASES",
    "TOTAL_PHASES",
    "FIRST_PHASE",
    "FINAL_PHASE",
    "validate_phase_number",
    "get_phase",
    "get_phase_name",
    "next_phase",
]
