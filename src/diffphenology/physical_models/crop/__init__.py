from .phases import GotoPhase
from .phases import Phase
from .phases import PhaseList
from .phases import build_phases
from .phenology import Phenology

__all__ = [
    "GotoPhase",
    "Phase",
    "PhaseList",
    "Phenology",
    "build_phases",
]
