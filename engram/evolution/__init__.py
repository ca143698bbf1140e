"""Self-tuning of ranking parameters from logged retrieval outcomes."""

from engram.evolution.loop import EvolutionLoop, EvolutionOutcome
from engram.evolution.state import EvolutionSnapshot, EvolutionStateStore

__all__ = ["EvolutionLoop", "EvolutionOutcome", "EvolutionSnapshot", "EvolutionStateStore"]
