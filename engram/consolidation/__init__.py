"""Consolidation: promote, archive and merge."""

from engram.consolidation.engine import Action, ConsolidationEngine, ConsolidationSummary, Transition

__all__ = ["Action", "ConsolidationEngine", "ConsolidationSummary", "Transition"]
