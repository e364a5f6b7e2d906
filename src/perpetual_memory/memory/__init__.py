"""
Six-tier context assembly with semantic recall.

Builds the context payload for one model call from stored memory, in
priority order, under a token budget (a fraction of the model's context
window):

- Tier 1 (Working memory): last full turns, always kept
- Tier 2 (Starred): turns the user pinned, wholesale or dropped
- Tier 3 (Instructions): global + current persona directives, wholesale or dropped
- Tier 4 (Recent memory): compressed turns, newest that fit
- Tier 5 (Long-term memory): compressed turns recalled by similarity × salience
- Tier 6 (Files): ready uploaded file descriptions

Nothing appears twice: ids placed in Tiers 1-4 are excluded from recall.
Turns are written by the journal (``perpetual_memory.memory.journal``).
"""

from .config import MemoryConfig
from .assembler import AssembledContext, ContextAssembler, ContextStats
from .exclusion import ExclusionTracker
from .retriever import SemanticRetriever, rank_candidates
from .token_budget import (
    ContextBudget,
    calculate_budget,
    estimate_tokens,
    resolve_budget,
)

__all__ = [
    "MemoryConfig",
    "AssembledContext",
    "ContextAssembler",
    "ContextStats",
    "ExclusionTracker",
    "SemanticRetriever",
    "rank_candidates",
    "ContextBudget",
    "calculate_budget",
    "estimate_tokens",
    "resolve_budget",
]
