"""
Context assembler.

Builds the bounded context payload for one model call from six tiers, in
priority order, each added only if it fits the remaining budget:

- Tier 1 (Working memory): last 5 full turns, always included
- Tier 2 (Starred): all starred turns, wholesale or dropped
- Tier 3 (Instructions): global + current persona directives, wholesale or dropped
- Tier 4 (Recent memory): last 100 compressed turns, longest fitting prefix
- Tier 5 (Long-term memory): semantic recall, only above the activation threshold
- Tier 6 (Files): ready file descriptions, newest-first, longest fitting prefix

A failed read empties only its own tier. The store is never written.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Optional

from ..store import RecordStore
from .config import MemoryConfig
from .exclusion import ExclusionTracker
from .retriever import SemanticRetriever
from .tiers import (
    FILES,
    INSTRUCTIONS,
    LONG_TERM,
    RECENT,
    STARRED,
    TIER_ORDER,
    WORKING,
    fits,
    format_files,
    format_instructions,
    format_long_term_memory,
    format_recent_memory,
    format_starred,
    format_working_memory,
    pack_prefix,
    pack_suffix,
    read_instructions,
    read_ready_files,
    read_recent_memory,
    read_starred,
    read_working_memory,
)
from .token_budget import ContextBudget, WindowResolver, estimate_tokens, resolve_budget

logger = logging.getLogger(__name__)


@dataclass
class ContextStats:
    budget: int
    context_window: int
    total_tokens: int = 0
    components: dict[str, int] = field(default_factory=lambda: {t: 0 for t in TIER_ORDER})
    counts: dict[str, int] = field(default_factory=lambda: {t: 0 for t in TIER_ORDER})
    degraded_tiers: list[str] = field(default_factory=list)
    retrieval_active: bool = False

    @property
    def utilization(self) -> float:
        return self.total_tokens / self.budget if self.budget else 0.0


@dataclass
class AssembledContext:
    context: str
    stats: ContextStats
    included_ids: dict[str, list[str]] = field(default_factory=dict)


class _Packer:
    """Running total of what has been placed, per tier."""

    def __init__(self, budget: ContextBudget, stats: ContextStats, tracker: ExclusionTracker):
        self.budget = budget
        self.stats = stats
        self.tracker = tracker
        self.sections: dict[str, str] = {}
        self.ids: dict[str, list[str]] = {}

    @property
    def used(self) -> int:
        return sum(self.stats.components.values())

    @property
    def remaining(self) -> int:
        return self.budget.remaining(self.used)

    def place(self, tier: str, items: list, text: str) -> None:
        if not items or not text:
            return
        ids = [item.id for item in items]
        self.sections[tier] = text
        self.ids[tier] = ids
        self.stats.components[tier] = estimate_tokens(text)
        self.stats.counts[tier] = len(items)
        self.tracker.add(tier, ids)


class ContextAssembler:
    """
    Usage:
        assembler = ContextAssembler(store, config, retriever=retriever)
        result = await assembler.assemble(user_id, "ananya", model_name, query=message)
        # result.context goes into the model call, result.stats into logs
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[MemoryConfig] = None,
        retriever: Optional[SemanticRetriever] = None,
        window_resolver: Optional[WindowResolver] = None,
    ):
        self.store = store
        self.config = config or MemoryConfig()
        self.retriever = retriever
        self.window_resolver = window_resolver or store.get_context_window

    async def _guarded(self, tier: str, call: Awaitable, stats: ContextStats, default):
        try:
            return await call
        except Exception as e:
            logger.warning("Tier %s degraded to empty: %s", tier, e)
            stats.degraded_tiers.append(tier)
            return default

    async def assemble(
        self,
        user_id: str,
        persona_name: str,
        model_name: str,
        query: Optional[str] = None,
    ) -> AssembledContext:
        """
        Assemble context for one model call.

        ``query`` enables Tier 5; without it (or without a retriever) the
        long-term tier is skipped entirely.
        """
        budget = await resolve_budget(self.config, model_name, self.window_resolver)
        stats = ContextStats(budget=budget.total, context_window=budget.context_window)
        tracker = ExclusionTracker(persona_name)
        packer = _Packer(budget, stats, tracker)

        # Tiers 1-4 and 6 are independent reads
        working, starred, instructions, recent, files = await asyncio.gather(
            self._guarded(WORKING, read_working_memory(
                self.store, user_id, self.config.working_memory_turns), stats, []),
            self._guarded(STARRED, read_starred(self.store, user_id), stats, []),
            self._guarded(INSTRUCTIONS, read_instructions(
                self.store, user_id, persona_name), stats, []),
            self._guarded(RECENT, read_recent_memory(
                self.store, user_id, self.config.recent_memory_limit), stats, []),
            self._guarded(FILES, read_ready_files(self.store, user_id), stats, []),
        )

        self._pack_working(packer, working)
        self._pack_wholesale(packer, STARRED, tracker.filter_new(starred), format_starred)
        self._pack_wholesale(
            packer, INSTRUCTIONS, tracker.visible_instructions(instructions), format_instructions
        )
        self._pack_recent(packer, tracker.filter_new(recent))

        if query and query.strip() and self.retriever is not None:
            await self._pack_long_term(packer, user_id, query)

        ready = [f for f in files if f.is_ready and f.description]
        placed, text = pack_prefix(ready, format_files, packer.remaining)
        packer.place(FILES, placed, text)

        context = "".join(packer.sections[t] for t in TIER_ORDER if t in packer.sections)
        stats.total_tokens = packer.used

        logger.info(
            "Context stats: %d/%d tokens (%.1f%%), components=%s, degraded=%s",
            stats.total_tokens,
            stats.budget,
            stats.utilization * 100,
            stats.components,
            stats.degraded_tiers,
        )
        return AssembledContext(context=context, stats=stats, included_ids=packer.ids)

    def _pack_working(self, packer: _Packer, entries: list) -> None:
        """Tier 1 goes in whole; only a turn set larger than the entire budget loses its oldest turns."""
        text = format_working_memory(entries)
        if fits(text, packer.remaining):
            packer.place(WORKING, entries, text)
            return
        kept, text = pack_suffix(entries, format_working_memory, packer.remaining)
        logger.warning(
            "Working memory exceeds the whole budget; kept newest %d of %d turns",
            len(kept), len(entries),
        )
        packer.place(WORKING, kept, text)

    def _pack_wholesale(self, packer: _Packer, tier: str, entries: list, formatter) -> None:
        text = formatter(entries)
        if not text:
            return
        if fits(text, packer.remaining):
            packer.place(tier, entries, text)
        else:
            logger.info(
                "Dropped tier %s (%d tokens, %d remaining)",
                tier, estimate_tokens(text), packer.remaining,
            )

    def _pack_recent(self, packer: _Packer, entries: list) -> None:
        text = format_recent_memory(entries)
        if fits(text, packer.remaining):
            packer.place(RECENT, entries, text)
            return
        kept, text = pack_prefix(entries, format_recent_memory, packer.remaining)
        logger.info("Truncated recent memory to %d of %d entries", len(kept), len(entries))
        packer.place(RECENT, kept, text)

    async def _pack_long_term(self, packer: _Packer, user_id: str, query: str) -> None:
        stats = packer.stats
        active = await self._guarded(
            LONG_TERM, self.retriever.should_activate(user_id), stats, False
        )
        if not active:
            return
        stats.retrieval_active = True
        # The exclusion set is final here: Tiers 1-4 are packed.
        ranked = await self._guarded(
            LONG_TERM,
            self.retriever.retrieve(user_id, query, packer.tracker.exclude()),
            stats,
            [],
        )
        ranked = [c for c in ranked if c.entry.id not in packer.tracker]
        placed, text = pack_prefix(ranked, format_long_term_memory, packer.remaining)
        if not placed:
            return
        packer.sections[LONG_TERM] = text
        packer.ids[LONG_TERM] = [c.entry.id for c in placed]
        stats.components[LONG_TERM] = estimate_tokens(text)
        stats.counts[LONG_TERM] = len(placed)
        packer.tracker.add(LONG_TERM, packer.ids[LONG_TERM])
