"""
Exclusion bookkeeping for one context assembly.

Collects the ids placed in Tiers 1-4 (and instruction ids) so semantic
retrieval never returns an entry that is already in the payload. One
tracker per assembly call; never shared.
"""

from typing import Iterable, Optional

from ..models import GLOBAL_SCOPE


def instruction_scopes(persona_name: str) -> list[str]:
    return [GLOBAL_SCOPE, persona_name]


def instruction_visible(scope: Optional[str], persona_name: str) -> bool:
    """An instruction is visible only for its own persona or globally."""
    return scope is not None and scope in (GLOBAL_SCOPE, persona_name)


class ExclusionTracker:
    def __init__(self, persona_name: str):
        self.persona_name = persona_name
        self._ids: set[str] = set()
        self._by_tier: dict[str, set[str]] = {}

    def add(self, tier: str, ids: Iterable[str]) -> None:
        ids = set(ids)
        self._by_tier.setdefault(tier, set()).update(ids)
        self._ids.update(ids)

    def exclude(self, ids: Iterable[str] = ()) -> list[str]:
        """All tracked ids plus ``ids``, sorted for stable queries."""
        return sorted(self._ids.union(ids))

    def filter_new(self, entries: list) -> list:
        """Drop entries whose id is already tracked."""
        return [e for e in entries if e.id not in self._ids]

    def visible_instructions(self, entries: list) -> list:
        return [
            e for e in entries
            if e.is_instruction and instruction_visible(e.instruction_scope, self.persona_name)
        ]

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def tier_ids(self, tier: str) -> set[str]:
        return set(self._by_tier.get(tier, ()))
