"""
Token estimation and context budget resolution.
"""

import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .config import MemoryConfig

logger = logging.getLogger(__name__)

WindowResolver = Callable[[str], Awaitable[Optional[int]]]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    if not text or not text.strip():
        return 0
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class ContextBudget:
    """Token ceiling for one assembled context."""

    context_window: int
    total: int

    def remaining(self, used: int) -> int:
        return max(self.total - used, 0)


def calculate_budget(config: MemoryConfig, context_window: int) -> ContextBudget:
    return ContextBudget(
        context_window=context_window,
        total=int(context_window * config.budget_ratio),
    )


async def resolve_budget(
    config: MemoryConfig,
    model_name: str,
    window_resolver: Optional[WindowResolver] = None,
) -> ContextBudget:
    """
    Resolve the budget for a model.

    An injected resolver (e.g. a models table lookup) wins; when it is
    missing, fails, or returns nothing, the static mapping is used.
    """
    window = None
    if window_resolver is not None and config.context_window <= 0:
        try:
            window = await window_resolver(model_name)
        except Exception as e:
            logger.warning("Context window lookup failed for %s: %s", model_name, e)
    if not window or window <= 0:
        window = config.get_context_window(model_name)
    return calculate_budget(config, window)
