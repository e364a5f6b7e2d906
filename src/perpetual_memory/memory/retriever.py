"""
Semantic retrieval of long-term memory (Tier 5).

Only runs once a user has more compressed entries than the recent-memory
tier can show; below that threshold everything is already in Tier 4.

Ranking:
  - query → embedding → top-N candidates by cosine similarity, excluding
    everything already placed in Tiers 1-4 and all instructions
  - weighted_score = similarity × (salience / 10)
  - ties: higher similarity, then newer created_at, then id
"""

import logging
from typing import TYPE_CHECKING, Iterable

from ..models import CompressedMemoryEntry, RetrievalCandidate
from ..store import RecordStore
from .config import MemoryConfig

if TYPE_CHECKING:
    from ..providers import EmbeddingProvider

logger = logging.getLogger(__name__)


def _ranking_key(candidate: RetrievalCandidate):
    return (
        -candidate.weighted_score,
        -candidate.similarity,
        -candidate.entry.created_at.timestamp(),
        candidate.entry.id,
    )


def rank_candidates(
    matches: Iterable[tuple[CompressedMemoryEntry, float]],
    top_k: int,
) -> list[RetrievalCandidate]:
    """Re-rank (entry, similarity) pairs by weighted score and keep ``top_k``."""
    candidates = [
        RetrievalCandidate(entry=entry, similarity=min(max(float(similarity), 0.0), 1.0))
        for entry, similarity in matches
    ]
    candidates.sort(key=_ranking_key)
    return candidates[:top_k]


class SemanticRetriever:
    """
    Finds older compressed memories relevant to the current query.

    Usage:
        retriever = SemanticRetriever(store, embedding_provider, config)
        if await retriever.should_activate(user_id):
            ranked = await retriever.retrieve(user_id, query, tracker.exclude())

    Embedding and store failures propagate; the assembler turns them into an
    empty tier.
    """

    def __init__(
        self,
        store: RecordStore,
        embeddings: "EmbeddingProvider",
        config: MemoryConfig,
    ):
        self._store = store
        self._embeddings = embeddings
        self.config = config

    async def should_activate(self, user_id: str) -> bool:
        count = await self._store.count_non_instruction(user_id)
        active = count > self.config.retrieval_threshold
        logger.debug(
            "Retrieval %s for user %s (%d compressed entries, threshold %d)",
            "active" if active else "inactive", user_id, count, self.config.retrieval_threshold,
        )
        return active

    async def retrieve(
        self,
        user_id: str,
        query: str,
        exclude_ids: Iterable[str],
    ) -> list[RetrievalCandidate]:
        excluded = set(exclude_ids)
        embedding = await self._embeddings.embed_query(query)
        matches = await self._store.search(
            embedding,
            sorted(excluded),
            user_id,
            self.config.retrieval_candidates,
        )
        # Re-check exclusion and scoping in case the backend was lax.
        matches = [
            (entry, similarity)
            for entry, similarity in matches
            if entry.id not in excluded
            and not entry.is_instruction
            and entry.user_id == user_id
        ]
        ranked = rank_candidates(matches, self.config.retrieval_top_k)
        logger.info(
            "Retrieved %d long-term memories from %d candidates for user %s",
            len(ranked), len(matches), user_id,
        )
        return ranked
