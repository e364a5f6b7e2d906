"""
Tests for context assembly: budget, tiers, exclusion and semantic recall.
"""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from conftest import at, make_compressed, make_turn
from perpetual_memory.errors import EmbeddingError, PersistenceError
from perpetual_memory.memory.assembler import ContextAssembler
from perpetual_memory.memory.config import (
    DEFAULT_CONTEXT_WINDOW,
    MODEL_CONTEXT_WINDOWS,
    MemoryConfig,
)
from perpetual_memory.memory.exclusion import ExclusionTracker, instruction_visible
from perpetual_memory.memory.retriever import SemanticRetriever, rank_candidates
from perpetual_memory.memory.tiers import (
    FILES,
    INSTRUCTIONS,
    LONG_TERM,
    RECENT,
    STARRED,
    TIER_ORDER,
    WORKING,
    format_files,
    format_instructions,
    format_recent_memory,
    format_starred,
    pack_prefix,
    pack_suffix,
    read_recent_memory,
    read_working_memory,
)
from perpetual_memory.memory.token_budget import (
    calculate_budget,
    estimate_tokens,
    resolve_budget,
)
from perpetual_memory.models import FileRecord, FileStatus, FileType
from perpetual_memory.providers import EmbeddingProvider
from perpetual_memory.store import InMemoryRecordStore


def run(coro):
    return asyncio.run(coro)


async def _seed(store, turns=(), compressed=()):
    for t in turns:
        await store.insert_turn(t)
    for c in compressed:
        await store.insert_compressed(c)


# ── Config Tests ──


class TestMemoryConfig:
    def test_default_values(self):
        config = MemoryConfig()
        assert config.context_window == 0
        assert config.budget_ratio == 0.40
        assert config.working_memory_turns == 5
        assert config.recent_memory_limit == 100
        assert config.retrieval_threshold == 100
        assert config.retrieval_candidates == 50
        assert config.retrieval_top_k == 10
        assert config.retry_attempts == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MEMORY_CONTEXT_WINDOW", "50000")
        monkeypatch.setenv("MEMORY_BUDGET_RATIO", "0.5")
        monkeypatch.setenv("MEMORY_WORKING_TURNS", "3")
        monkeypatch.setenv("MEMORY_SKIP_DUPLICATE_CHECK", "true")
        config = MemoryConfig.from_env()
        assert config.context_window == 50000
        assert config.budget_ratio == 0.5
        assert config.working_memory_turns == 3
        assert config.skip_duplicate_check is True

    def test_get_context_window_explicit(self):
        config = MemoryConfig(context_window=50000)
        assert config.get_context_window("any-model") == 50000

    def test_get_context_window_auto_detect(self):
        config = MemoryConfig(context_window=0)
        assert config.get_context_window("claude-sonnet-4-5-20250929") == 200_000
        assert config.get_context_window("gpt-4o") == MODEL_CONTEXT_WINDOWS["gpt-4o"]

    def test_get_context_window_prefix_match(self):
        config = MemoryConfig(context_window=0)
        assert config.get_context_window("gpt-4o-2024-08-06") == 128_000

    def test_get_context_window_fallback(self):
        config = MemoryConfig(context_window=0)
        assert config.get_context_window("unknown-model") == DEFAULT_CONTEXT_WINDOW


# ── Token Budget Tests ──


class TestTokenBudget:
    def test_estimate_tokens_empty(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("   \n\t") == 0

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_calculate_budget(self):
        budget = calculate_budget(MemoryConfig(), 100_000)
        assert budget.context_window == 100_000
        assert budget.total == 40_000
        assert budget.remaining(39_000) == 1_000
        assert budget.remaining(50_000) == 0

    def test_resolve_budget_uses_resolver(self):
        resolver = AsyncMock(return_value=10_000)
        budget = run(resolve_budget(MemoryConfig(), "house-model", resolver))
        assert budget.total == 4_000
        resolver.assert_awaited_once_with("house-model")

    def test_resolve_budget_resolver_failure_falls_back(self):
        resolver = AsyncMock(side_effect=RuntimeError("models table missing"))
        budget = run(resolve_budget(MemoryConfig(), "gpt-4o", resolver))
        assert budget.context_window == 128_000

    def test_resolve_budget_explicit_window_skips_resolver(self):
        resolver = AsyncMock(return_value=10_000)
        budget = run(resolve_budget(MemoryConfig(context_window=2_000), "m", resolver))
        assert budget.total == 800
        resolver.assert_not_awaited()


# ── Packing Tests ──


class TestPacking:
    def test_pack_prefix_fourteen_of_twenty(self):
        # 20 entries of exactly 50 tokens with 700 tokens left after Tier 1
        items = [chr(ord("a") + i) * 200 for i in range(20)]
        placed, text = pack_prefix(items, "".join, 700)
        assert len(placed) == 14
        assert placed == items[:14]
        assert estimate_tokens(text) == 700

    def test_pack_prefix_nothing_fits(self):
        placed, text = pack_prefix(["x" * 400], "".join, 10)
        assert placed == []
        assert text == ""

    def test_pack_suffix_keeps_newest(self):
        items = ["a" * 40, "b" * 40, "c" * 40]
        kept, text = pack_suffix(items, "".join, 20)
        assert kept == ["b" * 40, "c" * 40]
        assert text == "b" * 40 + "c" * 40


# ── Exclusion Tests ──


class TestExclusionTracker:
    def test_exclude_is_sorted_union(self):
        tracker = ExclusionTracker("ananya")
        tracker.add(WORKING, ["t-2", "t-1"])
        tracker.add(RECENT, ["m-1"])
        assert tracker.exclude(["i-9"]) == ["i-9", "m-1", "t-1", "t-2"]
        assert "t-1" in tracker
        assert len(tracker) == 3
        assert tracker.tier_ids(WORKING) == {"t-1", "t-2"}

    def test_filter_new(self):
        tracker = ExclusionTracker("ananya")
        tracker.add(WORKING, ["turn-001"])
        entries = [make_turn(1), make_turn(2)]
        assert [e.id for e in tracker.filter_new(entries)] == ["turn-002"]

    def test_visible_instructions_persona_isolation(self):
        tracker = ExclusionTracker("ananya")
        entries = [
            make_compressed(1, is_instruction=True, scope="global"),
            make_compressed(2, is_instruction=True, scope="ananya"),
            make_compressed(3, is_instruction=True, scope="vera"),
            make_compressed(4),
        ]
        visible = tracker.visible_instructions(entries)
        assert [e.id for e in visible] == ["mem-001", "mem-002"]

    def test_instruction_visible_requires_scope(self):
        assert instruction_visible(None, "ananya") is False
        assert instruction_visible("global", "vera") is True


# ── Ranking Tests ──


class TestRanking:
    def test_weighted_score_orders_candidates(self):
        strong_but_minor = make_compressed(1, salience=5)
        weaker_but_salient = make_compressed(2, salience=10)
        ranked = rank_candidates([(strong_but_minor, 0.9), (weaker_but_salient, 0.6)], 10)
        assert [c.entry.id for c in ranked] == ["mem-002", "mem-001"]
        assert ranked[0].weighted_score == pytest.approx(0.6)
        assert ranked[1].weighted_score == pytest.approx(0.45)

    def test_tie_prefers_higher_similarity(self):
        a = make_compressed(1, salience=10)
        b = make_compressed(2, salience=5)
        # 0.4 * 1.0 == 0.8 * 0.5
        ranked = rank_candidates([(a, 0.4), (b, 0.8)], 10)
        assert [c.entry.id for c in ranked] == ["mem-002", "mem-001"]

    def test_tie_prefers_newer_entry(self):
        older = make_compressed(1)
        newer = make_compressed(2)
        ranked = rank_candidates([(older, 0.7), (newer, 0.7)], 10)
        assert [c.entry.id for c in ranked] == ["mem-002", "mem-001"]

    def test_top_k_and_clamping(self):
        matches = [(make_compressed(i), 0.5) for i in range(20)]
        matches.append((make_compressed(99), -0.3))
        ranked = rank_candidates(matches, 10)
        assert len(ranked) == 10
        assert all(c.entry.id != "mem-099" for c in ranked)
        clamped = rank_candidates([(make_compressed(99), -0.3)], 1)
        assert clamped[0].similarity == 0.0


class TestSemanticRetriever:
    def _retriever(self, count=0, matches=()):
        store = MagicMock()
        store.count_non_instruction = AsyncMock(return_value=count)
        store.search = AsyncMock(return_value=list(matches))
        embeddings = MagicMock()
        embeddings.embed_query = AsyncMock(return_value=[0.1] * 8)
        return SemanticRetriever(store, embeddings, MemoryConfig()), store, embeddings

    def test_activation_threshold(self):
        retriever, _, _ = self._retriever(count=100)
        assert run(retriever.should_activate("user-1")) is False
        retriever, _, _ = self._retriever(count=101)
        assert run(retriever.should_activate("user-1")) is True

    def test_retrieve_refilters_lax_backend(self):
        keep = make_compressed(1)
        excluded = make_compressed(2)
        instruction = make_compressed(3, is_instruction=True, scope="global")
        foreign = make_compressed(4, user_id="user-2")
        retriever, store, embeddings = self._retriever(
            matches=[(keep, 0.5), (excluded, 0.99), (instruction, 0.95), (foreign, 0.97)]
        )
        ranked = run(retriever.retrieve("user-1", "cheaper plan?", ["mem-002", "turn-001"]))
        assert [c.entry.id for c in ranked] == ["mem-001"]
        embeddings.embed_query.assert_awaited_once_with("cheaper plan?")
        store.search.assert_awaited_once_with([0.1] * 8, ["mem-002", "turn-001"], "user-1", 50)


# ── Assembler Tests ──


class TestContextAssembler:
    def _provider(self):
        return EmbeddingProvider(DeterministicFakeEmbedding(size=8), dimensions=8)

    def _assembler(self, store, config, provider=None):
        retriever = SemanticRetriever(store, provider, config) if provider else None
        return ContextAssembler(store, config, retriever=retriever)

    def test_empty_store(self, store, config):
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert result.context == ""
        assert result.stats.total_tokens == 0
        assert result.stats.degraded_tiers == []

    def test_sections_in_priority_order(self, store, config):
        run(_seed(
            store,
            turns=[make_turn(0, starred=True)] + [make_turn(i) for i in range(1, 7)],
            compressed=[
                make_compressed(10, is_instruction=True, scope="global"),
                make_compressed(11),
            ],
        ))
        run(store.create_file_record(FileRecord(
            user_id="user-1", filename="plan.md", file_type=FileType.TEXT,
            content_hash="h1", status=FileStatus.READY,
            description="Q3 plan: ship v2 by 2025-09-30", embedding=[0.1] * 8,
        )))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        markers = [
            "--- WORKING MEMORY",
            "--- STARRED MESSAGES",
            "--- BEHAVIORAL INSTRUCTIONS",
            "--- RECENT MEMORY",
            "--- UPLOADED FILES",
        ]
        positions = [result.context.index(m) for m in markers]
        assert positions == sorted(positions)
        assert set(result.included_ids) == {WORKING, STARRED, INSTRUCTIONS, RECENT, FILES}

    def test_working_memory_is_last_five_oldest_first(self, store, config):
        run(_seed(store, turns=[make_turn(i) for i in range(8)]))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert result.included_ids[WORKING] == [f"turn-{i:03d}" for i in range(3, 8)]

    def test_recent_memory_maximal_prefix(self, store):
        config = MemoryConfig(context_window=2_000)
        run(_seed(
            store,
            turns=[make_turn(0), make_turn(1)],
            compressed=[make_compressed(i, essence="e" * 100) for i in range(20)],
        ))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        recent = run(read_recent_memory(store, "user-1", 100))
        placed = result.included_ids[RECENT]
        k = len(placed)
        assert 0 < k < 20
        assert placed == [e.id for e in recent[:k]]

        remaining = result.stats.budget - result.stats.components[WORKING]
        assert estimate_tokens(format_recent_memory(recent[:k])) <= remaining
        assert estimate_tokens(format_recent_memory(recent[:k + 1])) > remaining

    def test_budget_invariant(self, store):
        config = MemoryConfig(context_window=2_000)
        run(_seed(
            store,
            turns=[make_turn(i, starred=i % 3 == 0) for i in range(12)],
            compressed=[make_compressed(i, essence="e" * 100) for i in range(40)]
            + [make_compressed(100 + i, is_instruction=True, scope="global") for i in range(3)],
        ))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert result.stats.total_tokens <= result.stats.budget
        assert estimate_tokens(result.context) <= result.stats.budget
        assert result.stats.total_tokens == sum(result.stats.components.values())

    def test_starred_tier_dropped_wholesale(self, store):
        config = MemoryConfig(context_window=2_000)
        starred = [replace(make_turn(i, starred=True), user_text="s" * 1500) for i in range(3)]
        run(_seed(
            store,
            turns=starred + [make_turn(i) for i in range(10, 15)],
            compressed=[make_compressed(i) for i in range(20, 25)]
            + [make_compressed(30, is_instruction=True, scope="global")],
        ))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))

        remaining = result.stats.budget - result.stats.components[WORKING]
        assert estimate_tokens(format_starred(starred)) > remaining
        assert STARRED not in result.included_ids
        assert "STARRED MESSAGES" not in result.context
        assert "s" * 1500 not in result.context
        # later tiers still pack into the space starred would have used
        assert result.included_ids[INSTRUCTIONS] == ["mem-030"]
        assert len(result.included_ids[RECENT]) == 5
        assert result.stats.total_tokens <= result.stats.budget

    def test_instruction_tier_dropped_wholesale(self, store):
        config = MemoryConfig(context_window=2_000)
        instructions = [
            make_compressed(30 + i, is_instruction=True, scope="global", essence="i" * 1500)
            for i in range(3)
        ]
        run(_seed(
            store,
            turns=[make_turn(i) for i in range(10, 15)],
            compressed=instructions + [make_compressed(i) for i in range(20, 25)],
        ))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))

        remaining = result.stats.budget - result.stats.components[WORKING]
        assert estimate_tokens(format_instructions(instructions)) > remaining
        assert INSTRUCTIONS not in result.included_ids
        assert "BEHAVIORAL INSTRUCTIONS" not in result.context
        assert len(result.included_ids[RECENT]) == 5

    def test_files_newest_first_maximal_prefix(self, store):
        config = MemoryConfig(context_window=2_000)
        run(_seed(store, turns=[make_turn(0), make_turn(1)]))
        for i in (3, 0, 5, 1, 4, 2):
            run(store.create_file_record(FileRecord(
                user_id="user-1", filename=f"report-{i}.txt", file_type=FileType.TEXT,
                content_hash=f"h{i}", status=FileStatus.READY,
                description="d" * 1000, embedding=[0.1] * 8, uploaded_at=at(i),
            )))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))

        files = run(store.query_ready_files("user-1"))
        assert [f.uploaded_at for f in files] == sorted((f.uploaded_at for f in files), reverse=True)
        assert files[0].filename == "report-5.txt"

        placed = result.included_ids[FILES]
        k = len(placed)
        assert 0 < k < 6
        assert placed == [f.id for f in files[:k]]
        assert "report-5.txt" in result.context
        assert "report-0.txt" not in result.context

        remaining = result.stats.budget - sum(
            tokens for tier, tokens in result.stats.components.items() if tier != FILES
        )
        assert estimate_tokens(format_files(files[:k])) <= remaining
        assert estimate_tokens(format_files(files[:k + 1])) > remaining

    def test_oversized_working_memory_keeps_newest(self, store):
        config = MemoryConfig(context_window=150)
        run(_seed(store, turns=[make_turn(i) for i in range(5)]))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        kept = result.included_ids[WORKING]
        assert 0 < len(kept) < 5
        assert kept == [f"turn-{i:03d}" for i in range(5 - len(kept), 5)]
        assert result.stats.total_tokens <= result.stats.budget

    def test_no_duplication_across_tiers(self, store, config):
        run(_seed(
            store,
            turns=[make_turn(0, starred=True), make_turn(1)]
            + [make_turn(i, starred=(i == 5)) for i in range(2, 7)],
        ))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert "turn-005" in result.included_ids[WORKING]
        assert result.included_ids[STARRED] == ["turn-000"]
        all_ids = [i for ids in result.included_ids.values() for i in ids]
        assert len(all_ids) == len(set(all_ids))

    def test_persona_isolation(self, store, config):
        run(_seed(store, compressed=[
            make_compressed(1, is_instruction=True, scope="global"),
            make_compressed(2, persona="ananya", is_instruction=True, scope="ananya"),
            make_compressed(3, persona="vera", is_instruction=True, scope="vera"),
        ]))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert result.included_ids[INSTRUCTIONS] == ["mem-001", "mem-002"]
        assert "topic 3" not in result.context

    def test_user_isolation(self, store, config):
        run(_seed(store, turns=[make_turn(1, user_id="user-2")]))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert result.context == ""

    def test_failed_tier_degrades_to_empty(self, store, config):
        run(_seed(store, turns=[make_turn(1, starred=True), make_turn(2)]))
        with patch.object(store, "query_starred", AsyncMock(side_effect=PersistenceError("down"))):
            result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert result.stats.degraded_tiers == [STARRED]
        assert STARRED not in result.included_ids
        assert result.included_ids[WORKING] == ["turn-001", "turn-002"]

    def test_retrieval_inactive_below_threshold(self, store, config):
        run(_seed(store, compressed=[make_compressed(i) for i in range(50)]))
        provider = self._provider()
        provider.embed_query = AsyncMock(return_value=[0.1] * 8)
        result = run(self._assembler(store, config, provider).assemble(
            "user-1", "ananya", "test-model", query="which plan did we pick?"
        ))
        provider.embed_query.assert_not_awaited()
        assert LONG_TERM not in result.included_ids
        assert "LONG-TERM MEMORY" not in result.context
        assert result.stats.retrieval_active is False

    def test_retrieval_active_above_threshold(self, store, config):
        fake = DeterministicFakeEmbedding(size=8)
        run(_seed(store, compressed=[
            make_compressed(i, salience=1 + i % 10, embedding=fake.embed_query(f"topic {i}"))
            for i in range(150)
        ]))
        provider = self._provider()
        provider.embed_query = AsyncMock(wraps=provider.embed_query)
        store.search = AsyncMock(wraps=store.search)

        result = run(self._assembler(store, config, provider).assemble(
            "user-1", "ananya", "test-model", query="which plan did we pick?"
        ))
        provider.embed_query.assert_awaited_once_with("which plan did we pick?")
        excluded = store.search.await_args.args[1]
        assert set(result.included_ids[RECENT]) <= set(excluded)
        assert store.search.await_args.args[3] == 50

        recalled = result.included_ids[LONG_TERM]
        assert len(recalled) == 10
        assert not set(recalled) & set(result.included_ids[RECENT])
        # Recent memory holds the newest 100; recall comes from the older 50
        assert all(int(i.split("-")[1]) < 50 for i in recalled)
        assert result.stats.retrieval_active is True

    def test_retrieval_failure_degrades_tier(self, store, config):
        run(_seed(store, compressed=[make_compressed(i, embedding=[0.1] * 8) for i in range(150)]))
        provider = self._provider()
        provider.embed_query = AsyncMock(side_effect=EmbeddingError("down", code="PROVIDER_ERROR"))
        result = run(self._assembler(store, config, provider).assemble(
            "user-1", "ananya", "test-model", query="anything"
        ))
        assert result.stats.degraded_tiers == [LONG_TERM]
        assert len(result.included_ids[RECENT]) == 100

    def test_only_ready_files(self, store, config):
        run(store.create_file_record(FileRecord(
            user_id="user-1", filename="done.pdf", file_type=FileType.PDF,
            content_hash="h1", status=FileStatus.READY,
            description="Signed lease, 12 months from 2025-02-01", embedding=[0.2] * 8,
            uploaded_at=at(1),
        )))
        run(store.create_file_record(FileRecord(
            user_id="user-1", filename="pending.pdf", file_type=FileType.PDF,
            content_hash="h2", uploaded_at=at(2),
        )))
        result = run(self._assembler(store, config).assemble("user-1", "ananya", "test-model"))
        assert "done.pdf" in result.context
        assert "pending.pdf" not in result.context

    def test_context_window_from_store(self):
        store = InMemoryRecordStore(context_windows={"house-model": 10_000})
        result = run(ContextAssembler(store, MemoryConfig()).assemble("user-1", "ananya", "house-model"))
        assert result.stats.context_window == 10_000
        assert result.stats.budget == 4_000

    def test_stats_cover_every_tier(self, store, config):
        run(_seed(store, turns=[make_turn(1)]))
        stats = run(self._assembler(store, config).assemble("user-1", "ananya", "m")).stats
        assert set(stats.components) == set(TIER_ORDER)
        assert stats.counts[WORKING] == 1
        assert 0 < stats.utilization < 1


class TestTierAdapters:
    def test_working_memory_oldest_first(self, store):
        run(_seed(store, turns=[make_turn(i) for i in range(3)]))
        entries = run(read_working_memory(store, "user-1", 2))
        assert [e.id for e in entries] == ["turn-001", "turn-002"]

    def test_recent_memory_skips_instructions(self, store):
        run(_seed(store, compressed=[
            make_compressed(1),
            make_compressed(2, is_instruction=True, scope="global"),
        ]))
        entries = run(read_recent_memory(store, "user-1", 10))
        assert [e.id for e in entries] == ["mem-001"]
