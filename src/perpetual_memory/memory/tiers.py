"""
Tier adapters, section formatting and greedy packing.

Adapters only read and order records; the assembler decides what fits.

  - Tier 1 working memory: last N full turns, oldest-first
  - Tier 2 starred turns: oldest-first
  - Tier 3 instructions: global + current persona, oldest-first
  - Tier 4 recent memory: last N compressed turns, oldest-first
  - Tier 5 long-term memory: ranked retrieval results
  - Tier 6 files: ready file descriptions, newest-first
"""

from typing import Callable, Sequence, TypeVar

from ..models import CompressedMemoryEntry, FileRecord, MemoryEntry, RetrievalCandidate
from ..store import COMPRESSED, TURNS, RecordStore
from .exclusion import instruction_scopes, instruction_visible
from .token_budget import estimate_tokens

T = TypeVar("T")

WORKING = "working_memory"
STARRED = "starred"
INSTRUCTIONS = "instructions"
RECENT = "recent_memory"
LONG_TERM = "long_term_memory"
FILES = "files"

TIER_ORDER = (WORKING, STARRED, INSTRUCTIONS, RECENT, LONG_TERM, FILES)


def _day(entry) -> str:
    stamp = getattr(entry, "created_at", None) or getattr(entry, "uploaded_at", None)
    return stamp.strftime("%Y-%m-%d") if stamp else ""


# ── Adapters ──


async def read_working_memory(store: RecordStore, user_id: str, n: int) -> list[MemoryEntry]:
    rows = await store.query_last_n(TURNS, user_id, n)
    return list(reversed(rows))


async def read_starred(store: RecordStore, user_id: str) -> list[MemoryEntry]:
    rows = await store.query_starred(user_id)
    return list(reversed(rows))


async def read_instructions(
    store: RecordStore, user_id: str, persona_name: str
) -> list[CompressedMemoryEntry]:
    rows = await store.query_instructions(user_id, instruction_scopes(persona_name))
    # The store filters by scope too; re-check so a loose backend cannot leak
    # another persona's directives.
    rows = [
        r for r in rows
        if r.is_instruction and instruction_visible(r.instruction_scope, persona_name)
    ]
    return list(reversed(rows))


async def read_recent_memory(
    store: RecordStore, user_id: str, limit: int
) -> list[CompressedMemoryEntry]:
    rows = await store.query_last_n(COMPRESSED, user_id, limit)
    return [r for r in reversed(rows) if not r.is_instruction]


async def read_ready_files(store: RecordStore, user_id: str) -> list[FileRecord]:
    return await store.query_ready_files(user_id)


# ── Formatting ──


def format_working_memory(entries: Sequence[MemoryEntry]) -> str:
    if not entries:
        return ""
    body = "\n\n".join(
        f"[Working Memory - {_day(e)}]\nUser: {e.user_text}\n{e.persona_name}: {e.response_text}"
        for e in entries
    )
    return f"--- WORKING MEMORY (Last {len(entries)} Full Turns) ---\n{body}\n\n"


def format_starred(entries: Sequence[MemoryEntry]) -> str:
    if not entries:
        return ""
    body = "\n\n".join(
        f"[Starred - {_day(e)}]\nUser: {e.user_text}\n{e.persona_name}: {e.response_text}"
        for e in entries
    )
    return f"--- STARRED MESSAGES (User-Pinned Memory) ---\n{body}\n\n"


def _format_compressed(label: str, e: CompressedMemoryEntry) -> str:
    return (
        f"[{label} - {_day(e)}]\n"
        f"User: {e.user_essence}\n"
        f"{e.persona_name}: {e.response_essence}\n"
        f"Arc: {e.arc_summary}"
    )


def format_instructions(entries: Sequence[CompressedMemoryEntry]) -> str:
    if not entries:
        return ""
    body = "\n\n".join(_format_compressed("Instruction", e) for e in entries)
    return f"--- BEHAVIORAL INSTRUCTIONS (Persistent Directives) ---\n{body}\n\n"


def format_recent_memory(entries: Sequence[CompressedMemoryEntry]) -> str:
    if not entries:
        return ""
    body = "\n\n".join(_format_compressed("Recent Memory", e) for e in entries)
    return f"--- RECENT MEMORY (Last {len(entries)} Compressed Turns) ---\n{body}\n\n"


def format_long_term_memory(candidates: Sequence[RetrievalCandidate]) -> str:
    if not candidates:
        return ""
    body = "\n\n".join(
        _format_compressed(f"Long-Term Memory | salience {c.entry.salience}", c.entry)
        for c in candidates
    )
    return f"--- LONG-TERM MEMORY (Semantically Recalled) ---\n{body}\n\n"


def format_files(files: Sequence[FileRecord]) -> str:
    if not files:
        return ""
    body = "\n\n".join(
        f"[File: {f.filename} ({f.file_type.value}) - {_day(f)}]\n{f.description}"
        for f in files
    )
    return f"--- UPLOADED FILES (Compressed Descriptions) ---\n{body}\n\n"


# ── Packing ──


def fits(text: str, remaining: int) -> bool:
    return estimate_tokens(text) <= remaining


def pack_prefix(
    items: Sequence[T],
    formatter: Callable[[Sequence[T]], str],
    remaining: int,
) -> tuple[list[T], str]:
    """
    Longest prefix of ``items`` whose formatted text fits ``remaining``.

    Formatted size grows with every entry, so the first prefix that
    overflows ends the search.
    """
    included = 0
    text = ""
    for i in range(1, len(items) + 1):
        candidate = formatter(items[:i])
        if not fits(candidate, remaining):
            break
        included = i
        text = candidate
    return list(items[:included]), text


def pack_suffix(
    items: Sequence[T],
    formatter: Callable[[Sequence[T]], str],
    remaining: int,
) -> tuple[list[T], str]:
    """Longest suffix (newest entries of an oldest-first list) that fits."""
    kept, _ = pack_prefix(list(reversed(items)), lambda xs: formatter(list(reversed(xs))), remaining)
    kept = list(reversed(kept))
    return kept, formatter(kept)
