"""
Turn journal: turns a finished conversation turn into memory.

1. The full turn is stored as a MemoryEntry (working memory / starred tiers).
2. The turn is compressed with a draft + verify pass into essences, a
   decision arc and a salience score.
3. The arc is embedded so the entry becomes retrievable as long-term memory.
4. The CompressedMemoryEntry is stored (recent memory / instructions tiers).

A failed compression leaves the full turn in place; a failed embedding
stores the compressed entry without a vector (it still shows up in recent
memory, just not in semantic recall).
"""

import logging
from typing import Optional

from ..compression import TwoPassCompressor
from ..errors import CompressionError, EmbeddingError, ValidationError
from ..models import (
    ARC_MAX_CHARS,
    ARC_MIN_CHARS,
    GLOBAL_SCOPE,
    SALIENCE_MAX,
    SALIENCE_MIN,
    CompressedMemoryEntry,
    MemoryEntry,
)
from ..providers import EmbeddingProvider
from ..store import RecordStore

logger = logging.getLogger(__name__)

TURN_DRAFT_PROMPT = f"""ARTISAN CUT FOR CONVERSATION TURNS

Compress the conversation turn below. Keep everything that cannot be inferred
back from fewer words (decisions, numbers, names, exact terminology,
behavioral directives, emotional weight); condense what can; drop noise.

Return ONLY a JSON object:
{{
  "user_essence": "[compressed user message]",
  "persona_name": "[persona name]",
  "response_essence": "[compressed persona response]",
  "decision_arc_summary": "[{ARC_MIN_CHARS}-{ARC_MAX_CHARS} character decision pattern]",
  "salience_score": [integer {SALIENCE_MIN}-{SALIENCE_MAX}],
  "is_instruction": [true if the user gave a standing behavioral directive],
  "instruction_scope": ["global", the persona name, or null]
}}"""

TURN_VERIFY_PROMPT = f"""Review the previous JSON output for accuracy:

- essences keep every non-inferable fact from the turn
- decision_arc_summary is {ARC_MIN_CHARS}-{ARC_MAX_CHARS} characters
- salience_score is an integer {SALIENCE_MIN}-{SALIENCE_MAX}
- is_instruction / instruction_scope are only set for standing directives

Return ONLY the corrected JSON object with the same keys."""

_REQUIRED_FIELDS = ("user_essence", "response_essence", "decision_arc_summary", "salience_score")


class TurnCompressor(TwoPassCompressor):
    DRAFT_PROMPT = TURN_DRAFT_PROMPT
    VERIFY_PROMPT = TURN_VERIFY_PROMPT

    def format_input(self, text: str, metadata: dict) -> str:
        return f"Persona: {metadata.get('persona_name', '')}\n\n{text}"

    def validate(self, parsed: dict, metadata: dict) -> dict:
        missing = [f for f in _REQUIRED_FIELDS if not parsed.get(f)]
        if missing:
            raise CompressionError(
                f"Turn compression missing required fields: {', '.join(missing)}",
                code="VALIDATION_ERROR",
                details={"received": parsed},
            )
        arc = str(parsed["decision_arc_summary"]).strip()
        if not ARC_MIN_CHARS <= len(arc) <= ARC_MAX_CHARS:
            raise CompressionError(
                f"Decision arc is {len(arc)} characters, expected {ARC_MIN_CHARS}-{ARC_MAX_CHARS}",
                code="VALIDATION_ERROR",
                details={"arc": arc},
            )
        try:
            salience = int(parsed["salience_score"])
        except (TypeError, ValueError):
            salience = 0
        if not SALIENCE_MIN <= salience <= SALIENCE_MAX:
            raise CompressionError(
                f"Invalid salience_score: {parsed['salience_score']!r}",
                code="VALIDATION_ERROR",
            )

        persona = metadata.get("persona_name", "")
        is_instruction = bool(parsed.get("is_instruction"))
        scope = parsed.get("instruction_scope") if is_instruction else None
        if is_instruction and scope not in (GLOBAL_SCOPE, persona):
            # A directive aimed at an unknown persona is pinned to this one.
            scope = persona or GLOBAL_SCOPE

        return {
            "user_essence": str(parsed["user_essence"]).strip(),
            "persona_name": persona or str(parsed.get("persona_name", "")),
            "response_essence": str(parsed["response_essence"]).strip(),
            "decision_arc_summary": arc,
            "salience_score": salience,
            "is_instruction": is_instruction,
            "instruction_scope": scope,
        }


class TurnJournal:
    """
    Usage:
        journal = TurnJournal(store, TurnCompressor(llm), embedding_provider)
        entry, compressed = await journal.record_turn(user_id, "ananya", question, answer)
    """

    def __init__(
        self,
        store: RecordStore,
        compressor: TurnCompressor,
        embeddings: Optional[EmbeddingProvider] = None,
    ):
        self.store = store
        self.compressor = compressor
        self.embeddings = embeddings

    async def record_turn(
        self,
        user_id: str,
        persona_name: str,
        user_text: str,
        response_text: str,
    ) -> tuple[MemoryEntry, Optional[CompressedMemoryEntry]]:
        if not user_id:
            raise ValidationError("user_id is required")
        if not persona_name:
            raise ValidationError("persona_name is required")
        if not (user_text or "").strip() or not (response_text or "").strip():
            raise ValidationError("Both the user message and the response must be non-empty")

        entry = MemoryEntry(
            user_id=user_id,
            persona_name=persona_name,
            user_text=user_text,
            response_text=response_text,
        )
        await self.store.insert_turn(entry)

        try:
            result = await self.compressor.compress(
                f"User: {user_text}\n\n{persona_name}: {response_text}",
                {"persona_name": persona_name},
            )
        except CompressionError as e:
            logger.warning("Compression failed for turn %s (%s): %s", entry.id, e.code, e)
            return entry, None

        compressed = CompressedMemoryEntry(
            source_entry_id=entry.id,
            user_id=user_id,
            persona_name=result["persona_name"],
            user_essence=result["user_essence"],
            response_essence=result["response_essence"],
            arc_summary=result["decision_arc_summary"],
            salience=result["salience_score"],
            is_instruction=result["is_instruction"],
            instruction_scope=result["instruction_scope"],
        ).validate()

        if self.embeddings is not None:
            try:
                compressed = compressed.with_embedding(
                    await self.embeddings.embed(compressed.arc_summary)
                )
            except EmbeddingError as e:
                logger.warning(
                    "Arc embedding failed for turn %s (%s); stored without vector",
                    entry.id, e.code,
                )

        await self.store.insert_compressed(compressed)
        logger.info(
            "Recorded turn %s (salience %d%s)",
            entry.id,
            compressed.salience,
            f", instruction scope={compressed.instruction_scope}" if compressed.is_instruction else "",
        )
        return entry, compressed

    async def set_starred(self, user_id: str, entry_id: str, starred: bool = True) -> bool:
        updated = await self.store.set_starred(user_id, entry_id, starred)
        if not updated:
            logger.warning("Turn %s not found for user %s", entry_id, user_id)
        return updated
