"""
Two-pass compression: draft, then verify.

The draft call turns raw text into a JSON object; the verify call reviews
that object and returns a corrected one. Both outputs go through the same
parser and validator, and verify is never called with a draft that failed
validation.

Parse/validation failures raise CompressionError with a parse code
(``is_parse_error``); transport failures raise CompressionError with
API_ERROR / RATE_LIMIT / TIMEOUT.
"""

import json
import logging
import re
from typing import Optional

from langchain_core.language_models import BaseChatModel

from .errors import CompressionError, ExternalProviderError
from .memory.config import MemoryConfig
from .providers import classify_provider_failure, create_chat_model, with_timeout

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>")
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def response_text(response) -> str:
    """Plain text from a chat model response."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content) if content is not None else ""


def parse_json_response(text: str) -> dict:
    """
    Parse a JSON object out of a model response.

    Handles ``<think>`` blocks, markdown code fences and chatter around
    the object.
    """
    raw = (text or "").strip()
    if not raw:
        raise CompressionError("Model returned an empty response", code="EMPTY_RESPONSE")
    cleaned = _THINK_RE.sub("", raw).strip()
    fence = _FENCE_RE.search(cleaned)
    if fence:
        cleaned = fence.group(1).strip()
    match = _OBJECT_RE.search(cleaned)
    if match:
        cleaned = match.group(0)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise CompressionError(
            "Failed to parse model response as JSON",
            code="JSON_PARSE_ERROR",
            details={"raw_text": raw[:500], "parse_error": str(e)},
        ) from e
    if not isinstance(parsed, dict):
        raise CompressionError(
            "Model response is not a JSON object",
            code="JSON_PARSE_ERROR",
            details={"received": type(parsed).__name__},
        )
    return parsed


class TwoPassCompressor:
    """Base class: subclasses supply prompts, input formatting and validation."""

    DRAFT_PROMPT = ""
    VERIFY_PROMPT = ""

    def __init__(self, llm: Optional[BaseChatModel] = None, timeout: Optional[float] = 60.0):
        self._llm = llm
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: MemoryConfig, llm: Optional[BaseChatModel] = None):
        return cls(llm or create_chat_model(config), timeout=config.provider_timeout)

    async def _call(self, system_prompt: str, user_content: str) -> str:
        if self._llm is None:
            raise CompressionError("No chat model configured", code="API_ERROR")
        try:
            response = await with_timeout(
                self._llm.ainvoke([
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ]),
                self.timeout,
                "Compression call",
            )
        except ExternalProviderError as e:
            raise CompressionError(str(e), code=e.code, transient=e.transient) from e
        except Exception as e:
            code, transient = classify_provider_failure(e)
            if code == "RATE_LIMITED":
                code = "RATE_LIMIT"
            elif code != "TIMEOUT":
                code = "API_ERROR"
            raise CompressionError(f"Compression call failed: {e}", code=code, transient=transient) from e
        return response_text(response)

    def format_input(self, text: str, metadata: dict) -> str:
        return text

    def validate(self, parsed: dict, metadata: dict) -> dict:
        """Return the cleaned object or raise CompressionError(VALIDATION_ERROR)."""
        return parsed

    async def compress_draft(self, text: str, metadata: dict) -> dict:
        raw = await self._call(self.DRAFT_PROMPT, self.format_input(text, metadata))
        return self.validate(parse_json_response(raw), metadata)

    async def verify(self, draft: dict, metadata: dict) -> dict:
        raw = await self._call(self.VERIFY_PROMPT, json.dumps(draft, ensure_ascii=False))
        return self.validate(parse_json_response(raw), metadata)

    async def compress(self, text: str, metadata: Optional[dict] = None) -> dict:
        metadata = metadata or {}
        draft = await self.compress_draft(text, metadata)
        final = await self.verify(draft, metadata)
        logger.debug("Compressed %d chars into %d-key object", len(text), len(final))
        return final
