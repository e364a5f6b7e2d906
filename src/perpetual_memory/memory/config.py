"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Fireworks
    "accounts/fireworks/models/qwen3-235b-a22b": 131_072,
    "accounts/fireworks/models/qwen3-235b-a22b-instruct-2507": 262_144,
    "accounts/fireworks/models/deepseek-v3": 131_072,
    "accounts/fireworks/models/llama-v3p3-70b-instruct": 131_072,
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-opus-4-5-20251101": 200_000,
    "claude-3-5-sonnet": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 131_072

DEFAULT_COMPRESSION_MODEL = "accounts/fireworks/models/qwen3-235b-a22b"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for context assembly and file ingestion."""

    # Context window (0 = auto-detect from model name)
    context_window: int = 0

    # Fraction of the context window one assembled context may use
    budget_ratio: float = 0.40

    # Tier sizes
    working_memory_turns: int = 5
    recent_memory_limit: int = 100

    # Tier 5: semantic retrieval
    retrieval_threshold: int = 100  # activate only above this many entries
    retrieval_candidates: int = 50
    retrieval_top_k: int = 10

    # File ingestion limits
    max_file_size_mb: int = 10
    max_content_chars: int = 100_000
    skip_duplicate_check: bool = False

    # Providers
    embedding_model: str = "voyage-3"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY
    embedding_dimensions: int = 1024
    embedding_max_tokens: int = 32_000
    compression_model: str = DEFAULT_COMPRESSION_MODEL
    compression_temperature: float = 0.7
    compression_max_tokens: int = 2000
    provider_timeout: float = 60.0

    # Terminal write retries (1s, 2s, 4s)
    retry_attempts: int = 3
    retry_base_delay: float = 1.0

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=int(os.getenv("MEMORY_CONTEXT_WINDOW", "0")),
            budget_ratio=float(os.getenv("MEMORY_BUDGET_RATIO", "0.40")),
            working_memory_turns=int(os.getenv("MEMORY_WORKING_TURNS", "5")),
            recent_memory_limit=int(os.getenv("MEMORY_RECENT_LIMIT", "100")),
            retrieval_threshold=int(os.getenv("MEMORY_RETRIEVAL_THRESHOLD", "100")),
            retrieval_candidates=int(os.getenv("MEMORY_RETRIEVAL_CANDIDATES", "50")),
            retrieval_top_k=int(os.getenv("MEMORY_RETRIEVAL_TOP_K", "10")),
            max_file_size_mb=int(os.getenv("MEMORY_MAX_FILE_SIZE_MB", "10")),
            max_content_chars=int(os.getenv("MEMORY_MAX_CONTENT_CHARS", "100000")),
            skip_duplicate_check=_env_bool("MEMORY_SKIP_DUPLICATE_CHECK", "false"),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", "voyage-3"),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            embedding_dimensions=int(os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "1024")),
            embedding_max_tokens=int(os.getenv("MEMORY_EMBEDDING_MAX_TOKENS", "32000")),
            compression_model=os.getenv("MEMORY_COMPRESSION_MODEL", DEFAULT_COMPRESSION_MODEL),
            provider_timeout=float(os.getenv("MEMORY_PROVIDER_TIMEOUT", "60")),
            retry_attempts=int(os.getenv("MEMORY_RETRY_ATTEMPTS", "3")),
            retry_base_delay=float(os.getenv("MEMORY_RETRY_BASE_DELAY", "1.0")),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name and (model_name.startswith(key) or key.startswith(model_name)):
                return size
        return DEFAULT_CONTEXT_WINDOW
