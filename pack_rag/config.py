"""
Configuration for the pack RAG engine.

Uses Pydantic BaseSettings to load from environment variables with sensible defaults.
A content pack may ship rag_config.json to override retrieval, prompt and
generation values at load time (see apply_pack_rag_config).
"""
import logging
import math
from typing import Any, Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTION = (
    "Answer based only on the provided rules and card excerpts. "
    "Cite doc_id when you use a specific excerpt."
)

# Only this rag_config.json schema version is understood
PACK_RAG_CONFIG_SCHEMA_VERSION = 1


class Settings(BaseSettings):
    """Configuration settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Pack
    PACK_ROOT: str = Field(default="content_pack", description="Content pack root directory")
    EMBED_MODEL_ID: str = Field(default="nomic-embed-text", description="Embed model id the pack must be built with")
    ENFORCE_EMBED_MODEL_ID: bool = Field(default=True, description="Hard-fail when pack embed_model_id differs")

    # Backend selection
    MODEL_BACKEND: Literal["remote", "local"] = Field(default="remote", description="Embedding/completion backend")

    # Remote backend (Ollama HTTP)
    OLLAMA_HOST: str = Field(default="http://localhost:11434", description="Ollama base URL")
    OLLAMA_EMBED_MODEL: str = Field(default="nomic-embed-text", description="Ollama embedding model")
    OLLAMA_CHAT_MODEL: str = Field(default="llama3.2", description="Ollama completion model")
    REQUEST_TIMEOUT_S: int = Field(default=120, description="HTTP request timeout")

    # Local backend
    LOCAL_EMBED_MODEL: str = Field(default="sentence-transformers/all-MiniLM-L6-v2", description="SentenceTransformer model")
    LOCAL_CHAT_MODEL: str = Field(default="Qwen/Qwen2.5-0.5B-Instruct", description="HuggingFace causal LM")
    LOCAL_DEVICE: Literal["auto", "cuda", "cpu"] = Field(default="auto", description="Device for local models")

    # Retrieval
    TOP_K_RULES: int = Field(default=6, description="Nearest rules rows per question")
    TOP_K_CARDS: int = Field(default=4, description="Nearest cards rows per question")
    TOP_K_MERGE: int = Field(default=8, description="Fused hits kept for context assembly")
    RULES_WEIGHT: float = Field(default=0.6, description="Fusion weight for the rules corpus")
    CARDS_WEIGHT: float = Field(default=0.4, description="Fusion weight for the cards corpus")

    # Context
    CONTEXT_TOKEN_BUDGET: int = Field(default=800, description="Approximate token budget for the context block")
    CHARS_PER_TOKEN_EST: int = Field(default=4, description="Rough chars-per-token for budget estimation")
    SYSTEM_INSTRUCTION: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, description="Instruction line of the prompt")

    # Generation
    N_PREDICT: int = Field(default=512, description="Max tokens generated per answer")
    TEMPERATURE: float = Field(default=0.3, description="Sampling temperature")
    TOP_P: float = Field(default=1.0, description="Nucleus sampling")
    TOP_K: int = Field(default=40, description="Top-k sampling")
    PENALTY_REPEAT: float = Field(default=1.0, description="Repeat penalty")

    # Validation
    FLAG_UNKNOWN_WORDS: bool = Field(default=False, description="Report unmatched words as unknown card mentions")

    # Embedding cache
    CACHE_DIR: str = Field(default=".rag_cache", description="Cache directory path")
    CACHE_TTL_S: int = Field(default=86400, description="Cache TTL in seconds (24h default)")
    BUST_CACHE: bool = Field(default=False, description="Bypass the embedding cache")

    @field_validator("RULES_WEIGHT", "CARDS_WEIGHT")
    @classmethod
    def validate_weight(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("fusion weights must be between 0 and 1")
        return v

    @field_validator("TOP_K_RULES", "TOP_K_CARDS", "TOP_K_MERGE")
    @classmethod
    def validate_top_k(cls, v):
        if v < 1:
            raise ValueError("top-k values must be at least 1")
        return v

    @field_validator("CONTEXT_TOKEN_BUDGET", "CHARS_PER_TOKEN_EST", "N_PREDICT")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings singleton."""
    global _settings
    if _settings is None:
        # Load from .env if present
        from dotenv import load_dotenv
        load_dotenv()
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Force reload settings (useful for testing)."""
    global _settings
    from dotenv import load_dotenv
    load_dotenv(override=True)
    _settings = Settings()
    return _settings


# rag_config.json section -> {json key: settings field}
_PACK_NUMERIC_KEYS: Dict[Optional[str], Dict[str, str]] = {
    None: {
        "n_predict": "N_PREDICT",
        "context_budget": "CONTEXT_TOKEN_BUDGET",
    },
    "generation": {
        "temperature": "TEMPERATURE",
        "top_p": "TOP_P",
        "top_k": "TOP_K",
        "penalty_repeat": "PENALTY_REPEAT",
    },
    "retrieval": {
        "top_k_rules": "TOP_K_RULES",
        "top_k_cards": "TOP_K_CARDS",
        "top_k_merge": "TOP_K_MERGE",
        "rules_weight": "RULES_WEIGHT",
        "cards_weight": "CARDS_WEIGHT",
    },
    "prompt": {
        "chars_per_token_est": "CHARS_PER_TOKEN_EST",
    },
}

_INT_FIELDS = {
    "N_PREDICT", "CONTEXT_TOKEN_BUDGET", "TOP_K", "TOP_K_RULES",
    "TOP_K_CARDS", "TOP_K_MERGE", "CHARS_PER_TOKEN_EST",
}


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def apply_pack_rag_config(settings: Settings, override: Any) -> Settings:
    """
    Apply a pack rag_config.json override on top of settings.

    Invalid or unknown keys are ignored. If schema_version is present and
    unsupported, nothing is applied.

    Args:
        settings: Base settings
        override: Parsed rag_config.json payload

    Returns:
        New Settings instance (the input is never mutated)
    """
    if not isinstance(override, dict):
        return settings
    version = override.get("schema_version")
    if version is not None and version != PACK_RAG_CONFIG_SCHEMA_VERSION:
        logger.warning(f"Ignoring rag_config.json with schema_version={version}")
        return settings

    update: Dict[str, Any] = {}
    for section, keys in _PACK_NUMERIC_KEYS.items():
        source = override if section is None else override.get(section)
        if not isinstance(source, dict):
            continue
        for key, field_name in keys.items():
            value = source.get(key)
            if not _is_number(value):
                continue
            update[field_name] = int(value) if field_name in _INT_FIELDS else float(value)

    prompt = override.get("prompt")
    if isinstance(prompt, dict):
        instruction = prompt.get("system_instruction")
        if isinstance(instruction, str) and instruction.strip():
            update["SYSTEM_INSTRUCTION"] = instruction

    if not update:
        return settings

    merged = settings.model_dump()
    merged.update(update)
    try:
        # Re-run validators so a pack cannot push weights out of range
        applied = Settings.model_validate(merged)
    except ValueError as e:
        logger.warning(f"Ignoring invalid rag_config.json override: {e}")
        return settings

    logger.info(f"Applied pack rag_config overrides: {sorted(update)}")
    return applied
