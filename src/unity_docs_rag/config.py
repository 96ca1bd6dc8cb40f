"""Centralized configuration for the Unity docs RAG pipeline.

Reads settings from environment variables (via python-dotenv) with sensible
defaults.  Numeric values use safe parsers that log a warning and fall back
to the default when the env value is invalid or out of range.

Exports:
    Search    : SUPABASE_URL, SUPABASE_PRIVATE_KEY, HYBRID_SEARCH_RPC,
                  SEARCH_MATCH_COUNT, HYBRID_KEYWORD_WEIGHT,
                  HYBRID_SEMANTIC_WEIGHT, RRF_K, ISOLATE_SEARCH_FAILURES
    Expansion : MAX_QUERY_VARIANTS, EXPANSION_PROMPT_FILE
    Rerank    : RERANK_API_URL, COHERE_API_KEY, RERANK_MODEL, RERANK_TOP_K
    Embedding : EMBEDDING_MODEL, EMBEDDING_ENDPOINT_URL
    LLM       : LLM_PROVIDER, LLM_REPO_ID, LLM_ENDPOINT_URL,
                  HUGGINGFACEHUB_API_TOKEN, LLM_MAX_NEW_TOKENS,
                  LLM_REPETITION_PENALTY
    Context   : CONTEXT_SEPARATOR, MAX_CONTEXT_CHARS, ANSWER_PROMPT_FILE
    Timeouts  : EXPANSION_TIMEOUT, EMBEDDING_TIMEOUT, SEARCH_TIMEOUT,
                  RERANK_TIMEOUT, GENERATION_TIMEOUT

Credentials are not validated at import time; :func:`load_service_settings`
checks them when a pipeline is built.
"""
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from unity_docs_rag.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(key: str, default: int) -> int:
    """Parse *key* from the environment as an int, returning *default* on failure."""
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %d", key, raw, default)
        return default


def _safe_float(key: str, default: float) -> float:
    """Parse *key* from the environment as a float, returning *default* on failure or non-finite values."""
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        val = float(raw)
        if math.isnan(val) or math.isinf(val):
            logger.warning("Invalid %s=%r (non-finite), using default %s", key, raw, default)
            return default
        return val
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", key, raw, default)
        return default


def _safe_positive_int(key: str, default: int) -> int:
    """Parse env as int; require value >= 1, else use default and log."""
    val = _safe_int(key, default)
    if val < 1:
        logger.warning("Invalid %s=%d (must be >= 1), using default %d", key, val, default)
        return default
    return val


def _safe_float_positive(key: str, default: float) -> float:
    """Parse env as float; require value > 0, else use default and log."""
    val = _safe_float(key, default)
    if val <= 0:
        logger.warning("Invalid %s=%s (must be > 0), using default %s", key, val, default)
        return default
    return val


def _safe_bool(key: str, default: bool) -> bool:
    """Parse env as a flag: 1/true/yes and 0/false/no, case-insensitive."""
    raw = os.environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes"):
        return True
    if value in ("0", "false", "no"):
        return False
    logger.warning("Invalid %s=%r, using default %s", key, raw, default)
    return default


def _optional_str(key: str) -> str | None:
    """Return the stripped env value, or None when unset or blank."""
    return (os.environ.get(key) or "").strip() or None


def _optional_path(key: str) -> Path | None:
    raw = _optional_str(key)
    return Path(raw) if raw else None


# Hybrid search backend (Supabase/PostgREST RPC)
SUPABASE_URL = _optional_str("SUPABASE_URL")
SUPABASE_PRIVATE_KEY = _optional_str("SUPABASE_PRIVATE_KEY")
HYBRID_SEARCH_RPC = os.environ.get("HYBRID_SEARCH_RPC", "hybrid_search")
SEARCH_MATCH_COUNT = _safe_positive_int("SEARCH_MATCH_COUNT", 10)
HYBRID_KEYWORD_WEIGHT = _safe_float_positive("HYBRID_KEYWORD_WEIGHT", 1.0)
HYBRID_SEMANTIC_WEIGHT = _safe_float_positive("HYBRID_SEMANTIC_WEIGHT", 1.0)
RRF_K = _safe_positive_int("RRF_K", 60)

# When set, a failed search for one query contributes no hits instead of
# failing the whole request.
ISOLATE_SEARCH_FAILURES = _safe_bool("ISOLATE_SEARCH_FAILURES", False)

# Query expansion
MAX_QUERY_VARIANTS = _safe_positive_int("MAX_QUERY_VARIANTS", 3)
EXPANSION_PROMPT_FILE = _optional_path("EXPANSION_PROMPT_FILE")

# Reranking (Cohere-compatible rerank API)
RERANK_API_URL = os.environ.get("RERANK_API_URL", "https://api.cohere.com/v2/rerank")
COHERE_API_KEY = _optional_str("COHERE_API_KEY")
RERANK_MODEL = os.environ.get("RERANK_MODEL", "rerank-english-v3.0")
RERANK_TOP_K = _safe_positive_int("RERANK_TOP_K", 5)

# Query embeddings; must match the model used when the store was populated
EMBEDDING_MODEL = os.environ.get(
    "EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
)
EMBEDDING_ENDPOINT_URL = _optional_str("EMBEDDING_ENDPOINT_URL")

# Expansion and answer model
LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "endpoint").strip().lower()
if LLM_PROVIDER not in ("endpoint", "local"):
    logger.warning("Invalid LLM_PROVIDER=%r, using default 'endpoint'", LLM_PROVIDER)
    LLM_PROVIDER = "endpoint"
LLM_REPO_ID = os.environ.get("LLM_REPO_ID", "mistralai/Mistral-7B-Instruct-v0.3")
LLM_ENDPOINT_URL = _optional_str("LLM_ENDPOINT_URL")
HUGGINGFACEHUB_API_TOKEN = _optional_str("HUGGINGFACEHUB_API_TOKEN")
LLM_MAX_NEW_TOKENS = _safe_positive_int("LLM_MAX_NEW_TOKENS", 512)
LLM_REPETITION_PENALTY = _safe_float_positive("LLM_REPETITION_PENALTY", 1.05)

# Context assembly (MAX_CONTEXT_CHARS = 0 disables the cap)
CONTEXT_SEPARATOR = os.environ.get("CONTEXT_SEPARATOR", "\n\n---\n\n")
_max_context_chars_raw = _safe_int("MAX_CONTEXT_CHARS", 0)
if _max_context_chars_raw < 0:
    logger.warning(
        "Invalid MAX_CONTEXT_CHARS=%d (must be >= 0), using default 0",
        _max_context_chars_raw,
    )
    MAX_CONTEXT_CHARS = 0
else:
    MAX_CONTEXT_CHARS = _max_context_chars_raw
ANSWER_PROMPT_FILE = _optional_path("ANSWER_PROMPT_FILE")

# Per-call timeouts (seconds; must be > 0). GENERATION_TIMEOUT bounds the
# wait for each streamed fragment, not the whole answer.
EXPANSION_TIMEOUT = _safe_float_positive("EXPANSION_TIMEOUT", 30.0)
EMBEDDING_TIMEOUT = _safe_float_positive("EMBEDDING_TIMEOUT", 30.0)
SEARCH_TIMEOUT = _safe_float_positive("SEARCH_TIMEOUT", 15.0)
RERANK_TIMEOUT = _safe_float_positive("RERANK_TIMEOUT", 30.0)
GENERATION_TIMEOUT = _safe_float_positive("GENERATION_TIMEOUT", 60.0)


@dataclass(frozen=True)
class ServiceSettings:
    """Credentials and endpoints for the remote services, checked once."""

    supabase_url: str
    supabase_key: str
    rerank_api_url: str
    rerank_api_key: str
    llm_provider: str
    hf_token: str | None


def load_service_settings() -> ServiceSettings:
    """Snapshot the service credentials, raising ConfigurationError listing every missing one."""
    missing = []
    if not SUPABASE_URL:
        missing.append("SUPABASE_URL")
    if not SUPABASE_PRIVATE_KEY:
        missing.append("SUPABASE_PRIVATE_KEY")
    if not RERANK_API_URL:
        missing.append("RERANK_API_URL")
    if not COHERE_API_KEY:
        missing.append("COHERE_API_KEY")
    if LLM_PROVIDER == "endpoint" and not HUGGINGFACEHUB_API_TOKEN and not LLM_ENDPOINT_URL:
        # A dedicated endpoint URL may be unauthenticated (e.g. a local TGI server)
        missing.append("HUGGINGFACEHUB_API_TOKEN")
    if missing:
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing)
        )
    return ServiceSettings(
        supabase_url=SUPABASE_URL,
        supabase_key=SUPABASE_PRIVATE_KEY,
        rerank_api_url=RERANK_API_URL,
        rerank_api_key=COHERE_API_KEY,
        llm_provider=LLM_PROVIDER,
        hf_token=HUGGINGFACEHUB_API_TOKEN,
    )
