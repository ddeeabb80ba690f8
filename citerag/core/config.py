"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
constants. Keeps the rest of the app decoupled from how config is sourced.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# Milvus Cloud (from env)
MILVUS_URI: str = os.getenv("MILVUS_URI", "").strip()
MILVUS_TOKEN: str = os.getenv("MILVUS_TOKEN", "").strip()
COLLECTION_NAME: str = os.getenv("MILVUS_COLLECTION", "documents").strip() or "documents"

# Hugging Face (embeddings / fallback chat)
HF_API_KEY: str = os.getenv("HF_API_KEY", "").strip()
HF_EMBED_MODEL: str = (
    os.getenv("HF_EMBED_MODEL", "sentence-transformers/all-MiniLM-L6-v2").strip()
    or "sentence-transformers/all-MiniLM-L6-v2"
)
HF_CHAT_URL: str = "https://router.huggingface.co/v1/chat/completions"
HF_LLM_MODEL: str = (
    os.getenv("HF_LLM_MODEL", "meta-llama/Llama-3.2-3B-Instruct").strip()
    or "meta-llama/Llama-3.2-3B-Instruct"
)

# OpenAI. Generation model answers; analysis model classifies and expands.
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_LLM_MODEL: str = (
    os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
)
OPENAI_ANALYSIS_MODEL: str = (
    os.getenv("OPENAI_ANALYSIS_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
)

# Web search: Tavily when a key is present, DuckDuckGo otherwise
TAVILY_API_KEY: str = os.getenv("TAVILY_API_KEY", "").strip()
TAVILY_SEARCH_URL: str = "https://api.tavily.com/search"
WEB_MAX_RESULTS: int = 5

# API timeouts (seconds)
EMBED_API_TIMEOUT: float = 30.0
LLM_API_TIMEOUT: float = 60.0
WEB_API_TIMEOUT: float = 15.0

# Feature flags
ENABLE_QUERY_ANALYSIS: bool = _flag("ENABLE_QUERY_ANALYSIS", True)
ENABLE_QUERY_EXPANSION: bool = _flag("ENABLE_QUERY_EXPANSION", True)

# Analysis / expansion cache
QUERY_CACHE_BACKEND: str = os.getenv("QUERY_CACHE_BACKEND", "memory").strip().lower() or "memory"
QUERY_CACHE_PATH: str = os.getenv("QUERY_CACHE_PATH", "data/query_cache.db").strip() or "data/query_cache.db"
QUERY_CACHE_TTL_SECONDS: float = float(os.getenv("QUERY_CACHE_TTL_SECONDS", str(7 * 24 * 3600)))

# Answer cache (same backend); follow-ups and web-grounded answers are never cached
ENABLE_RESPONSE_CACHE: bool = _flag("ENABLE_RESPONSE_CACHE", True)
RESPONSE_CACHE_TTL_SECONDS: float = float(os.getenv("RESPONSE_CACHE_TTL_SECONDS", str(7 * 24 * 3600)))

# Retrieval: direct path
SIMILARITY_THRESHOLD: float = 0.30
TOP_K: int = 10
VECTOR_WEIGHT: float = 0.7

# Retrieval: per comparative term
COMPARATIVE_SIMILARITY_THRESHOLD: float = 0.25
COMPARATIVE_TOP_K: int = 8

# Fusion
FUSION_CAP: int = 15
BACKFILL_MIN_RESULTS: int = 10

# Identifier (filename) lookup
IDENTIFIER_LIMIT: int = 10
IDENTIFIER_SIMILARITY_FLOOR: float = 0.5
IDENTIFIER_MATCH_SIMILARITY: float = 0.8
FALLBACK_TOKEN_MIN_LEN: int = 3
FALLBACK_TOKEN_LIMIT: int = 5

# Web-search need thresholds
WEAK_FEW_RESULTS_COUNT: int = 3
WEAK_FEW_RESULTS_SIMILARITY: float = 0.55
WEAK_MANY_RESULTS_SIMILARITY: float = 0.50

# Conversation window passed to expansion
HISTORY_WINDOW_MESSAGES: int = 3
HISTORY_MESSAGE_CHARS: int = 200

# Prompt / delivery
SOURCE_PREVIEW_CHARS: int = 1000
STREAM_MAX_FRAME_CHARS: int = 4096
GENERATION_MAX_TOKENS: int = 1500
EXPANSION_MAX_TOKENS: int = 120
ANALYSIS_MAX_TOKENS: int = 300
