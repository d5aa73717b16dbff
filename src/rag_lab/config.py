# src/rag_lab/config.py
from __future__ import annotations

import os
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


def _find_repo_root(start: Path) -> Path:
    """
    Best-effort repository root discovery.
    - Prefer the closest ancestor containing `pyproject.toml`.
    - Fallback to the starting directory if not found.
    """
    cur = start.resolve()
    for _ in range(20):
        if (cur / "pyproject.toml").exists():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    return start.resolve()


PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = _find_repo_root(PACKAGE_ROOT)

# Load .env into process environment early so provider clients can read it.
load_dotenv(str(REPO_ROOT / ".env"), override=False)

LOCAL_ROOT = REPO_ROOT / ".Local"


class Settings(BaseSettings):
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    RAG_LAB_DATABASE_URL: str = f"sqlite+aiosqlite:///{(LOCAL_ROOT / 'rag_lab.db').as_posix()}"

    # candidate store (PostgREST-style RPC: semantic_search / bm25_search)
    CANDIDATE_STORE_URL: str | None = None
    CANDIDATE_STORE_KEY: str | None = None

    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    OPENAI_EMBED_MODEL: str = "text-embedding-3-small"

    COHERE_API_KEY: str | None = None
    COHERE_API_BASE: str = "https://api.cohere.ai/v1"

    HUGGINGFACE_API_KEY: str | None = None
    HUGGINGFACE_API_BASE: str = "https://api-inference.huggingface.co/models"
    CROSS_ENCODER_MODEL: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"

    HTTP_TIMEOUT_S: float = 30.0

    # shared result cache
    RESULT_CACHE_TTL_S: float = 3600.0
    RESULT_CACHE_MAX_SIZE: int = 1000

    # analytics
    ANALYTICS_SAMPLING_RATE: float = 1.0
    ANALYTICS_BATCH_SIZE: int = 100
    ANALYTICS_FLUSH_INTERVAL_S: float = 5.0
    ANALYTICS_SINK: str = "memory"  # memory | sql

    # reranker circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_RECOVERY_TIMEOUT_S: float = 60.0
    BREAKER_SUCCESS_THRESHOLD: int = 3

    model_config = SettingsConfigDict(
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()


def _set_env_if_missing(key: str, value: str | None) -> None:
    """
    Export a setting to os.environ for clients that read the environment directly.
    Explicitly provided environment variables win.
    """
    if value is None:
        return
    raw = str(value).strip()
    if not raw:
        return
    if os.getenv(key):
        return
    os.environ[key] = raw


def _bootstrap_provider_env(s: Settings) -> None:
    """
    Export provider-related settings into os.environ.
    """
    _set_env_if_missing("OPENAI_API_KEY", s.OPENAI_API_KEY)
    _set_env_if_missing("COHERE_API_KEY", s.COHERE_API_KEY)
    _set_env_if_missing("HUGGINGFACE_API_KEY", s.HUGGINGFACE_API_KEY)


_bootstrap_provider_env(settings)
