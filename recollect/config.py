"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with RECOLLECT_ prefix.
Example: RECOLLECT_LOG_LEVEL=DEBUG
"""

import logging
from pathlib import Path
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Recollect configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="RECOLLECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Core paths
    project_root: str = "."
    storage_path: Optional[str] = None  # Auto-detect if not set
    db_name: str = "recollect.db"

    # Logging
    log_level: str = "INFO"
    log_structured: bool = False  # JSON lines instead of plain text

    # Embedding model
    embedding_model: str = "all-MiniLM-L6-v2"

    # Consolidation scan
    consolidation_threshold: float = Field(default=0.92, ge=0.0, le=1.0)
    consolidation_max_candidates: int = Field(default=50, ge=1)
    consolidation_use_llm: bool = True  # merge-classified pairs only link when False
    min_corpus_size: int = Field(default=20, ge=0)  # skip scan below this many live memories
    min_memory_age_days: float = Field(default=7.0, ge=0.0)  # protect fresh memories
    parallel_pair_threshold: int = Field(default=1000, ge=1)  # pairs needed before using the pool
    max_similarity_workers: int = Field(default=4, ge=1)

    # Sensitive content in merged text
    sensitive_auto_redact: bool = False

    # LLM backend: local, openrouter, claude, none
    llm_backend: str = "local"
    llm_model: Optional[str] = None  # backend default if not set
    llm_base_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_timeout: float = Field(default=30.0, gt=0)  # seconds per call
    llm_merge_max_tokens: int = 800
    claude_cli_path: str = "claude"

    # Relation classification
    classify_max_chars: int = 500
    classify_batch_max_chars: int = 300
    enrich_batch_size: int = Field(default=5, ge=1)

    # Linking
    auto_link_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    auto_link_max_links: int = Field(default=3, ge=1)
    proximity_min_cooccurrence: int = Field(default=2, ge=1)
    proximity_tag_prefixes: List[str] = ["session:", "file:"]

    # Maintenance pipeline
    prune_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    orphan_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    orphan_max_links: int = Field(default=3, ge=1)

    # Graph analytics
    centrality_enabled: bool = True
    centrality_boost_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    community_max_iterations: int = Field(default=100, ge=1)
    community_min_size: int = Field(default=2, ge=1)
    community_tag_prefix: str = "community"
    community_seed: int = 42

    # Cross-process lock
    lock_file: str = "recollect.lock"
    lock_stale_seconds: float = 30.0  # held longer than this = reclaimable
    lock_max_wait_seconds: float = 30.0
    lock_retry_seconds: float = 0.1

    def get_storage_path(self) -> str:
        """
        Determine storage path with project isolation.

        Priority:
        1. storage_path setting (explicit override via RECOLLECT_STORAGE_PATH)
        2. project_root/.recollect/storage
        """
        if self.storage_path:
            Path(self.storage_path).mkdir(parents=True, exist_ok=True)
            return self.storage_path

        project_path = Path(self.project_root).resolve()
        storage = project_path / ".recollect" / "storage"
        storage.mkdir(parents=True, exist_ok=True)
        logger.info(f"Using project storage: {storage}")

        return str(storage)

    def get_lock_path(self, storage_path: Optional[str] = None) -> Path:
        """Path of the cross-process lock file, next to the database."""
        return Path(storage_path or self.get_storage_path()) / self.lock_file


# Singleton instance
settings = Settings()
