"""
Centralized configuration for the Vinho label-resolution worker.

All constants are defined here to avoid scattered magic numbers
and enable easy configuration management.
"""

import os
from pathlib import Path
from typing import List, Optional


class Config:
    """Application configuration constants."""

    # === Matching Thresholds ===
    VISUAL_MATCH_THRESHOLD = 0.85     # Cosine similarity for a label-image hit
    TEXT_MATCH_THRESHOLD = 0.85       # Weighted fuzzy score for an identity hit
    VARIETAL_FUZZY_THRESHOLD = 0.85   # Accept a fuzzy grape varietal match
    MAX_TEXT_CANDIDATES = 50          # FTS candidates scored per text match
    MAX_VISUAL_CANDIDATES = 5000      # Label embeddings scanned per visual match

    # === Text Match Weights ===
    # OCR text carries lots of label boilerplate, so token-set dominates
    WEIGHT_TOKEN_SET = 0.50
    WEIGHT_PARTIAL = 0.30
    WEIGHT_RATIO = 0.20
    PHONETIC_BONUS = 0.05

    # === Extraction ===
    ESCALATION_CONFIDENCE = 0.6       # Below this, retry once with the strong model
    LOW_TRUST_CONFIDENCE = 0.2        # Cap when producer/wine name is missing
    UNKNOWN_PRODUCER = "Unknown Producer"
    UNKNOWN_WINE = "Unknown Wine"
    MIN_VINTAGE_YEAR = 1900
    MAX_VINTAGE_YEAR = 2025

    # === Queue ===
    DEFAULT_BATCH_LIMIT = 5
    MAX_BATCH_LIMIT = 20
    MAX_RETRIES = 3                   # Job becomes 'failed' once retry_count exceeds this
    EMBEDDING_MAX_RETRIES = 3         # Embedding job becomes 'failed' at this count
    ENRICHMENT_MAX_RETRIES = 3        # Enrichment job becomes 'failed' at this count
    MAX_ENRICHMENT_BATCH_LIMIT = 10
    JOB_LEASE_SECONDS = 600           # A 'working' job untouched this long is claimable again

    # === Security ===
    DEFAULT_TRUSTED_IMAGE_HOSTS: List[str] = [
        ".supabase.co",
        ".supabase.in",
        ".supabase.net",
    ]

    # === Environment ===
    @staticmethod
    def log_level() -> str:
        """Log level (DEBUG, INFO, WARNING, ERROR)."""
        return os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def openai_api_key() -> Optional[str]:
        """Get OpenAI API key from environment (read by LiteLLM)."""
        return os.getenv("OPENAI_API_KEY")

    @staticmethod
    def extraction_model() -> str:
        """Vision model for label extraction. Default: gpt-4o-mini."""
        return os.getenv("EXTRACTION_MODEL", "gpt-4o-mini")

    @staticmethod
    def extraction_strong_model() -> str:
        """Escalation model for low-confidence extractions. Default: gpt-4o."""
        return os.getenv("EXTRACTION_STRONG_MODEL", "gpt-4o")

    @staticmethod
    def enrichment_model() -> str:
        """Knowledge model used to fill gaps. Default: gpt-4o-mini."""
        return os.getenv("ENRICHMENT_MODEL", "gpt-4o-mini")

    @staticmethod
    def llm_timeout() -> float:
        """Timeout in seconds for each LLM call. Default: 30.0."""
        try:
            return float(os.getenv("LLM_TIMEOUT", "30.0"))
        except ValueError:
            return 30.0

    @staticmethod
    def jina_api_key() -> Optional[str]:
        """Get Jina API key for CLIP image embeddings."""
        return os.getenv("JINA_API_KEY")

    @staticmethod
    def jina_api_url() -> str:
        return os.getenv("JINA_API_URL", "https://api.jina.ai/v1/embeddings")

    @staticmethod
    def jina_model() -> str:
        return os.getenv("JINA_MODEL", "jina-clip-v1")

    @staticmethod
    def embedding_timeout() -> float:
        """Timeout in seconds for embedding HTTP calls. Default: 20.0."""
        try:
            return float(os.getenv("EMBEDDING_TIMEOUT", "20.0"))
        except ValueError:
            return 20.0

    @staticmethod
    def trusted_image_hosts() -> List[str]:
        """Host suffixes allowed as image sources (comma-separated override)."""
        raw = os.getenv("TRUSTED_IMAGE_HOSTS")
        if not raw:
            return list(Config.DEFAULT_TRUSTED_IMAGE_HOSTS)
        return [h.strip().lower() for h in raw.split(",") if h.strip()]

    # === Database Persistence ===
    @staticmethod
    def database_path() -> str:
        """Path to SQLite database file.
        Default: vinho_worker/data/vinho.db (relative to the package).
        Override with DATABASE_PATH env var for container deployments.
        """
        default = str(Path(__file__).parent / "data" / "vinho.db")
        return os.getenv("DATABASE_PATH", default)
