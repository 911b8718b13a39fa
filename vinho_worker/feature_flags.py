"""
Feature flags for the label-resolution worker.

Uses pydantic-settings for typed, validated,
environment-variable-backed feature flags.

Toggle via env vars: FEATURE_VISUAL_MATCH=false
All flags default to True (on). Disable via env vars when needed.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class FeatureFlags(BaseSettings):
    """Feature flags backed by environment variables."""

    feature_visual_match: bool = True
    feature_text_match: bool = True
    feature_enrichment: bool = True
    feature_embedding_queue: bool = True

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
    }


@lru_cache()
def get_feature_flags() -> FeatureFlags:
    """Cached singleton. Use FastAPI Depends() for injection."""
    return FeatureFlags()
