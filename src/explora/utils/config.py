"""Configuration management for Explora."""

import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Get EXPLORA_HOME for .env file location
_explora_home = Path(os.environ.get("EXPLORA_HOME", os.path.expanduser("~/.explora")))
_env_files = [
    str(_explora_home / ".env.local"),
    str(_explora_home / ".env"),
    ".env.local",
    ".env",
]


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=tuple(_env_files),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Generation backend (SSE endpoints)
    backend_url: str = "http://localhost:5173/api"
    backend_timeout: float = 60.0
    default_language: str = "en"

    # Redis Settings (content cache)
    redis_url: str = "redis://localhost:6379/0"
    content_cache_ttl_days: int = 7

    # Storage Settings
    data_path: Path = _explora_home / "data"

    # Mind map limits
    max_mindmap_nodes: int = 12
    aspects_batch_size: int = 4

    # Layout (canvas centre and node geometry)
    mindmap_center_x: float = 400.0
    mindmap_center_y: float = 300.0
    mindmap_node_width: float = 256.0
    mindmap_node_margin: float = 80.0
    mindmap_min_radius: float = 100.0
    mindmap_max_radius: float = 320.0
    expansion_min_radius: float = 60.0
    expansion_max_radius: float = 180.0
    importance_radius_offset: float = 20.0

    # Replay pacing (milliseconds)
    replay_batch_delay_ms: int = 120
    replay_paragraph_delay_ms: int = 100
    replay_word_delay_ms: int = 30
    replay_max_delay_ms: int = 250

    # Identifier / persistence bounds
    slug_max_attempts: int = 50
    persistence_max_retries: int = 3


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
