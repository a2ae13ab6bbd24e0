"""
Hosting Tracker — Centralized configuration.

Loads all settings from .env and validates them.
Every key has a usable default, so the classification core works without an
.env file; only the LLM fallback needs LLM_API_KEY.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from hosting_tracker/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_NEUTRAL_PATTERNS = ["park", "restaurant", "playground", "museum", "zoo", "cafe", "school"]


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # LLM: provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "anthropic"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""        # empty → LLM fallback disabled
    LLM_TIMEOUT_SECONDS: float = 20.0
    LLM_MAX_CONCURRENCY: int = 4

    # Classification
    OVERDUE_THRESHOLD_DAYS: int = 60
    NEUTRAL_PATTERNS: list[str] = _DEFAULT_NEUTRAL_PATTERNS
    NEGATION_MODE: str = "priority"   # "priority" | "global"
    DEFAULT_RULE_PRIORITY: int = 50

    @field_validator("NEUTRAL_PATTERNS", mode="before")
    @classmethod
    def parse_patterns(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [p.strip() for p in v.split(",") if p.strip()]
        return list(_DEFAULT_NEUTRAL_PATTERNS)

    @field_validator("NEGATION_MODE")
    @classmethod
    def check_negation_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("priority", "global"):
            raise ValueError(f"NEGATION_MODE must be 'priority' or 'global', got {v!r}")
        return v

    @field_validator("LLM_MAX_CONCURRENCY")
    @classmethod
    def check_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("LLM_MAX_CONCURRENCY must be at least 1")
        return v

    @property
    def llm_enabled(self) -> bool:
        return bool(self.LLM_API_KEY) and not self.LLM_API_KEY.startswith("your-")


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "anthropic"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        LLM_TIMEOUT_SECONDS=os.getenv("LLM_TIMEOUT_SECONDS", "20"),
        LLM_MAX_CONCURRENCY=os.getenv("LLM_MAX_CONCURRENCY", "4"),
        OVERDUE_THRESHOLD_DAYS=os.getenv("OVERDUE_THRESHOLD_DAYS", "60"),
        NEUTRAL_PATTERNS=os.getenv("NEUTRAL_PATTERNS", ""),
        NEGATION_MODE=os.getenv("NEGATION_MODE", "priority"),
        DEFAULT_RULE_PRIORITY=os.getenv("DEFAULT_RULE_PRIORITY", "50"),
    )


# Singleton, imported by all other modules as:
#   from hosting_tracker.config import settings
settings = _load_settings()
