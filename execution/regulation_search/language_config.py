"""
Language Configuration for Answer Generation

Answers are produced in Japanese (default) or English. Each language carries
its own model settings so they can diverge without touching callers.
"""

import os
from dataclasses import dataclass


SUPPORTED_LANGUAGES = {
    "ja": {"name": "Japanese"},
    "en": {"name": "English"},
}

DEFAULT_LANGUAGE = "ja"


@dataclass
class LanguageConfig:
    """Per-language LLM configuration."""
    language: str = DEFAULT_LANGUAGE
    llm_model: str = "gpt-4o"
    temperature: float = 0.0
    max_tokens: int = 5000

    @classmethod
    def for_language(cls, language: str) -> "LanguageConfig":
        """
        Factory method returning defaults for a given language.

        Args:
            language: ISO 639-1 code ("ja" or "en"); anything else falls back to "ja"

        Returns:
            LanguageConfig with the model from LLM_MODEL (default gpt-4o)
        """
        if language not in SUPPORTED_LANGUAGES:
            language = DEFAULT_LANGUAGE

        return cls(
            language=language,
            llm_model=os.getenv("LLM_MODEL", "gpt-4o"),
            temperature=0.0,
            max_tokens=5000,
        )
