"""
Centralized settings management for the business-context analysis library.

Settings are loaded from environment variables and an optional ``.env``
file. Nested sections use ``__`` as delimiter, for example
``BUSINESS_CONTEXT__DEFAULT_MAX_TOKENS=8000``.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .environment import Environment, get_environment
from .logging_config import LoggingConfig


CONFIG_DIR = Path(__file__).parent


class GenAIConfig(BaseModel):
    """Google GenAI configuration."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    api_key: Optional[SecretStr] = Field(default=None, description="Google GenAI API key")

    # Model settings
    default_model: str = Field(default="gemini-2.0-flash", description="Text generation model")
    embedding_model: str = Field(default="text-embedding-004", description="Embedding model")

    # Generation parameters
    default_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=1000, ge=1, le=8192)

    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    @property
    def is_configured(self) -> bool:
        return self.api_key is not None and bool(self.api_key.get_secret_value())


class BusinessContextConfig(BaseModel):
    """Tuning knobs of the analysis and prompt assembly pipeline."""
    model_config = ConfigDict(extra='forbid')

    # External calls
    llm_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)
    analysis_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)

    # Caching
    profile_cache_ttl_seconds: int = Field(default=1800, ge=1)
    intent_cache_ttl_seconds: int = Field(default=3600, ge=1)
    entity_cache_ttl_seconds: int = Field(default=3600, ge=1)
    threshold_cache_ttl_seconds: int = Field(default=3600, ge=1)

    # Token budgets
    default_max_tokens: int = Field(default=4000, ge=100)
    default_reserved_response_tokens: int = Field(default=500, ge=0)

    # Scoring
    min_entity_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    history_window: int = Field(default=20, ge=1)

    # Declarative vocabulary
    domain_profiles_path: Path = Field(default=CONFIG_DIR / "domain_profiles.yaml")
    business_vocabulary_path: Path = Field(default=CONFIG_DIR / "business_vocabulary.yaml")
    similarity_thresholds_path: Path = Field(default=CONFIG_DIR / "similarity_thresholds.yaml")

    @field_validator('default_reserved_response_tokens')
    @classmethod
    def validate_reserved_tokens(cls, v, info):
        max_tokens = info.data.get('default_max_tokens')
        if max_tokens is not None and v >= max_tokens:
            raise ValueError('default_reserved_response_tokens must be below default_max_tokens')
        return v


class Settings(BaseSettings):
    """
    Main application settings.

    Inherits from BaseSettings to automatically load from environment
    variables and .env files.
    """
    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        env_nested_delimiter='__',
        extra='ignore',
        case_sensitive=False
    )

    environment: Environment = Field(default_factory=get_environment)
    debug: bool = Field(default=False)

    GOOGLE_GENAI_API_KEY: Optional[SecretStr] = Field(default=None)

    genai: GenAIConfig = Field(default_factory=GenAIConfig)
    business_context: BusinessContextConfig = Field(default_factory=BusinessContextConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        # Flat API key wins when the nested section did not set one
        if self.genai.api_key is None and self.GOOGLE_GENAI_API_KEY is not None:
            self.genai = GenAIConfig(
                **{**self.genai.model_dump(), 'api_key': self.GOOGLE_GENAI_API_KEY}
            )

    @field_validator('environment', mode='before')
    @classmethod
    def parse_environment(cls, v):
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    def get_genai_client_config(self) -> Dict[str, Any]:
        """Get GenAI client configuration; empty when no API key is set."""
        if not self.genai.is_configured:
            return {}
        return {
            'api_key': self.genai.api_key.get_secret_value(),
            'timeout': self.genai.timeout_seconds,
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Get global settings instance.

    Uses LRU cache to ensure singleton behavior.
    """
    settings = Settings()
    logger = logging.getLogger(__name__)
    if not settings.genai.is_configured:
        logger.info("GOOGLE_GENAI_API_KEY not set; language-model features use heuristic fallbacks")
    logger.info(f"Settings loaded for environment: {settings.environment.value}")
    return settings


def reload_settings() -> Settings:
    """
    Reload settings from environment/files.

    Useful for testing or when configuration changes at runtime.
    """
    get_settings.cache_clear()
    return get_settings()
