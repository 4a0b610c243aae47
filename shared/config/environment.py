"""
Environment management for the business-context analysis library.

Detects the deployment environment (development, testing, staging,
production) and exposes the defaults that vary with it, such as log level
and cache lifetimes.
"""

import os
from enum import Enum
from functools import lru_cache
from typing import Any, Dict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def is_development(self) -> bool:
        return self == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        return self == Environment.TESTING

    @property
    def is_staging(self) -> bool:
        return self == Environment.STAGING

    @property
    def is_production(self) -> bool:
        return self == Environment.PRODUCTION

    @property
    def is_debug_enabled(self) -> bool:
        """Check if debug mode should be enabled."""
        return self in {Environment.DEVELOPMENT, Environment.TESTING}

    @property
    def log_level(self) -> str:
        """Get default log level for environment."""
        if self.is_production:
            return "WARNING"
        elif self.is_staging:
            return "INFO"
        else:
            return "DEBUG"

    @property
    def default_config(self) -> Dict[str, Any]:
        """Get default configuration for environment."""
        base_config = {
            'debug': self.is_debug_enabled,
            'log_level': self.log_level,
            'detailed_logging': not self.is_production
        }

        if self.is_testing:
            # Short lifetimes keep cached profiles from leaking between tests
            base_config.update({
                'profile_cache_ttl_seconds': 5,
                'intent_cache_ttl_seconds': 5,
                'entity_cache_ttl_seconds': 5,
                'mock_external_services': True
            })
        elif self.is_production:
            base_config.update({
                'profile_cache_ttl_seconds': 1800,
                'intent_cache_ttl_seconds': 3600,
                'entity_cache_ttl_seconds': 3600,
                'enable_performance_monitoring': True
            })
        else:
            base_config.update({
                'profile_cache_ttl_seconds': 300,
                'intent_cache_ttl_seconds': 600,
                'entity_cache_ttl_seconds': 600
            })

        return base_config


@lru_cache()
def get_environment() -> Environment:
    """
    Detect and return current environment.

    Uses the following precedence:
    1. ENVIRONMENT environment variable
    2. APP_ENV environment variable
    3. Defaults to DEVELOPMENT
    """
    for env_var in ('ENVIRONMENT', 'APP_ENV'):
        env_value = os.getenv(env_var)
        if env_value:
            try:
                return Environment(env_value.lower())
            except ValueError:
                # Invalid environment value, continue to next
                continue

    return Environment.DEVELOPMENT


def override_environment(environment: Environment) -> None:
    """
    Override detected environment (useful for testing).

    This clears the LRU cache to force re-detection.
    """
    get_environment.cache_clear()
    os.environ['ENVIRONMENT'] = environment.value


def reset_environment() -> None:
    """Reset environment detection to auto-detect."""
    if 'ENVIRONMENT' in os.environ:
        del os.environ['ENVIRONMENT']
    get_environment.cache_clear()
