"""
Configuration management for the business-context analysis library.

This module provides centralized configuration management with support for
environment variables, declarative vocabulary files, and validation.
"""

from .environment import Environment, get_environment
from .logging_config import LoggingConfig, setup_logging, get_logger
from .settings import Settings, get_settings, reload_settings, GenAIConfig, BusinessContextConfig

__all__ = [
    'Settings',
    'get_settings',
    'reload_settings',
    'GenAIConfig',
    'BusinessContextConfig',
    'setup_logging',
    'get_logger',
    'LoggingConfig',
    'Environment',
    'get_environment'
]

__version__ = '1.0.0'
