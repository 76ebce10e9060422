"""
Configuration management for the Strategy Engine.

Loads and validates settings from environment variables and an optional
project-root .env file. Exposes a single source of truth for all service configuration.
"""

from strategy_engine.config.settings import EngineSettings, get_settings  # noqa: F401

__all__ = ["EngineSettings", "get_settings"]
