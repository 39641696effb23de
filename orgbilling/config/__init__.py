"""
Centralized configuration package for the billing service.

This package provides a single source of truth for environment settings
and logging configuration.
"""

from .env import EnvConfig, env

__all__ = [
  "EnvConfig",
  "env",
]
