"""
Stackweave Configuration System.

Provides:
- Pydantic-based settings (environment variables, .env files)
- Plaintext secret sources (env, credentials file) used by the secret store
"""

from stackweave.config.settings import Settings, load_settings
from stackweave.config.sources import (
    SECRET_SOURCE_PATTERN,
    BaseSecretSource,
    EnvSecretSource,
    FileSecretSource,
    SecretSource,
    SecretSourceResolver,
)

__all__ = [
    # Settings
    "Settings",
    "load_settings",
    # Secret sources
    "SECRET_SOURCE_PATTERN",
    "SecretSource",
    "BaseSecretSource",
    "EnvSecretSource",
    "FileSecretSource",
    "SecretSourceResolver",
]
