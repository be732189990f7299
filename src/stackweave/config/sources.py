"""
Plaintext secret sources.

Secret resources declare where their values come from using references of
the form ``${env:NAME}`` or ``${file:path/in/credentials}``. Only the secret
store adapter resolves these; the orchestration graph carries the reference
strings, never the values.

Backends:
- Environment variables
- Credentials file (~/.stackweave/credentials.yaml)
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
import yaml

from stackweave.core.errors import ConfigurationError

logger = structlog.get_logger()

SECRET_SOURCE_PATTERN = re.compile(r"^\$\{(env|file):([^}]+)\}$")


class SecretSource(StrEnum):
    """Supported plaintext sources."""

    ENV = "env"
    FILE = "file"


class BaseSecretSource(ABC):
    """Base class for plaintext sources."""

    @abstractmethod
    def get_secret(self, path: str) -> str | None:
        """Get a secret by path."""


class EnvSecretSource(BaseSecretSource):
    """Environment variable source."""

    def get_secret(self, path: str) -> str | None:
        return os.environ.get(path)


class FileSecretSource(BaseSecretSource):
    """File-based source using credentials.yaml."""

    def __init__(self, credentials_file: Path):
        self.credentials_file = credentials_file
        self._cache: dict[str, Any] | None = None

    def _load_credentials(self) -> dict[str, Any]:
        if self._cache is not None:
            return self._cache

        if not self.credentials_file.exists():
            self._cache = {}
            return self._cache

        try:
            with open(self.credentials_file) as f:
                self._cache = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(
                "failed_to_load_credentials",
                file=str(self.credentials_file),
                error=str(e),
            )
            self._cache = {}

        return self._cache

    def get_secret(self, path: str) -> str | None:
        current: Any = self._load_credentials()
        for part in path.split("/"):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return None

        return str(current) if current is not None else None


class SecretSourceResolver:
    """Resolves ``${env:...}`` / ``${file:...}`` references to plaintext."""

    def __init__(self, credentials_file: Path | None = None):
        self._sources: dict[SecretSource, BaseSecretSource] = {
            SecretSource.ENV: EnvSecretSource(),
        }
        if credentials_file is not None:
            self._sources[SecretSource.FILE] = FileSecretSource(credentials_file)

    @staticmethod
    def is_reference(value: Any) -> bool:
        return isinstance(value, str) and SECRET_SOURCE_PATTERN.match(value) is not None

    def resolve(self, value: Any) -> Any:
        """Resolve a single value; non-reference values are returned unchanged."""
        if not isinstance(value, str):
            return value
        match = SECRET_SOURCE_PATTERN.match(value)
        if match is None:
            return value

        source_name, path = match.group(1), match.group(2).strip()
        source = self._sources.get(SecretSource(source_name))
        if source is None:
            raise ConfigurationError(
                f"Secret source '{source_name}' is not configured",
                {"source": source_name},
            )

        resolved = source.get_secret(path)
        if resolved is None:
            raise ConfigurationError(
                f"Required secret value not found: {source_name}:{path}",
                {"source": source_name, "path": path},
            )
        return resolved

    def resolve_mapping(self, values: dict[str, Any]) -> dict[str, Any]:
        return {key: self.resolve(value) for key, value in values.items()}
