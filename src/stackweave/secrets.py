"""
Secret store adapter.

Secret material crosses exactly one boundary: the ``SecretStoreAdapter``
resolves plaintext from its configured sources, writes it to a vault, and
hands the rest of the system a version identifier. Consumers reference a
secret through ``SecretRef`` and the provider that materializes the consumer
resolves the reference; the orchestration graph, the state file and the
logs only ever see ids, versions and keyed fingerprints.

Fingerprints are HMAC-SHA256 digests under a key kept outside the state
file (``Settings.fingerprint_key_file``), so a stored fingerprint cannot be
used to confirm guesses at the plaintext.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import aioboto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from stackweave.config.sources import SecretSourceResolver
from stackweave.core.errors import (
    ConfigurationError,
    PermanentProviderError,
    ProviderError,
    ResourceNotFoundError,
    RetryableProviderError,
)
from stackweave.providers.base import CreateResult
from stackweave.resources import ResourceType

logger = structlog.get_logger()

SECRET_REF_KEY = "secret_ref"
LATEST = "latest"
FINGERPRINT_KEY_BYTES = 32

THROTTLING_CODES = frozenset(
    {
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "InternalServiceError",
        "ServiceUnavailable",
    }
)


def _sanitize_secret_id(secret_id: str) -> str:
    """Mask a secret id for log output, keeping just enough to recognise it."""
    if len(secret_id) <= 3:
        return "***"
    if "/" in secret_id:
        return f"{secret_id.split('/')[0]}/***"
    return f"{secret_id[:2]}***"


def secret_fingerprint(key: bytes, secret_id: str, structured_value: dict[str, Any]) -> str:
    canonical = json.dumps(structured_value, sort_keys=True, separators=(",", ":"))
    return hmac.new(key, f"{secret_id}\n{canonical}".encode(), hashlib.sha256).hexdigest()


def load_fingerprint_key(path: Path) -> bytes:
    """Read the fingerprint key, creating it (mode 0600) on first use."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        try:
            key = bytes.fromhex(path.read_text().strip())
        except ValueError as exc:
            raise ConfigurationError(f"Fingerprint key file {path} is not hex encoded") from exc
        if len(key) < FINGERPRINT_KEY_BYTES:
            raise ConfigurationError(
                f"Fingerprint key file {path} holds fewer than {FINGERPRINT_KEY_BYTES} bytes"
            )
        return key
    except FileNotFoundError:
        path.parent.mkdir(parents=True, exist_ok=True)
        return load_fingerprint_key(path)

    key = os.urandom(FINGERPRINT_KEY_BYTES)
    with os.fdopen(fd, "w") as f:
        f.write(key.hex() + "\n")
    logger.info("fingerprint_key_created", path=str(path))
    return key


@dataclass(frozen=True)
class SecretRef:
    """Reference to a (composite JSON) secret, resolved by the provider."""

    secret_id: str
    version: str = LATEST
    key_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            SECRET_REF_KEY: {
                "secret_id": self.secret_id,
                "version": self.version,
                "key_path": self.key_path,
            }
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SecretRef:
        body = data.get(SECRET_REF_KEY, data)
        if not isinstance(body, dict) or not body.get("secret_id"):
            raise ValueError("secret_ref requires a 'secret_id'")
        return cls(
            secret_id=str(body["secret_id"]),
            version=str(body.get("version") or LATEST),
            key_path=body.get("key_path") or body.get("key"),
        )


def secret_refs(value: Any) -> list[SecretRef]:
    """Every SecretRef embedded in a nested desired-state structure."""
    found: list[SecretRef] = []

    def _walk(item: Any) -> None:
        if isinstance(item, SecretRef):
            found.append(item)
        elif isinstance(item, dict):
            for child in item.values():
                _walk(child)
        elif isinstance(item, (list, tuple)):
            for child in item:
                _walk(child)

    _walk(value)
    return found


class SecretVault(Protocol):
    """Versioned secret storage."""

    async def put_secret_value(
        self,
        secret_id: str,
        secret_string: str,
        *,
        token: str,
        description: str | None = None,
    ) -> str:
        """Store a value; the same ``token`` twice must not allocate a new version."""
        ...

    async def get_secret_value(self, secret_id: str, version: str = LATEST) -> str:
        ...

    async def describe_secret(self, secret_id: str) -> dict[str, Any]:
        ...

    async def delete_secret(self, secret_id: str) -> None:
        ...


class InMemoryVault:
    """Process-local vault.

    Version metadata can be exported and reloaded (for the local provider's
    state); plaintext is only held for the life of the process.
    """

    def __init__(self, metadata: dict[str, Any] | None = None) -> None:
        self._secrets: dict[str, dict[str, Any]] = {
            secret_id: {
                "arn": entry["arn"],
                "description": entry.get("description"),
                "versions": [dict(version) for version in entry.get("versions", [])],
            }
            for secret_id, entry in (metadata or {}).items()
        }
        self._values: dict[tuple[str, str], str] = {}

    async def put_secret_value(
        self,
        secret_id: str,
        secret_string: str,
        *,
        token: str,
        description: str | None = None,
    ) -> str:
        entry = self._secrets.setdefault(
            secret_id,
            {
                "arn": f"arn:stackweave:secretsmanager:local:secret:{secret_id}",
                "description": description,
                "versions": [],
            },
        )
        versions = entry["versions"]
        for existing in versions:
            if existing["token"] == token:
                return existing["version"]

        version = f"v{len(versions) + 1}"
        versions.append({"version": version, "token": token})
        self._values[(secret_id, version)] = secret_string
        return version

    async def get_secret_value(self, secret_id: str, version: str = LATEST) -> str:
        """Provider-side resolution of a reference."""
        entry = self._secrets.get(secret_id)
        if entry is None or not entry["versions"]:
            raise ResourceNotFoundError(f"Secret not found: {_sanitize_secret_id(secret_id)}")
        if version == LATEST:
            version = entry["versions"][-1]["version"]
        try:
            return self._values[(secret_id, version)]
        except KeyError:
            raise ResourceNotFoundError(
                f"Secret version {version} is not held by this vault",
                {"version": version},
            ) from None

    async def describe_secret(self, secret_id: str) -> dict[str, Any]:
        entry = self._secrets.get(secret_id)
        if entry is None:
            raise ResourceNotFoundError(f"Secret not found: {_sanitize_secret_id(secret_id)}")
        versions = entry["versions"]
        return {
            "arn": entry["arn"],
            "secret_id": secret_id,
            "version": versions[-1]["version"] if versions else None,
            "version_count": len(versions),
        }

    async def delete_secret(self, secret_id: str) -> None:
        if self._secrets.pop(secret_id, None) is None:
            raise ResourceNotFoundError(f"Secret not found: {_sanitize_secret_id(secret_id)}")
        for key in [key for key in self._values if key[0] == secret_id]:
            del self._values[key]

    def export(self) -> dict[str, Any]:
        return {
            secret_id: {
                "arn": entry["arn"],
                "description": entry.get("description"),
                "versions": [dict(version) for version in entry["versions"]],
            }
            for secret_id, entry in self._secrets.items()
        }


def _translate_client_error(exc: ClientError, secret_id: str) -> ProviderError:
    code = exc.response.get("Error", {}).get("Code", "")
    message = f"Secrets Manager {code or 'error'} for {_sanitize_secret_id(secret_id)}"
    if code in THROTTLING_CODES:
        return RetryableProviderError(message, {"code": code})
    if code == "ResourceNotFoundException":
        return ResourceNotFoundError(message, {"code": code})
    return PermanentProviderError(message, {"code": code})


class AWSSecretsManagerVault:
    """AWS Secrets Manager vault."""

    def __init__(self, region: str = "us-east-1", session: Any | None = None) -> None:
        self._region = region
        self._session = session or aioboto3.Session(region_name=region)

    async def put_secret_value(
        self,
        secret_id: str,
        secret_string: str,
        *,
        token: str,
        description: str | None = None,
    ) -> str:
        try:
            async with self._session.client("secretsmanager") as client:
                try:
                    response = await client.put_secret_value(
                        SecretId=secret_id,
                        SecretString=secret_string,
                        ClientRequestToken=token,
                    )
                except ClientError as exc:
                    if exc.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                        raise
                    create_args: dict[str, Any] = {
                        "Name": secret_id,
                        "SecretString": secret_string,
                        "ClientRequestToken": token,
                    }
                    if description:
                        create_args["Description"] = description
                    response = await client.create_secret(**create_args)
                return response["VersionId"]
        except ClientError as exc:
            raise _translate_client_error(exc, secret_id) from exc
        except BotoCoreError as exc:
            logger.warning("secrets_manager_network_error", secret=_sanitize_secret_id(secret_id))
            raise RetryableProviderError(str(exc)) from exc

    async def get_secret_value(self, secret_id: str, version: str = LATEST) -> str:
        args: dict[str, Any] = {"SecretId": secret_id}
        if version != LATEST:
            args["VersionId"] = version
        try:
            async with self._session.client("secretsmanager") as client:
                response = await client.get_secret_value(**args)
        except ClientError as exc:
            raise _translate_client_error(exc, secret_id) from exc
        except BotoCoreError as exc:
            raise RetryableProviderError(str(exc)) from exc
        return response["SecretString"]

    async def describe_secret(self, secret_id: str) -> dict[str, Any]:
        try:
            async with self._session.client("secretsmanager") as client:
                response = await client.describe_secret(SecretId=secret_id)
        except ClientError as exc:
            raise _translate_client_error(exc, secret_id) from exc
        except BotoCoreError as exc:
            raise RetryableProviderError(str(exc)) from exc

        current = next(
            (
                version_id
                for version_id, stages in response.get("VersionIdsToStages", {}).items()
                if "AWSCURRENT" in stages
            ),
            None,
        )
        return {
            "arn": response["ARN"],
            "secret_id": secret_id,
            "version": current,
            "version_count": len(response.get("VersionIdsToStages", {})),
        }

    async def delete_secret(self, secret_id: str) -> None:
        try:
            async with self._session.client("secretsmanager") as client:
                await client.delete_secret(SecretId=secret_id, ForceDeleteWithoutRecovery=True)
        except ClientError as exc:
            raise _translate_client_error(exc, secret_id) from exc
        except BotoCoreError as exc:
            raise RetryableProviderError(str(exc)) from exc


class SecretStoreAdapter:
    """Versioned secret management, exposed to the scheduler as a provider."""

    name = "secret-store"

    def __init__(
        self,
        vault: SecretVault,
        sources: SecretSourceResolver | None = None,
        *,
        fingerprint_key: bytes | None = None,
    ) -> None:
        self._vault = vault
        self._sources = sources or SecretSourceResolver()
        # Without a persisted key, fingerprints are only stable for this process
        self._fingerprint_key = fingerprint_key or os.urandom(FINGERPRINT_KEY_BYTES)

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def fingerprint(self, secret_id: str, values: dict[str, Any]) -> str:
        """Keyed content fingerprint of a declared secret, computed from its sources."""
        self._require_references(secret_id, values)
        return secret_fingerprint(self._fingerprint_key, secret_id, self._sources.resolve_mapping(values))

    async def create_or_update_secret(
        self,
        secret_id: str,
        structured_value: dict[str, Any],
        *,
        description: str | None = None,
    ) -> tuple[str, str]:
        """Write ``structured_value``; a new version is allocated only when content changed.

        Content is compared against the vault's current version. A changed
        value is written under a fresh request token, so returning to an
        earlier value still allocates a new current version.
        """
        current = await self._current_version(secret_id, structured_value)
        if current is not None:
            logger.info("secret_unchanged", secret=_sanitize_secret_id(secret_id), version=current)
            return secret_id, current

        version = await self._vault.put_secret_value(
            secret_id,
            json.dumps(structured_value, sort_keys=True),
            token=str(uuid.uuid4()),
            description=description,
        )
        logger.info("secret_version_written", secret=_sanitize_secret_id(secret_id), version=version)
        return secret_id, version

    async def _current_version(self, secret_id: str, structured_value: dict[str, Any]) -> str | None:
        """The current version id if it already holds ``structured_value``."""
        try:
            version = (await self._vault.describe_secret(secret_id)).get("version")
            if not version:
                return None
            existing = await self._vault.get_secret_value(secret_id, version)
        except ResourceNotFoundError:
            return None
        try:
            return version if json.loads(existing) == structured_value else None
        except ValueError:
            return None

    async def create(self, resource_type: ResourceType, desired_state: dict[str, Any]) -> CreateResult:
        secret_id, outputs = await self._write(desired_state)
        return CreateResult(physical_id=secret_id, outputs=outputs)

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        _, outputs = await self._write(desired_state, physical_id)
        return outputs

    async def read(self, physical_id: str) -> dict[str, Any]:
        return await self._vault.describe_secret(physical_id)

    async def delete(self, physical_id: str) -> None:
        await self._vault.delete_secret(physical_id)
        logger.info("secret_deleted", secret=_sanitize_secret_id(physical_id))

    async def _write(
        self, desired_state: dict[str, Any], physical_id: str | None = None
    ) -> tuple[str, dict[str, Any]]:
        secret_id = desired_state.get("secret_id") or physical_id
        if not secret_id:
            raise PermanentProviderError("Secret resource requires 'secret_id'")
        values = desired_state.get("values") or {}
        self._require_references(secret_id, values)

        structured = self._sources.resolve_mapping(values)
        _, version = await self.create_or_update_secret(
            secret_id, structured, description=desired_state.get("description")
        )
        described = await self._vault.describe_secret(secret_id)
        return secret_id, {"arn": described["arn"], "secret_id": secret_id, "version": version}

    def _require_references(self, secret_id: str, values: dict[str, Any]) -> None:
        if not isinstance(values, dict):
            raise ConfigurationError(f"Secret '{secret_id}' values must be a mapping")
        literal = sorted(key for key, value in values.items() if not self._sources.is_reference(value))
        if literal:
            raise ConfigurationError(
                f"Secret '{secret_id}' values must be source references like ${{env:NAME}}",
                {"keys": ",".join(literal)},
            )
