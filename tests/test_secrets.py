"""Tests for the secret store adapter and vaults."""

import hashlib
import json
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError
from stackweave.core.errors import (
    ConfigurationError,
    PermanentProviderError,
    ResourceNotFoundError,
    RetryableProviderError,
)
from stackweave.orchestration.scheduler import Scheduler
from stackweave.orchestration.stack import Stack
from stackweave.orchestration.state import StackState
from stackweave.resources import ResourceType
from stackweave.secrets import (
    AWSSecretsManagerVault,
    InMemoryVault,
    SecretRef,
    SecretStoreAdapter,
    _sanitize_secret_id,
    load_fingerprint_key,
    secret_fingerprint,
    secret_refs,
)


def _client_error(code: str, operation: str = "PutSecretValue") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _session(mock_client: AsyncMock) -> MagicMock:
    mock_session = MagicMock()
    mock_session.client = MagicMock(
        return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=mock_client),
            __aexit__=AsyncMock(return_value=None),
        )
    )
    return mock_session


class TestSanitizeSecretId:
    def test_short_ids_fully_masked(self):
        assert _sanitize_secret_id("ab") == "***"

    def test_path_keeps_first_segment(self):
        assert _sanitize_secret_id("prod/db/password") == "prod/***"

    def test_plain_id_keeps_prefix(self):
        assert _sanitize_secret_id("database") == "da***"


class TestSecretRef:
    def test_dict_form(self):
        ref = SecretRef("prod/app", key_path="DB_PASSWORD")
        assert ref.to_dict() == {
            "secret_ref": {"secret_id": "prod/app", "version": "latest", "key_path": "DB_PASSWORD"}
        }
        assert SecretRef.from_dict(ref.to_dict()) == ref

    def test_from_dict_accepts_bare_body_and_key_alias(self):
        assert SecretRef.from_dict({"secret_id": "prod/app", "key": "K"}).key_path == "K"

    def test_from_dict_requires_secret_id(self):
        with pytest.raises(ValueError):
            SecretRef.from_dict({"secret_ref": {"key_path": "K"}})

    def test_secret_refs_walks_nested_state(self):
        first, second = SecretRef("a"), SecretRef("b")
        assert secret_refs({"env": [{"x": first}], "other": (second, "plain")}) == [first, second]


class TestInMemoryVault:
    @pytest.mark.asyncio
    async def test_same_token_reuses_version(self):
        vault = InMemoryVault()
        first = await vault.put_secret_value("prod/app", "{}", token="t1")
        again = await vault.put_secret_value("prod/app", "{}", token="t1")
        rotated = await vault.put_secret_value("prod/app", '{"k": 1}', token="t2")

        assert first == again == "v1"
        assert rotated == "v2"
        assert await vault.get_secret_value("prod/app") == '{"k": 1}'
        assert await vault.get_secret_value("prod/app", "v1") == "{}"
        described = await vault.describe_secret("prod/app")
        assert described["version"] == "v2"
        assert described["version_count"] == 2

    @pytest.mark.asyncio
    async def test_metadata_survives_export_but_plaintext_does_not(self):
        vault = InMemoryVault()
        await vault.put_secret_value("prod/app", "{}", token="t1")
        reloaded = InMemoryVault(vault.export())

        assert (await reloaded.describe_secret("prod/app"))["version"] == "v1"
        assert await reloaded.put_secret_value("prod/app", "{}", token="t1") == "v1"
        with pytest.raises(ResourceNotFoundError):
            await reloaded.get_secret_value("prod/app")

    @pytest.mark.asyncio
    async def test_delete_missing_secret(self):
        with pytest.raises(ResourceNotFoundError):
            await InMemoryVault().delete_secret("prod/app")


class TestSecretStoreAdapter:
    @pytest.mark.asyncio
    async def test_create_resolves_env_sources(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "hunter2")
        vault = InMemoryVault()
        adapter = SecretStoreAdapter(vault)

        result = await adapter.create(
            ResourceType.SECRET,
            {"secret_id": "prod/app", "values": {"DB_PASSWORD": "${env:DB_PASSWORD}"}},
        )

        assert result.physical_id == "prod/app"
        assert result.outputs["version"] == "v1"
        assert "hunter2" not in json.dumps(result.outputs)
        assert json.loads(await vault.get_secret_value("prod/app")) == {"DB_PASSWORD": "hunter2"}

    @pytest.mark.asyncio
    async def test_unchanged_content_keeps_version(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "hunter2")
        adapter = SecretStoreAdapter(InMemoryVault())
        desired = {"secret_id": "prod/app", "values": {"DB_PASSWORD": "${env:DB_PASSWORD}"}}

        await adapter.create(ResourceType.SECRET, desired)
        outputs = await adapter.update("prod/app", desired)

        assert outputs["version"] == "v1"

    def test_literal_values_rejected(self):
        adapter = SecretStoreAdapter(InMemoryVault())
        with pytest.raises(ConfigurationError) as excinfo:
            adapter.fingerprint("prod/app", {"DB_PASSWORD": "hunter2"})
        assert excinfo.value.details["keys"] == "DB_PASSWORD"

    def test_missing_source_value(self, monkeypatch):
        monkeypatch.delenv("DB_PASSWORD", raising=False)
        adapter = SecretStoreAdapter(InMemoryVault())
        with pytest.raises(ConfigurationError, match="env:DB_PASSWORD"):
            adapter.fingerprint("prod/app", {"DB_PASSWORD": "${env:DB_PASSWORD}"})

    def test_fingerprint_tracks_content(self, monkeypatch):
        key = b"k" * 32
        adapter = SecretStoreAdapter(InMemoryVault(), fingerprint_key=key)
        values = {"DB_PASSWORD": "${env:DB_PASSWORD}"}
        monkeypatch.setenv("DB_PASSWORD", "one")
        first = adapter.fingerprint("prod/app", values)
        monkeypatch.setenv("DB_PASSWORD", "two")
        assert adapter.fingerprint("prod/app", values) != first
        assert first == secret_fingerprint(key, "prod/app", {"DB_PASSWORD": "one"})

    def test_fingerprint_cannot_be_recomputed_without_key(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "hunter2")
        values = {"DB_PASSWORD": "${env:DB_PASSWORD}"}
        fingerprint = SecretStoreAdapter(InMemoryVault(), fingerprint_key=b"a" * 32).fingerprint("prod/app", values)

        unkeyed = hashlib.sha256(b'prod/app\n{"DB_PASSWORD":"hunter2"}').hexdigest()
        assert fingerprint != unkeyed
        assert fingerprint != SecretStoreAdapter(InMemoryVault(), fingerprint_key=b"b" * 32).fingerprint(
            "prod/app", values
        )

    @pytest.mark.asyncio
    async def test_returning_to_earlier_value_allocates_new_version(self):
        vault = InMemoryVault()
        adapter = SecretStoreAdapter(vault)

        versions = [
            (await adapter.create_or_update_secret("prod/app", {"DB_PASSWORD": value}))[1]
            for value in ("a", "b", "a")
        ]

        assert versions == ["v1", "v2", "v3"]
        assert json.loads(await vault.get_secret_value("prod/app")) == {"DB_PASSWORD": "a"}

    @pytest.mark.asyncio
    async def test_vault_export_holds_no_content_digest(self):
        vault = InMemoryVault()
        await SecretStoreAdapter(vault).create_or_update_secret("prod/app", {"DB_PASSWORD": "hunter2"})

        exported = json.dumps(vault.export())

        assert hashlib.sha256(b'prod/app\n{"DB_PASSWORD":"hunter2"}').hexdigest() not in exported
        assert "hunter2" not in exported


class TestFingerprintKey:
    def test_created_once_with_owner_only_permissions(self, tmp_path):
        path = tmp_path / "keys" / "fingerprint.key"

        key = load_fingerprint_key(path)

        assert len(key) == 32
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert load_fingerprint_key(path) == key

    def test_rejects_malformed_key(self, tmp_path):
        path = tmp_path / "fingerprint.key"
        path.write_text("not-hex\n")

        with pytest.raises(ConfigurationError, match="not hex encoded"):
            load_fingerprint_key(path)

    def test_rejects_short_key(self, tmp_path):
        path = tmp_path / "fingerprint.key"
        path.write_text("abcd\n")

        with pytest.raises(ConfigurationError, match="fewer than 32 bytes"):
            load_fingerprint_key(path)


def _secret_stack(settings, adapter):
    stack = Stack("app", settings, secrets=adapter)
    stack.secret("app-secret", "prod/app", {"DB_PASSWORD": "${env:DB_PASSWORD}"})
    stack.resource(
        "service",
        "container_service",
        {"name": "service", "env": {"DB_PASSWORD": Stack.secret_ref("prod/app", "DB_PASSWORD")}},
    )
    return stack


class TestRotation:
    @pytest.mark.asyncio
    async def test_rotation_reapplies_consumers(
        self, settings, registry, fake_provider, no_sleep, monkeypatch
    ):
        adapter = SecretStoreAdapter(InMemoryVault())
        registry.register(ResourceType.SECRET, adapter)
        state = StackState()

        monkeypatch.setenv("DB_PASSWORD", "one")
        await Scheduler(_secret_stack(settings, adapter).build_graph(), registry, state, settings, sleep=no_sleep).apply()
        assert state.get("service").secret_versions == {"prod/app": "v1"}
        fake_provider.calls.clear()

        monkeypatch.setenv("DB_PASSWORD", "two")
        report = await Scheduler(
            _secret_stack(settings, adapter).build_graph(), registry, state, settings, sleep=no_sleep
        ).apply()

        assert report.success
        assert state.get("app-secret").outputs["version"] == "v2"
        # Desired state of the consumer is unchanged; only the version moved
        assert fake_provider.calls == [("update", "service")]
        assert state.get("service").secret_versions == {"prod/app": "v2"}
        assert "two" not in json.dumps(state.get("service").desired)

    @pytest.mark.asyncio
    async def test_same_secret_content_is_a_no_op(
        self, settings, registry, fake_provider, no_sleep, monkeypatch
    ):
        adapter = SecretStoreAdapter(InMemoryVault())
        registry.register(ResourceType.SECRET, adapter)
        state = StackState()
        monkeypatch.setenv("DB_PASSWORD", "one")

        await Scheduler(_secret_stack(settings, adapter).build_graph(), registry, state, settings, sleep=no_sleep).apply()
        fake_provider.calls.clear()
        report = await Scheduler(
            _secret_stack(settings, adapter).build_graph(), registry, state, settings, sleep=no_sleep
        ).apply()

        assert fake_provider.calls == []
        assert sorted(r.node_id for r in report.skipped) == ["app-secret", "service"]


class TestAWSSecretsManagerVault:
    @pytest.mark.asyncio
    async def test_put_returns_version_id(self):
        mock_client = AsyncMock()
        mock_client.put_secret_value = AsyncMock(return_value={"VersionId": "abc-123"})
        vault = AWSSecretsManagerVault(session=_session(mock_client))

        version = await vault.put_secret_value("prod/app", "{}", token="t1")

        assert version == "abc-123"
        mock_client.put_secret_value.assert_awaited_once_with(
            SecretId="prod/app", SecretString="{}", ClientRequestToken="t1"
        )

    @pytest.mark.asyncio
    async def test_missing_secret_is_created(self):
        mock_client = AsyncMock()
        mock_client.put_secret_value = AsyncMock(side_effect=_client_error("ResourceNotFoundException"))
        mock_client.create_secret = AsyncMock(return_value={"VersionId": "new-1"})
        vault = AWSSecretsManagerVault(session=_session(mock_client))

        version = await vault.put_secret_value("prod/app", "{}", token="t1", description="app secrets")

        assert version == "new-1"
        mock_client.create_secret.assert_awaited_once_with(
            Name="prod/app", SecretString="{}", ClientRequestToken="t1", Description="app secrets"
        )

    @pytest.mark.asyncio
    async def test_throttling_is_retryable(self):
        mock_client = AsyncMock()
        mock_client.put_secret_value = AsyncMock(side_effect=_client_error("ThrottlingException"))
        vault = AWSSecretsManagerVault(session=_session(mock_client))

        with pytest.raises(RetryableProviderError) as excinfo:
            await vault.put_secret_value("prod/app", "{}", token="t1")
        assert "prod/app" not in excinfo.value.message

    @pytest.mark.asyncio
    async def test_access_denied_is_permanent(self):
        mock_client = AsyncMock()
        mock_client.delete_secret = AsyncMock(side_effect=_client_error("AccessDeniedException", "DeleteSecret"))
        vault = AWSSecretsManagerVault(session=_session(mock_client))

        with pytest.raises(PermanentProviderError):
            await vault.delete_secret("prod/app")

    @pytest.mark.asyncio
    async def test_describe_reports_current_version(self):
        mock_client = AsyncMock()
        mock_client.describe_secret = AsyncMock(
            return_value={
                "ARN": "arn:aws:secretsmanager:us-east-1:1:secret:prod/app",
                "VersionIdsToStages": {"old": ["AWSPREVIOUS"], "cur": ["AWSCURRENT"]},
            }
        )
        vault = AWSSecretsManagerVault(session=_session(mock_client))

        described = await vault.describe_secret("prod/app")

        assert described["version"] == "cur"
        assert described["version_count"] == 2

    @pytest.mark.asyncio
    async def test_get_secret_value_by_version(self):
        mock_client = AsyncMock()
        mock_client.get_secret_value = AsyncMock(return_value={"SecretString": "{}"})
        vault = AWSSecretsManagerVault(session=_session(mock_client))

        assert await vault.get_secret_value("prod/app", "cur") == "{}"
        mock_client.get_secret_value.assert_awaited_once_with(SecretId="prod/app", VersionId="cur")


class _SecretsManagerVersions:
    """Version bookkeeping of one Secrets Manager secret, including token replay."""

    def __init__(self) -> None:
        self.by_token: dict[str, str] = {}
        self.values: dict[str, str] = {}
        self.current: str | None = None

    async def put_secret_value(self, SecretId, SecretString, ClientRequestToken):
        if ClientRequestToken in self.by_token:
            # Replayed token: the earlier version is returned and staging is untouched
            return {"VersionId": self.by_token[ClientRequestToken]}
        version_id = f"ver-{len(self.values) + 1}"
        self.by_token[ClientRequestToken] = version_id
        self.values[version_id] = SecretString
        self.current = version_id
        return {"VersionId": version_id}

    async def describe_secret(self, SecretId):
        if not self.values:
            raise _client_error("ResourceNotFoundException", "DescribeSecret")
        return {
            "ARN": f"arn:aws:secretsmanager:us-east-1:1:secret:{SecretId}",
            "VersionIdsToStages": {
                version_id: ["AWSCURRENT"] if version_id == self.current else []
                for version_id in self.values
            },
        }

    async def get_secret_value(self, SecretId, VersionId):
        return {"SecretString": self.values[VersionId]}


class TestSecretStoreAdapterOnSecretsManager:
    @pytest.mark.asyncio
    async def test_rotation_back_to_earlier_value_becomes_current(self):
        versions = _SecretsManagerVersions()
        mock_client = AsyncMock()
        mock_client.put_secret_value = AsyncMock(side_effect=versions.put_secret_value)
        mock_client.describe_secret = AsyncMock(side_effect=versions.describe_secret)
        mock_client.get_secret_value = AsyncMock(side_effect=versions.get_secret_value)
        adapter = SecretStoreAdapter(AWSSecretsManagerVault(session=_session(mock_client)))

        written = [
            (await adapter.create_or_update_secret("prod/app", {"DB_PASSWORD": value}))[1]
            for value in ("a", "b", "a")
        ]

        assert written == ["ver-1", "ver-2", "ver-3"]
        assert versions.current == "ver-3"
        tokens = [call.kwargs["ClientRequestToken"] for call in mock_client.put_secret_value.await_args_list]
        assert len(set(tokens)) == 3

    @pytest.mark.asyncio
    async def test_unchanged_value_is_not_written(self):
        versions = _SecretsManagerVersions()
        mock_client = AsyncMock()
        mock_client.put_secret_value = AsyncMock(side_effect=versions.put_secret_value)
        mock_client.describe_secret = AsyncMock(side_effect=versions.describe_secret)
        mock_client.get_secret_value = AsyncMock(side_effect=versions.get_secret_value)
        adapter = SecretStoreAdapter(AWSSecretsManagerVault(session=_session(mock_client)))

        first = await adapter.create_or_update_secret("prod/app", {"DB_PASSWORD": "a"})
        again = await adapter.create_or_update_secret("prod/app", {"DB_PASSWORD": "a"})

        assert first == again == ("prod/app", "ver-1")
        assert mock_client.put_secret_value.await_count == 1
