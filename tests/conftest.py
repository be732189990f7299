"""Root test configuration."""

import asyncio
import logging
from pathlib import Path
from typing import Any

import pytest
import structlog
from stackweave.config.settings import Settings
from stackweave.core.errors import ResourceNotFoundError
from stackweave.providers.base import CreateResult
from stackweave.providers.registry import ProviderRegistry


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class FakeProvider:
    """Records every call; failures are scripted per node name."""

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.resources: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.read_results: dict[str, list[dict[str, Any]]] = {}
        self.outputs: dict[str, dict[str, Any]] = {}
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(self, name: str, *errors: Exception) -> None:
        self.failures.setdefault(name, []).extend(errors)

    def count(self, operation: str, name: str | None = None) -> int:
        return sum(1 for op, target in self.calls if op == operation and (name is None or target == name))

    async def _enter(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            scripted = self.failures.get(name)
            if scripted:
                raise scripted.pop(0)
        finally:
            self.in_flight -= 1

    async def create(self, resource_type, desired_state: dict[str, Any]) -> CreateResult:
        name = desired_state.get("name", resource_type.value)
        await self._enter("create", name)
        physical_id = f"phys-{name}"
        self.resources[physical_id] = dict(desired_state)
        outputs = {"arn": f"arn:fake:{name}", **self.outputs.get(name, {})}
        return CreateResult(physical_id=physical_id, outputs=outputs)

    async def read(self, physical_id: str) -> dict[str, Any]:
        name = physical_id.removeprefix("phys-")
        self.calls.append(("read", name))
        scripted = self.read_results.get(name)
        if scripted:
            result = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            if isinstance(result, Exception):
                raise result
            return result
        return dict(self.resources.get(physical_id, {}))

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        name = physical_id.removeprefix("phys-")
        await self._enter("update", name)
        self.resources[physical_id] = dict(desired_state)
        return {"arn": f"arn:fake:{name}", **self.outputs.get(name, {})}

    async def delete(self, physical_id: str) -> None:
        name = physical_id.removeprefix("phys-")
        await self._enter("delete", name)
        if physical_id not in self.resources:
            raise ResourceNotFoundError(f"{physical_id} not found")
        del self.resources[physical_id]


async def _no_sleep(_delay: float) -> None:
    return None


class FakeClock:
    """Monotonic clock that only advances when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def isolated_fingerprint_key(tmp_path: Path, monkeypatch) -> Path:
    """Keep the secret fingerprint key out of the real home directory."""
    path = tmp_path / "fingerprint.key"
    monkeypatch.setenv("STACKWEAVE_FINGERPRINT_KEY_FILE", str(path))
    return path


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Fast settings: no real backoff, short gate deadlines, isolated state file."""
    return Settings(
        concurrency=4,
        max_attempts=3,
        backoff_multiplier=0,
        backoff_max=0,
        gate_deadline_seconds=30,
        gate_poll_interval=1,
        state_file=tmp_path / "state.json",
        credentials_file=tmp_path / "credentials.yaml",
        fingerprint_key_file=tmp_path / "fingerprint.key",
    )


@pytest.fixture
def no_sleep():
    """Sleep replacement so retries and gate polls run instantly."""
    return _no_sleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(fake_provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry(default=fake_provider)
