"""
Stack orchestrator for the plan / apply / destroy workflow.

Coordinates settings, the state file, the provider backend and the stack
declarations for one invocation of a command.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import pydantic
import structlog

from stackweave.config.settings import Settings, load_settings
from stackweave.core.errors import ConfigurationError, ValidationError
from stackweave.logging import bind_run_context
from stackweave.orchestration.graph import ResourceGraph
from stackweave.orchestration.plan_builder import PlanBuilder
from stackweave.orchestration.results import ApplyReport, DestroyReport, PlanResult
from stackweave.orchestration.scheduler import CancellationToken, Scheduler
from stackweave.orchestration.stack import Stack
from stackweave.orchestration.state import StackState, load_state, save_state
from stackweave.providers import ProviderRegistry, create_provider
from stackweave.specs.parser import StackDocument, load_stack_document

logger = structlog.get_logger()


@dataclass
class Invocation:
    """Everything one command needs, loaded fresh per run."""

    document: StackDocument
    settings: Settings
    state: StackState
    providers: ProviderRegistry
    stack: Stack


class StackOrchestrator:
    """Runs one command against one stack file."""

    def __init__(
        self,
        stack_file: Path,
        *,
        provider: str = "local",
        settings: Optional[Settings] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.stack_file = stack_file
        self.provider = provider
        self.base_settings = settings or load_settings()
        self.overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
        self.cancel_token = CancellationToken()

    def load(self, command: str) -> Invocation:
        """Parse the stack file, load state and wire the provider backend."""
        document = load_stack_document(self.stack_file, self.base_settings)
        settings = document.settings
        if self.overrides:
            try:
                settings = Settings(**{**settings.model_dump(), **self.overrides})
            except pydantic.ValidationError as e:
                raise ConfigurationError(f"Invalid command-line settings: {e}") from e

        bind_run_context(stack=document.name, run_id=uuid.uuid4().hex[:12], command=command)

        state = load_state(settings.state_file)
        if state.stack and state.stack != document.name:
            raise ConfigurationError(
                f"State file {settings.state_file} belongs to stack '{state.stack}', not '{document.name}'",
                {"state_file": str(settings.state_file)},
            )

        providers = create_provider(self.provider, settings=settings, state=state)
        stack = document.build(providers.secret_store)
        logger.debug("invocation_loaded", provider=self.provider, records=len(state.records))
        return Invocation(document, settings, state, providers, stack)

    def plan(self) -> PlanResult:
        invocation = self.load("plan")
        try:
            graph = invocation.stack.build_graph()
        except ValidationError as e:
            result = PlanResult(stack=invocation.document.name, stack_file=self.stack_file)
            result.errors.append(e.message)
            return result
        return PlanBuilder(graph, invocation.state).build(invocation.document.name, self.stack_file)

    async def apply(self) -> ApplyReport:
        invocation = self.load("apply")
        graph = invocation.stack.build_graph()
        scheduler = self._scheduler(invocation, graph)
        try:
            return await scheduler.apply()
        finally:
            save_state(invocation.state, invocation.settings.state_file)

    async def destroy(self) -> DestroyReport:
        invocation = self.load("destroy")
        graph = invocation.stack.build_graph()
        scheduler = self._scheduler(invocation, graph)
        try:
            return await scheduler.destroy()
        finally:
            save_state(invocation.state, invocation.settings.state_file)

    def _scheduler(self, invocation: Invocation, graph: ResourceGraph) -> Scheduler:
        return Scheduler(
            graph,
            invocation.providers,
            invocation.state,
            invocation.settings,
            name=invocation.document.name,
            cancel_token=self.cancel_token,
            exports=invocation.stack.resolved_exports,
        )
