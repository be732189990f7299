"""
Scheduler / applier.

Executes a validated ``ResourceGraph`` against the registered providers:

- nodes start only once every dependency has applied, up to
  ``settings.concurrency`` at a time
- provider calls that raise ``RetryableProviderError`` are retried with
  exponential backoff (tenacity); anything else is terminal for the node
- a failed node fails its transitive dependents without attempting them,
  while dependents of a timed-out gate stay pending (blocked)
- cancellation stops new dispatch; in-flight provider calls run to
  completion, but gate polling and retry backoff stop early
- unchanged nodes (same rendered desired state and secret versions as the
  last apply) are skipped without calling the provider
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from stackweave.config.settings import Settings
from stackweave.core.errors import (
    CancelledError,
    DependencyError,
    GateRejectedError,
    GateTimeoutError,
    ProviderError,
    ResourceNotFoundError,
    RetryableProviderError,
    StackweaveError,
)
from stackweave.orchestration.gates import GateState, GateStateMachine, policy_for
from stackweave.orchestration.graph import NodeStatus, ResourceGraph, ResourceNode
from stackweave.orchestration.results import ApplyReport, DestroyReport, ResultCollector
from stackweave.orchestration.state import ResourceRecord, StackState
from stackweave.providers.base import PHYSICAL_ID_OUTPUT
from stackweave.providers.registry import ProviderRegistry
from stackweave.resources import ResourceType
from stackweave.secrets import secret_refs

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]


class CancellationToken:
    """Global stop signal shared by the scheduler and its caller."""

    def __init__(self) -> None:
        self._reason: Optional[str] = None
        self._event = asyncio.Event()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason
            self._event.set()
            logger.warning("apply_cancelled", reason=reason)

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def event(self) -> asyncio.Event:
        """Set once cancelled; lets in-flight waits stop early."""
        return self._event


@dataclass
class _NodeOutcome:
    attempts: int = 0
    skipped: bool = False
    gate_state: Optional[str] = None


class Scheduler:
    """Applies or destroys one resource graph."""

    def __init__(
        self,
        graph: ResourceGraph,
        providers: ProviderRegistry,
        state: StackState,
        settings: Settings,
        *,
        name: str = "",
        cancel_token: CancellationToken | None = None,
        exports: Callable[[], dict[str, Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.graph = graph
        self.providers = providers
        self.state = state
        self.settings = settings
        self.name = name or state.stack
        self.cancel_token = cancel_token or CancellationToken()
        self.gates: dict[str, GateStateMachine] = {}
        self._exports = exports
        self._clock = clock
        self._sleep = sleep

    # Apply

    async def apply(self) -> ApplyReport:
        started = self._clock()
        self.state.stack = self.name
        collector = ResultCollector(self.name)
        pending = self.graph.topological_order()
        recorded: set[str] = set()
        running: dict[asyncio.Task[_NodeOutcome], str] = {}

        logger.info("apply_started", stack=self.name, nodes=len(pending), concurrency=self.settings.concurrency)

        while pending or running:
            if not self.cancel_token.cancelled:
                for node_id in list(pending):
                    if len(running) >= self.settings.concurrency:
                        break
                    if not self._ready(node_id):
                        continue
                    pending.remove(node_id)
                    node = self.graph.node(node_id)
                    node.mark_applying()
                    running[asyncio.create_task(self._run_node(node))] = node_id

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                node = self.graph.node(running.pop(task))
                outcome = task.result()
                collector.record(
                    node,
                    attempts=outcome.attempts,
                    skipped=outcome.skipped,
                    gate_state=outcome.gate_state,
                )
                recorded.add(node.id)
                if node.status is NodeStatus.FAILED:
                    self._propagate_failure(node, pending, collector, recorded)

        if self.cancel_token.cancelled:
            collector.mark_cancelled()
        for node_id in pending:
            if node_id in recorded:
                continue
            node = self.graph.node(node_id)
            error = CancelledError(
                f"{node_id} not started: {self.cancel_token.reason or 'apply stopped'}",
                {"node_id": node_id},
            )
            collector.record(node, error=error)

        self.providers.finalize()
        exports = self._exports() if self._exports else {}
        report = collector.finalize(round(self._clock() - started, 3), exports)
        logger.info(
            "apply_finished",
            stack=self.name,
            applied=len(report.applied),
            failed=len(report.failed),
            skipped=len(report.skipped),
            exit_code=int(report.exit_code),
        )
        return report

    def _ready(self, node_id: str) -> bool:
        return all(
            self.graph.node(dependency).status is NodeStatus.APPLIED
            for dependency in self.graph.dependencies_of(node_id)
        )

    def _propagate_failure(
        self,
        failed: ResourceNode,
        pending: list[str],
        collector: ResultCollector,
        recorded: set[str],
    ) -> None:
        if isinstance(failed.failure, CancelledError):
            # Dependents are reported as not started once the loop drains
            return
        timed_out = isinstance(failed.failure, GateTimeoutError)
        for dependent_id in sorted(self.graph.transitive_dependents(failed.id)):
            if dependent_id not in pending:
                continue
            dependent = self.graph.node(dependent_id)
            if timed_out:
                collector.record(dependent, blocked_by=failed.id)
                logger.info("node_blocked", node_id=dependent_id, gate=failed.id)
            else:
                pending.remove(dependent_id)
                dependent.mark_failed(DependencyError(dependent_id, failed.id))
                collector.record(dependent)
                logger.info("node_dependency_failed", node_id=dependent_id, upstream=failed.id)
            recorded.add(dependent_id)

        if self.settings.fail_fast and not timed_out:
            self.cancel_token.cancel(f"{failed.id} failed")

    async def _run_node(self, node: ResourceNode) -> _NodeOutcome:
        outcome = _NodeOutcome()
        log = logger.bind(node_id=node.id, type=node.type.value)
        log.info("node_apply_started")
        try:
            await self._apply_node(node, outcome)
        except StackweaveError as exc:
            node.mark_failed(exc)
            log.error("node_apply_failed", error=exc.message, error_type=type(exc).__name__)
        except Exception as exc:
            error = ProviderError(f"{node.id}: unexpected provider failure: {exc}", {"node_id": node.id})
            node.mark_failed(error)
            log.exception("node_apply_crashed")
        else:
            log.info("node_applied", physical_id=node.physical_id, skipped=outcome.skipped)
        return outcome

    async def _apply_node(self, node: ResourceNode, outcome: _NodeOutcome) -> None:
        desired = node.render()
        secret_versions = self._secret_versions(node)
        provider = self.providers.get(node.type)
        record = self.state.get(node.id)

        unchanged = (
            record is not None
            and record.desired == desired
            and record.secret_versions == secret_versions
        )
        if unchanged and record is not None:
            physical_id, outputs = record.physical_id, dict(record.outputs)
            outcome.skipped = record.confirmed
        elif record is not None:
            outputs = dict(await self._call(node.id, outcome, provider.update, record.physical_id, desired))
            physical_id = outputs.pop(PHYSICAL_ID_OUTPUT, record.physical_id)
            outputs = {**record.outputs, **outputs}
        else:
            result = await self._call(node.id, outcome, provider.create, node.type, desired)
            physical_id, outputs = result.physical_id, dict(result.outputs)

        confirmed = not node.is_gated or (unchanged and record is not None and record.confirmed)
        self._record(node, physical_id, desired, outputs, secret_versions, confirmed)

        if not confirmed:
            outputs = await self._await_gate(node, provider, physical_id, outputs, outcome)
            self._record(node, physical_id, desired, outputs, secret_versions, True)
        elif node.is_gated:
            outcome.gate_state = GateState.CONFIRMED.value

        node.mark_applied(physical_id, outputs)

    def _record(
        self,
        node: ResourceNode,
        physical_id: str,
        desired: dict[str, Any],
        outputs: dict[str, Any],
        secret_versions: dict[str, str],
        confirmed: bool,
    ) -> None:
        self.state.put(
            ResourceRecord(
                node_id=node.id,
                type=node.type.value,
                physical_id=physical_id,
                desired=desired,
                outputs=outputs,
                secret_versions=secret_versions,
                confirmed=confirmed,
            )
        )

    def _secret_versions(self, node: ResourceNode) -> dict[str, str]:
        """Version of every secret this node references, as of this apply."""
        managed = self.graph.secret_index()
        versions: dict[str, str] = {}
        for ref in secret_refs(node.desired_state):
            record = self.state.get(managed[ref.secret_id]) if ref.secret_id in managed else None
            if record is not None and record.outputs.get("version"):
                versions[ref.secret_id] = str(record.outputs["version"])
            else:
                versions[ref.secret_id] = ref.version
        return versions

    async def _await_gate(
        self,
        node: ResourceNode,
        provider: Any,
        physical_id: str,
        outputs: dict[str, Any],
        outcome: _NodeOutcome,
    ) -> dict[str, Any]:
        gate_config = node.gate or {}
        machine = GateStateMachine(
            node_id=node.id,
            policy=policy_for(node.type, gate_config),
            deadline_seconds=float(gate_config.get("deadline_seconds", self.settings.gate_deadline_seconds)),
            poll_interval=float(gate_config.get("poll_interval", self.settings.gate_poll_interval)),
            clock=self._clock,
        )
        self.gates[node.id] = machine
        last_read: dict[str, Any] = {}

        async def poll() -> dict[str, Any]:
            last_read.clear()
            last_read.update(await provider.read(physical_id))
            return last_read

        final = await machine.wait(poll, sleep=self._sleep, stop=self.cancel_token.event)
        outcome.gate_state = final.value

        if not machine.is_terminal:
            # Left unconfirmed in state; the next apply polls it again
            raise CancelledError(
                f"{node.id} stopped awaiting confirmation: {self.cancel_token.reason}",
                {"node_id": node.id, "physical_id": physical_id},
            )
        if final is GateState.TIMED_OUT:
            raise GateTimeoutError(
                f"{node.id} awaiting external confirmation: {machine.last_error}",
                {"node_id": node.id, "physical_id": physical_id, "attempts": machine.attempts},
            )
        if final is GateState.REJECTED:
            raise GateRejectedError(
                f"{node.id} rejected by provider: {machine.last_error}",
                {"node_id": node.id, "physical_id": physical_id},
            )

        status_key = machine.policy.status_key
        if status_key in last_read:
            outputs = {**outputs, status_key: last_read[status_key]}
        return outputs

    async def _call(
        self,
        node_id: str,
        outcome: _NodeOutcome,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Invoke a provider operation, retrying transient failures.

        Once the run is cancelled no further attempt starts; the node fails
        with ``CancelledError`` instead.
        """

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "node_retry_scheduled",
                node_id=node_id,
                attempt=retry_state.attempt_number,
                delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
                error=str(error),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RetryableProviderError),
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.settings.backoff_multiplier, max=self.settings.backoff_max),
            sleep=self._backoff,
            before_sleep=_log_retry,
            reraise=True,
        )
        result: Any = None
        first_attempt = True
        async for attempt in retrying:
            with attempt:
                if not first_attempt and self.cancel_token.cancelled:
                    raise CancelledError(
                        f"{node_id} retries stopped: {self.cancel_token.reason}",
                        {"node_id": node_id, "attempts": outcome.attempts},
                    )
                first_attempt = False
                outcome.attempts += 1
                result = await fn(*args)
        return result

    async def _backoff(self, delay: float) -> None:
        """Retry backoff that ends early when the run is cancelled."""
        if self.cancel_token.cancelled:
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopped = asyncio.ensure_future(self.cancel_token.event.wait())
        await asyncio.wait({sleeper, stopped}, return_when=asyncio.FIRST_COMPLETED)
        for waiter in (sleeper, stopped):
            if not waiter.done():
                waiter.cancel()

    # Destroy

    async def destroy(self) -> DestroyReport:
        """Delete every recorded resource, dependents before their dependencies.

        Records no longer declared in the graph are deleted first.
        """
        started = self._clock()
        report = DestroyReport(stack=self.name)
        declared = [node_id for node_id in self.graph.reverse_order() if node_id in self.state.records]
        orphans = sorted(node_id for node_id in self.state.records if node_id not in self.graph)
        blocked: dict[str, str] = {}

        logger.info("destroy_started", stack=self.name, resources=len(declared) + len(orphans))

        for node_id in orphans + declared:
            if node_id in blocked:
                report.blocked[node_id] = blocked[node_id]
                self._block_dependencies(node_id, blocked, f"dependent {node_id} was not deleted")
                continue
            if self.cancel_token.cancelled:
                report.blocked[node_id] = f"not started: {self.cancel_token.reason}"
                continue

            record = self.state.records[node_id]
            provider = self.providers.get(ResourceType(record.type))
            try:
                await self._call(node_id, _NodeOutcome(), provider.delete, record.physical_id)
            except ResourceNotFoundError:
                report.absent.append(node_id)
                self.state.remove(node_id)
                logger.info("resource_already_absent", node_id=node_id, physical_id=record.physical_id)
            except CancelledError as exc:
                report.blocked[node_id] = exc.message
                self._block_dependencies(node_id, blocked, f"dependent {node_id} was not deleted")
            except StackweaveError as exc:
                report.failed[node_id] = exc.message
                self._block_dependencies(node_id, blocked, f"dependent {node_id} failed to delete")
                logger.error("resource_delete_failed", node_id=node_id, error=exc.message)
            else:
                report.deleted.append(node_id)
                self.state.remove(node_id)
                logger.info("resource_deleted", node_id=node_id, physical_id=record.physical_id)

        self.providers.finalize()
        report.duration_seconds = round(self._clock() - started, 3)
        logger.info(
            "destroy_finished",
            stack=self.name,
            deleted=len(report.deleted),
            absent=len(report.absent),
            failed=len(report.failed),
        )
        return report

    def _block_dependencies(self, node_id: str, blocked: dict[str, str], reason: str) -> None:
        if node_id not in self.graph:
            return
        for dependency in self.graph.dependencies_of(node_id):
            blocked.setdefault(dependency, reason)
