"""
Confirmation gates.

Some resources are created immediately but only become usable after an
external party confirms them: a certificate is issued once its DNS
validation records propagate, a target is routable once health checks pass.
A ``GateStateMachine`` tracks that confirmation:

    Requested → PendingExternalConfirmation → Confirmed | TimedOut | Rejected

Only ``Confirmed`` lets dependents proceed. ``TimedOut`` is left for the
operator to re-run (the cause is usually external DNS configuration);
``Rejected`` is permanent.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable

import structlog

from stackweave.core.errors import RetryableProviderError
from stackweave.resources import ResourceType

logger = structlog.get_logger()


class GateState(StrEnum):
    REQUESTED = "requested"
    PENDING_EXTERNAL_CONFIRMATION = "pending_external_confirmation"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({GateState.CONFIRMED, GateState.TIMED_OUT, GateState.REJECTED})

_TRANSITIONS: dict[GateState, frozenset[GateState]] = {
    GateState.REQUESTED: frozenset({GateState.PENDING_EXTERNAL_CONFIRMATION, GateState.REJECTED}),
    GateState.PENDING_EXTERNAL_CONFIRMATION: TERMINAL_STATES,
}


@dataclass(frozen=True)
class GatePolicy:
    """How to read confirmation status from a provider ``read`` result."""

    status_key: str = "status"
    success_values: frozenset[str] = frozenset({"confirmed"})
    rejected_values: frozenset[str] = frozenset({"rejected"})

    def classify(self, current_state: dict[str, Any]) -> GateState | None:
        status = str(current_state.get(self.status_key, "")).strip()
        if status in self.success_values:
            return GateState.CONFIRMED
        if status in self.rejected_values:
            return GateState.REJECTED
        return None


DEFAULT_POLICIES: dict[ResourceType, GatePolicy] = {
    ResourceType.CERTIFICATE_VALIDATION: GatePolicy(
        status_key="status",
        success_values=frozenset({"ISSUED"}),
        rejected_values=frozenset({"FAILED", "REVOKED", "VALIDATION_TIMED_OUT"}),
    ),
    ResourceType.TARGET_REGISTRATION: GatePolicy(
        status_key="health",
        success_values=frozenset({"healthy"}),
        rejected_values=frozenset({"unavailable"}),
    ),
}


def policy_for(resource_type: ResourceType, overrides: dict[str, Any] | None = None) -> GatePolicy:
    base = DEFAULT_POLICIES.get(resource_type, GatePolicy())
    if not overrides:
        return base
    return GatePolicy(
        status_key=overrides.get("status_key", base.status_key),
        success_values=frozenset(overrides.get("success_values", base.success_values)),
        rejected_values=frozenset(overrides.get("rejected_values", base.rejected_values)),
    )


class InvalidGateTransition(RuntimeError):
    pass


@dataclass
class GateStateMachine:
    """Lifecycle of one gated node."""

    node_id: str
    policy: GatePolicy
    deadline_seconds: float
    poll_interval: float
    clock: Callable[[], float] = time.monotonic
    state: GateState = GateState.REQUESTED
    attempts: int = 0
    last_error: str | None = None
    deadline: float | None = None
    _wakeup: asyncio.Event | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, target: GateState, reason: str | None = None) -> None:
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidGateTransition(f"{self.node_id}: {self.state} → {target}")
        self.state = target
        if reason:
            self.last_error = reason
        logger.info("gate_transition", node_id=self.node_id, state=target.value, attempts=self.attempts)
        if self._wakeup is not None:
            self._wakeup.set()

    def requested(self) -> None:
        """The creation call succeeded; start the confirmation deadline."""
        self.deadline = self.clock() + self.deadline_seconds
        self._transition(GateState.PENDING_EXTERNAL_CONFIRMATION)

    def confirm(self) -> None:
        self._transition(GateState.CONFIRMED)

    def reject(self, reason: str) -> None:
        self._transition(GateState.REJECTED, reason)

    def notify(self, current_state: dict[str, Any]) -> GateState:
        """Event-driven confirmation: apply a provider-reported status."""
        if self.is_terminal:
            return self.state
        outcome = self.policy.classify(current_state)
        if outcome is GateState.CONFIRMED:
            self.confirm()
        elif outcome is GateState.REJECTED:
            self.reject(f"provider reported {current_state.get(self.policy.status_key)}")
        return self.state

    def check_deadline(self) -> GateState:
        if (
            self.state is GateState.PENDING_EXTERNAL_CONFIRMATION
            and self.deadline is not None
            and self.clock() >= self.deadline
        ):
            self._transition(
                GateState.TIMED_OUT,
                self.last_error or f"not confirmed within {self.deadline_seconds:g}s",
            )
        return self.state

    async def wait(
        self,
        poll: Callable[[], Awaitable[dict[str, Any]]],
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        stop: asyncio.Event | None = None,
    ) -> GateState:
        """Poll until the gate reaches a terminal state.

        Retryable read failures are recorded and polling continues until the
        deadline; anything else propagates. Setting ``stop`` ends the wait
        early and leaves the gate pending.
        """
        if self.state is GateState.REQUESTED:
            self.requested()
        self._wakeup = asyncio.Event()

        while not self.is_terminal:
            if stop is not None and stop.is_set():
                logger.info("gate_wait_stopped", node_id=self.node_id, attempts=self.attempts)
                break
            self.attempts += 1
            try:
                self.notify(await poll())
            except RetryableProviderError as exc:
                self.last_error = exc.message
                logger.warning("gate_poll_failed", node_id=self.node_id, error=exc.message)

            if self.check_deadline() in TERMINAL_STATES:
                break

            remaining = max(0.0, (self.deadline or 0.0) - self.clock())
            delay = min(self.poll_interval, remaining)
            self._wakeup.clear()
            waiters = {asyncio.ensure_future(sleep(delay)), asyncio.ensure_future(self._wakeup.wait())}
            if stop is not None:
                waiters.add(asyncio.ensure_future(stop.wait()))
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for pending in waiters:
                if not pending.done():
                    pending.cancel()
            self.check_deadline()

        if self.state is GateState.TIMED_OUT:
            logger.warning("gate_timed_out", node_id=self.node_id, attempts=self.attempts)
        return self.state
