"""
Output futures.

An ``Output`` is a value that only exists once the resource producing it has
been materialized (a load balancer hostname, a certificate ARN, a secret
version). Outputs compose through ``map``, ``join`` and ``interpolate``; every
derived output remembers the set of resource ids it was built from, which is
how implicit dependency edges are discovered without running anything.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any, Callable, Generic, Iterable, Sequence, TypeVar

T = TypeVar("T")
U = TypeVar("U")

UNKNOWN = "(known after apply)"


class OutputState(StrEnum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    FAILED = "failed"


class Output(Generic[T]):
    """A settle-once asynchronous value with composable combinators."""

    def __init__(self, resources: Iterable[str] = (), *, label: str | None = None) -> None:
        self.resources: frozenset[str] = frozenset(resources)
        self.label = label
        self._state = OutputState.UNRESOLVED
        self._value: T | None = None
        self._error: BaseException | None = None
        self._subscribers: list[Callable[[Output[T]], None]] = []

    def __repr__(self) -> str:
        name = self.label or ",".join(sorted(self.resources)) or "<const>"
        return f"Output({name}, {self._state.value})"

    @classmethod
    def of(cls, value: T) -> Output[T]:
        """An already-resolved output with no producing resource."""
        output: Output[T] = cls()
        output.resolve(value)
        return output

    @property
    def state(self) -> OutputState:
        return self._state

    @property
    def is_settled(self) -> bool:
        return self._state is not OutputState.UNRESOLVED

    @property
    def value(self) -> T:
        if self._state is OutputState.RESOLVED:
            return self._value  # type: ignore[return-value]
        if self._state is OutputState.FAILED:
            raise self._error  # type: ignore[misc]
        raise LookupError(f"{self!r} has not been resolved")

    @property
    def error(self) -> BaseException | None:
        return self._error

    def resolve(self, value: T) -> bool:
        """Settle with a value. Returns False if the output was already settled."""
        if self.is_settled:
            return False
        self._state = OutputState.RESOLVED
        self._value = value
        self._notify()
        return True

    def fail(self, error: BaseException) -> bool:
        """Settle with an error. Returns False if the output was already settled."""
        if self.is_settled:
            return False
        self._state = OutputState.FAILED
        self._error = error
        self._notify()
        return True

    def subscribe(self, callback: Callable[[Output[T]], None]) -> None:
        """Call ``callback`` exactly once, when this output settles."""
        if self.is_settled:
            callback(self)
        else:
            self._subscribers.append(callback)

    def _notify(self) -> None:
        subscribers, self._subscribers = self._subscribers, []
        for callback in subscribers:
            callback(self)

    def map(self, fn: Callable[[T], U]) -> Output[U]:
        """Derive a new output from this one's value.

        A failed parent fails the derived output without calling ``fn``.
        """
        derived: Output[U] = Output(self.resources, label=self.label)

        def _on_settled(parent: Output[T]) -> None:
            if parent.state is OutputState.FAILED:
                derived.fail(parent._error)  # type: ignore[arg-type]
                return
            try:
                derived.resolve(fn(parent._value))  # type: ignore[arg-type]
            except Exception as exc:
                derived.fail(exc)

        self.subscribe(_on_settled)
        return derived

    @staticmethod
    def join(outputs: Sequence[Output[Any]]) -> Output[list[Any]]:
        """Resolve to the ordered list of input values once all inputs resolve.

        Fails as soon as any input fails, with that input's error.
        """
        resources: set[str] = set()
        for output in outputs:
            resources |= output.resources
        joined: Output[list[Any]] = Output(resources)
        remaining = len(outputs)

        if remaining == 0:
            joined.resolve([])
            return joined

        def _on_settled(settled: Output[Any]) -> None:
            nonlocal remaining
            if joined.is_settled:
                return
            if settled.state is OutputState.FAILED:
                joined.fail(settled._error)  # type: ignore[arg-type]
                return
            remaining -= 1
            if remaining == 0:
                joined.resolve([output._value for output in outputs])

        for output in outputs:
            output.subscribe(_on_settled)
        return joined

    @staticmethod
    def interpolate(template: str, *args: Any, **kwargs: Any) -> Output[str]:
        """Format ``template`` with output (or plain) values.

        ``Output.interpolate("https://{}:{port}", lb.output("dns_name"), port=443)``
        """
        positional = [as_output(arg) for arg in args]
        keys = list(kwargs)
        named = [as_output(kwargs[key]) for key in keys]
        count = len(positional)

        def _render(values: list[Any]) -> str:
            return template.format(*values[:count], **dict(zip(keys, values[count:])))

        return Output.join(positional + named).map(_render)

    async def wait(self) -> T:
        """Suspend until this output settles, then return its value or raise."""
        if not self.is_settled:
            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()

            def _wake(_: Output[T]) -> None:
                if not waiter.done():
                    waiter.set_result(None)

            self.subscribe(_wake)
            await waiter
        return self.value


def as_output(value: Any) -> Output[Any]:
    if isinstance(value, Output):
        return value
    return Output.of(value)


def all_outputs(value: Any) -> list[Output[Any]]:
    """Every output embedded in a nested desired-state structure."""
    found: list[Output[Any]] = []

    def _walk(item: Any) -> None:
        if isinstance(item, Output):
            found.append(item)
        elif isinstance(item, dict):
            for child in item.values():
                _walk(child)
        elif isinstance(item, (list, tuple, set, frozenset)):
            for child in item:
                _walk(child)

    _walk(value)
    return found


def unwrap(
    value: Any,
    *,
    unknown: Any = None,
    strict: bool = True,
    convert: Callable[[Any], Any] | None = None,
) -> Any:
    """Replace embedded outputs with their resolved values.

    With ``strict`` an unresolved output is a programming error (the scheduler
    only renders nodes whose dependencies have applied); otherwise it is
    replaced by ``unknown``. A failed output always raises its error.
    ``convert`` is applied to non-container leaves that are not outputs.
    """
    if isinstance(value, Output):
        if value.state is OutputState.UNRESOLVED:
            if strict:
                raise LookupError(f"{value!r} has not been resolved")
            return unknown
        return unwrap(value.value, unknown=unknown, strict=strict, convert=convert)
    if isinstance(value, dict):
        return {
            key: unwrap(child, unknown=unknown, strict=strict, convert=convert)
            for key, child in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [unwrap(child, unknown=unknown, strict=strict, convert=convert) for child in value]
    if convert is not None:
        return convert(value)
    return value
