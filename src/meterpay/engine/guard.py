"""Reentrancy guard and atomic unwinding for public entry points.

Every public entry point runs as one atomic unit:

1. The component's guard is acquired. If it is already held, the call is
   a nested re-entry (a recipient hook calling back in) and is rejected.
2. Every participant (ledgers, session registry, vault, notifications)
   is snapshotted.
3. The operation runs. On any exception all participants are restored,
   in reverse order, and the exception propagates unchanged.
4. The guard is released on every exit path, success or failure, so it
   can never remain stuck locked.
"""

from __future__ import annotations

import functools
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol, TypeVar, runtime_checkable

from meterpay.errors import ReentrancyError

F = TypeVar("F", bound=Callable[..., Any])


@runtime_checkable
class Transactional(Protocol):
    """Anything whose state can be captured and put back."""

    def snapshot(self) -> Any:
        ...

    def restore(self, snapshot: Any) -> None:
        ...


class ReentrancyGuard:
    """A call-scoped lock flag owned by one component instance."""

    def __init__(self, name: str = "guard") -> None:
        self._name = name
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    @contextmanager
    def hold(self) -> Iterator[None]:
        if self._locked:
            raise ReentrancyError(
                f"Re-entrant call rejected ({self._name} is executing)",
                reason="reentrant_call",
            )
        self._locked = True
        try:
            yield
        finally:
            self._locked = False


@contextmanager
def atomic(*participants: Transactional) -> Iterator[None]:
    """Restore every participant if the enclosed block raises."""
    snapshots = [(p, p.snapshot()) for p in participants]
    try:
        yield
    except Exception:
        for participant, snap in reversed(snapshots):
            participant.restore(snap)
        raise


def non_reentrant(method: F) -> F:
    """Wrap an entry point in its owner's guard and an atomic unit.

    The owner must expose ``_guard`` (a ReentrancyGuard) and
    ``_participants()`` returning the Transactional objects it mutates.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self._guard.hold():
            with atomic(*self._participants()):
                return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
